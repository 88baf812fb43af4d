"""
Chat Formatter - Model-specific formatting of multi-turn conversations

Responsibilities:
- Detect model family from model name
- Render a role/content message list with the tokenizer chat template
- Fold the system message into the first user message for templates
  that reject a system role
- Fallback to manual formatting for known families

Design principles:
- Tokenizer template priority (most robust)
- Manual fallback for known families
- Generic plain-text transcript for unknown models
- Stateless formatting (no side effects)

Message format:
    [{"role": "system" | "user" | "assistant", "content": "..."}]
"""

import logging
from typing import Dict, List

logger = logging.getLogger(__name__)

ROLES = ("system", "user", "assistant")

Message = Dict[str, str]


def validate_messages(messages: List[Message]) -> None:
    """
    Check message list shape.

    Raises:
        ValueError: If empty, a role is unknown, or content is not a string
    """
    if not messages:
        raise ValueError("messages must not be empty")
    for i, message in enumerate(messages):
        if message.get('role') not in ROLES:
            raise ValueError(f"messages[{i}] has invalid role {message.get('role')!r}")
        if not isinstance(message.get('content'), str):
            raise ValueError(f"messages[{i}] content must be a string")


def fold_system_message(messages: List[Message]) -> List[Message]:
    """
    Merge a leading system message into the first user message.

    Examples:
        >>> fold_system_message([
        ...     {"role": "system", "content": "Be brief."},
        ...     {"role": "user", "content": "Hi"},
        ... ])
        [{'role': 'user', 'content': 'Be brief.\\n\\nHi'}]
    """
    if not messages or messages[0]['role'] != 'system':
        return list(messages)

    system = messages[0]['content']
    rest = list(messages[1:])
    if rest and rest[0]['role'] == 'user':
        rest[0] = {'role': 'user', 'content': f"{system}\n\n{rest[0]['content']}"}
    else:
        rest.insert(0, {'role': 'user', 'content': system})
    return rest


def _inst_format(messages: List[Message]) -> str:
    parts = []
    for message in fold_system_message(messages):
        if message['role'] == 'user':
            parts.append(f"[INST] {message['content']} [/INST]")
        else:
            parts.append(f" {message['content']}</s>")
    return ''.join(parts)


def _llama3_format(messages: List[Message]) -> str:
    parts = ["<|begin_of_text|>"]
    for message in messages:
        parts.append(
            f"<|start_header_id|>{message['role']}<|end_header_id|>\n\n"
            f"{message['content']}<|eot_id|>"
        )
    parts.append("<|start_header_id|>assistant<|end_header_id|>\n\n")
    return ''.join(parts)


def _zephyr_format(messages: List[Message]) -> str:
    parts = [f"<|{message['role']}|>\n{message['content']}</s>\n" for message in messages]
    parts.append("<|assistant|>\n")
    return ''.join(parts)


def _phi_format(messages: List[Message]) -> str:
    parts = [f"<|{message['role']}|>\n{message['content']}<|end|>\n" for message in messages]
    parts.append("<|assistant|>\n")
    return ''.join(parts)


def _generic_format(messages: List[Message]) -> str:
    labels = {'system': 'System', 'user': 'User', 'assistant': 'Assistant'}
    lines = [f"{labels[message['role']]}: {message['content']}" for message in messages]
    lines.append("Assistant:")
    return '\n\n'.join(lines)


class ChatFormatter:
    """Format conversations for specific model families"""

    MANUAL_FORMATS = {
        "mistral": _inst_format,
        "mixtral": _inst_format,
        "llama": _inst_format,
        "llama-2": _inst_format,
        "llama-3": _llama3_format,
        "zephyr": _zephyr_format,
        "phi": _phi_format,
    }

    def __init__(self, model_name: str, tokenizer=None):
        """
        Initialize formatter

        Args:
            model_name: HuggingFace model identifier
            tokenizer: Optional tokenizer with chat_template attribute
        """
        self.model_name = model_name
        self.tokenizer = tokenizer
        self.model_family = self._detect_model_family(model_name)

        self.has_chat_template = (
            tokenizer is not None and
            hasattr(tokenizer, 'chat_template') and
            tokenizer.chat_template is not None
        )

        if self.has_chat_template:
            logger.info(f"Using tokenizer chat template for {model_name}")
        elif self.model_family in self.MANUAL_FORMATS:
            logger.info(f"Using manual formatting for {self.model_family} family")
        else:
            logger.warning(
                f"No chat template or known format for {model_name}. "
                f"Using generic transcript formatting"
            )

    def _detect_model_family(self, model_name: str) -> str:
        name_lower = model_name.lower()

        # Order matters - most specific first
        if "llama-3" in name_lower or "llama3" in name_lower:
            return "llama-3"
        elif "llama-2" in name_lower or "llama2" in name_lower:
            return "llama-2"
        elif "llama" in name_lower:
            return "llama"
        elif "mixtral" in name_lower:
            return "mixtral"
        elif "mistral" in name_lower:
            return "mistral"
        elif "zephyr" in name_lower:
            return "zephyr"
        elif "phi" in name_lower:
            return "phi"
        else:
            return "generic"

    def format_chat(self, messages: List[Message]) -> str:
        """
        Render a conversation ready for generation

        Priority:
        1. Tokenizer chat template (retried with the system message folded
           into the first user turn if the template rejects it)
        2. Manual formatting for known family
        3. Generic "Role: content" transcript

        Args:
            messages: Role/content message list

        Returns:
            str: Prompt text ending where the assistant reply starts

        Raises:
            ValueError: If messages are malformed
        """
        validate_messages(messages)

        if self.has_chat_template:
            for candidate in (messages, fold_system_message(messages)):
                try:
                    formatted = self.tokenizer.apply_chat_template(
                        candidate,
                        tokenize=False,
                        add_generation_prompt=True
                    )
                    logger.debug("Applied tokenizer chat template")
                    return formatted
                except Exception as e:
                    logger.warning(f"Tokenizer chat template failed: {e}")
            logger.warning("Falling back to manual formatting")

        if self.model_family in self.MANUAL_FORMATS:
            logger.debug(f"Applied manual {self.model_family} formatting")
            return self.MANUAL_FORMATS[self.model_family](messages)

        return _generic_format(messages)

    def get_info(self) -> dict:
        return {
            "model_name": self.model_name,
            "model_family": self.model_family,
            "has_chat_template": self.has_chat_template,
            "formatting_method": (
                "tokenizer_template" if self.has_chat_template
                else "manual" if self.model_family in self.MANUAL_FORMATS
                else "generic"
            )
        }
