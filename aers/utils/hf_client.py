"""
HuggingFace Client - Model loading and chat inference wrapper

Responsibilities:
- Load model with optional 4-bit quantization
- Generate chat completions from role/content message lists
- Generate JSON-formatted completions with repair
- Log CUDA memory and out-of-memory failures

Design principles:
- Dependency injection (no singleton)
- Fail fast on critical errors (CUDA OOM)
- Model-agnostic (formatting lives in ChatFormatter)
- Blocking calls; async callers wrap them in asyncio.to_thread
"""

import logging
import time
from typing import List

import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    BitsAndBytesConfig
)

from aers.utils.chat_formatter import ChatFormatter, Message

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_MAP_AUTO = "auto"


def repair_json(text: str) -> str:
    """
    Attempt to repair common JSON formatting issues in model output

    Only handles object output (not arrays).

    Examples:
        >>> repair_json('```json\\n{"a": 1}\\n```')
        '{"a": 1}'
        >>> repair_json('Sure! {"a": {"b": 1}')
        '{"a": {"b": 1}}'
    """
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]

    text = text.strip()

    first_brace = text.find('{')
    if first_brace == -1:
        logger.warning("No braces found in JSON repair")
        return text

    last_brace = text.rfind('}')
    text = text[first_brace:last_brace + 1] if last_brace > first_brace else text[first_brace:]

    # Naive balancing: braces inside strings are counted too
    open_count = text.count('{')
    close_count = text.count('}')

    if open_count > close_count:
        missing = open_count - close_count
        text += '}' * missing
        logger.debug(f"Added {missing} closing braces")
    elif close_count > open_count:
        diff = close_count - open_count
        for _ in range(diff):
            last_close = text.rfind('}')
            if last_close != -1:
                text = text[:last_close] + text[last_close + 1:]
        logger.debug(f"Removed {diff} extra closing braces")

    return text


class HuggingFaceClient:
    """
    Local chat model for the Report Agent.

    Only generate_json_chat() is part of the collaborator contract;
    generate_chat() is the raw text step underneath it.
    """

    def __init__(
        self,
        model_name: str,
        load_in_4bit: bool = True,
        device: str = DEVICE_CUDA,
    ) -> None:
        """
        Load tokenizer and model

        Args:
            model_name: HuggingFace model identifier
            load_in_4bit: NF4 quantization (CUDA only)
            device: "cuda" or "cpu"

        Raises:
            RuntimeError: If CUDA requested but not available
        """
        if device == DEVICE_CUDA and not torch.cuda.is_available():
            raise RuntimeError("CUDA requested but not available. Check nvidia-smi.")

        self.model_name = model_name
        self.device = device
        logger.info(f"Loading model {model_name} on {device} (4-bit: {load_in_4bit})")

        self.tokenizer = self._load_tokenizer(model_name)
        self.formatter = ChatFormatter(model_name, self.tokenizer)
        self.model = self._load_model(model_name, load_in_4bit and device == DEVICE_CUDA)
        self.model.eval()

        logger.info(f"Model ready, chat format: {self.formatter.get_info()}")

    @staticmethod
    def _load_tokenizer(model_name: str):
        tokenizer = AutoTokenizer.from_pretrained(model_name)
        # generate() needs a pad token for the attention mask
        if tokenizer.pad_token is None:
            if tokenizer.eos_token is not None:
                tokenizer.pad_token = tokenizer.eos_token
            else:
                tokenizer.add_special_tokens({'pad_token': '[PAD]'})
                logger.warning("Tokenizer has no eos token; added [PAD]")
        return tokenizer

    def _load_model(self, model_name: str, quantize: bool):
        on_cuda = self.device == DEVICE_CUDA
        quantization_config = BitsAndBytesConfig(
            load_in_4bit=True,
            bnb_4bit_quant_type="nf4",
            bnb_4bit_compute_dtype=torch.bfloat16,
            bnb_4bit_use_double_quant=True
        ) if quantize else None

        try:
            model = AutoModelForCausalLM.from_pretrained(
                model_name,
                quantization_config=quantization_config,
                device_map=DEVICE_MAP_AUTO if on_cuda else None,
                torch_dtype=torch.bfloat16 if on_cuda else torch.float32
            )
        except torch.cuda.OutOfMemoryError:
            logger.error("CUDA out of memory while loading; try 4-bit loading or a smaller model")
            raise

        if on_cuda:
            logger.info(f"GPU memory allocated: {torch.cuda.memory_allocated() / 1e9:.2f}GB")
        return model

    def generate_chat(self, messages: List[Message], max_tokens: int = 1024,
                      temperature: float = 0.3) -> str:
        """
        Generate the next assistant message

        Raises:
            ValueError: If messages are malformed
            torch.cuda.OutOfMemoryError: If GPU runs out of memory
        """
        prompt = self.formatter.format_chat(messages)
        inputs = self.tokenizer(prompt, return_tensors="pt")
        if self.device == DEVICE_CUDA:
            inputs = inputs.to(DEVICE_CUDA)
        prompt_tokens = inputs.input_ids.shape[1]

        start_time = time.time()
        try:
            with torch.no_grad():
                outputs = self.model.generate(
                    inputs.input_ids,
                    attention_mask=inputs.attention_mask,
                    max_new_tokens=max_tokens,
                    temperature=temperature if temperature > 0 else None,
                    do_sample=temperature > 0,
                    pad_token_id=self.tokenizer.pad_token_id
                )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"CUDA OOM during generation (prompt tokens: {prompt_tokens})")
            raise

        generated_ids = outputs[0][prompt_tokens:]
        logger.debug(
            f"Generated {len(generated_ids)} tokens from {prompt_tokens} "
            f"in {(time.time() - start_time) * 1000:.0f}ms"
        )
        return self.tokenizer.decode(generated_ids, skip_special_tokens=True)

    def generate_json_chat(self, messages: List[Message], max_tokens: int = 1024,
                           temperature: float = 0.0) -> str:
        """Generate a reply expected to be one JSON object; returns repaired text, not parsed JSON"""
        return repair_json(self.generate_chat(messages, max_tokens=max_tokens, temperature=temperature))
