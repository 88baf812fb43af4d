"""
Report Agent - Generation collaborator over a local chat model

Responsibilities:
- Build the system prompt (role, field-awareness rules, symptom workflow,
  completion phrase) with the completeness analysis and current record
- Run the two-step symptom workflow: the model may first ask for
  standardized terms with a tool request, answered from the term lookup
- Parse and validate the model's report JSON into a CollaboratorResponse

NOT responsible for:
- Merging (the Session Controller merges the returned patch)
- Deciding whether a suggestion round is shown (state machine)
- Retrying failed calls

Design principles:
- Fail loudly: unparseable output raises CollaboratorError, patches that
  fail validation raise MalformedPatchError
- No suggestions for confirmation turns or once the narrative is set
- Blocking model calls run in a worker thread (asyncio.to_thread)

Model output contract:
    Tool request (first call only):
        {"tool": "get_adverse_effect_suggestions", "symptom_description": "..."}
    Report update:
        {"ai_response_message": "...", "updated_report_data": {<all six sections>}}
"""

import asyncio
import json
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from aers.contracts import (
    CollaboratorRequest,
    CollaboratorResponse,
    PartialRecord,
    ReportRecord,
    TurnRole,
)
from aers.core.reconciliation import describe_completeness
from aers.core.record_schema import (
    OBJECT_SECTIONS,
    FieldKind,
    field_specs,
    parse_partial_record,
    record_to_json,
)
from aers.core.session_machine import COMPLETION_SENTINEL
from aers.core.suggestions import (
    MAX_SUGGESTIONS,
    SUGGESTION_PROMPT,
    normalize_suggestions,
    suggestions_allowed,
)
from aers.errors import CollaboratorError

logger = logging.getLogger(__name__)

TOOL_NAME = "get_adverse_effect_suggestions"

SYSTEM_PROMPT = f"""You are the AERS Reporting Agent, a friendly and empathetic medical assistant. You help a user complete an adverse event report modelled on the FDA MedWatch 3500B consumer form.

FIELD COMPLETION AWARENESS
The user can fill in form fields directly, so always read the current report data before asking anything.
- A field holding a non-null, non-empty value (or a non-empty list) is already answered. Do not ask about it.
- A field that is null, an empty string or an empty list may be asked about.
- When you notice filled fields, acknowledge them briefly ("I see you've already provided your age as 45").
- Only gather the information that is still missing.

REPORTER INFORMATION
Reporter first name, last name, email and country come from the user's verified profile. Never ask for them and never change them. Do not ask for reporter phone, address, city, state or zip code, and never invent them. Copy every existing reporter_info value unchanged into your output.

SYMPTOM WORKFLOW
1. When the user first describes their problem and adverse_event.description_narrative is null, your only action is to request standardized terms. Reply with exactly this JSON and nothing else:
   {{"tool": "{TOOL_NAME}", "symptom_description": "<the user's full description>"}}
   Do not ask any other question before this step.
2. The user's pick comes back as a message such as: I confirm that "<term>" best describes my symptom. Put that exact term in adverse_event.description_narrative.
3. A selection message is a pick, not a new symptom. Never request terms for it, and never request terms once description_narrative has a value.
4. Then ask clear, friendly questions, one at a time, about the patient, the event, the suspect product and other products being taken.

OUTPUT RULES
- Every reply that is not a term request is one JSON object with exactly two keys: "ai_response_message" and "updated_report_data".
- updated_report_data is the COMPLETE report: all six sections and every field, using null or [] for unknown values. Never return a partial structure.
- Keep every existing value exactly as it is unless the user gave new information for that field.
- Dates use YYYY-MM-DD. Do not make up information.
- When all essential fields are reasonably filled (reporter information excluded), your ai_response_message must be a final confirmation containing the exact phrase "{COMPLETION_SENTINEL}" and you must not ask further questions.
"""


def build_field_guide() -> str:
    """Field types and allowed values, generated from the record schema"""
    lines = []
    for section in OBJECT_SECTIONS:
        parts = []
        for spec in field_specs(section):
            if spec.kind == FieldKind.CHOICE:
                parts.append(f"{spec.name} (one of: {', '.join(spec.choices)})")
            elif spec.kind == FieldKind.TEXT_LIST:
                parts.append(f"{spec.name} (list of strings)")
            elif spec.kind == FieldKind.TEXT:
                parts.append(spec.name)
            else:
                parts.append(f"{spec.name} ({spec.kind.value})")
        lines.append(f"{section}: {', '.join(parts)}")
    lines.append("concomitant_products: list of {\"name\": string}")
    lines.append("product_available: boolean or null")
    return '\n'.join(lines)


def build_system_message(record: ReportRecord, today: Optional[date] = None) -> str:
    """
    Full system message for one turn.

    Sections: instructions, field guide, current date, completeness
    analysis, full current record JSON.
    """
    today = today or date.today()
    return (
        f"{SYSTEM_PROMPT}\n"
        f"FIELD GUIDE\n{build_field_guide()}\n\n"
        f"CURRENT DATE\n{today.isoformat()}\n\n"
        f"CURRENT REPORT DATA ANALYSIS\n{describe_completeness(record)}\n\n"
        f"FULL CURRENT REPORT DATA\n{json.dumps(record_to_json(record), indent=2)}\n"
    )


def _attachment_note(request: CollaboratorRequest) -> str:
    # Text-only model: the content itself cannot be shown
    names = ', '.join(
        f"{a.name} ({a.mime_type}, {a.size} bytes)" for a in request.attachments
    )
    return f"\n\n[The user attached: {names}]"


def build_messages(request: CollaboratorRequest, today: Optional[date] = None) -> List[Dict[str, str]]:
    """
    Convert a collaborator request into a chat message list.

    Attachment metadata is noted on the latest user message.
    """
    messages = [{'role': 'system', 'content': build_system_message(request.record, today)}]
    for turn in request.turns:
        role = 'user' if turn.role == TurnRole.HUMAN else 'assistant'
        messages.append({'role': role, 'content': turn.text})

    if request.attachments and len(messages) > 1 and messages[-1]['role'] == 'user':
        messages[-1] = {
            'role': 'user',
            'content': messages[-1]['content'] + _attachment_note(request),
        }
    return messages


def parse_tool_request(data: Any) -> Optional[str]:
    """
    Recognize a term request.

    Returns:
        The symptom description, or None if data is not a tool request
    """
    if not isinstance(data, dict) or data.get('tool') != TOOL_NAME:
        return None
    description = data.get('symptom_description')
    return description if isinstance(description, str) else ''


def parse_report_reply(data: Any) -> CollaboratorResponse:
    """
    Validate a report reply.

    Raises:
        CollaboratorError: If the reply structure is invalid
        MalformedPatchError: If updated_report_data fails validation
    """
    if not isinstance(data, dict):
        raise CollaboratorError(f"Invalid response structure from model: {type(data).__name__}")

    message = data.get('ai_response_message')
    if not isinstance(message, str) or not message.strip():
        raise CollaboratorError("Invalid response structure from model: missing ai_response_message")
    if 'updated_report_data' not in data:
        raise CollaboratorError("Invalid response structure from model: missing updated_report_data")

    patch = parse_partial_record(data['updated_report_data'], require_complete=True)
    return CollaboratorResponse(message=message, updated_record=patch)


class ReportAgent:
    """
    Generation collaborator.

    generate() is the async entry point used by the Session Controller.
    """

    def __init__(self, llm_client, term_lookup, max_new_tokens: int = 1024,
                 max_suggestions: int = MAX_SUGGESTIONS):
        """
        Args:
            llm_client: Client with generate_json_chat(messages, max_tokens=...)
            term_lookup: Client with lookup(query) -> list of terms
            max_new_tokens: Generation budget per call
            max_suggestions: Cap on terms offered to the user

        Raises:
            TypeError: If a collaborator lacks the required methods
        """
        if not callable(getattr(llm_client, 'generate_json_chat', None)):
            raise TypeError("llm_client must have callable generate_json_chat() method")
        if not callable(getattr(term_lookup, 'lookup', None)):
            raise TypeError("term_lookup must have callable lookup() method")

        self.llm = llm_client
        self.term_lookup = term_lookup
        self.max_new_tokens = max_new_tokens
        self.max_suggestions = max_suggestions
        logger.info("Report Agent initialized")

    async def generate(self, request: CollaboratorRequest) -> CollaboratorResponse:
        """Async wrapper; the model call blocks, so it runs in a worker thread"""
        return await asyncio.to_thread(self.generate_sync, request)

    def generate_sync(self, request: CollaboratorRequest, today: Optional[date] = None) -> CollaboratorResponse:
        """
        Produce the reply for one human turn.

        Args:
            request: Context turns, current record, attachments
            today: Date shown to the model (default: today)

        Returns:
            CollaboratorResponse, with suggestions when terms were found

        Raises:
            CollaboratorError: Model failure or invalid reply structure
            MalformedPatchError: Reply patch failed validation
        """
        if not isinstance(request, CollaboratorRequest):
            raise TypeError(f"request must be CollaboratorRequest, got {type(request).__name__}")

        messages = build_messages(request, today)
        allowed = suggestions_allowed(request.record, request.is_confirmation)

        first = self._call(messages)
        symptom = parse_tool_request(first)
        if symptom is None:
            return parse_report_reply(first)

        if allowed:
            terms = normalize_suggestions(self.term_lookup.lookup(symptom), self.max_suggestions)
            if terms:
                logger.info(f"Offering {len(terms)} term(s) for turn {request.turn_index}")
                return CollaboratorResponse(
                    message=SUGGESTION_PROMPT,
                    updated_record=PartialRecord(),
                    suggestions=terms,
                )
            tool_result = (
                f'Tool result: No specific medical terms were found for "{symptom}". '
                f"Reply now with the report JSON object."
            )
        else:
            logger.warning("Model requested terms on a turn where they are not allowed")
            tool_result = (
                "Tool result: Term suggestions are not available for this message. "
                "Reply now with the report JSON object."
            )

        followup = messages + [
            {'role': 'assistant', 'content': json.dumps(first)},
            {'role': 'user', 'content': tool_result},
        ]
        second = self._call(followup)
        if parse_tool_request(second) is not None:
            raise CollaboratorError("Model requested terms again instead of replying")
        return parse_report_reply(second)

    def _call(self, messages: List[Dict[str, str]]) -> Any:
        try:
            text = self.llm.generate_json_chat(messages, max_tokens=self.max_new_tokens)
        except Exception as e:
            logger.error(f"Model call failed: {e}")
            raise CollaboratorError(f"Failed to get response from model: {e}") from e

        if not text or not text.strip():
            raise CollaboratorError("Model returned an empty response")

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            logger.error(f"Unparseable model output: {text[:200]!r}")
            raise CollaboratorError(f"Model returned invalid JSON: {e}") from e
