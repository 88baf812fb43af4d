"""
Result types returned by SessionController operations

These are the ONLY return types from the controller's public methods.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from aers.commands import SessionState
from aers.contracts import ReportRecord


@dataclass(frozen=True)
class TurnResult:
    """
    Successful operation result.

    Returned by: start_report, send_message, confirm_suggestion,
    dismiss_suggestions, edit_section, handle_identity_change,
    request_sign_in, back_to_home, resume, reset

    Attributes:
        system_output: Latest agent text to display ('' if none)
        state: Control state after the operation
        record: Current record after the operation
        completion: Completion percentage of record
        suggestions: Candidate terms when a choice is open
        error: User-facing error message, if the operation degraded
        debug: Debug information (turn index, discarded responses, etc.)
    """
    system_output: str
    state: SessionState
    record: ReportRecord
    completion: int
    suggestions: Tuple[str, ...] = ()
    error: Optional[str] = None
    debug: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FinalReport:
    """
    Exported report.

    Returned by: export

    Attributes:
        document: Complete JSON-safe export document
        filename: Download filename (aers_report_YYYY-MM-DD.json)
        report_id: Report identifier
        path: File the document was saved to, if saved
    """
    document: Dict[str, Any]
    filename: str
    report_id: str
    path: Optional[str] = None


@dataclass(frozen=True)
class IllegalCommand:
    """
    Operation rejected (invalid for the current state).

    Examples:
    - send_message while a reply is awaited
    - free text while a suggestion choice is open
    - export before the session reaches REVIEW

    Attributes:
        reason: Human-readable explanation
        command_type: Name of the rejected event or operation
    """
    reason: str
    command_type: str
