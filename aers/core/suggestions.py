"""
Suggestion Disambiguation - Forced choice among standardized symptom terms

When the generation collaborator answers a symptom description with
candidate terms instead of a record patch, the session opens a
SuggestionRound. The record is left unchanged until the user picks one
term; the pick is sent back as a confirmation turn that the collaborator
must not treat as a new symptom description.

Responsibilities:
- Normalize candidate lists (trim, de-duplicate, cap)
- Render confirmation turns
- Validate the user's selection against the open round

Design principles:
- At most one round per unresolved symptom: confirmation turns and
  records with a narrative already set never request suggestions
- Empty candidate lists never open a round (nothing to choose)
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from aers.contracts import ReportRecord
from aers.core.record_schema import is_filled

MAX_SUGGESTIONS = 5

CONFIRMATION_TEMPLATE = 'I confirm that "{term}" best describes my symptom.'

SUGGESTION_PROMPT = (
    "Thanks for sharing. To ensure I'm capturing this accurately, "
    "which of these terms best describes your symptom?"
)


@dataclass(frozen=True)
class SuggestionRound:
    """
    An open disambiguation.

    Attributes:
        candidates: Terms offered to the user (non-empty)
        turn_index: Collaborator request that produced them
    """
    candidates: Tuple[str, ...]
    turn_index: int

    def resolve(self, choice: str) -> str:
        """
        Validate a selection.

        Returns:
            str: The selected term, exactly as offered

        Raises:
            ValueError: If choice is not one of the candidates
        """
        if choice not in self.candidates:
            raise ValueError(
                f"Selection {choice!r} is not one of the offered terms {list(self.candidates)}"
            )
        return choice


def normalize_suggestions(terms: Optional[Iterable[str]], limit: int = MAX_SUGGESTIONS) -> Tuple[str, ...]:
    """
    Clean a raw candidate list.

    Examples:
        >>> normalize_suggestions([' Rash ', 'Rash', '', 'Skin reaction'])
        ('Rash', 'Skin reaction')
    """
    if not terms:
        return ()

    cleaned = []
    for term in terms:
        if not isinstance(term, str):
            continue
        term = term.strip()
        if term and term not in cleaned:
            cleaned.append(term)
    return tuple(cleaned[:limit])


def build_confirmation(term: str) -> str:
    """Render the confirmation turn for a selected term"""
    return CONFIRMATION_TEMPLATE.format(term=term)


def suggestions_allowed(record: ReportRecord, is_confirmation: bool) -> bool:
    """
    Whether a suggestion round may be opened for this turn.

    False once the narrative is set or when the turn resolves a round
    (the caller marks such turns explicitly), which bounds disambiguation
    to one round per symptom.
    """
    if is_filled(record.adverse_event.description_narrative):
        return False
    return not is_confirmation
