"""
Transcript Manager - Ordered human/agent turns for one session

Responsibilities:
- Append-only storage of turns
- Display view (everything, including the local greeting)
- Context view (what the generation collaborator sees)
- Reset back to the greeting-only state
- Serialize to/from JSON for session snapshots

Design principles:
- Turns are never removed except by reset()
- Views return tuples (callers cannot mutate internal storage)
- No knowledge of the record or the state machine
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from aers.contracts import Turn, TurnRole

logger = logging.getLogger(__name__)

GREETING_TEXT = (
    "Hello! I'm the AERS Reporting Agent. "
    "I'm here to help you report any medication side effects."
)


def greeting_turn() -> Turn:
    """Fixed display-only greeting that opens every session"""
    return Turn(role=TurnRole.AGENT, text=GREETING_TEXT, local_only=True)


class Transcript:
    """Append-only ordered sequence of turns"""

    def __init__(self, turns: Optional[List[Turn]] = None):
        """
        Initialize transcript

        Args:
            turns: Existing turns (restored session). Defaults to the greeting.
        """
        self._turns: List[Turn] = list(turns) if turns is not None else [greeting_turn()]

    def append(self, turn: Turn) -> int:
        """
        Append a turn.

        Args:
            turn: Turn to append

        Returns:
            int: Number of turns after appending

        Raises:
            TypeError: If turn is not a Turn
        """
        if not isinstance(turn, Turn):
            raise TypeError(f"turn must be Turn, got {type(turn).__name__}")

        self._turns.append(turn)
        logger.debug(f"Transcript: appended {turn.role.value} turn #{len(self._turns)}")
        return len(self._turns)

    def snapshot(self) -> Tuple[Turn, ...]:
        return tuple(self._turns)

    def display_view(self) -> Tuple[Turn, ...]:
        """All turns, including local-only ones"""
        return tuple(self._turns)

    def context_view(self) -> Tuple[Turn, ...]:
        """Turns sent to the generation collaborator (local-only turns excluded)"""
        return tuple(turn for turn in self._turns if not turn.local_only)

    def reset(self) -> None:
        """Clear back to the greeting-only state"""
        self._turns = [greeting_turn()]
        logger.info("Transcript reset")

    def __len__(self) -> int:
        return len(self._turns)

    def has_exchange(self) -> bool:
        """True once anything beyond local-only turns exists"""
        return any(not turn.local_only for turn in self._turns)

    # ========================
    # Serialization
    # ========================

    def to_json(self) -> List[Dict[str, Any]]:
        """
        Serialize turns.

        Attachment content is reduced to metadata; payloads are not kept
        beyond the request they were sent with.
        """
        return [
            {
                'role': turn.role.value,
                'text': turn.text,
                'local_only': turn.local_only,
                'timestamp': turn.timestamp,
                'attachments': [
                    {'name': a.name, 'size': a.size, 'type': a.mime_type}
                    for a in turn.attachments
                ],
            }
            for turn in self._turns
        ]

    @classmethod
    def from_json(cls, data: List[Dict[str, Any]]) -> "Transcript":
        """
        Rebuild from to_json() output (attachment metadata is dropped).

        Raises:
            ValueError: If a role is unknown
        """
        turns = [
            Turn(
                role=TurnRole(item['role']),
                text=item['text'],
                local_only=item.get('local_only', False),
                timestamp=item['timestamp'],
            )
            for item in data
        ]
        return cls(turns)
