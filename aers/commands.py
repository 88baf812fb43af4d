"""
Session state and event types for the Session State Machine.

Events are the ONLY input to aers.core.session_machine.transition().
Each event carries the facts the transition needs (identity present,
pending action present, turn index), so transitions stay pure and are
testable without an identity provider, a store or a collaborator.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

from aers.core.suggestions import SuggestionRound


class View(str, Enum):
    """Which screen the session shows"""
    LANDING = "landing"
    AUTHENTICATING = "authenticating"
    CONVERSATION = "conversation"
    REVIEW = "review"
    IDENTITY_GATE = "identity_gate"


@dataclass(frozen=True)
class SessionState:
    """
    Control state of one session.

    Rules:
    - Immutable; transitions return a new value
    - Holds no record or transcript data (owned by the controller)

    Attributes:
        view: Current screen
        turn_index: Tag of the latest collaborator request
        awaiting_reply: A collaborator call is in flight; human input blocked
        suggestions: Open disambiguation round; free text blocked
        agent_replies: Accepted collaborator replies this conversation
        error: Last user-facing error, cleared by the next accepted event
        confirmed_term: Term picked by the turn whose reply is awaited
    """
    view: View = View.LANDING
    turn_index: int = 0
    awaiting_reply: bool = False
    suggestions: Optional[SuggestionRound] = None
    agent_replies: int = 0
    error: Optional[str] = None
    confirmed_term: Optional[str] = None

    @property
    def input_locked(self) -> bool:
        """Free-text submission is blocked"""
        return self.awaiting_reply or self.suggestions is not None


# Event types

@dataclass(frozen=True)
class StartReport:
    """User asked to start a report from the landing screen"""
    has_identity: bool


@dataclass(frozen=True)
class SignInRequested:
    """User explicitly asked to verify identity (no report pending)"""
    pass


@dataclass(frozen=True)
class BackToHome:
    """User left the identity gate; the pending action is dropped"""
    pass


@dataclass(frozen=True)
class PageLoaded:
    """
    Fresh process/page load.

    Attributes:
        has_pending_action: The store holds a deferred report start
    """
    has_pending_action: bool


@dataclass(frozen=True)
class IdentityEstablished:
    """
    Identity verification succeeded.

    Attributes:
        has_pending_action: A deferred report start was consumed and will
            be replayed as the first turn
    """
    has_pending_action: bool


@dataclass(frozen=True)
class IdentityUnavailable:
    """Verification finished without an identity"""
    pass


@dataclass(frozen=True)
class IdentityLost:
    """User signed out"""
    pass


@dataclass(frozen=True)
class HumanTurnSubmitted:
    """
    A human turn is about to be sent to the collaborator.

    Attributes:
        is_confirmation: Turn resolves the open suggestion round
        confirmed_term: The picked term (confirmation turns only)
    """
    is_confirmation: bool = False
    confirmed_term: Optional[str] = None


@dataclass(frozen=True)
class AgentTurnAccepted:
    """Collaborator returned a record patch for request turn_index"""
    turn_index: int
    message: str


@dataclass(frozen=True)
class DisambiguationRequested:
    """Collaborator returned candidate terms for request turn_index"""
    turn_index: int
    message: str
    candidates: Tuple[str, ...]


@dataclass(frozen=True)
class SuggestionDismissed:
    """User closed the suggestion choice without picking"""
    pass


@dataclass(frozen=True)
class CollaboratorFailed:
    """Collaborator call for turn_index failed or was rejected"""
    turn_index: int
    error: str


@dataclass(frozen=True)
class Reset:
    """Explicit restart"""
    pass


Event = Union[
    StartReport, SignInRequested, BackToHome, PageLoaded, IdentityEstablished,
    IdentityUnavailable, IdentityLost, HumanTurnSubmitted, AgentTurnAccepted,
    DisambiguationRequested, SuggestionDismissed, CollaboratorFailed, Reset,
]
