"""
Session State Machine - Pure control-state transitions

transition(state, event) is the only entry point. It never performs I/O;
the Session Controller gathers the facts an event needs (identity,
pending action, collaborator outcome) and applies the returned state.

States:
    LANDING          start screen (initial)
    AUTHENTICATING   identity resolving while a pending action is queued
    CONVERSATION     dialogue with the generation collaborator
    REVIEW           report finished, ready for export
    IDENTITY_GATE    identity verification requested

Transitions:
    LANDING --StartReport(no identity)--> IDENTITY_GATE
    LANDING --StartReport(identity)--> CONVERSATION (awaiting first reply)
    LANDING --SignInRequested--> IDENTITY_GATE
    IDENTITY_GATE --BackToHome--> LANDING
    LANDING/IDENTITY_GATE --PageLoaded(pending)--> AUTHENTICATING
    LANDING/IDENTITY_GATE/AUTHENTICATING --IdentityEstablished(pending)--> CONVERSATION
    LANDING/IDENTITY_GATE/AUTHENTICATING --IdentityEstablished(no pending)--> LANDING
    AUTHENTICATING --IdentityUnavailable--> IDENTITY_GATE
    CONVERSATION --HumanTurnSubmitted--> CONVERSATION (awaiting reply)
    CONVERSATION --AgentTurnAccepted--> CONVERSATION, or REVIEW on the sentinel
    CONVERSATION --DisambiguationRequested--> CONVERSATION (choice open)
    CONVERSATION --SuggestionDismissed--> CONVERSATION (choice closed)
    CONVERSATION --CollaboratorFailed--> CONVERSATION, or LANDING on the first turn
    AUTHENTICATING/CONVERSATION/REVIEW --IdentityLost--> LANDING
    any --Reset--> LANDING

Design principles:
- Illegal events return IllegalCommand and never raise
- turn_index only grows (survives reset) so late replies are always stale
- Collaborator events carry the turn_index of their request; anything
  but the latest request is rejected as stale
"""

from dataclasses import replace
from typing import Union

from aers.commands import (
    AgentTurnAccepted,
    BackToHome,
    CollaboratorFailed,
    DisambiguationRequested,
    HumanTurnSubmitted,
    IdentityEstablished,
    IdentityLost,
    IdentityUnavailable,
    PageLoaded,
    Reset,
    SessionState,
    SignInRequested,
    StartReport,
    SuggestionDismissed,
    View,
)
from aers.core.suggestions import SuggestionRound
from aers.results import IllegalCommand

COMPLETION_SENTINEL = "The report is now complete."

_PRE_CONVERSATION = (View.LANDING, View.IDENTITY_GATE, View.AUTHENTICATING)


def is_completion_message(message: str) -> bool:
    """
    True if an agent message signals the report is done.

    Exact, case-sensitive substring match on COMPLETION_SENTINEL.

    Examples:
        >>> is_completion_message("Thanks! The report is now complete.")
        True
        >>> is_completion_message("The report is now complet.")
        False
    """
    return COMPLETION_SENTINEL in message


def initial_state() -> SessionState:
    return SessionState()


def _illegal(state: SessionState, event, reason: str) -> IllegalCommand:
    return IllegalCommand(
        reason=f"{reason} (view={state.view.value})",
        command_type=type(event).__name__,
    )


def _landing(state: SessionState, error=None) -> SessionState:
    """Fresh landing state that keeps the turn counter"""
    return SessionState(view=View.LANDING, turn_index=state.turn_index, error=error)


def _begin_conversation(state: SessionState) -> SessionState:
    return SessionState(
        view=View.CONVERSATION,
        turn_index=state.turn_index + 1,
        awaiting_reply=True,
    )


def _check_reply(state: SessionState, event):
    """Common guard for collaborator outcome events"""
    if state.view != View.CONVERSATION or not state.awaiting_reply:
        return _illegal(state, event, "No collaborator reply is awaited")
    if event.turn_index != state.turn_index:
        return _illegal(
            state, event,
            f"Stale reply for turn {event.turn_index}, latest is {state.turn_index}"
        )
    return None


def transition(state: SessionState, event) -> Union[SessionState, IllegalCommand]:
    """
    Apply one event.

    Args:
        state: Current control state
        event: One of the event types in aers.commands

    Returns:
        New SessionState, or IllegalCommand if the event is not allowed
        in the current state

    Raises:
        TypeError: If state or event has the wrong type
    """
    if not isinstance(state, SessionState):
        raise TypeError(f"state must be SessionState, got {type(state).__name__}")

    view = state.view

    if isinstance(event, Reset):
        return _landing(state)

    if isinstance(event, StartReport):
        if view != View.LANDING:
            return _illegal(state, event, "A report can only be started from the landing screen")
        if not event.has_identity:
            return replace(state, view=View.IDENTITY_GATE, error=None)
        return _begin_conversation(state)

    if isinstance(event, SignInRequested):
        if view != View.LANDING:
            return _illegal(state, event, "Sign-in can only be requested from the landing screen")
        return replace(state, view=View.IDENTITY_GATE, error=None)

    if isinstance(event, BackToHome):
        if view != View.IDENTITY_GATE:
            return _illegal(state, event, "Not on the identity gate")
        return _landing(state)

    if isinstance(event, PageLoaded):
        if view not in (View.LANDING, View.IDENTITY_GATE):
            return _illegal(state, event, "Page load recovery only applies before a conversation")
        if event.has_pending_action:
            return replace(state, view=View.AUTHENTICATING, error=None)
        return state

    if isinstance(event, IdentityEstablished):
        if view not in _PRE_CONVERSATION:
            # Profile refresh during a conversation: nothing to do here
            return state
        if event.has_pending_action:
            return _begin_conversation(state)
        return _landing(state)

    if isinstance(event, IdentityUnavailable):
        if view != View.AUTHENTICATING:
            return state
        return replace(state, view=View.IDENTITY_GATE)

    if isinstance(event, IdentityLost):
        if view in (View.LANDING, View.IDENTITY_GATE):
            return state
        return _landing(state)

    if isinstance(event, HumanTurnSubmitted):
        if view != View.CONVERSATION:
            return _illegal(state, event, "Messages can only be sent during a conversation")
        if state.awaiting_reply:
            return _illegal(state, event, "Still waiting for the previous reply")
        if state.suggestions is not None and not event.is_confirmation:
            return _illegal(state, event, "Choose one of the suggested terms first")
        if event.is_confirmation and state.suggestions is None:
            return _illegal(state, event, "No suggestion choice is open")
        return replace(
            state,
            turn_index=state.turn_index + 1,
            awaiting_reply=True,
            suggestions=None,
            error=None,
            confirmed_term=event.confirmed_term if event.is_confirmation else None,
        )

    if isinstance(event, AgentTurnAccepted):
        rejected = _check_reply(state, event)
        if rejected is not None:
            return rejected
        next_view = View.REVIEW if is_completion_message(event.message) else View.CONVERSATION
        return replace(
            state,
            view=next_view,
            awaiting_reply=False,
            agent_replies=state.agent_replies + 1,
            confirmed_term=None,
        )

    if isinstance(event, DisambiguationRequested):
        rejected = _check_reply(state, event)
        if rejected is not None:
            return rejected
        # Nothing to choose from: behaves like a normal reply
        suggestions = (
            SuggestionRound(candidates=tuple(event.candidates), turn_index=event.turn_index)
            if event.candidates else None
        )
        return replace(
            state,
            awaiting_reply=False,
            agent_replies=state.agent_replies + 1,
            suggestions=suggestions,
            confirmed_term=None,
        )

    if isinstance(event, SuggestionDismissed):
        if view != View.CONVERSATION or state.suggestions is None:
            return _illegal(state, event, "No suggestion choice is open")
        return replace(state, suggestions=None)

    if isinstance(event, CollaboratorFailed):
        rejected = _check_reply(state, event)
        if rejected is not None:
            return rejected
        if state.agent_replies == 0:
            # The report never started
            return _landing(state, error=event.error)
        return replace(state, awaiting_reply=False, error=event.error, confirmed_term=None)

    raise TypeError(f"Unknown event type: {type(event).__name__}")
