"""
Session Controller - Orchestration of one reporting session

Responsibilities:
- Own the session's record, transcript and control state
- Drive the generation collaborator, one outstanding call at a time
- Merge accepted patches and direct form edits (Reconciliation Engine)
- Defer report starts across identity verification (Pending-Action Store)
- Seed reporter fields from the verified identity
- Export the finished report

Design principles:
- Control decisions live in session_machine.transition(); this class
  gathers facts, applies the returned state and performs the I/O
- Every collaborator call is tagged with a turn index; a reply whose
  index is not the latest is discarded without touching the record
- Errors never escape as exceptions: each public method returns a
  TurnResult (possibly carrying an error) or an IllegalCommand
- The lock guards state updates only and is never held across an await
"""

import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

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
from aers.contracts import (
    AttachmentPayload,
    CollaboratorRequest,
    CollaboratorResponse,
    Identity,
    PendingAction,
    ReportRecord,
    Turn,
    TurnRole,
)
from aers.core.reconciliation import (
    apply_section_edit,
    changed_fields,
    completion,
    merge,
    missing_mandatory_fields,
    seed_reporter_from_identity,
)
from aers.core.record_schema import is_filled, record_to_json
from aers.core.session_machine import initial_state, transition
from aers.core.suggestions import (
    build_confirmation,
    normalize_suggestions,
    suggestions_allowed,
)
from aers.core.transcript import Transcript
from aers.errors import AttachmentReadError
from aers.results import FinalReport, IllegalCommand, TurnResult
from aers.utils.attachments import decode_payload, metadata_for
from aers.utils.helpers import (
    generate_download_filename,
    generate_report_filename,
    generate_report_id,
)

logger = logging.getLogger(__name__)

AttachmentSource = Union[AttachmentPayload, dict]


class SessionController:
    """
    Stateful owner of one session.

    Collaborators are injected so tests can substitute fakes:
    - collaborator: async generate(CollaboratorRequest) -> CollaboratorResponse
    - identity_provider: current(), loading, subscribe(callback)
    - pending_store: store(), restore_and_clear(), clear(), peek()
    - report_formatter: format_report(), save_to_file()
    """

    CONNECTION_ERROR_MESSAGE = (
        "I'm sorry, I seem to be having trouble connecting. "
        "Please try again in a moment."
    )
    START_ERROR_MESSAGE = "I'm sorry, I had trouble starting the report."
    EDIT_NOTICE = (
        "I see you've updated some information in the form. Let me continue "
        "with any remaining questions based on what you've provided."
    )
    DEFAULT_START_TEXT = "I'd like to report a side effect."

    def __init__(self, collaborator, identity_provider, pending_store,
                 report_formatter, output_dir: Optional[str] = None):
        """
        Initialize controller

        Args:
            collaborator: Generation collaborator (e.g. ReportAgent)
            identity_provider: Identity provider (e.g. InMemoryIdentityProvider)
            pending_store: PendingActionStore
            report_formatter: ReportFormatter
            output_dir: Directory for saved exports (None = do not save)

        Raises:
            TypeError: If any collaborator is missing a required method
        """
        self._validate_modules(collaborator, identity_provider, pending_store, report_formatter)

        self.collaborator = collaborator
        self.identity_provider = identity_provider
        self.pending_store = pending_store
        self.report_formatter = report_formatter
        self.output_dir = output_dir

        self._lock = threading.RLock()
        self.state: SessionState = initial_state()
        self.transcript = Transcript()
        self.record = self._fresh_record()
        self._last_output = ''
        self._exported: Optional[Tuple[int, FinalReport]] = None

        self._unsubscribe = identity_provider.subscribe(self._on_identity_change)

        logger.info("Session Controller initialized")

    def _validate_modules(self, collaborator, identity_provider, pending_store, report_formatter):
        """Validate collaborator interfaces"""
        if not callable(getattr(collaborator, 'generate', None)):
            raise TypeError("collaborator must have callable generate() method")

        for method in ('current', 'subscribe'):
            if not callable(getattr(identity_provider, method, None)):
                raise TypeError(f"identity_provider must have callable {method}() method")
        if not hasattr(identity_provider, 'loading'):
            raise TypeError("identity_provider must have a loading attribute")

        for method in ('store', 'restore_and_clear', 'clear', 'peek'):
            if not callable(getattr(pending_store, method, None)):
                raise TypeError(f"pending_store must have callable {method}() method")

        for method in ('format_report', 'save_to_file'):
            if not callable(getattr(report_formatter, method, None)):
                raise TypeError(f"report_formatter must have callable {method}() method")

    def close(self) -> None:
        """Stop listening to identity changes"""
        self._unsubscribe()

    # ========================
    # Internal helpers
    # ========================

    def _fresh_record(self) -> ReportRecord:
        identity = self.identity_provider.current()
        if identity is None:
            return ReportRecord()
        return self._seeded(ReportRecord(), identity)

    def _seeded(self, record: ReportRecord, identity: Identity) -> ReportRecord:
        return seed_reporter_from_identity(record, identity)

    def _apply(self, event) -> Union[SessionState, IllegalCommand]:
        """Run one transition and store the new state"""
        with self._lock:
            previous = self.state
            outcome = transition(previous, event)
            if isinstance(outcome, IllegalCommand):
                logger.warning(f"Rejected {outcome.command_type}: {outcome.reason}")
                return outcome
            self.state = outcome
        if outcome.view != previous.view:
            logger.info(f"View: {previous.view.value} -> {outcome.view.value}")
        return outcome

    def _result(self, system_output: Optional[str] = None, error: Optional[str] = None,
                debug: Optional[Dict[str, Any]] = None) -> TurnResult:
        if system_output is not None:
            self._last_output = system_output
        state = self.state
        return TurnResult(
            system_output=self._last_output,
            state=state,
            record=self.record,
            completion=completion(self.record),
            suggestions=state.suggestions.candidates if state.suggestions else (),
            error=error if error is not None else state.error,
            debug=debug or {},
        )

    def _clear_session(self) -> None:
        self.transcript.reset()
        self.record = self._fresh_record()
        self._last_output = ''

    def _load_attachments(self, sources: Optional[Iterable[AttachmentSource]]) -> Tuple[AttachmentPayload, ...]:
        """
        Resolve attachment sources into payloads.

        Raises:
            AttachmentReadError: On the first source that cannot be read
        """
        payloads = []
        for source in sources or ():
            if isinstance(source, AttachmentPayload):
                payloads.append(source)
            elif isinstance(source, dict):
                payloads.append(decode_payload(source))
            else:
                raise AttachmentReadError(
                    "reading attachment",
                    f"unsupported attachment type {type(source).__name__}"
                )
        return tuple(payloads)

    def _attachment_failure(self, error: AttachmentReadError) -> TurnResult:
        logger.warning(f"Attachment read failed: {error}")
        return self._result(
            error=f"There was an error {error.step}. Please try again.",
            debug={'attachment_error': str(error)},
        )

    # ========================
    # Collaborator exchange
    # ========================

    async def _exchange(self, turn_index: int, attachments: Tuple[AttachmentPayload, ...]) -> TurnResult:
        """
        Send the transcript to the collaborator and apply the reply.

        Precondition: the state machine already accepted the human turn and
        assigned turn_index; the human turn is the last transcript entry.
        """
        base_record = self.record
        confirmed_term = self.state.confirmed_term
        request = CollaboratorRequest(
            turns=self.transcript.context_view(),
            record=base_record,
            attachments=attachments,
            turn_index=turn_index,
            is_confirmation=confirmed_term is not None,
        )

        try:
            response = await self.collaborator.generate(request)
        except Exception as e:
            logger.error(f"Collaborator failed for turn {turn_index}: {e}")
            return self._handle_failure(turn_index, e)

        if not isinstance(response, CollaboratorResponse):
            logger.error(f"Collaborator returned {type(response).__name__} for turn {turn_index}")
            return self._handle_failure(
                turn_index, TypeError("collaborator returned an invalid response")
            )

        with self._lock:
            candidates = normalize_suggestions(response.suggestions)
            if candidates and not suggestions_allowed(base_record, request.is_confirmation):
                logger.warning(f"Ignoring suggestions for turn {turn_index}: not allowed here")
                candidates = ()

            if candidates:
                event = DisambiguationRequested(
                    turn_index=turn_index, message=response.message, candidates=candidates
                )
            else:
                event = AgentTurnAccepted(turn_index=turn_index, message=response.message)

            outcome = self._apply(event)
            if isinstance(outcome, IllegalCommand):
                logger.warning(f"Discarded stale reply for turn {turn_index}")
                return self._result(debug={'discarded_turn': turn_index, 'reason': outcome.reason})

            if not candidates:
                patch = changed_fields(base_record, response.updated_record)
                self.record = merge(self.record, patch)
                if confirmed_term is not None:
                    self._apply_confirmed_term(confirmed_term)

            self.transcript.append(Turn(role=TurnRole.AGENT, text=response.message))

        logger.info(
            f"Turn {turn_index} accepted: view={self.state.view.value}, "
            f"completion={completion(self.record)}%, suggestions={len(candidates)}"
        )
        return self._result(
            system_output=response.message,
            debug={'turn_index': turn_index, 'suggestions_offered': len(candidates)},
        )

    def _apply_confirmed_term(self, term: str) -> None:
        """After a confirmation turn the narrative holds the confirmed term"""
        if is_filled(self.record.adverse_event.description_narrative):
            return
        logger.info(f"Setting description_narrative from confirmed term {term!r}")
        self.record = replace(
            self.record,
            adverse_event=replace(self.record.adverse_event, description_narrative=term),
        )

    def _handle_failure(self, turn_index: int, error: Exception) -> TurnResult:
        with self._lock:
            first_turn = self.state.agent_replies == 0
            message = (
                f"{self.START_ERROR_MESSAGE} {error}" if first_turn
                else self.CONNECTION_ERROR_MESSAGE
            )
            outcome = self._apply(CollaboratorFailed(turn_index=turn_index, error=message))
            if isinstance(outcome, IllegalCommand):
                logger.warning(f"Discarded stale failure for turn {turn_index}")
                return self._result(debug={'discarded_turn': turn_index, 'reason': outcome.reason})

            if outcome.view == View.LANDING:
                self._clear_session()
                return self._result(system_output='', debug={'turn_index': turn_index, 'error': str(error)})

            self.transcript.append(Turn(role=TurnRole.AGENT, text=self.CONNECTION_ERROR_MESSAGE))

        return self._result(
            system_output=self.CONNECTION_ERROR_MESSAGE,
            debug={'turn_index': turn_index, 'error': str(error)},
        )

    async def _begin_with(self, text: str, attachments: Tuple[AttachmentPayload, ...]) -> TurnResult:
        """Send the first human turn of a conversation the machine just opened"""
        self.transcript.append(Turn(role=TurnRole.HUMAN, text=text, attachments=attachments))
        return await self._exchange(self.state.turn_index, attachments)

    # ========================
    # Public operations
    # ========================

    async def start_report(self, description: str = '',
                           attachments: Optional[Iterable[AttachmentSource]] = None
                           ) -> Union[TurnResult, IllegalCommand]:
        """
        Start a report from the landing screen.

        Without a verified identity the request is stored as the pending
        action and the identity gate is shown. With one, the description is
        sent as the first turn.

        Args:
            description: Free-text description of the problem
            attachments: Payloads or {name, type, data} dicts

        Returns:
            TurnResult or IllegalCommand
        """
        description = (description or '').strip()
        identity = self.identity_provider.current()
        event = StartReport(has_identity=identity is not None)

        preview = transition(self.state, event)
        if isinstance(preview, IllegalCommand):
            logger.warning(f"Rejected {preview.command_type}: {preview.reason}")
            return preview

        try:
            payloads = self._load_attachments(attachments)
        except AttachmentReadError as e:
            return self._attachment_failure(e)

        if identity is None:
            files = metadata_for(payloads) if payloads else None
            self.pending_store.store(PendingAction(description=description, files=files))
            self._apply(event)
            return self._result(debug={'pending_action_stored': True})

        outcome = self._apply(event)
        if isinstance(outcome, IllegalCommand):
            return outcome

        self.transcript.reset()
        self.record = self._seeded(ReportRecord(), identity)
        text = description or (
            f"I've uploaded {len(payloads)} file(s)." if payloads else self.DEFAULT_START_TEXT
        )
        return await self._begin_with(text, payloads)

    async def send_message(self, text: str,
                           attachments: Optional[Iterable[AttachmentSource]] = None
                           ) -> Union[TurnResult, IllegalCommand]:
        """
        Send a free-text human turn.

        Rejected while a reply is awaited or a suggestion choice is open.
        """
        attachments = list(attachments or ())
        text = (text or '').strip()
        if not text and not attachments:
            return IllegalCommand(reason="Message is empty", command_type="HumanTurnSubmitted")

        return await self._submit(text, attachments)

    async def confirm_suggestion(self, term: str) -> Union[TurnResult, IllegalCommand]:
        """
        Resolve the open suggestion choice with one of the offered terms.

        The pick is sent as a confirmation turn.
        """
        round_ = self.state.suggestions
        if round_ is None:
            return IllegalCommand(reason="No suggestion choice is open", command_type="HumanTurnSubmitted")
        try:
            term = round_.resolve(term)
        except ValueError as e:
            logger.warning(f"Invalid suggestion selection: {e}")
            return IllegalCommand(reason=str(e), command_type="HumanTurnSubmitted")

        return await self._submit(build_confirmation(term), [], confirmed_term=term)

    async def _submit(self, text: str, attachments,
                      confirmed_term: Optional[str] = None) -> Union[TurnResult, IllegalCommand]:
        event = HumanTurnSubmitted(
            is_confirmation=confirmed_term is not None, confirmed_term=confirmed_term
        )
        preview = transition(self.state, event)
        if isinstance(preview, IllegalCommand):
            logger.warning(f"Rejected {preview.command_type}: {preview.reason}")
            return preview

        try:
            payloads = self._load_attachments(attachments)
        except AttachmentReadError as e:
            return self._attachment_failure(e)

        with self._lock:
            outcome = self._apply(event)
            if isinstance(outcome, IllegalCommand):
                return outcome
            text = text or f"I've uploaded {len(payloads)} file(s)."
            self.transcript.append(Turn(role=TurnRole.HUMAN, text=text, attachments=payloads))
            turn_index = outcome.turn_index

        return await self._exchange(turn_index, payloads)

    def dismiss_suggestions(self) -> Union[TurnResult, IllegalCommand]:
        """Close the suggestion choice without updating the record"""
        outcome = self._apply(SuggestionDismissed())
        if isinstance(outcome, IllegalCommand):
            return outcome
        return self._result()

    def edit_section(self, section: str, value: Any) -> Union[TurnResult, IllegalCommand]:
        """
        Apply a direct form edit to one section.

        Authoritative replacement (see reconciliation.apply_section_edit).
        Once the dialogue has started, an agent notice is appended so the
        collaborator continues from the edited values.
        """
        if self.state.view != View.CONVERSATION:
            return IllegalCommand(
                reason=f"The form can only be edited during a conversation (view={self.state.view.value})",
                command_type="SectionEdit",
            )

        with self._lock:
            try:
                self.record = apply_section_edit(self.record, section, value)
            except ValueError as e:
                logger.warning(f"Rejected edit of {section}: {e}")
                return self._result(error=str(e), debug={'edit_rejected': section})

            logger.info(f"Section edited: {section}")
            if self.transcript.has_exchange():
                self.transcript.append(Turn(role=TurnRole.AGENT, text=self.EDIT_NOTICE))
                return self._result(system_output=self.EDIT_NOTICE, debug={'edited': section})

        return self._result(debug={'edited': section})

    def request_sign_in(self) -> Union[TurnResult, IllegalCommand]:
        """Show the identity gate without a pending report"""
        outcome = self._apply(SignInRequested())
        if isinstance(outcome, IllegalCommand):
            return outcome
        return self._result()

    def back_to_home(self) -> Union[TurnResult, IllegalCommand]:
        """Leave the identity gate; the pending action is dropped"""
        outcome = self._apply(BackToHome())
        if isinstance(outcome, IllegalCommand):
            return outcome
        self.pending_store.clear()
        return self._result()

    async def resume(self) -> Union[TurnResult, IllegalCommand]:
        """
        Page-load recovery.

        A stored pending action moves the session to AUTHENTICATING. If the
        identity provider has already resolved, the action is replayed (with
        identity) or the identity gate is shown (without). While the provider
        is still loading, handle_identity_change() finishes the job.
        """
        has_pending = self.pending_store.peek() is not None
        outcome = self._apply(PageLoaded(has_pending_action=has_pending))
        if isinstance(outcome, IllegalCommand):
            return outcome
        if outcome.view != View.AUTHENTICATING:
            return self._result()

        if self.identity_provider.loading:
            logger.info("Pending action found; waiting for identity")
            return self._result(debug={'awaiting_identity': True})

        identity = self.identity_provider.current()
        if identity is None:
            self._apply(IdentityUnavailable())
            return self._result()
        return await self.handle_identity_change(identity)

    async def handle_identity_change(self, identity: Optional[Identity]) -> Union[TurnResult, IllegalCommand]:
        """
        React to a sign-in (identity) or sign-out (None).

        Sign-in before a conversation consumes the pending action, if any,
        and replays it as the first turn. Sign-out during a session forces a
        reset. During a conversation a sign-in only fills empty reporter fields.
        """
        if identity is None:
            self._on_identity_change(None)
            return self._result()

        with self._lock:
            if self.state.view not in (View.LANDING, View.IDENTITY_GATE, View.AUTHENTICATING):
                self.record = self._seeded(self.record, identity)
                return self._result()

            action = self.pending_store.restore_and_clear()
            outcome = self._apply(IdentityEstablished(has_pending_action=action is not None))
            if isinstance(outcome, IllegalCommand):
                return outcome

            self.record = self._seeded(ReportRecord(), identity)
            if action is None or outcome.view != View.CONVERSATION:
                return self._result()

            if action.files:
                logger.warning(
                    f"{len(action.files)} attachment(s) could not be carried across identity verification"
                )
            self.transcript.reset()
            self.transcript.append(
                Turn(role=TurnRole.HUMAN, text=action.description or self.DEFAULT_START_TEXT)
            )
            turn_index = outcome.turn_index

        return await self._exchange(turn_index, ())

    def _on_identity_change(self, identity: Optional[Identity]) -> None:
        """Identity provider callback: forced reset on sign-out"""
        if identity is not None:
            return
        with self._lock:
            if self.state.view == View.AUTHENTICATING:
                # Verification resolved without an identity; the action stays queued
                self._apply(IdentityUnavailable())
                return
            previous_view = self.state.view
            outcome = self._apply(IdentityLost())
            if isinstance(outcome, IllegalCommand):
                return
            if outcome.view == previous_view:
                # Nothing in progress; only the identity-derived values go
                self.record = self._fresh_record()
                return
            self._clear_session()
            self.pending_store.clear()
        logger.info("Session reset after sign-out")

    def reset(self) -> TurnResult:
        """Explicit restart: transcript, record and pending action are cleared"""
        with self._lock:
            self._apply(Reset())
            self._clear_session()
            self.pending_store.clear()
        logger.info("Session reset")
        return self._result()

    def export(self) -> Union[FinalReport, IllegalCommand]:
        """
        Export the finished report.

        Repeated exports of the same finished report return the first
        FinalReport; the file is written once.

        Returns:
            FinalReport, or IllegalCommand before the session reaches REVIEW
        """
        state = self.state
        if state.view != View.REVIEW:
            return IllegalCommand(
                reason=f"Report is not complete yet (view={state.view.value})",
                command_type="ExportReport",
            )
        if self._exported is not None and self._exported[0] == state.turn_index:
            return self._exported[1]

        report_id = generate_report_id()
        document = self.report_formatter.format_report(self.record, report_id)

        path = None
        if self.output_dir:
            path = self.report_formatter.save_to_file(
                document, str(Path(self.output_dir) / generate_report_filename())
            )

        logger.info(f"Exported report {report_id}")
        final = FinalReport(
            document=document,
            filename=generate_download_filename(),
            report_id=report_id,
            path=path,
        )
        self._exported = (state.turn_index, final)
        return final

    # ========================
    # Views
    # ========================

    def session_view(self) -> Dict[str, Any]:
        """JSON-safe snapshot for outer surfaces"""
        state = self.state
        return {
            'view': state.view.value,
            'awaiting_reply': state.awaiting_reply,
            'input_locked': state.input_locked,
            'turn_index': state.turn_index,
            'suggestions': list(state.suggestions.candidates) if state.suggestions else [],
            'error': state.error,
            'record': record_to_json(self.record),
            'completion': completion(self.record),
            'missing_fields': missing_mandatory_fields(self.record),
            'transcript': self.transcript.to_json(),
        }
