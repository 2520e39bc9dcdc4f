"""
Call session controller.

Handles the four telephony webhooks for one phone call and always answers
with a TwiML document. Signature checks happen in the server before any of
these handlers run; from here on every failure, expected or not, becomes a
spoken response rather than an exception.
"""
from typing import Mapping, Optional

from logging_setup import get_logger, Component
from generation.jobs import RecordingPayload
from generation.notifications import NotificationFanout
from generation.queue import JobQueueProcessor
from generation.storage import InMemorySessionStore

from . import twiml
from .auth import Authenticator, check_pin_format
from .errors import AuthError, FormatError, MessageKey
from .events import call_emitter
from .session import CallSession, CallSessionManager, CallState


logger = get_logger(Component.CALL_CONTROL)

AUTHENTICATE_PATH = "/twilio/authenticate"
RECORDING_COMPLETE_PATH = "/twilio/recording-complete"
RECORDING_STATUS_PATH = "/twilio/recording-status"

RECORDING_FAILURE_STATUSES = frozenset({"failed", "absent"})


class CallSessionController:
    """Drives CallSessions from incoming call to submitted recording."""

    def __init__(
        self,
        sessions: CallSessionManager,
        authenticator: Authenticator,
        queue: JobQueueProcessor,
        notifier: NotificationFanout,
        store: InMemorySessionStore,
        public_base_url: str = "",
        gather_timeout: int = 10,
        recording_max_seconds: int = 30,
    ):
        self.sessions = sessions
        self.authenticator = authenticator
        self.queue = queue
        self.notifier = notifier
        self.store = store
        self.public_base_url = public_base_url.rstrip("/")
        self.gather_timeout = gather_timeout
        self.recording_max_seconds = recording_max_seconds

    def _url(self, path: str) -> str:
        # Relative action URLs resolve against the webhook URL on the gateway side
        return f"{self.public_base_url}{path}"

    def _transition(self, session: CallSession, new_state: CallState) -> None:
        old_state = session.transition_to(new_state)
        call_emitter.state_changed(session.call_id, old_state.value, new_state.value)

    def _reject(self, session: Optional[CallSession], call_id: str, reason: str) -> str:
        """Generic rejection for every PIN failure; ends the PIN phase for the call."""
        call_emitter.pin_rejected(call_id, reason=reason)
        logger.with_call(call_id).info("PIN rejected", reason=reason)
        if session is not None and session.state == CallState.AWAITING_PIN:
            self._transition(session, CallState.REJECTED)
        return twiml.rejection().to_xml()

    # --- webhooks ---

    def handle_incoming_call(self, call_id: str, caller: Optional[str], called: Optional[str]) -> str:
        """Create the CallSession and ask for a six-digit PIN."""
        log = logger.with_call(call_id)
        try:
            session = self.sessions.create_session(call_id, caller_number=caller, called_number=called)
            if session.state == CallState.RINGING:
                call_emitter.call_incoming(call_id, caller, called)
                self._transition(session, CallState.AWAITING_PIN)
            elif session.state != CallState.AWAITING_PIN:
                # Repeated incoming-call webhook after the PIN phase: never restart it
                log.warning("Incoming call for a call already past PIN entry", state=session.state.value)
                return twiml.rejection().to_xml()

            log.info("Incoming call, prompting for PIN")
            log.debug_pii("Caller", caller_number=caller, called_number=called)
            return twiml.pin_prompt(self._url(AUTHENTICATE_PATH), timeout=self.gather_timeout).to_xml()
        except Exception as e:
            log.exception("Incoming call handling failed", error_type=type(e).__name__)
            return twiml.message_and_hangup(MessageKey.TECHNICAL_ISSUE).to_xml()

    async def handle_authenticate(self, call_id: str, digits: Optional[str], caller: Optional[str]) -> str:
        """
        Validate the submitted PIN.

        Malformed digits never reach the Authenticator. Any rejection ends the
        PIN phase (state REJECTED) and later attempts on the same call are
        rejected without evaluation; the caller has to redial.
        """
        log = logger.with_call(call_id)
        try:
            session = self.sessions.get_session(call_id)
            if session is None:
                return self._reject(None, call_id, "unknown_call")
            if session.state != CallState.AWAITING_PIN:
                return self._reject(session, call_id, "not_awaiting_pin")

            caller = caller or session.caller_number
            if not self.authenticator.check_rate_limit(caller):
                return self._reject(session, call_id, "rate_limited")

            try:
                check_pin_format(digits)
                user = await self.authenticator.authenticate(digits, identifier=caller)
            except FormatError:
                return self._reject(session, call_id, "format")
            except AuthError:
                return self._reject(session, call_id, "unknown_pin")

            session.user_id = user.id
            self._transition(session, CallState.AUTHENTICATED)
            self._transition(session, CallState.RECORDING)
            call_emitter.pin_accepted(call_id, user_id=user.id)
            log.info("Caller authenticated, recording", user_id=user.id)

            return twiml.record_instructions(
                complete_url=self._url(RECORDING_COMPLETE_PATH),
                status_url=self._url(RECORDING_STATUS_PATH),
                user_id=user.id,
                call_id=call_id,
                max_seconds=self.recording_max_seconds,
            ).to_xml()
        except Exception as e:
            log.exception("Authentication handling failed", error_type=type(e).__name__)
            return twiml.message_and_hangup(MessageKey.TECHNICAL_ISSUE).to_xml()

    def handle_recording_complete(
        self,
        call_id: str,
        correlation: Mapping[str, str],
        recording_url: Optional[str],
        recording_sid: Optional[str] = None,
        duration: Optional[int] = None,
        caller: Optional[str] = None,
    ) -> str:
        """
        Enqueue a ProcessRecording job and acknowledge the caller.

        The live CallSession decides who the recording belongs to; the
        correlation echoed in the callback URL is only used once that
        session has been evicted.
        """
        log = logger.with_call(call_id)
        user_id: Optional[str] = None
        try:
            if not recording_url:
                call_emitter.recording_failed(call_id, correlation.get("userId"), reason="missing_recording")
                log.warning("Recording callback without a recording reference")
                return twiml.message_and_hangup(MessageKey.RECORDING_ISSUE).to_xml()

            session = self.sessions.get_session(call_id)
            if session is not None:
                if session.state != CallState.RECORDING:
                    call_emitter.recording_failed(call_id, session.user_id, reason=f"unexpected_state:{session.state.value}")
                    log.warning("Recording for a call that is not recording", state=session.state.value)
                    return twiml.message_and_hangup(MessageKey.RECORDING_ISSUE).to_xml()
                user_id = session.user_id
                caller = caller or session.caller_number
            else:
                user_id = correlation.get("userId") or None

            if not user_id:
                call_emitter.recording_failed(call_id, None, reason="unknown_user")
                log.warning("Recording for an unauthenticated call")
                return twiml.message_and_hangup(MessageKey.RECORDING_ISSUE).to_xml()

            job = self.queue.enqueue_recording(RecordingPayload(
                user_id=user_id,
                call_id=call_id,
                recording_url=recording_url,
                recording_sid=recording_sid,
                duration=duration,
                phone_number=caller,
            ))

            if session is not None:
                self._transition(session, CallState.SUBMITTED)
                self.sessions.discard(call_id)

            call_emitter.recording_submitted(call_id, user_id, job.id, recording_sid, duration)
            log.info("Recording submitted", user_id=user_id, job_id=job.id, duration=duration)
            return twiml.acknowledgement().to_xml()
        except Exception as e:
            log.exception("Recording submission failed", error_type=type(e).__name__)
            call_emitter.recording_failed(call_id, user_id, reason="submission_error")
            return twiml.message_and_hangup(MessageKey.RECORDING_ISSUE).to_xml()

    async def handle_recording_status_callback(
        self,
        call_id: str,
        correlation: Mapping[str, str],
        status: Optional[str],
        recording_sid: Optional[str] = None,
    ) -> None:
        """Side channel only: a failed recording is reported without waiting for completion."""
        log = logger.with_call(call_id)
        log.info("Recording status", status=status, recording_sid=recording_sid)
        if (status or "").lower() not in RECORDING_FAILURE_STATUSES:
            return

        try:
            session = self.sessions.get_session(call_id)
            user_id = session.user_id if session is not None else (correlation.get("userId") or None)

            call_emitter.recording_failed(call_id, user_id, reason=f"recording_{status}")
            await self.store.mark_failed_for_call(call_id, user_id)
            self.notifier.recording_failed(user_id, call_id, "recording failed")
        except Exception as e:
            log.exception("Recording failure handling failed", error_type=type(e).__name__)
