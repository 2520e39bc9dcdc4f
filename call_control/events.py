"""
Call audit trail events.

Thin taxonomy helpers over the shared observability emitter. These events
replace a call-log table: every webhook outcome for a call id is recorded
here and can be read back through the control API.
"""
from typing import Optional

from observability.events import Component, EventEmitter, Severity


PHONE_PII = {"contains_pii": True, "fields": ["caller_number"], "handling": "restricted"}


class CallEventEmitter(EventEmitter):
    """Emits call.* events for the call session controller."""

    def __init__(self):
        super().__init__(Component.CALL_CONTROL)

    def call_incoming(self, call_id: str, caller_number: Optional[str], called_number: Optional[str]) -> None:
        """Emit call.incoming event."""
        self.emit(
            "call.incoming",
            call_id,
            pii=PHONE_PII if caller_number else None,
            call={"caller_number": caller_number, "called_number": called_number},
        )

    def state_changed(self, call_id: str, from_state: str, to_state: str) -> None:
        """Emit call.state_changed event."""
        self.emit(
            "call.state_changed",
            call_id,
            from_state=from_state,
            to_state=to_state,
        )

    def pin_rejected(self, call_id: str, reason: str) -> None:
        """
        Emit call.pin_rejected event.

        reason is one of: format, unknown_pin, rate_limited, not_awaiting_pin, unknown_call.
        The digits themselves are never part of the event.
        """
        self.emit(
            "call.pin_rejected",
            call_id,
            severity=Severity.WARN,
            reason=reason,
        )

    def pin_accepted(self, call_id: str, user_id: str) -> None:
        """Emit call.pin_accepted event."""
        self.emit("call.pin_accepted", call_id, user_id=user_id)

    def recording_submitted(
        self,
        call_id: str,
        user_id: str,
        job_id: Optional[str],
        recording_sid: Optional[str],
        duration: Optional[int],
    ) -> None:
        """Emit call.recording_submitted event."""
        self.emit(
            "call.recording_submitted",
            call_id,
            user_id=user_id,
            job_id=job_id,
            recording_sid=recording_sid,
            duration=duration,
        )

    def recording_failed(self, call_id: str, user_id: Optional[str], reason: str) -> None:
        """Emit call.recording_failed event."""
        self.emit(
            "call.recording_failed",
            call_id,
            severity=Severity.ERROR,
            user_id=user_id,
            reason=reason,
        )

    def signature_rejected(self, call_id: str, endpoint: str) -> None:
        """Emit webhook.signature_rejected event."""
        self.emit(
            "webhook.signature_rejected",
            call_id or "unknown",
            severity=Severity.WARN,
            endpoint=endpoint,
        )


# Global event emitter for call control
call_emitter = CallEventEmitter()
