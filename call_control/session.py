"""
Per-call session lifecycle.

Each phone call has exactly one CallSession keyed by the gateway's call id.
States only ever move forward:

    RINGING -> AWAITING_PIN -> AUTHENTICATED -> RECORDING -> SUBMITTED
                           \\-> REJECTED

REJECTED is the rejected sub-state of the PIN phase: the caller was told to
hang up and redial, and no further PIN is evaluated on that call.

Sessions live only for the duration of the call: they are discarded once the
recording is submitted, and anything left behind is evicted after a TTL.
"""
import threading
import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
from datetime import datetime, timezone

from .errors import InvalidTransitionError


class CallState(str, Enum):
    """Call states (monotonic progression)."""
    RINGING = "ringing"
    AWAITING_PIN = "awaiting_pin"
    REJECTED = "rejected"
    AUTHENTICATED = "authenticated"
    RECORDING = "recording"
    SUBMITTED = "submitted"


_ALLOWED_TRANSITIONS: Dict[CallState, frozenset] = {
    CallState.RINGING: frozenset({CallState.AWAITING_PIN}),
    CallState.AWAITING_PIN: frozenset({CallState.AUTHENTICATED, CallState.REJECTED}),
    CallState.REJECTED: frozenset(),
    CallState.AUTHENTICATED: frozenset({CallState.RECORDING}),
    CallState.RECORDING: frozenset({CallState.SUBMITTED}),
    CallState.SUBMITTED: frozenset(),
}

PIN_PHASE = frozenset({CallState.AWAITING_PIN, CallState.REJECTED})


@dataclass
class CallSession:
    """Ephemeral state for one phone call."""

    call_id: str
    state: CallState
    created_at: datetime
    caller_number: Optional[str] = None
    called_number: Optional[str] = None

    # Set once the PIN is accepted
    user_id: Optional[str] = None

    # Bookkeeping
    updated_at: Optional[datetime] = None
    last_seen: float = field(default_factory=time.monotonic)
    history: List[CallState] = field(default_factory=list)

    def __post_init__(self):
        if not self.call_id:
            raise ValueError("call_id is required")
        if not self.history:
            self.history.append(self.state)

    def can_transition_to(self, new_state: CallState) -> bool:
        return new_state in _ALLOWED_TRANSITIONS[self.state]

    def transition_to(self, new_state: CallState) -> CallState:
        """
        Transition to a new state (forward only).
        Returns the previous state.
        Raises InvalidTransitionError on a skipped or backwards move.
        """
        if not self.can_transition_to(new_state):
            raise InvalidTransitionError(
                f"call {self.call_id}: {self.state.value} -> {new_state.value} is not allowed"
            )
        old_state = self.state
        self.state = new_state
        self.history.append(new_state)
        self.updated_at = datetime.now(timezone.utc)
        return old_state

    @property
    def in_pin_phase(self) -> bool:
        """True while awaiting a PIN, including the rejected sub-state."""
        return self.state in PIN_PHASE

    def is_terminal(self) -> bool:
        return self.state in (CallState.SUBMITTED, CallState.REJECTED)


class CallSessionManager:
    """
    Lookup table of live CallSessions keyed by call id, with TTL eviction.

    Webhook handlers may run on different threads under some servers, so the
    table is guarded by a lock.
    """

    def __init__(self, ttl_seconds: float = 900, clock: Callable[[], float] = time.monotonic):
        self._sessions: Dict[str, CallSession] = {}
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()

    def create_session(
        self,
        call_id: str,
        caller_number: Optional[str] = None,
        called_number: Optional[str] = None,
    ) -> CallSession:
        """
        Create the session for a new incoming call in state RINGING.

        A second incoming-call webhook for the same call id returns the
        existing session rather than resetting it.
        """
        self.evict_expired()
        with self._lock:
            existing = self._sessions.get(call_id)
            if existing is not None:
                return existing
            session = CallSession(
                call_id=call_id,
                state=CallState.RINGING,
                created_at=datetime.now(timezone.utc),
                caller_number=caller_number,
                called_number=called_number,
                last_seen=self._clock(),
            )
            self._sessions[call_id] = session
            return session

    def get_session(self, call_id: str) -> Optional[CallSession]:
        """Get a live session by call id (expired sessions are not returned)."""
        with self._lock:
            session = self._sessions.get(call_id)
            if session is None:
                return None
            if self._expired(session):
                del self._sessions[call_id]
                return None
            session.last_seen = self._clock()
            return session

    def discard(self, call_id: str) -> Optional[CallSession]:
        with self._lock:
            return self._sessions.pop(call_id, None)

    def evict_expired(self) -> int:
        """Drop sessions idle for longer than the TTL. Returns the number evicted."""
        with self._lock:
            expired = [cid for cid, s in self._sessions.items() if self._expired(s)]
            for cid in expired:
                del self._sessions[cid]
            return len(expired)

    def list_sessions(self, state: Optional[CallState] = None) -> List[CallSession]:
        with self._lock:
            sessions = [s for s in self._sessions.values() if not self._expired(s)]
        if state:
            sessions = [s for s in sessions if s.state == state]
        return sessions

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def _expired(self, session: CallSession) -> bool:
        return self._clock() - session.last_seen > self._ttl
