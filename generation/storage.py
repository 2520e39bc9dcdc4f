"""
ProcessingSession storage.

A ProcessingSession is the durable record of one generation outcome. The
pipeline creates it in "processing" status before generation starts, so a
later failure always has a record to mark failed.
"""
import threading
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class SessionStatus:
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ProcessingSession:
    id: str
    user_id: str
    status: str = SessionStatus.PROCESSING
    call_id: Optional[str] = None
    original_audio_url: Optional[str] = None
    transcript: Optional[str] = None
    audio_duration: Optional[float] = None
    features: Dict[str, Any] = field(default_factory=dict)
    generation: Dict[str, Any] = field(default_factory=dict)
    files: Dict[str, Any] = field(default_factory=dict)
    regenerations: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "processing_started_at", "processing_completed_at"):
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data


class InMemorySessionStore:
    """Single-instance ProcessingSession store."""

    def __init__(self):
        self._sessions: Dict[str, ProcessingSession] = {}
        self._lock = threading.Lock()

    async def create(
        self,
        user_id: str,
        call_id: Optional[str] = None,
        original_audio_url: Optional[str] = None,
        transcript: Optional[str] = None,
        audio_duration: Optional[float] = None,
        features: Optional[Dict[str, Any]] = None,
    ) -> ProcessingSession:
        session = ProcessingSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            call_id=call_id,
            original_audio_url=original_audio_url,
            transcript=transcript,
            audio_duration=audio_duration,
            features=dict(features or {}),
            processing_started_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._sessions[session.id] = session
        return session

    async def get(self, session_id: str) -> Optional[ProcessingSession]:
        with self._lock:
            return self._sessions.get(session_id)

    async def list_for_user(self, user_id: str) -> List[ProcessingSession]:
        with self._lock:
            sessions = [s for s in self._sessions.values() if s.user_id == user_id]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    async def mark_processing(self, session_id: str, features: Optional[Dict[str, Any]] = None) -> ProcessingSession:
        """Put an existing session back into processing for a regeneration."""
        with self._lock:
            session = self._require(session_id)
            session.status = SessionStatus.PROCESSING
            session.processing_started_at = datetime.now(timezone.utc)
            session.processing_completed_at = None
            if features is not None:
                session.features = dict(features)
            return session

    async def update_transcript(self, session_id: str, transcript: str, audio_duration: Optional[float]) -> None:
        with self._lock:
            session = self._require(session_id)
            session.transcript = transcript
            session.audio_duration = audio_duration

    async def save_results(
        self,
        session_id: str,
        files: Dict[str, Any],
        generation: Optional[Dict[str, Any]] = None,
        regenerated: bool = False,
    ) -> ProcessingSession:
        with self._lock:
            session = self._require(session_id)
            session.status = SessionStatus.COMPLETED
            session.files = dict(files)
            if generation is not None:
                session.generation = generation
            if regenerated:
                session.regenerations += 1
            session.processing_completed_at = datetime.now(timezone.utc)
            return session

    async def mark_failed(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.status != SessionStatus.COMPLETED:
                session.status = SessionStatus.FAILED
                session.processing_completed_at = datetime.now(timezone.utc)

    async def mark_failed_for_call(self, call_id: str, user_id: Optional[str] = None) -> int:
        """Mark every unfinished session produced by a call failed. Returns how many changed."""
        changed = 0
        with self._lock:
            for session in self._sessions.values():
                if session.call_id != call_id:
                    continue
                if user_id and session.user_id != user_id:
                    continue
                if session.status == SessionStatus.PROCESSING:
                    session.status = SessionStatus.FAILED
                    session.processing_completed_at = datetime.now(timezone.utc)
                    changed += 1
        return changed

    async def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    async def stats_for_user(self, user_id: str) -> Dict[str, Any]:
        """Per-status counts and the mean processing time of completed sessions."""
        with self._lock:
            sessions = [s for s in self._sessions.values() if s.user_id == user_id]

        durations = [
            (s.processing_completed_at - s.processing_started_at).total_seconds()
            for s in sessions
            if s.status == SessionStatus.COMPLETED and s.processing_started_at and s.processing_completed_at
        ]
        return {
            "totalSessions": len(sessions),
            "completedSessions": sum(1 for s in sessions if s.status == SessionStatus.COMPLETED),
            "processingSessions": sum(1 for s in sessions if s.status == SessionStatus.PROCESSING),
            "failedSessions": sum(1 for s in sessions if s.status == SessionStatus.FAILED),
            "totalRegenerations": sum(s.regenerations for s in sessions),
            "avgProcessingTime": sum(durations) / len(durations) if durations else 0.0,
        }

    def _require(self, session_id: str) -> ProcessingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(session_id)
        return session
