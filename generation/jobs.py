"""
Job model.

A Job is owned by the JobQueueProcessor from enqueue until it reaches a
terminal status; after that it is frozen and every mutator raises.

    QUEUED -> PROCESSING -> COMPLETED
                         -> RETRYING -> QUEUED
                         -> FAILED

attempts counts processing attempts started and never exceeds max_attempts.
"""
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


class JobType(str, Enum):
    PROCESS_RECORDING = "process_recording"
    REGENERATE_SESSION = "regenerate_session"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class JobStateError(Exception):
    """A Job was mutated after reaching a terminal status, or moved out of order."""


@dataclass(frozen=True)
class RecordingPayload:
    """Everything the pipeline needs to process a fresh recording."""

    user_id: str
    call_id: str
    recording_url: str
    recording_sid: Optional[str] = None
    duration: Optional[int] = None
    phone_number: Optional[str] = None


@dataclass(frozen=True)
class RegenerationPayload:
    """Regenerate an existing ProcessingSession with option overrides."""

    session_id: str
    user_id: str
    original_audio_url: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)


Payload = Union[RecordingPayload, RegenerationPayload]


def new_job_id(job_type: JobType) -> str:
    prefix = "regen" if job_type == JobType.REGENERATE_SESSION else "job"
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class Job:
    id: str
    type: JobType
    payload: Payload
    max_attempts: int = 3
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    # Set by the pipeline once a ProcessingSession exists for this job
    session_id: Optional[str] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.session_id is None and isinstance(self.payload, RegenerationPayload):
            self.session_id = self.payload.session_id

    @classmethod
    def create(cls, job_type: JobType, payload: Payload, max_attempts: int = 3) -> "Job":
        return cls(id=new_job_id(job_type), type=job_type, payload=payload, max_attempts=max_attempts)

    @property
    def user_id(self) -> str:
        return self.payload.user_id

    @property
    def call_id(self) -> Optional[str]:
        return getattr(self.payload, "call_id", None)

    @property
    def subject_id(self) -> Optional[str]:
        """The session id if one exists yet, otherwise the originating call id."""
        return self.session_id or self.call_id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _check_mutable(self) -> None:
        if self.is_terminal:
            raise JobStateError(f"job {self.id} is {self.status.value} and cannot change")

    def mark_processing(self) -> None:
        self._check_mutable()
        if self.status != JobStatus.QUEUED:
            raise JobStateError(f"job {self.id}: {self.status.value} -> processing is not allowed")
        if self.attempts >= self.max_attempts:
            raise JobStateError(f"job {self.id} already used {self.attempts} attempts")
        self.attempts += 1
        self.status = JobStatus.PROCESSING
        self.started_at = datetime.now(timezone.utc)

    def mark_completed(self) -> None:
        self._check_mutable()
        self.status = JobStatus.COMPLETED
        self.completed_at = datetime.now(timezone.utc)

    def record_failure(self, error: str) -> int:
        """Record why the current attempt failed. Returns the attempts used so far."""
        self._check_mutable()
        if self.status != JobStatus.PROCESSING:
            raise JobStateError(f"job {self.id}: failure recorded while {self.status.value}")
        self.last_error = error
        return self.attempts

    def mark_retrying(self) -> None:
        self._check_mutable()
        self.status = JobStatus.RETRYING

    def mark_requeued(self) -> None:
        """Back in the queue for another attempt."""
        self._check_mutable()
        if self.status != JobStatus.RETRYING:
            raise JobStateError(f"job {self.id}: {self.status.value} -> queued is not allowed")
        self.status = JobStatus.QUEUED

    def mark_failed(self) -> None:
        self._check_mutable()
        self.status = JobStatus.FAILED
        self.completed_at = datetime.now(timezone.utc)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
        }
