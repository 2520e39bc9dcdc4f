"""
Pipeline error taxonomy.

Every failure inside a pipeline stage is surfaced as a StageError carrying
the stage name. Transient errors are retried by the job queue; permanent
ones go straight to terminal failure. Notification failures never leave the
notification layer.
"""
import asyncio
from typing import Optional

import aiohttp


class StageError(Exception):
    """A pipeline stage failed."""

    retryable = True

    def __init__(self, stage: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message
        self.cause = cause

    @property
    def summary(self) -> str:
        """Short, caller-safe description (no collaborator detail)."""
        return f"{self.stage} failed"


class TransientStageError(StageError):
    """Network, timeout or upstream 5xx/429 failure. Retryable."""


class PermanentStageError(StageError):
    """Corrupt or oversized input. Retrying cannot help."""

    retryable = False


class NotificationError(Exception):
    """Outbound messaging or realtime publish failed. Logged, never raised to the queue."""


_TRANSIENT_HTTP_STATUSES = {408, 425, 429, 500, 502, 503, 504}


def classify_error(error: BaseException, stage: str) -> StageError:
    """
    Map a collaborator exception to the stage error taxonomy.

    Explicit StageErrors pass through unchanged. Timeouts, connection errors
    and retryable HTTP statuses are transient; other HTTP 4xx responses are
    permanent. Anything unrecognized is treated as transient.
    """
    if isinstance(error, StageError):
        return error

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return TransientStageError(stage, "timed out", cause=error)

    if isinstance(error, aiohttp.ClientResponseError):
        if error.status in _TRANSIENT_HTTP_STATUSES or error.status >= 500:
            return TransientStageError(stage, f"upstream returned {error.status}", cause=error)
        return PermanentStageError(stage, f"upstream rejected request ({error.status})", cause=error)

    if isinstance(error, (aiohttp.ClientError, ConnectionError)):
        return TransientStageError(stage, "connection failed", cause=error)

    return TransientStageError(stage, f"{type(error).__name__}: {error}", cause=error)
