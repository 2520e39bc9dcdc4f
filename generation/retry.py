"""
Retry policy for pipeline jobs.

The queue only asks three questions: may this job try again, is this error
worth retrying, and how long to wait before re-appending it. The default is
an immediate tail requeue for every transient error.
"""
import random
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import StageError


def no_backoff(attempt: int) -> float:
    return 0.0


def exponential_backoff(base: float = 1.0, cap: float = 60.0, jitter: float = 0.1) -> Callable[[int], float]:
    """Backoff of base * 2**(attempt-1) seconds, capped, with proportional jitter."""

    def _delay(attempt: int) -> float:
        delay = min(cap, base * (2 ** max(0, attempt - 1)))
        if jitter:
            delay += random.uniform(0, delay * jitter)
        return delay

    return _delay


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, StageError):
        return error.retryable
    return True


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff: Callable[[int], float] = no_backoff
    retryable: Callable[[BaseException], bool] = is_retryable

    @classmethod
    def from_seconds(cls, max_attempts: int, backoff_seconds: Optional[float]) -> "RetryPolicy":
        """Constant backoff when backoff_seconds > 0, immediate requeue otherwise."""
        if backoff_seconds and backoff_seconds > 0:
            return cls(max_attempts=max_attempts, backoff=lambda _attempt: backoff_seconds)
        return cls(max_attempts=max_attempts)

    def should_retry(self, attempts: int, max_attempts: int, error: BaseException) -> bool:
        return attempts < max_attempts and self.retryable(error)

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.backoff(attempt))
