"""
PIN authentication.

validate_pin never tells the caller whether a PIN exists: an unknown PIN
returns None, exactly like a PIN rejected for any other reason, and the
controller speaks one generic rejection for all of them.
"""
import re
import secrets
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

from logging_setup import get_logger, Component

from .errors import AuthError, FormatError
from .users import InMemoryUserDirectory, User


PIN_LENGTH = 6
MAX_PIN_ATTEMPTS = 10

_PIN_RE = re.compile(r"[0-9]{%d}" % PIN_LENGTH)

logger = get_logger(Component.AUTHENTICATOR)


def check_pin_format(raw: Optional[str]) -> str:
    """Return the PIN if it is exactly six digits, raise FormatError otherwise."""
    if raw is None or not _PIN_RE.fullmatch(raw):
        raise FormatError("PIN must be exactly 6 digits")
    return raw


@dataclass
class FailedAttempt:
    identifier: str
    at: float


class Authenticator:
    """Validates PINs against the user directory and rotates them."""

    def __init__(
        self,
        directory: InMemoryUserDirectory,
        rate_limit_attempts: int = 5,
        rate_limit_window_seconds: float = 900,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.directory = directory
        self.rate_limit_attempts = rate_limit_attempts
        self.rate_limit_window_seconds = rate_limit_window_seconds
        self._clock = clock
        self._failed: Dict[str, Deque[FailedAttempt]] = {}
        self._lock = threading.Lock()

    async def validate_pin(self, raw: Optional[str], identifier: Optional[str] = None) -> Optional[User]:
        """
        Look up the user owning a PIN.

        Raises FormatError when raw is not exactly six digits. Returns None
        (never raises) when no active user owns the PIN, recording a failed
        attempt against identifier (the caller number) for rate limiting.
        """
        pin = check_pin_format(raw)

        user = await self.directory.find_by_pin(pin)
        if user is None:
            self.record_failed_attempt(identifier or "anonymous")
            logger.info("PIN not recognized")
            return None

        await self.directory.touch_last_access(user.id)
        logger.info("PIN accepted", user_id=user.id)
        return user

    async def authenticate(self, raw: Optional[str], identifier: Optional[str] = None) -> User:
        """validate_pin that raises AuthError instead of returning None."""
        user = await self.validate_pin(raw, identifier=identifier)
        if user is None:
            raise AuthError("PIN not recognized")
        return user

    def record_failed_attempt(self, identifier: str) -> None:
        with self._lock:
            attempts = self._failed.setdefault(identifier, deque())
            attempts.append(FailedAttempt(identifier=identifier, at=self._clock()))
            self._prune(identifier)

    def check_rate_limit(self, identifier: Optional[str]) -> bool:
        """True when identifier may still attempt a PIN within the sliding window."""
        if not identifier:
            return True
        with self._lock:
            return len(self._prune(identifier)) < self.rate_limit_attempts

    def failed_attempts(self, identifier: str) -> List[FailedAttempt]:
        with self._lock:
            return list(self._prune(identifier))

    def _prune(self, identifier: str) -> Deque[FailedAttempt]:
        """Drop attempts older than the window; an identifier with none left is forgotten."""
        attempts = self._failed.get(identifier)
        if attempts is None:
            return deque()
        cutoff = self._clock() - self.rate_limit_window_seconds
        while attempts and attempts[0].at <= cutoff:
            attempts.popleft()
        if not attempts:
            del self._failed[identifier]
        return attempts

    async def generate_unique_pin(self) -> str:
        """
        Draw random six-digit PINs until one is unused.

        Collisions become likely as the user population approaches the 10^6
        PIN space; after MAX_PIN_ATTEMPTS draws this gives up.
        """
        for _ in range(MAX_PIN_ATTEMPTS):
            pin = str(secrets.randbelow(10 ** PIN_LENGTH)).zfill(PIN_LENGTH)
            if not await self.directory.pin_exists(pin):
                return pin
        raise RuntimeError(f"Unable to generate a unique PIN after {MAX_PIN_ATTEMPTS} attempts")

    async def register_user(self, phone: Optional[str] = None, name: Optional[str] = None) -> User:
        """
        Create an active user with a fresh unique PIN.

        Raises ValueError when another user already has this phone number.
        """
        if phone and any(u.phone == phone for u in self.directory.list_users()):
            raise ValueError("phone number already registered")
        pin = await self.generate_unique_pin()
        user = self.directory.add(User(id=str(uuid.uuid4()), pin=pin, phone=phone, name=name))
        logger.info("User registered", user_id=user.id)
        return user

    async def rotate_pin(self, user_id: str) -> str:
        """Assign a fresh unique PIN to a user. Raises KeyError for an unknown user."""
        if self.directory.get(user_id) is None:
            raise KeyError(user_id)
        pin = await self.generate_unique_pin()
        await self.directory.update_pin(user_id, pin)
        logger.info("PIN rotated", user_id=user_id)
        return pin
