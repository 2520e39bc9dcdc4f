"""
User directory.

The user registry is an external collaborator; the call side only needs PIN
lookup, uniqueness checks for PIN rotation and a last-access timestamp. The
in-memory directory below is what a single-instance deployment runs with,
optionally seeded from a YAML file:

    users:
      - id: u1
        pin: "123456"
        phone: "+15551230000"
        name: Ada
"""
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


@dataclass
class User:
    id: str
    pin: str
    phone: Optional[str] = None
    name: Optional[str] = None
    is_active: bool = True
    last_access_at: Optional[datetime] = None


class InMemoryUserDirectory:
    """Process-local user registry keyed by user id."""

    def __init__(self, users: Optional[List[User]] = None):
        self._users: Dict[str, User] = {}
        self._lock = threading.Lock()
        for user in users or []:
            self.add(user)

    def add(self, user: User) -> User:
        with self._lock:
            self._users[user.id] = user
        return user

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)

    def list_users(self) -> List[User]:
        with self._lock:
            return list(self._users.values())

    async def find_by_pin(self, pin: str) -> Optional[User]:
        """Find the active user owning a PIN."""
        with self._lock:
            for user in self._users.values():
                if user.is_active and user.pin == pin:
                    return user
        return None

    async def pin_exists(self, pin: str) -> bool:
        with self._lock:
            return any(u.pin == pin for u in self._users.values())

    async def update_pin(self, user_id: str, pin: str) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise KeyError(user_id)
            user.pin = pin

    async def touch_last_access(self, user_id: str) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is not None:
                user.last_access_at = datetime.now(timezone.utc)

    @classmethod
    def load_yaml(cls, path: str | Path) -> "InMemoryUserDirectory":
        """Seed a directory from a YAML file with a top-level `users` list."""
        with open(path, encoding="utf-8") as f:
            data: Any = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"User directory {path} must contain a mapping at top-level")

        users = []
        for raw in data.get("users") or []:
            if not isinstance(raw, dict) or "id" not in raw or "pin" not in raw:
                raise ValueError(f"Invalid user entry in {path}: {raw!r}")
            users.append(User(
                id=str(raw["id"]),
                pin=str(raw["pin"]).zfill(6),
                phone=raw.get("phone"),
                name=raw.get("name"),
                is_active=bool(raw.get("is_active", True)),
            ))
        return cls(users)
