"""
session.py — Session value and persisted client state.

The auth token and the generated device identifier are the only values the
client persists. They live in a small JSON key-value file and are read into
an immutable Session that is handed to every request.

SessionManager is the single place the session changes (login, logout,
restore). Every change is pushed synchronously to listeners, which is how
open event streams learn they must tear down.

Usage:
    store = StateStore(config.state_path)
    sessions = SessionManager(store)
    sessions.login(id_token, user)
    sessions.add_listener(lambda s: print("token now", s.token))
    sessions.logout()
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from errors import DeskError


# ─── Constants ────────────────────────────────────────────────────────────────

TOKEN_KEY = "firebase_token"
DEVICE_KEY = "device_id"


# ─── Key-value Store ──────────────────────────────────────────────────────────

class StateStore:
    """
    JSON file holding a flat key → string mapping.

    Pass path=None for a purely in-memory store (tests, one-shot scripts).
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if self.path is None:
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            logger.warning(f"StateStore: {self.path} is not valid JSON, starting empty")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if v is not None}

    def _flush(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(self._data, handle, indent=2)
            handle.write("\n")

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._flush()


# ─── Session Values ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class User:
    """Authenticated user as reported by the backend."""
    id: str
    email: str
    name: str = ""
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        # /api/auth/me and /api/auth/register return `uid`; /api/auth/login returns `id`
        return cls(
            id=str(data.get("id") or data.get("uid") or ""),
            email=data.get("email", ""),
            name=data.get("name") or "",
            is_active=bool(data.get("is_active", True)),
        )


@dataclass(frozen=True)
class Session:
    """Immutable view of who is making requests."""
    token: Optional[str]
    device_id: str
    user: Optional[User] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    def auth_headers(self) -> Dict[str, str]:
        headers = {"X-Device-ID": self.device_id}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers


SessionListener = Callable[[Session], None]


def get_or_create_device_id(store: StateStore) -> str:
    """Return the persisted device id, generating a UUID4 on first use."""
    device_id = store.get(DEVICE_KEY)
    if not device_id:
        device_id = str(uuid.uuid4())
        store.set(DEVICE_KEY, device_id)
        logger.debug(f"Generated device id {device_id}")
    return device_id


# ─── Session Manager ──────────────────────────────────────────────────────────

class SessionManager:
    """Owns the current Session and is the only thing allowed to change it."""

    def __init__(self, store: Optional[StateStore] = None) -> None:
        self.store = store or StateStore()
        device_id = get_or_create_device_id(self.store)
        self._session = Session(token=self.store.get(TOKEN_KEY), device_id=device_id)
        self._listeners: List[SessionListener] = []

    @property
    def current(self) -> Session:
        return self._session

    def add_listener(self, listener: SessionListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def login(self, token: str, user: Optional[User] = None) -> Session:
        """Install a new token (and user), persist it and notify listeners."""
        if not token:
            raise ValueError("token must be non-empty")
        self.store.set(TOKEN_KEY, token)
        who = user.email if user else "unknown user"
        logger.info(f"Session started for {who}")
        return self._replace(token=token, user=user)

    def set_user(self, user: Optional[User]) -> Session:
        return self._replace(user=user)

    def logout(self, reason: str = "logout") -> Session:
        """Clear the token. Listeners tear down anything that depended on it."""
        if self._session.token is None and self.store.get(TOKEN_KEY) is None:
            return self._session
        self.store.delete(TOKEN_KEY)
        logger.info(f"Session cleared ({reason})")
        return self._replace(token=None, user=None)

    async def restore(self, fetch_user: Callable[[], Awaitable[User]]) -> Session:
        """
        Re-validate a persisted token at startup.

        fetch_user is normally auth_api.fetch_current_user bound to a client.
        A token the backend no longer accepts is cleared.
        """
        if not self._session.token:
            return self._session
        try:
            user = await fetch_user()
        except DeskError as exc:
            logger.warning(f"Stored session could not be restored: {exc}")
            return self.logout("restore failed")
        return self.set_user(user)

    def _replace(self, **changes: Any) -> Session:
        previous = self._session
        self._session = replace(previous, **changes)
        if self._session != previous:
            # Copy so listeners may unsubscribe themselves while being notified
            for listener in list(self._listeners):
                listener(self._session)
        return self._session
