"""
auth_api.py — Email/password authentication.

Sign-in is two hops:
  1. Firebase Authentication (public REST API) exchanges email + password for
     an ID token.
  2. The backend's /api/auth/login (or /api/auth/register) accepts that ID
     token and returns the user record.

Only then is the token installed in the SessionManager.

Usage:
    firebase = FirebaseAuth(config.firebase)
    user = await login(client, firebase, "a@b.com", "secret")
    await logout(client)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from api_client import ApiClient
from config import FirebaseConfig
from errors import NETWORK_MESSAGE, ConfigError, FirebaseAuthError, NetworkError, firebase_message
from session import User


# ─── Constants ────────────────────────────────────────────────────────────────

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class FirebaseCredentials:
    id_token: str
    refresh_token: str = ""
    local_id: str = ""
    email: str = ""
    expires_in: int = 3600

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FirebaseCredentials":
        return cls(
            id_token=data["idToken"],
            refresh_token=data.get("refreshToken", ""),
            local_id=data.get("localId", ""),
            email=data.get("email", ""),
            expires_in=int(data.get("expiresIn") or 3600),
        )


@dataclass(frozen=True)
class TokenVerification:
    valid: bool
    uid: str
    email: str
    email_verified: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenVerification":
        return cls(
            valid=bool(data.get("valid", False)),
            uid=data.get("uid", ""),
            email=data.get("email", ""),
            email_verified=bool(data.get("email_verified", False)),
        )


# ─── Firebase ─────────────────────────────────────────────────────────────────

class FirebaseAuth:
    """Firebase Authentication over its REST API, keyed by the project API key."""

    def __init__(
        self,
        config: FirebaseConfig,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = IDENTITY_TOOLKIT_URL,
    ) -> None:
        self.config = config
        self.timeout = timeout
        self.base_url = base_url
        self._transport = transport

    async def _call(self, action: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.config.is_configured:
            raise ConfigError(
                "Firebase is not configured. Set FIREBASE_API_KEY (and the other "
                "FIREBASE_* variables) in the environment or .env file."
            )
        url = f"{self.base_url}/accounts:{action}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, params={"key": self.config.api_key}, json=payload)
        except httpx.HTTPError as exc:
            logger.error(f"Firebase {action} failed: {exc}")
            raise NetworkError(NETWORK_MESSAGE) from exc

        if response.status_code >= 400:
            code = _firebase_error_code(response)
            logger.warning(f"Firebase {action} rejected: {code}")
            raise FirebaseAuthError(code, firebase_message(code))
        return response.json()

    async def sign_in(self, email: str, password: str) -> FirebaseCredentials:
        data = await self._call(
            "signInWithPassword",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        return FirebaseCredentials.from_dict(data)

    async def sign_up(self, email: str, password: str) -> FirebaseCredentials:
        data = await self._call(
            "signUp",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        return FirebaseCredentials.from_dict(data)

    async def send_password_reset(self, email: str) -> None:
        await self._call("sendOobCode", {"requestType": "PASSWORD_RESET", "email": email})
        logger.info(f"Password reset email sent to {email}")


def _firebase_error_code(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP_{response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return f"HTTP_{response.status_code}"


# ─── Backend ──────────────────────────────────────────────────────────────────

async def backend_login(client: ApiClient, id_token: str) -> User:
    data = await client.post("/api/auth/login", {"id_token": id_token})
    return User.from_dict((data or {}).get("user") or {})


async def backend_register(client: ApiClient, id_token: str, name: str) -> User:
    # Backend returns {uid, email, name} directly
    data = await client.post("/api/auth/register", {"id_token": id_token, "name": name})
    return User.from_dict(data or {})


async def fetch_current_user(client: ApiClient) -> User:
    data = await client.get("/api/auth/me")
    return User.from_dict(data or {})


async def verify_token(client: ApiClient) -> TokenVerification:
    """Fast token check (no user profile lookup on the backend)."""
    data = await client.get("/api/auth/verify-token")
    return TokenVerification.from_dict(data or {})


# ─── Flows ────────────────────────────────────────────────────────────────────

async def login(client: ApiClient, firebase: FirebaseAuth, email: str, password: str) -> User:
    """Firebase sign-in, backend login, then install the session."""
    credentials = await firebase.sign_in(email, password)
    user = await backend_login(client, credentials.id_token)
    client.sessions.login(credentials.id_token, user)
    return user


async def register(
    client: ApiClient,
    firebase: FirebaseAuth,
    name: str,
    email: str,
    password: str,
) -> User:
    """Create the Firebase account, register it with the backend, install the session."""
    if not name.strip():
        raise ValueError("name must be non-empty")
    credentials = await firebase.sign_up(email, password)
    user = await backend_register(client, credentials.id_token, name.strip())
    client.sessions.login(credentials.id_token, user)
    return user


async def restore_session(client: ApiClient) -> Optional[User]:
    """Re-validate a stored token; returns the user, or None if there is no usable session."""
    session = await client.sessions.restore(lambda: fetch_current_user(client))
    return session.user


async def logout(client: ApiClient) -> None:
    client.sessions.logout()
