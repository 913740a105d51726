"""
config.py — Environment configuration for the algodesk client.

Everything the client needs to know about its surroundings comes from the
process environment (optionally seeded from a .env file via python-dotenv):

  ALGODESK_API_URL          backend base URL          (default http://localhost:8080)
  ALGODESK_STATE_PATH       persisted token/device id (default ~/.algodesk/state.json)
  ALGODESK_TIMEOUT          REST timeout, seconds     (default 30)
  ALGODESK_SSE_RETRY        stream reconnect delay    (default 3)
  ALGODESK_AUTOSAVE_DELAY   editor/flow autosave      (default 2)
  ALGODESK_LOG_LEVEL        console log level         (default INFO)
  FIREBASE_API_KEY, FIREBASE_AUTH_DOMAIN, FIREBASE_PROJECT_ID,
  FIREBASE_STORAGE_BUCKET, FIREBASE_MESSAGING_SENDER_ID, FIREBASE_APP_ID

Usage:
    config = load_config()
    print(config.api_url, config.sse_base_url)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv

from errors import ConfigError


# ─── Constants ────────────────────────────────────────────────────────────────

DEFAULT_API_URL = "http://localhost:8080"
DEFAULT_STATE_PATH = Path.home() / ".algodesk" / "state.json"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_SSE_RETRY_SECONDS = 3.0
DEFAULT_AUTOSAVE_DELAY = 2.0
DEFAULT_VALIDATION_DELAY = 1.0

# Value shipped in the sample .env; treated as "not configured"
PLACEHOLDER_FIREBASE_KEY = "your-firebase-api-key"


# ─── Firebase ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FirebaseConfig:
    """Firebase project settings used for email/password authentication."""
    api_key: Optional[str] = None
    auth_domain: Optional[str] = None
    project_id: Optional[str] = None
    storage_bucket: Optional[str] = None
    messaging_sender_id: Optional[str] = None
    app_id: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and self.api_key != PLACEHOLDER_FIREBASE_KEY


# ─── Client Config ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DeskConfig:
    """Resolved client configuration."""
    api_url: str = DEFAULT_API_URL
    state_path: Path = DEFAULT_STATE_PATH
    request_timeout: float = DEFAULT_TIMEOUT_SECONDS
    sse_retry_seconds: float = DEFAULT_SSE_RETRY_SECONDS
    autosave_delay: float = DEFAULT_AUTOSAVE_DELAY
    validation_delay: float = DEFAULT_VALIDATION_DELAY
    log_level: str = "INFO"
    firebase: FirebaseConfig = field(default_factory=FirebaseConfig)

    @property
    def sse_base_url(self) -> str:
        """
        Scheme and host of the API URL.

        Stream endpoints always live at the root of the backend host, so any
        path component of ALGODESK_API_URL is dropped.
        """
        parts = urlsplit(self.api_url)
        if parts.scheme and parts.netloc:
            return f"{parts.scheme}://{parts.netloc}"
        return self.api_url.rstrip("/")


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{name} must be >= 0, got {value}")
    return value


def load_config(
    env: Optional[Mapping[str, str]] = None,
    env_file: Optional[str] = None,
) -> DeskConfig:
    """
    Build a DeskConfig from the environment.

    Args:
        env:      Mapping to read instead of os.environ (tests pass a dict).
        env_file: Optional .env path; only consulted when env is None.
    """
    if env is None:
        load_dotenv(env_file)
        env = os.environ

    firebase = FirebaseConfig(
        api_key=env.get("FIREBASE_API_KEY"),
        auth_domain=env.get("FIREBASE_AUTH_DOMAIN"),
        project_id=env.get("FIREBASE_PROJECT_ID"),
        storage_bucket=env.get("FIREBASE_STORAGE_BUCKET"),
        messaging_sender_id=env.get("FIREBASE_MESSAGING_SENDER_ID"),
        app_id=env.get("FIREBASE_APP_ID"),
    )

    state_path = env.get("ALGODESK_STATE_PATH")
    return DeskConfig(
        api_url=(env.get("ALGODESK_API_URL") or DEFAULT_API_URL).rstrip("/"),
        state_path=Path(state_path).expanduser() if state_path else DEFAULT_STATE_PATH,
        request_timeout=_float_env(env, "ALGODESK_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
        sse_retry_seconds=_float_env(env, "ALGODESK_SSE_RETRY", DEFAULT_SSE_RETRY_SECONDS),
        autosave_delay=_float_env(env, "ALGODESK_AUTOSAVE_DELAY", DEFAULT_AUTOSAVE_DELAY),
        log_level=(env.get("ALGODESK_LOG_LEVEL") or "INFO").upper(),
        firebase=firebase,
    )
