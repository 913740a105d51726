"""
errors.py — Error taxonomy for the algodesk client.

  DeskError
    ├── AuthenticationError   invalid / expired token (session is cleared)
    ├── ApiError              backend answered with an error status
    │     ├── ValidationError 4xx with a `detail` message
    │     └── ServerError     5xx
    ├── NetworkError          no response (connection refused, timeout)
    ├── StreamError           event-stream failures surfaced to callers
    ├── FirebaseAuthError     Firebase sign-in / sign-up rejected
    └── ConfigError           bad environment configuration

REST failures are raised as one of these and turned into a message at the
call site with describe_error(). Nothing here retries.
"""

from __future__ import annotations

from typing import Optional


class DeskError(Exception):
    """Base error for client operations."""
    pass


class AuthenticationError(DeskError):
    """Token missing, invalid or expired."""
    pass


class ApiError(DeskError):
    """Backend returned an error status."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class ValidationError(ApiError):
    """4xx response carrying a human-readable detail."""
    pass


class ServerError(ApiError):
    """5xx response."""
    pass


class NetworkError(DeskError):
    """Request was sent but no response came back."""
    pass


class StreamError(DeskError):
    """Event-stream failure."""
    pass


class ConfigError(DeskError):
    """Configuration error."""
    pass


class FirebaseAuthError(DeskError):
    """Firebase rejected an authentication request."""

    def __init__(self, code: str, message: Optional[str] = None) -> None:
        super().__init__(message or code)
        self.code = code


# ─── User-facing messages ─────────────────────────────────────────────────────

NETWORK_MESSAGE = "Network error. Please check your connection."

_FIREBASE_MESSAGES = {
    "EMAIL_NOT_FOUND": "No account found with this email. Please sign up first.",
    "INVALID_PASSWORD": "Invalid email or password. Please try again.",
    "INVALID_LOGIN_CREDENTIALS": "Invalid email or password. Please try again.",
    "INVALID_EMAIL": "Invalid email address. Please check your email.",
    "EMAIL_EXISTS": "An account with this email already exists.",
    "WEAK_PASSWORD": "Password should be at least 6 characters.",
    "USER_DISABLED": "This account has been disabled.",
    "TOO_MANY_ATTEMPTS_TRY_LATER": "Too many attempts. Please try again later.",
}


def describe_error(exc: BaseException) -> str:
    """Map an exception to the message shown to the user."""
    if isinstance(exc, AuthenticationError):
        return "Unauthorized. Please log in again."
    if isinstance(exc, NetworkError):
        return NETWORK_MESSAGE
    if isinstance(exc, FirebaseAuthError):
        return firebase_message(exc.code)
    if isinstance(exc, ApiError):
        status, detail = exc.status_code, exc.detail
        if status == 400:
            return f"Bad Request: {detail}"
        if status == 401:
            return "Unauthorized. Please log in again."
        if status == 403:
            return "Forbidden. You don't have permission."
        if status == 404:
            return "Not found."
        if status == 429:
            return "Too many requests. Please try again later."
        if status >= 500:
            return f"Server error: {detail}"
        return f"Error {status}: {detail}"
    return str(exc) or "An unexpected error occurred"


def firebase_message(code: str) -> str:
    # Firebase appends hints after a colon, e.g. "WEAK_PASSWORD : Password should be..."
    key = code.split(":", 1)[0].strip()
    return _FIREBASE_MESSAGES.get(key, f"Authentication failed: {code}")


def needs_broker_setup(detail: str) -> bool:
    """True when the backend says the user has no broker connection yet."""
    lowered = detail.lower()
    return "credentials not found" in lowered


def explain_backtest_error(detail: str, symbol: str = "") -> str:
    """
    Turn a backtest failure detail into an actionable message.

    The backend reports these as free text, so the known cases are matched
    on substrings.
    """
    lowered = detail.lower()
    if needs_broker_setup(detail):
        return "Broker credentials not found. Please add your broker API credentials first."
    if "access token not found" in lowered or "oauth" in lowered:
        return "Access token not found. Please complete OAuth flow to connect your broker account."
    if "instrument not found" in lowered:
        return f"Invalid symbol: {symbol}. Please check the symbol and try again."
    if "no historical data" in lowered:
        return f"No historical data found for {symbol} in the specified date range."
    return detail
