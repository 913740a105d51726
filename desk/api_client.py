"""
api_client.py — Authenticated REST transport for the algodesk backend.

Every request carries the current session's bearer token and device id.
Responses are mapped onto the errors.py taxonomy:

  no response / timeout   → NetworkError
  401                     → session cleared, AuthenticationError
  other 4xx               → ValidationError(status, detail)
  5xx                     → ServerError(status, detail)

Nothing is retried. The *_api.py modules build on request()/get()/post()...
and return dataclasses.

Usage:
    async with ApiClient(config, sessions) as client:
        strategies = await client.get("/api/strategies")
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx
from loguru import logger

from config import DeskConfig
from errors import (
    NETWORK_MESSAGE,
    AuthenticationError,
    NetworkError,
    ServerError,
    ValidationError,
)
from session import SessionManager


def _clean_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not params:
        return None
    return {k: v for k, v in params.items() if v is not None}


def extract_detail(response: httpx.Response) -> str:
    """Pull the human-readable message out of an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase

    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message") or body.get("error")
        # FastAPI request validation: [{"loc": [...], "msg": "...", ...}, ...]
        if isinstance(detail, list):
            messages = [d.get("msg", str(d)) if isinstance(d, dict) else str(d) for d in detail]
            return "; ".join(messages)
        if detail:
            return str(detail)
    return response.reason_phrase or f"HTTP {response.status_code}"


class ApiClient:
    """Thin async wrapper over httpx.AsyncClient bound to a SessionManager."""

    def __init__(
        self,
        config: DeskConfig,
        sessions: SessionManager,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.sessions = sessions
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_url,
                timeout=self.config.request_timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ─── Requests ─────────────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        """Send one request; return the decoded JSON body (None when empty)."""
        session = self.sessions.current
        try:
            response = await self.http.request(
                method,
                path,
                params=_clean_params(params),
                json=json,
                headers=session.auth_headers(),
            )
        except httpx.HTTPError as exc:
            logger.error(f"{method} {path} failed: {exc}")
            raise NetworkError(NETWORK_MESSAGE) from exc

        if response.status_code == 401:
            detail = extract_detail(response)
            # A 401 for a token that has since been replaced must not log the new one out
            if session.token and self.sessions.current.token == session.token:
                self.sessions.logout("token rejected by backend")
            logger.warning(f"{method} {path} → 401 {detail}")
            raise AuthenticationError(detail)

        if response.status_code >= 400:
            detail = extract_detail(response)
            logger.warning(f"{method} {path} → {response.status_code} {detail}")
            if response.status_code >= 500:
                raise ServerError(response.status_code, detail)
            raise ValidationError(response.status_code, detail)

        logger.debug(f"{method} {path} → {response.status_code}")
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any = None, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("POST", path, params=params, json=json)

    async def put(self, path: str, json: Any = None, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("PUT", path, params=params, json=json)

    async def patch(self, path: str, json: Any = None, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("PATCH", path, params=params, json=json)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("DELETE", path, params=params)
