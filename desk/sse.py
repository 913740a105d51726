"""
sse.py — Server-Sent Events transport.

Two pieces:

  SSEDecoder   line-oriented wire decoder (event / data / id / retry fields,
               ":" comments, blank line dispatches)
  EventSource  auto-reconnecting GET stream over httpx, behaving like a
               browser EventSource: fixed retry delay (server may override
               with `retry:`), Last-Event-ID resent on reconnect, unlimited
               reconnect attempts, and a permanent failure on an HTTP error
               status or a non event-stream response.

Payload decoding is not done here; events come out as raw ServerSentEvent
values and stream_events.py turns them into typed variants.

Usage:
    source = EventSource(f"{base}/api/sse/orders", params={"token": token})
    async for event in source.events():
        print(event.event, event.json())
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx
from loguru import logger

from errors import StreamError


# ─── Constants ────────────────────────────────────────────────────────────────

DEFAULT_RETRY_SECONDS = 3.0
DEFAULT_CONNECT_TIMEOUT = 10.0


class ReadyState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


# ─── Wire Format ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ServerSentEvent:
    """One dispatched event."""
    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None

    def json(self) -> Any:
        return json.loads(self.data)


class SSEDecoder:
    """
    Incremental decoder fed one line at a time (without the line terminator).

    The last event id survives dispatches and reconnects; the event name,
    data buffer and retry value are per-event.
    """

    def __init__(self) -> None:
        self._event = ""
        self._data: List[str] = []
        self._retry: Optional[int] = None
        self.last_event_id: Optional[str] = None

    def reset(self) -> None:
        """Discard a partially received event (used when a connection drops)."""
        self._event = ""
        self._data = []
        self._retry = None

    def decode(self, line: str) -> Optional[ServerSentEvent]:
        line = line.rstrip("\r")

        if not line:
            if not self._data:
                self.reset()
                return None
            event = ServerSentEvent(
                event=self._event or "message",
                data="\n".join(self._data),
                id=self.last_event_id,
                retry=self._retry,
            )
            self.reset()
            return event

        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif field == "retry":
            if value.isdigit():
                self._retry = int(value)
        # unknown fields are ignored
        return None


# ─── Event Source ─────────────────────────────────────────────────────────────

class EventSource:
    """
    Long-lived SSE connection with native reconnection.

    Callbacks:
        on_open():          a 200 event-stream response arrived
        on_error(message):  the connection dropped (a reconnect follows unless
                            the source is closed)

    Iterate events() from exactly one task; close() from anywhere.
    """

    def __init__(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_seconds: float = DEFAULT_RETRY_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        on_open: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.url = url
        self.params = {k: v for k, v in (params or {}).items() if v is not None}
        self.retry_seconds = retry_seconds
        self.connect_timeout = connect_timeout
        self.headers = dict(headers or {})
        self.on_open = on_open
        self.on_error = on_error

        self.ready_state = ReadyState.CONNECTING
        self.reconnect_attempts = 0
        self.last_error: Optional[str] = None

        self._client = client
        self._transport = transport
        self._decoder = SSEDecoder()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_event_id(self) -> Optional[str]:
        return self._decoder.last_event_id

    def close(self) -> None:
        """Stop for good. The iterating task sees this at its next step."""
        self._closed = True
        self.ready_state = ReadyState.CLOSED

    async def events(self) -> AsyncIterator[ServerSentEvent]:
        """
        Yield events until close() is called.

        Raises StreamError when the server answers with an error status; the
        source is closed at that point and will not reconnect.
        """
        if self._client is not None:
            async for event in self._run(self._client):
                yield event
            return

        timeout = httpx.Timeout(self.connect_timeout, read=None)
        async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
            async for event in self._run(client):
                yield event

    # ─── Internals ────────────────────────────────────────────────────────────

    def _request_headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        headers.update(self.headers)
        if self._decoder.last_event_id:
            headers["Last-Event-ID"] = self._decoder.last_event_id
        return headers

    async def _run(self, client: httpx.AsyncClient) -> AsyncIterator[ServerSentEvent]:
        while not self._closed:
            self.ready_state = ReadyState.CONNECTING
            self._decoder.reset()
            try:
                async with client.stream(
                    "GET", self.url, params=self.params, headers=self._request_headers()
                ) as response:
                    self._check_response(response)
                    self.ready_state = ReadyState.OPEN
                    self.last_error = None
                    logger.debug(f"EventSource: open {self.url}")
                    if self.on_open:
                        self.on_open()

                    async for line in response.aiter_lines():
                        if self._closed:
                            return
                        event = self._decoder.decode(line)
                        if event is None:
                            continue
                        if event.retry is not None:
                            self.retry_seconds = event.retry / 1000.0
                        yield event
                reason = "stream ended by server"
            except httpx.HTTPError as exc:
                reason = str(exc) or type(exc).__name__

            if self._closed:
                return
            self._connection_lost(reason)
            await asyncio.sleep(self.retry_seconds)

    def _check_response(self, response: httpx.Response) -> None:
        content_type = response.headers.get("content-type", "")
        if response.status_code == 200 and content_type.startswith("text/event-stream"):
            return
        if response.status_code == 200:
            reason = f"unexpected content type {content_type!r}"
        else:
            reason = f"HTTP {response.status_code}"
        self.close()
        self.last_error = reason
        logger.error(f"EventSource: {self.url} failed permanently: {reason}")
        raise StreamError(reason)

    def _connection_lost(self, reason: str) -> None:
        self.ready_state = ReadyState.CONNECTING
        self.reconnect_attempts += 1
        self.last_error = reason
        logger.warning(
            f"EventSource: {self.url} lost ({reason}), "
            f"reconnecting in {self.retry_seconds:.1f}s (attempt {self.reconnect_attempts})"
        )
        if self.on_error:
            self.on_error(reason)
