"""
streams.py — Live subscriptions to backend event streams.

A StreamSubscription ties together one EventSource (sse.py), the per-resource
decoder (stream_events.py) and a local mirror (stream_state.py), and follows
the session:

  - no token → never connects
  - token cleared (logout, 401) → connection torn down, snapshot kept
  - new token → fresh mirror, new connection
  - resubscribe() with a new resource id / scope → old connection closed
    before the new one opens

Transport errors mark the subscription disconnected but keep the last
snapshot until the server's fresh snapshot replaces it. Nothing raises past
the subscription; failures end up in `last_error`.

Usage:
    orders = watch_orders(config, sessions, strategy_id="s1",
                          on_change=lambda sub: print(sub.snapshot))
    ...
    orders.close()
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from loguru import logger

from api_client import ApiClient
from backtesting_api import get_job_result
from config import DeskConfig
from errors import DeskError, StreamError
from session import Session, SessionManager
from sse import EventSource, ReadyState
from stream_events import (
    Connected,
    JobFinished,
    ResourceKind,
    StreamEvent,
    StreamFailure,
    TransferCompleted,
    decode_event,
    stream_path,
)
from stream_state import (
    CollectionMirror,
    HistoricalDataMirror,
    JobProgressMirror,
    StrategyStatusMirror,
    field_scope,
)


MirrorFactory = Callable[[Optional[str], Dict[str, Any]], Any]
ResultFetcher = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]
ChangeCallback = Callable[["StreamSubscription"], None]


class StreamSubscription:
    """One (resource kind, resource id, token) event-stream subscription."""

    def __init__(
        self,
        kind: ResourceKind,
        mirror_factory: MirrorFactory,
        config: DeskConfig,
        sessions: SessionManager,
        resource_id: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_change: Optional[ChangeCallback] = None,
        result_fetcher: Optional[ResultFetcher] = None,
    ) -> None:
        self.kind = kind
        self.config = config
        self.sessions = sessions
        self.resource_id = resource_id
        self.filters: Dict[str, Any] = dict(filters or {})
        self.on_change = on_change
        self.result_fetcher = result_fetcher

        self._mirror_factory = mirror_factory
        self.mirror = mirror_factory(resource_id, self.filters)

        self.connected = False
        self.last_error: Optional[str] = None
        self.finished = False

        self._transport = transport
        self._source: Optional[EventSource] = None
        self._task: Optional[asyncio.Task] = None
        self._token: Optional[str] = None
        self._wanted = False
        self._listening = False

    # ─── Public state ─────────────────────────────────────────────────────────

    @property
    def state(self) -> ReadyState:
        if self._source is None:
            return ReadyState.CLOSED
        return self._source.ready_state

    @property
    def snapshot(self) -> Any:
        return self.mirror.snapshot()

    @property
    def reconnect_attempts(self) -> int:
        return self._source.reconnect_attempts if self._source else 0

    @property
    def url(self) -> str:
        return self.config.sse_base_url + stream_path(self.kind, self.resource_id)

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    def open(self) -> bool:
        """
        Connect with the current session token. Returns False (and stays
        closed) when there is no token; the subscription then opens by itself
        once one appears. Must be called from a running event loop.
        """
        self._wanted = True
        if not self._listening:
            self.sessions.add_listener(self._on_session)
            self._listening = True

        token = self.sessions.current.token
        if not token:
            logger.debug(f"{self.kind.value}: no token, not connecting")
            return False

        loop = asyncio.get_running_loop()
        self._teardown()
        self.finished = False
        self._token = token

        params: Dict[str, Any] = {"token": token}
        params.update(self.filters)
        source = EventSource(
            self.url,
            params,
            transport=self._transport,
            retry_seconds=self.config.sse_retry_seconds,
            on_open=self._on_open,
            on_error=self._on_error,
        )
        self._source = source
        self._task = loop.create_task(self._consume(source))
        logger.info(f"{self.kind.value}: subscribing to {self.url}")
        return True

    def close(self) -> None:
        """Stop for good: no further events are applied once this returns."""
        self._wanted = False
        if self._listening:
            self.sessions.remove_listener(self._on_session)
            self._listening = False
        self._teardown()

    def resubscribe(self, resource_id: Optional[str] = None, **filters: Any) -> bool:
        """Switch to another resource id and/or scope; the snapshot starts over."""
        self._teardown()
        if resource_id is not None:
            self.resource_id = resource_id
        self.filters.update(filters)
        self.filters = {k: v for k, v in self.filters.items() if v is not None}
        self.mirror = self._mirror_factory(self.resource_id, self.filters)
        self.last_error = None
        self._notify()
        return self.open()

    async def wait(self) -> None:
        """Wait until the stream finishes, fails permanently or is closed."""
        while self._task is not None:
            task = self._task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
            if self._task is task:
                return

    # ─── Internals ────────────────────────────────────────────────────────────

    def _teardown(self) -> None:
        if self._source is not None:
            self._source.close()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._source = None
        self._task = None
        self._token = None
        if self.connected:
            self.connected = False
            self._notify()

    def _on_session(self, session: Session) -> None:
        if session.token == self._token:
            return
        had_connection = self._source is not None
        self._teardown()
        if had_connection:
            logger.info(f"{self.kind.value}: session changed, connection closed")
        if not (self._wanted and session.token):
            return
        self.mirror = self._mirror_factory(self.resource_id, self.filters)
        self.last_error = None
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"{self.kind.value}: new session outside an event loop, call open() to reconnect")
            return
        self.open()

    def _on_open(self) -> None:
        self.connected = True
        self._notify()

    def _on_error(self, message: str) -> None:
        self.connected = False
        self.last_error = message
        self._notify()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    async def _consume(self, source: EventSource) -> None:
        try:
            async for sse in source.events():
                if source is not self._source or source.closed:
                    return
                event = decode_event(self.kind, sse)
                if event is None:
                    continue
                event = await self._complete_event(event)
                if source is not self._source:
                    return
                self._dispatch(event)
                if source.closed:
                    return
        except StreamError as exc:
            if source is self._source:
                self.connected = False
                self.last_error = str(exc)
                self._notify()

    async def _complete_event(self, event: StreamEvent) -> StreamEvent:
        # The completed event carries only a summary; fetch the full result
        if not (isinstance(event, JobFinished) and event.succeeded and self.result_fetcher):
            return event
        try:
            full = await self.result_fetcher(self.resource_id or "")
        except DeskError as exc:
            logger.warning(f"{self.kind.value}: full result fetch failed ({exc}), using summary")
            return event
        if not full:
            logger.warning(f"{self.kind.value}: full result not available, using summary")
            return event
        return JobFinished(outcome=event.outcome, result=full, error_message=event.error_message)

    def _dispatch(self, event: StreamEvent) -> None:
        if isinstance(event, Connected):
            self.connected = True
            self._notify()
            return

        if isinstance(event, StreamFailure):
            self.last_error = event.message
            logger.warning(f"{self.kind.value}: server error: {event.message}")
            # Only the history stream is closed by the server on a bad token
            if self.kind == ResourceKind.BACKTEST_HISTORY and event.unauthorized:
                self._finish()
            self._notify()
            return

        changed = self.mirror.apply(event)
        if isinstance(event, (JobFinished, TransferCompleted)):
            logger.info(f"{self.kind.value}: stream finished ({type(event).__name__})")
            self._finish()
            changed = True
        if changed:
            self._notify()

    def _finish(self) -> None:
        """Terminal event: stop reconnecting but keep the final state."""
        self.finished = True
        self.connected = False
        if self._source is not None:
            self._source.close()


# ─── Factories ────────────────────────────────────────────────────────────────

def _subscribe(sub: StreamSubscription, auto_open: bool) -> StreamSubscription:
    if auto_open:
        sub.open()
    return sub


def watch_orders(
    config: DeskConfig,
    sessions: SessionManager,
    strategy_id: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    on_change: Optional[ChangeCallback] = None,
    auto_open: bool = True,
) -> StreamSubscription:
    """Order book, optionally scoped to one strategy."""
    return _subscribe(
        StreamSubscription(
            ResourceKind.ORDERS,
            lambda _rid, f: CollectionMirror(
                ResourceKind.ORDERS, field_scope("strategy_id", f.get("strategy_id"))
            ),
            config,
            sessions,
            filters={"strategy_id": strategy_id} if strategy_id else None,
            transport=transport,
            on_change=on_change,
        ),
        auto_open,
    )


def watch_strategy_status(
    config: DeskConfig,
    sessions: SessionManager,
    strategy_id: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    on_change: Optional[ChangeCallback] = None,
    auto_open: bool = True,
) -> StreamSubscription:
    return _subscribe(
        StreamSubscription(
            ResourceKind.STRATEGY_STATUS,
            lambda _rid, f: StrategyStatusMirror(f.get("strategy_id")),
            config,
            sessions,
            filters={"strategy_id": strategy_id} if strategy_id else None,
            transport=transport,
            on_change=on_change,
        ),
        auto_open,
    )


def watch_backtest_jobs(
    config: DeskConfig,
    sessions: SessionManager,
    limit: int = 10,
    status_filter: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    on_change: Optional[ChangeCallback] = None,
    auto_open: bool = True,
) -> StreamSubscription:
    filters: Dict[str, Any] = {"limit": limit}
    if status_filter:
        filters["status_filter"] = status_filter
    return _subscribe(
        StreamSubscription(
            ResourceKind.BACKTEST_JOBS,
            lambda _rid, _f: CollectionMirror(ResourceKind.BACKTEST_JOBS),
            config,
            sessions,
            filters=filters,
            transport=transport,
            on_change=on_change,
        ),
        auto_open,
    )


def watch_backtest_history(
    config: DeskConfig,
    sessions: SessionManager,
    limit: int = 50,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    on_change: Optional[ChangeCallback] = None,
    auto_open: bool = True,
) -> StreamSubscription:
    return _subscribe(
        StreamSubscription(
            ResourceKind.BACKTEST_HISTORY,
            lambda _rid, _f: CollectionMirror(ResourceKind.BACKTEST_HISTORY),
            config,
            sessions,
            filters={"limit": limit},
            transport=transport,
            on_change=on_change,
        ),
        auto_open,
    )


def watch_backtest_progress(
    config: DeskConfig,
    sessions: SessionManager,
    job_id: str,
    client: Optional[ApiClient] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    on_change: Optional[ChangeCallback] = None,
    auto_open: bool = True,
) -> StreamSubscription:
    """
    Progress of one backtest job. With a client, the full result is fetched
    over REST when the job completes.
    """
    fetcher: Optional[ResultFetcher] = None
    if client is not None:
        async def _fetch(jid: str) -> Optional[Dict[str, Any]]:
            return await get_job_result(client, jid)
        fetcher = _fetch

    return _subscribe(
        StreamSubscription(
            ResourceKind.BACKTEST_PROGRESS,
            lambda rid, _f: JobProgressMirror(rid or ""),
            config,
            sessions,
            resource_id=job_id,
            transport=transport,
            on_change=on_change,
            result_fetcher=fetcher,
        ),
        auto_open,
    )


def watch_historical_data(
    config: DeskConfig,
    sessions: SessionManager,
    backtest_id: str,
    interval: Optional[str] = None,
    intervals: Optional[List[str]] = None,
    limit: int = 1000,
    chunk_size: int = 500,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    on_change: Optional[ChangeCallback] = None,
    auto_open: bool = True,
) -> StreamSubscription:
    """
    Chunked OHLC bars for a backtest (bt_...) or running job. Pass `intervals`
    for the multi-interval stream, otherwise a single `interval`.
    """
    if intervals:
        kind = ResourceKind.HISTORICAL_DATA_MULTI
        filters: Dict[str, Any] = {"intervals": ",".join(intervals)}
        names = list(intervals)
    elif interval:
        kind = ResourceKind.HISTORICAL_DATA
        filters = {"interval": interval}
        names = [interval]
    else:
        raise ValueError("either interval or intervals is required")
    filters.update(limit=limit, chunk_size=chunk_size)
    return _subscribe(
        StreamSubscription(
            kind,
            lambda _rid, _f: HistoricalDataMirror(names),
            config,
            sessions,
            resource_id=backtest_id,
            filters=filters,
            transport=transport,
            on_change=on_change,
        ),
        auto_open,
    )
