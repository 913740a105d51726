"""
stream_events.py — Typed events for every backend event stream.

Each SSE endpoint speaks its own event vocabulary ("orders_snapshot",
"new_order", "job_added", "data_chunk", ...). decode_event() maps a raw
ServerSentEvent for a given ResourceKind onto one of a closed set of frozen
dataclasses, so the merge code in stream_state.py dispatches on type instead
of comparing event names.

A payload that is not valid JSON, or lacks the fields its event needs,
decodes to StreamFailure rather than raising. Event names a stream does not
know decode to None and are skipped.

Usage:
    event = decode_event(ResourceKind.ORDERS, sse)
    if isinstance(event, Snapshot):
        ...
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Union

from loguru import logger

from sse import ServerSentEvent


Record = Dict[str, Any]


# ─── Resources ────────────────────────────────────────────────────────────────

class ResourceKind(str, Enum):
    ORDERS = "orders"
    STRATEGY_STATUS = "strategy_status"
    BACKTEST_JOBS = "backtest_jobs"
    BACKTEST_HISTORY = "backtest_history"
    BACKTEST_PROGRESS = "backtest_progress"
    HISTORICAL_DATA = "historical_data"
    HISTORICAL_DATA_MULTI = "historical_data_multi"


# Paths relative to the SSE base URL; {id} is the resource id
STREAM_PATHS: Dict[ResourceKind, str] = {
    ResourceKind.ORDERS: "/api/sse/orders",
    ResourceKind.STRATEGY_STATUS: "/api/sse/strategies/status",
    ResourceKind.BACKTEST_JOBS: "/api/sse/backtest/jobs",
    ResourceKind.BACKTEST_HISTORY: "/api/sse/backtest/history",
    ResourceKind.BACKTEST_PROGRESS: "/api/sse/backtest/{id}",
    ResourceKind.HISTORICAL_DATA: "/api/sse/backtest/{id}/data",
    ResourceKind.HISTORICAL_DATA_MULTI: "/api/sse/backtest/{id}/data/multi",
}


def stream_path(kind: ResourceKind, resource_id: Optional[str] = None) -> str:
    template = STREAM_PATHS[kind]
    if "{id}" in template:
        if not resource_id:
            raise ValueError(f"{kind.value} stream needs a resource id")
        return template.format(id=resource_id)
    return template


def record_key(kind: ResourceKind, record: Record) -> Optional[str]:
    """Stable identifier of a record within one stream's snapshot."""
    if kind == ResourceKind.BACKTEST_JOBS:
        value = record.get("job_id")
    elif kind == ResourceKind.BACKTEST_HISTORY:
        value = record.get("id") or record.get("backtest_id")
    else:
        value = record.get("id")
    return str(value) if value is not None else None


# ─── Event Variants ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Connected:
    message: str = ""


@dataclass(frozen=True)
class Snapshot:
    records: Tuple[Record, ...]


@dataclass(frozen=True)
class Added:
    record: Record


@dataclass(frozen=True)
class Updated:
    record: Record


@dataclass(frozen=True)
class Removed:
    key: str


_UNAUTHORIZED = re.compile(r"\b(401|Unauthorized)\b")


@dataclass(frozen=True)
class StreamFailure:
    """Server-sent `error` event, or a payload that could not be decoded."""
    message: str
    payload: Optional[Record] = None

    @property
    def unauthorized(self) -> bool:
        data = self.payload or {}
        return (
            data.get("error") == "Unauthorized"
            or data.get("status") == 401
            or _UNAUTHORIZED.search(self.message) is not None
        )


@dataclass(frozen=True)
class StatusChanged:
    strategy_id: str
    status: str


@dataclass(frozen=True)
class PerformanceChanged:
    strategy_id: str
    total_trades: int
    total_pnl: float
    win_rate: Optional[float] = None


@dataclass(frozen=True)
class IntervalStarted:
    interval: str
    total_points: int
    total_chunks: int = 0
    chunk_size: int = 0


@dataclass(frozen=True)
class DataChunk:
    interval: str
    chunk_id: int
    points: Tuple[Record, ...]
    points_sent: int
    total_points: int
    is_last_chunk: bool = False


@dataclass(frozen=True)
class IntervalCompleted:
    interval: str
    total_points: int


@dataclass(frozen=True)
class TransferCompleted:
    """`complete` on a single-interval stream, `all_complete` on a multi one."""
    intervals: Tuple[str, ...]
    total_points: int = 0


@dataclass(frozen=True)
class Progress:
    job_id: str
    status: str
    progress: float
    current_bar: Optional[int] = None
    total_bars: Optional[int] = None
    message: str = ""


@dataclass(frozen=True)
class Transactions:
    transactions: Tuple[Record, ...]
    total_transactions: int
    new_transactions_count: int


@dataclass(frozen=True)
class JobFinished:
    outcome: str  # completed | failed | cancelled
    result: Optional[Record] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == "completed"


StreamEvent = Union[
    Connected, Snapshot, Added, Updated, Removed, StreamFailure,
    StatusChanged, PerformanceChanged,
    IntervalStarted, DataChunk, IntervalCompleted, TransferCompleted,
    Progress, Transactions, JobFinished,
]


# ─── Decoders ─────────────────────────────────────────────────────────────────

class _BadPayload(Exception):
    pass


def _object(payload: Any, field: Optional[str] = None) -> Record:
    value = payload.get(field) if field and isinstance(payload, dict) else payload
    if not isinstance(value, dict):
        raise _BadPayload(f"expected an object{f' in {field!r}' if field else ''}")
    return value


def _records(payload: Any, field: str) -> Tuple[Record, ...]:
    items = payload.get(field) if isinstance(payload, dict) else None
    if items is None:
        return ()
    if not isinstance(items, list):
        raise _BadPayload(f"expected a list in {field!r}")
    return tuple(item for item in items if isinstance(item, dict))


def _failure(payload: Any) -> StreamFailure:
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error") or "Connection error"
        return StreamFailure(message=str(message), payload=payload)
    return StreamFailure(message=str(payload) if payload else "Connection error")


def _decode_orders(name: str, payload: Any) -> Optional[StreamEvent]:
    if name == "orders_snapshot":
        return Snapshot(_records(payload, "orders"))
    if name == "new_order":
        return Added(_object(payload))
    if name == "order_update":
        return Updated(_object(payload))
    return None


def _decode_strategy_status(name: str, payload: Any) -> Optional[StreamEvent]:
    if name == "strategies_snapshot":
        return Snapshot(_records(payload, "strategies"))
    if name == "strategy_status_update":
        data = _object(payload)
        return StatusChanged(strategy_id=str(data["strategy_id"]), status=str(data["status"]))
    if name == "strategy_performance_update":
        data = _object(payload)
        win_rate = data.get("win_rate")
        return PerformanceChanged(
            strategy_id=str(data["strategy_id"]),
            total_trades=int(data.get("total_trades") or 0),
            total_pnl=float(data.get("total_pnl") or 0.0),
            win_rate=float(win_rate) if win_rate is not None else None,
        )
    return None


def _decode_backtest_jobs(name: str, payload: Any) -> Optional[StreamEvent]:
    if name == "snapshot":
        return Snapshot(_records(payload, "jobs"))
    if name == "job_added":
        return Added(_object(payload, "job"))
    if name == "job_updated":
        return Updated(_object(payload, "job"))
    if name == "job_removed":
        return Removed(key=str(_object(payload)["job_id"]))
    return None


def _decode_backtest_history(name: str, payload: Any) -> Optional[StreamEvent]:
    if name == "snapshot":
        return Snapshot(_records(payload, "backtests"))
    if name == "backtest_added":
        return Added(_object(payload, "backtest"))
    if name == "backtest_updated":
        return Updated(_object(payload, "backtest"))
    if name == "backtest_removed":
        data = _object(payload)
        return Removed(key=str(data.get("backtest_id") or data["id"]))
    return None


def _decode_backtest_progress(name: str, payload: Any) -> Optional[StreamEvent]:
    if name == "progress":
        data = _object(payload)
        return Progress(
            job_id=str(data.get("job_id") or ""),
            status=str(data.get("status") or "running"),
            progress=float(data.get("progress") or 0.0),
            current_bar=data.get("current_bar"),
            total_bars=data.get("total_bars"),
            message=data.get("message") or "",
        )
    if name == "transaction":
        data = _object(payload)
        txns = _records(data, "transactions")
        return Transactions(
            transactions=txns,
            total_transactions=int(data.get("total_transactions") or len(txns)),
            new_transactions_count=int(data.get("new_transactions_count") or len(txns)),
        )
    if name == "completed":
        data = _object(payload)
        summary = data.get("result_summary") or data.get("result")
        return JobFinished(outcome="completed", result=summary if isinstance(summary, dict) else None)
    if name == "failed":
        data = payload if isinstance(payload, dict) else {}
        return JobFinished(outcome="failed", error_message=data.get("error_message") or "Backtest failed")
    if name == "cancelled":
        return JobFinished(outcome="cancelled", error_message="Backtest was cancelled")
    return None


def _decode_historical_data(name: str, payload: Any) -> Optional[StreamEvent]:
    if name == "interval_start":
        data = _object(payload)
        return IntervalStarted(
            interval=str(data["interval"]),
            total_points=int(data.get("total_points") or 0),
            total_chunks=int(data.get("total_chunks") or 0),
            chunk_size=int(data.get("chunk_size") or 0),
        )
    if name == "data_chunk":
        data = _object(payload)
        points = _records(data, "data_points")
        return DataChunk(
            interval=str(data["interval"]),
            chunk_id=int(data.get("chunk_id") or 0),
            points=points,
            points_sent=int(data.get("points_sent") or 0),
            total_points=int(data.get("total_points") or 0),
            is_last_chunk=bool(data.get("is_last_chunk", False)),
        )
    if name == "interval_complete":
        data = _object(payload)
        return IntervalCompleted(
            interval=str(data["interval"]),
            total_points=int(data.get("total_points") or 0),
        )
    if name == "complete":
        data = _object(payload)
        interval = data.get("interval")
        return TransferCompleted(
            intervals=(str(interval),) if interval else (),
            total_points=int(data.get("total_points") or 0),
        )
    if name == "all_complete":
        data = _object(payload)
        return TransferCompleted(intervals=tuple(str(i) for i in data.get("intervals") or ()))
    return None


_DECODERS: Dict[ResourceKind, Callable[[str, Any], Optional[StreamEvent]]] = {
    ResourceKind.ORDERS: _decode_orders,
    ResourceKind.STRATEGY_STATUS: _decode_strategy_status,
    ResourceKind.BACKTEST_JOBS: _decode_backtest_jobs,
    ResourceKind.BACKTEST_HISTORY: _decode_backtest_history,
    ResourceKind.BACKTEST_PROGRESS: _decode_backtest_progress,
    ResourceKind.HISTORICAL_DATA: _decode_historical_data,
    ResourceKind.HISTORICAL_DATA_MULTI: _decode_historical_data,
}


def decode_event(kind: ResourceKind, sse: ServerSentEvent) -> Optional[StreamEvent]:
    """
    Decode one raw event for `kind`.

    Returns None for events this stream does not handle (including plain
    unnamed "message" events and keep-alives).
    """
    name = sse.event

    if name == "connection":
        return Connected(message=_connection_message(sse.data))

    try:
        payload = json.loads(sse.data) if sse.data else {}
    except json.JSONDecodeError as exc:
        logger.warning(f"{kind.value}: malformed {name!r} payload: {exc}")
        return StreamFailure(message=f"Failed to parse {name} event")

    if name == "error":
        return _failure(payload)

    try:
        return _DECODERS[kind](name, payload)
    except (_BadPayload, KeyError, TypeError, ValueError) as exc:
        logger.warning(f"{kind.value}: unusable {name!r} payload: {exc}")
        return StreamFailure(message=f"Failed to parse {name} event", payload=payload if isinstance(payload, dict) else None)


def _connection_message(data: str) -> str:
    try:
        payload = json.loads(data) if data else {}
    except json.JSONDecodeError:
        return data
    if isinstance(payload, dict):
        return str(payload.get("message") or "")
    return ""
