"""
stream_state.py — Local mirrors of server-pushed state.

A mirror folds typed stream events (stream_events.py) into local state. The
mirrors do no I/O and never raise on odd input; apply() returns True when the
visible state changed so callers know when to re-render.

  CollectionMirror       keyed records: orders, backtest jobs, backtest history
  StrategyStatusMirror   strategy summaries with status / performance deltas
  HistoricalDataMirror   chunked OHLC transfer, one or many intervals
  JobProgressMirror      a single backtest job's progress and outcome

Merge rules for collections:
  snapshot  replaces everything (filtered by scope, duplicate ids collapsed)
  added     prepends; an id already present is replaced and moved to the head;
            a record outside the scope is dropped
  updated   replaces in place; unknown id or out of scope is a no-op
  removed   deletes by id; unknown id is a no-op
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from loguru import logger

from stream_events import (
    Added,
    DataChunk,
    IntervalCompleted,
    IntervalStarted,
    JobFinished,
    PerformanceChanged,
    Progress,
    Record,
    Removed,
    ResourceKind,
    Snapshot,
    StatusChanged,
    StreamEvent,
    Transactions,
    TransferCompleted,
    Updated,
    record_key,
)


Scope = Callable[[Record], bool]


def field_scope(name: str, value: Optional[str]) -> Optional[Scope]:
    """Scope predicate matching records whose `name` equals `value` (None → no scope)."""
    if value is None:
        return None
    return lambda record: record.get(name) == value


# ─── Collections ──────────────────────────────────────────────────────────────

class CollectionMirror:
    """Ordered, id-unique list of records for one stream subscription."""

    def __init__(self, kind: ResourceKind, scope: Optional[Scope] = None) -> None:
        self.kind = kind
        self.scope = scope
        self._records: List[Record] = []

    def snapshot(self) -> List[Record]:
        return list(self._records)

    def keys(self) -> List[str]:
        return [self._key(r) for r in self._records]

    def get(self, key: str) -> Optional[Record]:
        index = self._index(key)
        return self._records[index] if index is not None else None

    def __len__(self) -> int:
        return len(self._records)

    def apply(self, event: StreamEvent) -> bool:
        if isinstance(event, Snapshot):
            return self._replace_all(event.records)
        if isinstance(event, Added):
            return self._add(event.record)
        if isinstance(event, Updated):
            return self._update(event.record)
        if isinstance(event, Removed):
            return self._remove(event.key)
        return False

    # ─── Merge rules ──────────────────────────────────────────────────────────

    def _in_scope(self, record: Record) -> bool:
        return self.scope is None or self.scope(record)

    def _key(self, record: Record) -> str:
        return record_key(self.kind, record) or ""

    def _index(self, key: str) -> Optional[int]:
        for i, record in enumerate(self._records):
            if self._key(record) == key:
                return i
        return None

    def _replace_all(self, records) -> bool:
        seen: Set[str] = set()
        fresh: List[Record] = []
        for record in records:
            key = record_key(self.kind, record)
            if key is None or key in seen or not self._in_scope(record):
                continue
            seen.add(key)
            fresh.append(record)
        changed = fresh != self._records
        self._records = fresh
        return changed

    def _add(self, record: Record) -> bool:
        key = record_key(self.kind, record)
        if key is None:
            logger.debug(f"{self.kind.value}: dropping added record without an id")
            return False
        if not self._in_scope(record):
            return False
        self._records = [record] + [r for r in self._records if self._key(r) != key]
        return True

    def _update(self, record: Record) -> bool:
        key = record_key(self.kind, record)
        if key is None or not self._in_scope(record):
            return False
        index = self._index(key)
        if index is None:
            return False
        self._records[index] = record
        return True

    def _remove(self, key: str) -> bool:
        index = self._index(key)
        if index is None:
            return False
        del self._records[index]
        return True


class StrategyStatusMirror(CollectionMirror):
    """
    Strategy summaries keyed by strategy id.

    Status and performance deltas only touch summaries that a snapshot has
    already delivered; a delta never creates a partial summary.
    """

    def __init__(self, strategy_id: Optional[str] = None) -> None:
        super().__init__(ResourceKind.STRATEGY_STATUS, field_scope("id", strategy_id))
        self.strategy_id = strategy_id

    def apply(self, event: StreamEvent) -> bool:
        if isinstance(event, StatusChanged):
            return self._merge(event.strategy_id, {"status": event.status})
        if isinstance(event, PerformanceChanged):
            changes: Dict[str, Any] = {
                "total_trades": event.total_trades,
                "total_pnl": event.total_pnl,
            }
            if event.win_rate is not None:
                changes["win_rate"] = event.win_rate
            return self._merge(event.strategy_id, changes)
        return super().apply(event)

    def _merge(self, strategy_id: str, changes: Dict[str, Any]) -> bool:
        index = self._index(strategy_id)
        if index is None:
            return False
        current = self._records[index]
        merged = {**current, **changes}
        if merged == current:
            return False
        self._records[index] = merged
        return True


# ─── Historical OHLC transfer ─────────────────────────────────────────────────

@dataclass
class IntervalData:
    """Points received so far for one interval."""
    interval: str
    expected_total: int = 0
    points_received: int = 0
    complete: bool = False
    points: List[Record] = field(default_factory=list)
    _times: Set[Any] = field(default_factory=set, repr=False)

    def add_points(self, points) -> int:
        added = 0
        for point in points:
            stamp = point.get("time")
            if stamp is not None:
                if stamp in self._times:
                    continue
                self._times.add(stamp)
            self.points.append(point)
            added += 1
        return added

    @property
    def progress(self) -> float:
        if self.expected_total <= 0:
            return 100.0 if self.complete else 0.0
        return min(100.0, self.points_received / self.expected_total * 100.0)


class HistoricalDataMirror:
    """
    Accumulates a chunked OHLC transfer.

    interval_start resets that interval; data_chunk appends points (deduplicated
    by bar time); complete / all_complete make the transfer terminal, after
    which late chunks are ignored.
    """

    def __init__(self, intervals: Optional[List[str]] = None) -> None:
        self.requested = list(intervals or [])
        self.intervals: Dict[str, IntervalData] = {}
        self.current_interval: Optional[str] = None
        self.terminal = False

    def snapshot(self) -> Dict[str, List[Record]]:
        return {name: list(data.points) for name, data in self.intervals.items()}

    def points(self, interval: Optional[str] = None) -> List[Record]:
        name = interval or self.current_interval
        data = self.intervals.get(name) if name else None
        return list(data.points) if data else []

    def progress(self, interval: Optional[str] = None) -> float:
        """Percent received for one interval, or across all of them."""
        if interval is not None:
            data = self.intervals.get(interval)
            return data.progress if data else 0.0
        if not self.intervals:
            return 100.0 if self.terminal else 0.0
        expected = sum(d.expected_total for d in self.intervals.values())
        received = sum(d.points_received for d in self.intervals.values())
        if expected <= 0:
            return 100.0 if self.terminal else 0.0
        return min(100.0, received / expected * 100.0)

    def apply(self, event: StreamEvent) -> bool:
        if self.terminal:
            return False

        if isinstance(event, IntervalStarted):
            self.intervals[event.interval] = IntervalData(
                interval=event.interval, expected_total=event.total_points
            )
            self.current_interval = event.interval
            return True

        if isinstance(event, DataChunk):
            data = self.intervals.get(event.interval)
            if data is None:
                data = IntervalData(interval=event.interval, expected_total=event.total_points)
                self.intervals[event.interval] = data
                self.current_interval = event.interval
            data.add_points(event.points)
            if event.total_points:
                data.expected_total = event.total_points
            data.points_received = max(event.points_sent, len(data.points))
            return True

        if isinstance(event, IntervalCompleted):
            data = self.intervals.get(event.interval)
            if data is None:
                return False
            data.complete = True
            return True

        if isinstance(event, TransferCompleted):
            names = event.intervals or tuple(self.intervals)
            for name in names:
                if name in self.intervals:
                    self.intervals[name].complete = True
            self.terminal = True
            return True

        return False


# ─── Backtest job progress ────────────────────────────────────────────────────

class JobProgressMirror:
    """Progress, streamed transactions and final outcome of one backtest job."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self.status = "queued"
        self.progress = 0.0
        self.current_bar: Optional[int] = None
        self.total_bars: Optional[int] = None
        self.message = ""
        self.transactions: List[Record] = []
        self.total_transactions = 0
        self.outcome: Optional[str] = None
        self.result: Optional[Record] = None
        self.error_message: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.outcome is not None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "progress": self.progress,
            "current_bar": self.current_bar,
            "total_bars": self.total_bars,
            "message": self.message,
            "transactions": list(self.transactions),
            "outcome": self.outcome,
            "result": self.result,
            "error_message": self.error_message,
        }

    def apply(self, event: StreamEvent) -> bool:
        if self.terminal:
            return False

        if isinstance(event, Progress):
            self.status = event.status
            self.progress = event.progress
            self.current_bar = event.current_bar
            self.total_bars = event.total_bars
            self.message = event.message
            return True

        if isinstance(event, Transactions):
            known = {t.get("id") for t in self.transactions if t.get("id") is not None}
            for txn in event.transactions:
                txn_id = txn.get("id")
                if txn_id is not None and txn_id in known:
                    continue
                self.transactions.append(txn)
                if txn_id is not None:
                    known.add(txn_id)
            self.total_transactions = max(event.total_transactions, len(self.transactions))
            return True

        if isinstance(event, JobFinished):
            self.outcome = event.outcome
            self.status = event.outcome
            self.result = event.result
            self.error_message = event.error_message
            if event.succeeded:
                self.progress = 100.0
            return True

        return False
