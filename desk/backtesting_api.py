"""
backtesting_api.py — Backtest runs, jobs and history.

Two ways to backtest:
  run_backtest / quick_backtest   synchronous; the response is the result
  backtest jobs                   queued on the backend, observed through the
                                  jobs / progress event streams (streams.py)
                                  and controlled with cancel / pause / resume

Backtest failures come back as free-text `detail` strings; run_backtest()
rewrites the known ones into actionable messages via explain_backtest_error().

Usage:
    request = BacktestRequest(code, "INFY", "NSE", "2024-01-01", "2024-06-30")
    result = await run_backtest(client, request)
    print(result.total_return_pct, result.total_trades)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from loguru import logger

from api_client import ApiClient
from errors import ApiError, explain_backtest_error


DEFAULT_BROKER = "zerodha"
DEFAULT_INITIAL_CASH = 100000.0
DEFAULT_COMMISSION = 0.001


# ─── Records ──────────────────────────────────────────────────────────────────

@dataclass
class BacktestRequest:
    strategy_code: str
    symbol: str
    exchange: str
    from_date: str
    to_date: str
    initial_cash: float = DEFAULT_INITIAL_CASH
    commission: float = DEFAULT_COMMISSION
    interval: Optional[str] = None
    strategy_id: Optional[str] = None

    def validate(self) -> None:
        if not self.strategy_code.strip():
            raise ValueError("strategy_code is required")
        if not self.symbol:
            raise ValueError("symbol is required")
        start = date.fromisoformat(self.from_date)
        end = date.fromisoformat(self.to_date)
        if start > end:
            raise ValueError(f"from_date {self.from_date} is after to_date {self.to_date}")
        if self.initial_cash <= 0:
            raise ValueError("initial_cash must be positive")
        if not 0 <= self.commission < 1:
            raise ValueError("commission must be a fraction in [0, 1)")

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "strategy_code": self.strategy_code,
            "symbol": self.symbol.upper(),
            "exchange": self.exchange.upper(),
            "from_date": self.from_date,
            "to_date": self.to_date,
            "initial_cash": self.initial_cash,
            "commission": self.commission,
        }
        if self.interval:
            payload["interval"] = self.interval
        if self.strategy_id:
            payload["strategy_id"] = self.strategy_id
        return payload


@dataclass
class BacktestResult:
    backtest_id: str
    symbol: str = ""
    exchange: str = ""
    from_date: str = ""
    to_date: str = ""
    initial_cash: float = 0.0
    final_value: float = 0.0
    total_return: float = 0.0
    total_return_pct: float = 0.0
    total_pnl: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: Optional[float] = None
    sharpe_ratio: Optional[float] = None
    max_drawdown: Optional[float] = None
    max_drawdown_pct: Optional[float] = None
    system_quality_number: Optional[float] = None
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    data_bars_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BacktestResult":
        def num(key: str) -> Optional[float]:
            value = data.get(key)
            return float(value) if value is not None else None

        return cls(
            backtest_id=str(data.get("backtest_id") or data.get("id") or ""),
            symbol=data.get("symbol", ""),
            exchange=data.get("exchange", ""),
            from_date=data.get("from_date", ""),
            to_date=data.get("to_date", ""),
            initial_cash=float(data.get("initial_cash") or 0.0),
            final_value=float(data.get("final_value") or 0.0),
            total_return=float(data.get("total_return") or 0.0),
            total_return_pct=float(data.get("total_return_pct") or 0.0),
            total_pnl=float(data.get("total_pnl") or 0.0),
            total_trades=int(data.get("total_trades") or 0),
            winning_trades=int(data.get("winning_trades") or 0),
            losing_trades=int(data.get("losing_trades") or 0),
            win_rate=num("win_rate"),
            sharpe_ratio=num("sharpe_ratio"),
            max_drawdown=num("max_drawdown"),
            max_drawdown_pct=num("max_drawdown_pct"),
            system_quality_number=num("system_quality_number"),
            transactions=list(data.get("transactions") or []),
            data_bars_count=int(data.get("data_bars_count") or 0),
        )


@dataclass
class BacktestHistoryItem:
    id: str
    symbol: str
    exchange: str = ""
    strategy_id: Optional[str] = None
    from_date: str = ""
    to_date: str = ""
    total_return_pct: float = 0.0
    total_trades: int = 0
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BacktestHistoryItem":
        return cls(
            id=str(data.get("id") or data.get("backtest_id") or ""),
            symbol=data.get("symbol", ""),
            exchange=data.get("exchange", ""),
            strategy_id=data.get("strategy_id"),
            from_date=data.get("from_date", ""),
            to_date=data.get("to_date", ""),
            total_return_pct=float(data.get("total_return_pct") or 0.0),
            total_trades=int(data.get("total_trades") or 0),
            created_at=data.get("created_at", ""),
        )


@dataclass
class BacktestJob:
    job_id: str
    status: str
    symbol: str = ""
    exchange: str = ""
    from_date: str = ""
    to_date: str = ""
    intervals: List[str] = field(default_factory=list)
    progress: float = 0.0
    current_bar: Optional[int] = None
    total_bars: Optional[int] = None
    progress_message: str = ""
    error_message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    can_cancel: bool = False
    can_pause: bool = False
    can_resume: bool = False
    created_at: str = ""
    completed_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BacktestJob":
        return cls(
            job_id=str(data.get("job_id") or data.get("id") or ""),
            status=data.get("status", ""),
            symbol=data.get("symbol", ""),
            exchange=data.get("exchange", ""),
            from_date=data.get("from_date", ""),
            to_date=data.get("to_date", ""),
            intervals=list(data.get("intervals") or []),
            progress=float(data.get("progress") or 0.0),
            current_bar=data.get("current_bar"),
            total_bars=data.get("total_bars"),
            progress_message=data.get("progress_message") or "",
            error_message=data.get("error_message"),
            result=data.get("result"),
            can_cancel=bool(data.get("can_cancel", False)),
            can_pause=bool(data.get("can_pause", False)),
            can_resume=bool(data.get("can_resume", False)),
            created_at=data.get("created_at", ""),
            completed_at=data.get("completed_at"),
        )


# ─── Synchronous runs ─────────────────────────────────────────────────────────

async def run_backtest(
    client: ApiClient,
    request: BacktestRequest,
    broker_type: str = DEFAULT_BROKER,
    credentials_id: Optional[str] = None,
) -> BacktestResult:
    request.validate()
    logger.info(
        f"Backtest {request.symbol}@{request.exchange} "
        f"{request.from_date}..{request.to_date} (broker={broker_type})"
    )
    try:
        data = await client.post(
            "/api/backtesting/run",
            request.to_dict(),
            params={"broker_type": broker_type, "credentials_id": credentials_id},
        )
    except ApiError as exc:
        message = explain_backtest_error(exc.detail, request.symbol.upper())
        raise type(exc)(exc.status_code, message) from exc

    result = BacktestResult.from_dict(data or {})
    logger.info(
        f"Backtest {result.backtest_id}: {result.total_trades} trades, "
        f"return {result.total_return_pct:.2f}%"
    )
    return result


async def quick_backtest(
    client: ApiClient,
    strategy_code: str,
    symbol: str,
    from_date: str,
    to_date: str,
    broker_type: str = DEFAULT_BROKER,
    credentials_id: Optional[str] = None,
) -> BacktestResult:
    data = await client.post(
        "/api/backtesting/quick",
        {"strategy_code": strategy_code, "symbol": symbol, "from_date": from_date, "to_date": to_date},
        params={"broker_type": broker_type, "credentials_id": credentials_id},
    )
    return BacktestResult.from_dict(data or {})


# ─── History ──────────────────────────────────────────────────────────────────

async def get_backtest_history(client: ApiClient, limit: int = 50) -> List[BacktestHistoryItem]:
    data = await client.get("/api/backtesting/history", {"limit": limit})
    items = data.get("backtests", []) if isinstance(data, dict) else (data or [])
    return [BacktestHistoryItem.from_dict(b) for b in items]


async def get_backtest(client: ApiClient, backtest_id: str) -> BacktestResult:
    data = await client.get(f"/api/backtesting/{backtest_id}")
    return BacktestResult.from_dict(data or {})


# ─── Jobs ─────────────────────────────────────────────────────────────────────

async def list_jobs(
    client: ApiClient,
    strategy_id: Optional[str] = None,
    status_filter: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[BacktestJob]:
    data = await client.get(
        "/api/backtesting/jobs",
        {"strategy_id": strategy_id, "status_filter": status_filter, "limit": limit},
    )
    items = data.get("jobs", []) if isinstance(data, dict) else (data or [])
    return [BacktestJob.from_dict(j) for j in items]


async def get_job(client: ApiClient, job_id: str) -> Dict[str, Any]:
    """Full job record including the complete result once it has finished."""
    return await client.get(f"/api/backtesting/jobs/{job_id}") or {}


async def get_job_result(client: ApiClient, job_id: str) -> Optional[Dict[str, Any]]:
    job = await get_job(client, job_id)
    return job.get("result") or None


async def cancel_job(client: ApiClient, job_id: str) -> None:
    await client.post(f"/api/backtesting/jobs/{job_id}/cancel")
    logger.info(f"Backtest job {job_id} cancel requested")


async def pause_job(client: ApiClient, job_id: str, reason: str = "User requested") -> None:
    await client.post(f"/api/backtesting/jobs/{job_id}/pause", {"reason": reason})
    logger.info(f"Backtest job {job_id} pause requested")


async def resume_job(client: ApiClient, job_id: str) -> None:
    await client.post(f"/api/backtesting/jobs/{job_id}/resume")
    logger.info(f"Backtest job {job_id} resume requested")


async def get_job_historical_data(
    client: ApiClient,
    job_id: str,
    limit: int = 1000,
    interval: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """OHLC bars the job ran over (non-streaming counterpart of the data stream)."""
    data = await client.get(
        f"/api/backtesting/jobs/{job_id}/historical-data",
        {"limit": limit, "format": "json", "interval": interval},
    )
    return list(data or [])
