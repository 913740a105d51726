"""
market_data_api.py — OHLC bars for charts.

The backend names the bar timestamp differently per endpoint (`date`,
`timestamp`, `time`); OHLCPoint.from_dict accepts any of them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from api_client import ApiClient
from backtesting_api import get_job_historical_data, list_jobs


@dataclass(frozen=True)
class OHLCPoint:
    time: str
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OHLCPoint":
        volume = data.get("volume")
        return cls(
            time=str(data.get("date") or data.get("timestamp") or data.get("time") or ""),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(volume) if volume is not None else None,
        )


def to_points(rows) -> List[OHLCPoint]:
    return [OHLCPoint.from_dict(r) for r in rows if isinstance(r, dict)]


async def get_live_market_data(
    client: ApiClient,
    symbol: str,
    exchange: str = "NSE",
    interval: str = "day",
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
) -> List[OHLCPoint]:
    data = await client.get(
        "/api/market-data/ohlc",
        {
            "symbol": symbol,
            "exchange": exchange,
            "interval": interval,
            "from_date": from_date,
            "to_date": to_date,
        },
    )
    return to_points(data or [])


async def get_historical_data(
    client: ApiClient,
    symbol: str,
    from_date: str,
    to_date: str,
    exchange: str = "NSE",
    interval: str = "day",
) -> List[OHLCPoint]:
    data = await client.post(
        "/api/historical-data/fetch",
        {
            "symbol": symbol,
            "exchange": exchange,
            "from_date": from_date,
            "to_date": to_date,
            "interval": interval,
        },
    )
    rows = (data or {}).get("data") if isinstance(data, dict) else None
    if not isinstance(rows, list):
        return []
    return to_points(rows)


async def get_backtest_chart_data(
    client: ApiClient,
    strategy_id: str,
    job_id: Optional[str] = None,
) -> List[OHLCPoint]:
    """
    Bars behind a strategy's backtest: the given job, or else the latest job
    for the strategy. Empty when the strategy has never been backtested.
    """
    if job_id is None:
        jobs = await list_jobs(client, strategy_id=strategy_id, limit=1)
        if not jobs:
            return []
        job_id = jobs[0].job_id
    rows = await get_job_historical_data(client, job_id)
    return to_points(rows)
