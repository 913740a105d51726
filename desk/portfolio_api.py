"""
portfolio_api.py — Portfolio summary, positions, holdings, P&L and margins,
as reported by the user's broker through the backend.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from api_client import ApiClient


@dataclass
class Portfolio:
    total_value: float = 0.0
    available_cash: float = 0.0
    invested_amount: float = 0.0
    profit_loss: float = 0.0
    profit_loss_percent: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Portfolio":
        return cls(
            total_value=float(data.get("total_value") or 0.0),
            available_cash=float(data.get("available_cash") or 0.0),
            invested_amount=float(data.get("invested_amount") or 0.0),
            profit_loss=float(data.get("profit_loss") or 0.0),
            profit_loss_percent=float(data.get("profit_loss_percent") or 0.0),
        )


@dataclass
class Position:
    symbol: str
    exchange: str
    quantity: int
    average_price: float = 0.0
    last_price: float = 0.0
    pnl: float = 0.0
    product: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            symbol=data.get("symbol") or data.get("tradingsymbol", ""),
            exchange=data.get("exchange", ""),
            quantity=int(data.get("quantity") or 0),
            average_price=float(data.get("average_price") or 0.0),
            last_price=float(data.get("last_price") or 0.0),
            pnl=float(data.get("pnl") or 0.0),
            product=data.get("product", ""),
        )


def _params(broker_type: Optional[str], credentials_id: Optional[str]) -> Dict[str, Any]:
    return {"broker_type": broker_type, "credentials_id": credentials_id}


async def get_portfolio(
    client: ApiClient, broker_type: Optional[str] = None, credentials_id: Optional[str] = None
) -> Portfolio:
    data = await client.get("/api/portfolio", _params(broker_type, credentials_id))
    return Portfolio.from_dict(data or {})


async def get_positions(
    client: ApiClient, broker_type: Optional[str] = None, credentials_id: Optional[str] = None
) -> List[Position]:
    data = await client.get("/api/portfolio/positions", _params(broker_type, credentials_id))
    return [Position.from_dict(p) for p in data or []]


async def get_holdings(
    client: ApiClient, broker_type: Optional[str] = None, credentials_id: Optional[str] = None
) -> List[Position]:
    # holdings share the position shape (symbol, quantity, average/last price, pnl)
    data = await client.get("/api/portfolio/holdings", _params(broker_type, credentials_id))
    return [Position.from_dict(h) for h in data or []]


async def get_pnl(
    client: ApiClient, broker_type: Optional[str] = None, credentials_id: Optional[str] = None
) -> Dict[str, float]:
    data = await client.get("/api/portfolio/pnl", _params(broker_type, credentials_id))
    return {k: float(v) for k, v in (data or {}).items() if isinstance(v, (int, float))}


async def get_margins(
    client: ApiClient, broker_type: Optional[str] = None, credentials_id: Optional[str] = None
) -> Dict[str, float]:
    data = await client.get("/api/portfolio/margins", _params(broker_type, credentials_id))
    return {k: float(v) for k, v in (data or {}).items() if isinstance(v, (int, float))}
