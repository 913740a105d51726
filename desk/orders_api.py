"""
orders_api.py — Order entry and order book.

Orders are routed by the backend to the user's broker; every call accepts
the broker type and, optionally, which stored credentials to use.

Usage:
    order = await place_order(client, OrderRequest("INFY", "NSE", "BUY", 10))
    orders = await list_orders(client, status_filter="OPEN", sync=True)
    await cancel_order(client, order.id)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

from api_client import ApiClient


# ─── Constants ────────────────────────────────────────────────────────────────

TRANSACTION_TYPES = ("BUY", "SELL")
ORDER_TYPES = ("MARKET", "LIMIT", "SL", "SL-M")
PRODUCTS = ("CNC", "MIS", "NRML")
VARIETIES = ("regular", "amo", "co", "iceberg", "auction")
VALIDITIES = ("DAY", "IOC", "TTL")

PRICED_ORDER_TYPES = ("LIMIT", "SL")
TRIGGERED_ORDER_TYPES = ("SL", "SL-M")


# ─── Records ──────────────────────────────────────────────────────────────────

@dataclass
class Order:
    id: str
    symbol: str
    exchange: str
    transaction_type: str
    quantity: int
    order_type: str
    status: str
    strategy_id: Optional[str] = None
    price: Optional[float] = None
    trigger_price: Optional[float] = None
    filled_quantity: int = 0
    average_price: Optional[float] = None
    broker_order_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        return cls(
            id=str(data.get("id", "")),
            symbol=data.get("symbol", ""),
            exchange=data.get("exchange", ""),
            transaction_type=data.get("transaction_type", ""),
            quantity=int(data.get("quantity") or 0),
            order_type=data.get("order_type", ""),
            status=data.get("status", ""),
            strategy_id=data.get("strategy_id"),
            price=data.get("price"),
            trigger_price=data.get("trigger_price"),
            filled_quantity=int(data.get("filled_quantity") or 0),
            average_price=data.get("average_price"),
            broker_order_id=data.get("broker_order_id"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class OrderRequest:
    symbol: str
    exchange: str
    transaction_type: str
    quantity: int
    order_type: str = "MARKET"
    product: str = "CNC"
    price: Optional[float] = None
    trigger_price: Optional[float] = None
    strategy_id: Optional[str] = None

    def validate(self) -> None:
        """Raise ValueError for requests the broker would reject outright."""
        if not self.symbol:
            raise ValueError("symbol is required")
        if self.transaction_type not in TRANSACTION_TYPES:
            raise ValueError(f"transaction_type must be one of {TRANSACTION_TYPES}")
        if self.order_type not in ORDER_TYPES:
            raise ValueError(f"order_type must be one of {ORDER_TYPES}")
        if self.product not in PRODUCTS:
            raise ValueError(f"product must be one of {PRODUCTS}")
        if self.quantity <= 0:
            raise ValueError(f"quantity must be positive, got {self.quantity}")
        if self.order_type in PRICED_ORDER_TYPES and not self.price:
            raise ValueError(f"{self.order_type} orders need a price")
        if self.order_type in TRIGGERED_ORDER_TYPES and not self.trigger_price:
            raise ValueError(f"{self.order_type} orders need a trigger_price")

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "symbol": self.symbol,
            "exchange": self.exchange,
            "transaction_type": self.transaction_type,
            "quantity": self.quantity,
            "order_type": self.order_type,
            "product": self.product,
        }
        for name in ("price", "trigger_price", "strategy_id"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload


def _broker_params(broker_type: Optional[str], credentials_id: Optional[str]) -> Dict[str, Any]:
    return {"broker_type": broker_type, "credentials_id": credentials_id}


# ─── Orders API ───────────────────────────────────────────────────────────────

async def place_order(
    client: ApiClient,
    request: OrderRequest,
    broker_type: Optional[str] = None,
    credentials_id: Optional[str] = None,
    variety: Optional[str] = None,
    validity: Optional[str] = None,
    disclosed_quantity: Optional[int] = None,
) -> Order:
    request.validate()
    if variety is not None and variety not in VARIETIES:
        raise ValueError(f"variety must be one of {VARIETIES}")
    if validity is not None and validity not in VALIDITIES:
        raise ValueError(f"validity must be one of {VALIDITIES}")
    params = _broker_params(broker_type, credentials_id)
    params.update(variety=variety, validity=validity, disclosed_quantity=disclosed_quantity)
    data = await client.post("/api/orders", request.to_dict(), params=params)
    order = Order.from_dict(data or {})
    logger.info(
        f"Placed {request.transaction_type} {request.quantity} {request.symbol} "
        f"({request.order_type}) → order {order.id}"
    )
    return order


async def list_orders(
    client: ApiClient,
    broker_type: Optional[str] = None,
    credentials_id: Optional[str] = None,
    limit: Optional[int] = None,
    status_filter: Optional[str] = None,
    sync: Optional[bool] = None,
) -> List[Order]:
    params = _broker_params(broker_type, credentials_id)
    params.update(limit=limit, status_filter=status_filter, sync=sync)
    data = await client.get("/api/orders", params)
    items = data.get("orders", []) if isinstance(data, dict) else (data or [])
    return [Order.from_dict(o) for o in items]


async def get_order(
    client: ApiClient,
    order_id: str,
    broker_type: Optional[str] = None,
    credentials_id: Optional[str] = None,
    sync: Optional[bool] = None,
) -> Order:
    params = _broker_params(broker_type, credentials_id)
    params["sync"] = sync
    data = await client.get(f"/api/orders/{order_id}", params)
    return Order.from_dict(data or {})


async def modify_order(
    client: ApiClient,
    order_id: str,
    updates: Dict[str, Any],
    broker_type: Optional[str] = None,
    credentials_id: Optional[str] = None,
) -> Order:
    data = await client.put(
        f"/api/orders/{order_id}", updates, params=_broker_params(broker_type, credentials_id)
    )
    return Order.from_dict(data or {})


async def cancel_order(
    client: ApiClient,
    order_id: str,
    broker_type: Optional[str] = None,
    credentials_id: Optional[str] = None,
) -> Order:
    data = await client.post(
        f"/api/orders/{order_id}/cancel", params=_broker_params(broker_type, credentials_id)
    )
    logger.info(f"Cancelled order {order_id}")
    return Order.from_dict(data or {})


async def sync_order_status(
    client: ApiClient,
    order_id: str,
    broker_type: Optional[str] = None,
    credentials_id: Optional[str] = None,
) -> Order:
    data = await client.post(
        f"/api/orders/{order_id}/sync", params=_broker_params(broker_type, credentials_id)
    )
    return Order.from_dict(data or {})


async def get_order_history(
    client: ApiClient,
    broker_type: Optional[str] = None,
    credentials_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Raw broker-side order history entries."""
    data = await client.get("/api/orders/history", _broker_params(broker_type, credentials_id))
    return list(data or [])
