"""
strategies_api.py — Strategy CRUD, lifecycle actions and code validation.

Strategies are created and edited here but executed by the backend; the
client only issues start / stop / pause / resume and reads back status.

Usage:
    strategies = await list_strategies(client)
    await start_strategy(client, strategies[0].id)
    result = await validate_code(client, "def initialize(context): ...")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger

from api_client import ApiClient


DEFAULT_BROKER = "zerodha"


# ─── Status ───────────────────────────────────────────────────────────────────

class StrategyStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"

    @classmethod
    def parse(cls, value: Optional[str]) -> "StrategyStatus":
        """Map a backend status string onto the fixed enumeration."""
        if not value:
            return cls.DRAFT
        lowered = str(value).lower()
        if lowered == "inactive":
            return cls.STOPPED
        try:
            return cls(lowered)
        except ValueError:
            logger.warning(f"Unknown strategy status {value!r}, treating as error")
            return cls.ERROR


# ─── Records ──────────────────────────────────────────────────────────────────

@dataclass
class StrategySummary:
    """Read-only projection shown in lists and refreshed by the status stream."""
    id: str
    name: str
    status: StrategyStatus
    total_trades: int = 0
    win_rate: Optional[float] = None
    total_pnl: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategySummary":
        win_rate = data.get("win_rate")
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            status=StrategyStatus.parse(data.get("status")),
            total_trades=int(data.get("total_trades") or 0),
            win_rate=float(win_rate) if win_rate is not None else None,
            total_pnl=float(data.get("total_pnl") or 0.0),
        )


@dataclass
class Strategy:
    id: str
    name: str
    status: StrategyStatus
    code: str = ""
    description: str = ""
    user_id: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    strategy_model: Optional[Dict[str, Any]] = None
    created_at: str = ""
    updated_at: str = ""
    total_trades: int = 0
    win_rate: Optional[float] = None
    total_pnl: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Strategy":
        win_rate = data.get("win_rate")
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            status=StrategyStatus.parse(data.get("status")),
            # older records use `code`, newer ones `strategy_code`
            code=data.get("strategy_code") or data.get("code") or "",
            description=data.get("description") or "",
            user_id=data.get("user_id", ""),
            parameters=data.get("parameters") or {},
            strategy_model=data.get("strategy_model"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            total_trades=int(data.get("total_trades") or 0),
            win_rate=float(win_rate) if win_rate is not None else None,
            total_pnl=float(data.get("total_pnl") or 0.0),
        )

    def summary(self) -> StrategySummary:
        return StrategySummary(
            id=self.id,
            name=self.name,
            status=self.status,
            total_trades=self.total_trades,
            win_rate=self.win_rate,
            total_pnl=self.total_pnl,
        )


@dataclass
class StrategyActionResult:
    strategy_id: str
    status: StrategyStatus
    message: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any], strategy_id: str) -> "StrategyActionResult":
        return cls(
            strategy_id=str(data.get("strategy_id") or data.get("id") or strategy_id),
            status=StrategyStatus.parse(data.get("status")),
            message=data.get("message", ""),
        )


@dataclass
class ValidationIssue:
    line: int
    column: int
    message: str
    severity: str = "error"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationIssue":
        return cls(
            line=int(data.get("line") or 0),
            column=int(data.get("column") or 0),
            message=data.get("message", ""),
            severity=data.get("severity", "error"),
        )


@dataclass
class ValidationResult:
    valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationResult":
        return cls(
            valid=bool(data.get("valid", False)),
            errors=[ValidationIssue.from_dict(e) for e in data.get("errors") or []],
            warnings=[ValidationIssue.from_dict(w) for w in data.get("warnings") or []],
            suggestions=list(data.get("suggestions") or []),
        )


# ─── CRUD ─────────────────────────────────────────────────────────────────────

async def list_strategies(client: ApiClient, status_filter: Optional[str] = None) -> List[Strategy]:
    data = await client.get("/api/strategies", {"status_filter": status_filter})
    items = data.get("strategies", []) if isinstance(data, dict) else (data or [])
    return [Strategy.from_dict(s) for s in items]


async def get_strategy(client: ApiClient, strategy_id: str) -> Strategy:
    data = await client.get(f"/api/strategies/{strategy_id}")
    return Strategy.from_dict(data or {})


async def create_strategy(
    client: ApiClient,
    name: str,
    strategy_code: str = "",
    description: str = "",
    parameters: Optional[Dict[str, Any]] = None,
) -> Strategy:
    if not name.strip():
        raise ValueError("strategy name must be non-empty")
    payload: Dict[str, Any] = {"name": name.strip(), "strategy_code": strategy_code}
    if description:
        payload["description"] = description
    if parameters:
        payload["parameters"] = parameters
    data = await client.post("/api/strategies", payload)
    strategy = Strategy.from_dict(data or {})
    logger.info(f"Created strategy {strategy.id} ({strategy.name})")
    return strategy


async def update_strategy(
    client: ApiClient,
    strategy_id: str,
    updates: Dict[str, Any],
    auto_save: bool = False,
) -> Strategy:
    """
    Partial update. auto_save=True marks the write as an editor autosave so the
    backend can skip version bookkeeping it does for explicit saves.
    """
    data = await client.put(
        f"/api/strategies/{strategy_id}",
        updates,
        params={"auto_save": auto_save} if auto_save else None,
    )
    return Strategy.from_dict(data or {})


async def delete_strategy(client: ApiClient, strategy_id: str) -> None:
    await client.delete(f"/api/strategies/{strategy_id}")
    logger.info(f"Deleted strategy {strategy_id}")


# ─── Lifecycle ────────────────────────────────────────────────────────────────

async def _action(client: ApiClient, strategy_id: str, action: str, params=None) -> StrategyActionResult:
    data = await client.post(f"/api/strategies/{strategy_id}/{action}", params=params)
    result = StrategyActionResult.from_dict(data or {}, strategy_id)
    logger.info(f"Strategy {strategy_id} {action} → {result.status.value}")
    return result


async def start_strategy(
    client: ApiClient,
    strategy_id: str,
    broker_type: str = DEFAULT_BROKER,
    credentials_id: Optional[str] = None,
) -> StrategyActionResult:
    return await _action(
        client, strategy_id, "start",
        {"broker_type": broker_type, "credentials_id": credentials_id},
    )


async def stop_strategy(client: ApiClient, strategy_id: str) -> StrategyActionResult:
    return await _action(client, strategy_id, "stop")


async def pause_strategy(client: ApiClient, strategy_id: str) -> StrategyActionResult:
    return await _action(client, strategy_id, "pause")


async def resume_strategy(
    client: ApiClient,
    strategy_id: str,
    broker_type: str = DEFAULT_BROKER,
    credentials_id: Optional[str] = None,
) -> StrategyActionResult:
    return await _action(
        client, strategy_id, "resume",
        {"broker_type": broker_type, "credentials_id": credentials_id},
    )


async def get_strategy_performance(client: ApiClient, strategy_id: str) -> Dict[str, Any]:
    return await client.get(f"/api/strategies/{strategy_id}/performance") or {}


# ─── Code & visual builder ────────────────────────────────────────────────────

async def validate_code(
    client: ApiClient,
    strategy_code: str,
    market_type: Optional[str] = None,
) -> ValidationResult:
    payload: Dict[str, Any] = {"strategy_code": strategy_code}
    if market_type:
        payload["market_type"] = market_type
    data = await client.post("/api/strategies/validate-code", payload)
    return ValidationResult.from_dict(data or {})


async def get_visual_builder_model(client: ApiClient, strategy_id: str) -> Optional[Dict[str, Any]]:
    data = await client.get(f"/api/strategies/{strategy_id}/visual-builder")
    return (data or {}).get("strategy_model")


async def update_visual_builder_model(
    client: ApiClient,
    strategy_id: str,
    model: Dict[str, Any],
    generate_code: bool = False,
) -> Dict[str, Any]:
    """Save the builder model; with generate_code=True the backend also regenerates the code."""
    data = await client.put(
        f"/api/strategies/{strategy_id}/visual-builder",
        {"strategy_model": model, "generate_code": generate_code},
    )
    return data or {}
