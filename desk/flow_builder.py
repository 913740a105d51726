"""
flow_builder.py — Flow-based visual strategy builder.

A strategy model is an ordered list of steps (indicator → condition → action
→ risk). FlowBuilder holds the list for the selected strategy, keeps `order`
numbered 1..n through every edit, autosaves the model after a quiet period
and asks the backend to turn it into code on demand.

Older strategies store a flat model ({indicators, entries, risk}); it is
migrated to a flow the first time it is loaded.

Usage:
    builder = FlowBuilder.for_client(client)
    builder.load(strategy.id, strategy.name, strategy.strategy_model)
    step = builder.add_step(StepType.INDICATOR)
    builder.update_step(step.id, data={"indicator_type": "SMA", "period": 50})
    await builder.generate_code()
"""

from __future__ import annotations

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger

from api_client import ApiClient
from debounce import DebouncedTask
from errors import DeskError, describe_error
from strategies_api import get_strategy, update_visual_builder_model


MODEL_VERSION = "2.0"

SaveModelFn = Callable[[str, Dict[str, Any], bool], Awaitable[Any]]  # (strategy_id, model, generate_code)
RefreshFn = Callable[[str], Awaitable[Any]]


class StepType(str, Enum):
    INDICATOR = "indicator"
    CONDITION = "condition"
    ACTION = "action"
    RISK = "risk"


_DEFAULT_TITLES = {
    StepType.INDICATOR: "New Indicator",
    StepType.CONDITION: "New Condition",
    StepType.ACTION: "New Action",
    StepType.RISK: "New Risk Management",
}


def default_title(step_type: StepType) -> str:
    return _DEFAULT_TITLES[StepType(step_type)]


def default_data(step_type: StepType) -> Dict[str, Any]:
    step_type = StepType(step_type)
    if step_type == StepType.INDICATOR:
        return {"indicator_type": "", "source": "close", "period": 20}
    if step_type == StepType.CONDITION:
        return {"condition_type": "", "left_operand": "", "operator": "", "right_operand": ""}
    if step_type == StepType.ACTION:
        return {"action_type": "", "quantity": "all"}
    return {"risk_type": "", "value": 0}


# ─── Steps ────────────────────────────────────────────────────────────────────

@dataclass
class FlowStep:
    id: str
    type: StepType
    order: int
    title: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowStep":
        return cls(
            id=str(data["id"]),
            type=StepType(data["type"]),
            order=int(data.get("order") or 0),
            title=data.get("title", ""),
            data=dict(data.get("data") or {}),
            depends_on=list(data.get("depends_on") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "order": self.order,
            "title": self.title,
            "data": dict(self.data),
            "depends_on": list(self.depends_on),
        }


def convert_legacy_model_to_flow(model: Dict[str, Any]) -> List[FlowStep]:
    """
    {indicators, entries, risk} → steps. Each entry becomes a condition, one
    buy action depends on all of them, and risk.stop_loss_pct becomes a
    stop-loss step after the buy.
    """
    flow: List[FlowStep] = []

    def _next_order() -> int:
        return len(flow) + 1

    for idx, ind in enumerate(model.get("indicators") or []):
        period = ind.get("period")
        flow.append(FlowStep(
            id=f"ind_{idx}",
            type=StepType.INDICATOR,
            order=_next_order(),
            title=f"{ind.get('type', '')}({period if period is not None else ''})",
            data={
                "indicator_type": ind.get("type"),
                "source": ind.get("source") or "close",
                "period": period,
            },
        ))

    entries = model.get("entries") or []
    for idx, entry in enumerate(entries):
        flow.append(FlowStep(
            id=f"entry_{idx}",
            type=StepType.CONDITION,
            order=_next_order(),
            title=entry.get("description") or "Entry Condition",
            data={"condition_type": entry.get("type")},
        ))

    if entries:
        flow.append(FlowStep(
            id="action_buy",
            type=StepType.ACTION,
            order=_next_order(),
            title="Buy Signal",
            data={"action_type": "buy", "quantity": "all"},
            depends_on=[f"entry_{idx}" for idx in range(len(entries))],
        ))

    stop_loss = (model.get("risk") or {}).get("stop_loss_pct")
    if stop_loss:
        flow.append(FlowStep(
            id="risk_stop_loss",
            type=StepType.RISK,
            order=_next_order(),
            title="Stop Loss",
            data={"risk_type": "stop_loss", "value": stop_loss},
            depends_on=["action_buy"],
        ))

    return flow


def load_flow(model: Optional[Dict[str, Any]]) -> List[FlowStep]:
    """Steps for a stored model: its flow sorted by order, or a migrated legacy model."""
    if not model:
        return []
    steps = model.get("flow")
    if isinstance(steps, list):
        loaded = [FlowStep.from_dict(s) for s in steps]
        return sorted(loaded, key=lambda s: s.order or 0)
    return convert_legacy_model_to_flow(model)


def build_model(flow: List[FlowStep], strategy_name: Optional[str]) -> Dict[str, Any]:
    class_name = re.sub(r"\s+", "", strategy_name or "") or "Strategy"
    return {
        "meta": {"class_name": class_name, "version": MODEL_VERSION},
        "flow": [s.to_dict() for s in flow],
    }


def _renumber(flow: List[FlowStep]) -> None:
    for idx, step in enumerate(flow):
        step.order = idx + 1


# ─── Builder ──────────────────────────────────────────────────────────────────

class FlowBuilder:
    """Editable flow for one strategy with debounced autosave."""

    def __init__(
        self,
        save: SaveModelFn,
        refresh: Optional[RefreshFn] = None,
        autosave_delay: float = 2.0,
    ) -> None:
        self._save = save
        self._refresh = refresh
        self.strategy_id: Optional[str] = None
        self.strategy_name: Optional[str] = None
        self.flow: List[FlowStep] = []

        self.saving = False
        self.generating = False
        self.error: Optional[str] = None
        self.last_model: Optional[Dict[str, Any]] = None

        self._autosave: DebouncedTask[Tuple[str, Dict[str, Any]]] = DebouncedTask(
            autosave_delay, self._autosave_action, name="flow-autosave"
        )
        self._flushes: List[asyncio.Task] = []

    @classmethod
    def for_client(cls, client: ApiClient, autosave_delay: float = 2.0) -> "FlowBuilder":
        async def _save(strategy_id: str, model: Dict[str, Any], generate_code: bool) -> Any:
            return await update_visual_builder_model(client, strategy_id, model, generate_code)

        async def _refresh(strategy_id: str) -> Any:
            return await get_strategy(client, strategy_id)

        return cls(_save, _refresh, autosave_delay)

    # ─── Loading ──────────────────────────────────────────────────────────────

    def load(self, strategy_id: Optional[str], name: Optional[str], model: Optional[Dict[str, Any]]) -> None:
        """Switch to a strategy. An unsaved edit of the previous one is saved to it right away."""
        if self._autosave.pending:
            item = self._autosave.detach()
            self._flushes.append(asyncio.get_running_loop().create_task(self._autosave.run(item)))
        self.strategy_id = strategy_id
        self.strategy_name = name
        self.flow = load_flow(model) if strategy_id else []
        self.error = None

    def model(self) -> Dict[str, Any]:
        return build_model(self.flow, self.strategy_name)

    def get_step(self, step_id: str) -> Optional[FlowStep]:
        for step in self.flow:
            if step.id == step_id:
                return step
        return None

    # ─── Editing ──────────────────────────────────────────────────────────────

    def add_step(self, step_type: StepType) -> FlowStep:
        step_type = StepType(step_type)
        step = FlowStep(
            id=f"step_{uuid.uuid4().hex[:12]}",
            type=step_type,
            order=len(self.flow) + 1,
            title=default_title(step_type),
            data=default_data(step_type),
        )
        self.flow.append(step)
        self._changed()
        return step

    def remove_step(self, step_id: str) -> bool:
        remaining = [s for s in self.flow if s.id != step_id]
        if len(remaining) == len(self.flow):
            return False
        _renumber(remaining)
        self.flow = remaining
        self._changed()
        return True

    def update_step(
        self,
        step_id: str,
        title: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        depends_on: Optional[List[str]] = None,
    ) -> FlowStep:
        step = self.get_step(step_id)
        if step is None:
            raise ValueError(f"unknown step {step_id}")
        if title is not None:
            step.title = title
        if data is not None:
            step.data = {**step.data, **data}
        if depends_on is not None:
            step.depends_on = list(depends_on)
        self._changed()
        return step

    def move_step(self, step_id: str, over_id: str) -> bool:
        """Drag `step_id` onto the position of `over_id`."""
        if step_id == over_id:
            return False
        ids = [s.id for s in self.flow]
        if step_id not in ids or over_id not in ids:
            return False
        old_index, new_index = ids.index(step_id), ids.index(over_id)
        step = self.flow.pop(old_index)
        self.flow.insert(new_index, step)
        _renumber(self.flow)
        self._changed()
        return True

    # ─── Persistence ──────────────────────────────────────────────────────────

    @property
    def autosave_pending(self) -> bool:
        return self._autosave.pending

    async def generate_code(self) -> Any:
        """
        Save with generate_code=True, then refresh the strategy so the new code
        is picked up. Returns the refreshed strategy, or None on failure.
        """
        if not self.strategy_id:
            raise ValueError("no strategy selected")
        pending = self._autosave.detach()
        if pending is not None and pending[0] != self.strategy_id:
            await self._autosave.run(pending)
        self.generating = True
        strategy_id = self.strategy_id
        try:
            if not await self._persist(strategy_id, self.model(), generate_code=True):
                return None
            if self._refresh is None:
                return None
            try:
                return await self._refresh(strategy_id)
            except DeskError as exc:
                self.error = describe_error(exc)
                logger.error(f"Flow builder: refresh of {strategy_id} failed: {self.error}")
                return None
        finally:
            self.generating = False

    async def flush(self) -> None:
        await self._autosave.flush()

    async def close(self) -> None:
        while self._flushes:
            await self._flushes.pop(0)
        await self._autosave.flush()
        await self._autosave.wait()

    # ─── Internals ────────────────────────────────────────────────────────────

    def _changed(self) -> None:
        if self.flow and self.strategy_id and not self.generating:
            self._autosave.trigger((self.strategy_id, self.model()))

    async def _autosave_action(self, item: Tuple[str, Dict[str, Any]]) -> None:
        strategy_id, model = item
        if self.generating and strategy_id == self.strategy_id:
            return
        await self._persist(strategy_id, model, generate_code=False)

    async def _persist(self, strategy_id: str, model: Dict[str, Any], generate_code: bool) -> bool:
        self.saving = True
        try:
            await self._save(strategy_id, model, generate_code)
        except DeskError as exc:
            self.error = describe_error(exc)
            logger.error(f"Flow builder: failed to save flow for {strategy_id}: {self.error}")
            return False
        finally:
            self.saving = False
        self.error = None
        self.last_model = model
        logger.info(f"Flow builder: saved {len(model['flow'])} steps for {strategy_id}"
                    + (" (generating code)" if generate_code else ""))
        return True
