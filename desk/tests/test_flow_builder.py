"""
test_flow_builder.py — Tests for flow_builder.py (loading, migration, editing, autosave).
"""

from __future__ import annotations

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import asyncio
from unittest.mock import AsyncMock

import pytest

from errors import ServerError
from flow_builder import (
    MODEL_VERSION,
    FlowBuilder,
    FlowStep,
    StepType,
    build_model,
    convert_legacy_model_to_flow,
    default_data,
    default_title,
    load_flow,
)


# ─── Helpers ──────────────────────────────────────────────────────────────────

WINDOW = 0.05

LEGACY = {
    "indicators": [{"type": "SMA", "period": 20}, {"type": "RSI", "period": 14, "source": "open"}],
    "entries": [{"type": "crossover", "description": "SMA crosses up"}, {"type": "rsi_below"}],
    "risk": {"stop_loss_pct": 2.5},
}


def step_dict(sid: str, order: int, step_type: str = "indicator") -> dict:
    return {"id": sid, "type": step_type, "order": order, "title": sid, "data": {}, "depends_on": []}


def make_builder(**kwargs) -> FlowBuilder:
    kwargs.setdefault("save", AsyncMock())
    kwargs.setdefault("autosave_delay", WINDOW)
    return FlowBuilder(**kwargs)


# ─── Loading ──────────────────────────────────────────────────────────────────

class TestLoadFlow:
    def test_empty_model(self):
        assert load_flow(None) == []
        assert load_flow({}) == []

    def test_flow_sorted_by_order(self):
        flow = load_flow({"flow": [step_dict("b", 2), step_dict("a", 1), step_dict("c", 3)]})
        assert [s.id for s in flow] == ["a", "b", "c"]

    def test_legacy_model_migrated(self):
        flow = convert_legacy_model_to_flow(LEGACY)
        assert [s.id for s in flow] == ["ind_0", "ind_1", "entry_0", "entry_1", "action_buy", "risk_stop_loss"]
        assert [s.order for s in flow] == [1, 2, 3, 4, 5, 6]

    def test_legacy_details(self):
        flow = {s.id: s for s in load_flow(LEGACY)}
        assert flow["ind_0"].title == "SMA(20)"
        assert flow["ind_0"].data["source"] == "close"
        assert flow["ind_1"].data["source"] == "open"
        assert flow["entry_0"].title == "SMA crosses up"
        assert flow["entry_1"].title == "Entry Condition"
        assert flow["action_buy"].depends_on == ["entry_0", "entry_1"]
        assert flow["risk_stop_loss"].data == {"risk_type": "stop_loss", "value": 2.5}
        assert flow["risk_stop_loss"].depends_on == ["action_buy"]

    def test_no_entries_means_no_buy_action(self):
        flow = convert_legacy_model_to_flow({"indicators": [{"type": "EMA"}]})
        assert [s.type for s in flow] == [StepType.INDICATOR]
        assert flow[0].title == "EMA()"

    def test_step_round_trip(self):
        step = FlowStep.from_dict(step_dict("x", 4, "risk"))
        assert step.type == StepType.RISK
        assert step.to_dict() == step_dict("x", 4, "risk")


class TestModel:
    def test_class_name_strips_whitespace(self):
        model = build_model([], "My  Cool\tStrategy")
        assert model["meta"] == {"class_name": "MyCoolStrategy", "version": MODEL_VERSION}
        assert model["flow"] == []

    def test_default_class_name(self):
        assert build_model([], None)["meta"]["class_name"] == "Strategy"

    def test_defaults_per_type(self):
        assert default_title(StepType.RISK) == "New Risk Management"
        assert default_data(StepType.INDICATOR) == {"indicator_type": "", "source": "close", "period": 20}
        assert default_data(StepType.ACTION)["quantity"] == "all"


# ─── Editing ──────────────────────────────────────────────────────────────────

class TestEditing:
    @pytest.mark.asyncio
    async def test_add_step_appends_with_defaults(self):
        builder = make_builder()
        builder.load("s1", "Demo", None)
        step = builder.add_step(StepType.CONDITION)
        assert step.order == 1
        assert step.title == "New Condition"
        assert builder.flow == [step]
        await builder.close()

    @pytest.mark.asyncio
    async def test_remove_renumbers(self):
        builder = make_builder()
        builder.load("s1", "Demo", {"flow": [step_dict("a", 1), step_dict("b", 2), step_dict("c", 3)]})
        assert builder.remove_step("b") is True
        assert [(s.id, s.order) for s in builder.flow] == [("a", 1), ("c", 2)]
        assert builder.remove_step("zzz") is False
        await builder.close()

    @pytest.mark.asyncio
    async def test_move_renumbers(self):
        builder = make_builder()
        builder.load("s1", "Demo", {"flow": [step_dict("a", 1), step_dict("b", 2), step_dict("c", 3)]})
        assert builder.move_step("c", "a") is True
        assert [(s.id, s.order) for s in builder.flow] == [("c", 1), ("a", 2), ("b", 3)]
        assert builder.move_step("a", "a") is False
        assert builder.move_step("a", "missing") is False
        await builder.close()

    @pytest.mark.asyncio
    async def test_update_merges_data(self):
        builder = make_builder()
        builder.load("s1", "Demo", None)
        step = builder.add_step(StepType.INDICATOR)
        builder.update_step(step.id, title="SMA(50)", data={"indicator_type": "SMA", "period": 50})
        assert step.title == "SMA(50)"
        assert step.data == {"indicator_type": "SMA", "source": "close", "period": 50}
        with pytest.raises(ValueError):
            builder.update_step("missing", title="x")
        await builder.close()


# ─── Persistence ──────────────────────────────────────────────────────────────

class TestPersistence:
    @pytest.mark.asyncio
    async def test_edits_autosave_once(self):
        save = AsyncMock()
        builder = make_builder(save=save)
        builder.load("s1", "Moving Average", None)
        builder.add_step(StepType.INDICATOR)
        builder.add_step(StepType.ACTION)
        await asyncio.sleep(WINDOW * 3)
        save.assert_awaited_once()
        strategy_id, model, generate = save.await_args.args
        assert strategy_id == "s1"
        assert generate is False
        assert model["meta"]["class_name"] == "MovingAverage"
        assert [s["order"] for s in model["flow"]] == [1, 2]

    @pytest.mark.asyncio
    async def test_empty_flow_not_saved(self):
        save = AsyncMock()
        builder = make_builder(save=save)
        builder.load("s1", "Demo", {"flow": [step_dict("a", 1)]})
        builder.remove_step("a")
        await asyncio.sleep(WINDOW * 3)
        save.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_strategy_not_saved(self):
        save = AsyncMock()
        builder = make_builder(save=save)
        builder.add_step(StepType.RISK)
        await asyncio.sleep(WINDOW * 3)
        save.assert_not_called()

    @pytest.mark.asyncio
    async def test_generate_code_saves_then_refreshes(self):
        save = AsyncMock()
        refresh = AsyncMock(return_value="refreshed-strategy")
        builder = make_builder(save=save, refresh=refresh)
        builder.load("s1", "Demo", {"flow": [step_dict("a", 1)]})
        builder.add_step(StepType.ACTION)
        result = await builder.generate_code()
        assert result == "refreshed-strategy"
        save.assert_awaited_once()
        assert save.await_args.args[2] is True
        refresh.assert_awaited_once_with("s1")
        assert not builder.generating
        assert not builder.autosave_pending

    @pytest.mark.asyncio
    async def test_generate_code_failure_sets_error(self):
        save = AsyncMock(side_effect=ServerError(500, "codegen crashed"))
        refresh = AsyncMock()
        builder = make_builder(save=save, refresh=refresh)
        builder.load("s1", "Demo", {"flow": [step_dict("a", 1)]})
        assert await builder.generate_code() is None
        assert builder.error == "Server error: codegen crashed"
        refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_generate_code_requires_strategy(self):
        with pytest.raises(ValueError):
            await make_builder().generate_code()

    @pytest.mark.asyncio
    async def test_switching_strategy_saves_pending_edit_to_old_strategy(self):
        save = AsyncMock()
        builder = make_builder(save=save, autosave_delay=10)
        builder.load("s1", "Demo", None)
        builder.add_step(StepType.INDICATOR)
        builder.load("s2", "Other", None)
        await builder.close()
        save.assert_awaited_once()
        strategy_id, model, generate = save.await_args.args
        assert strategy_id == "s1"
        assert model["meta"]["class_name"] == "Demo"
        assert len(model["flow"]) == 1
        assert builder.flow == []

    @pytest.mark.asyncio
    async def test_edit_right_after_switch_keeps_old_strategy_save(self):
        save = AsyncMock()
        builder = make_builder(save=save, autosave_delay=10)
        builder.load("s1", "Demo", None)
        builder.add_step(StepType.INDICATOR)
        builder.load("s2", "Other", None)
        builder.add_step(StepType.RISK)
        await builder.close()
        saved = sorted((c.args[0], len(c.args[1]["flow"])) for c in save.await_args_list)
        assert saved == [("s1", 1), ("s2", 1)]

    @pytest.mark.asyncio
    async def test_generate_code_after_switch_keeps_old_strategy_save(self):
        save = AsyncMock()
        builder = make_builder(save=save, refresh=AsyncMock(), autosave_delay=10)
        builder.load("s1", "Demo", None)
        builder.add_step(StepType.INDICATOR)
        builder.load("s2", "Other", None)
        builder.add_step(StepType.RISK)
        await builder.generate_code()
        await builder.close()
        saved = sorted((c.args[0], c.args[2]) for c in save.await_args_list)
        assert saved == [("s1", False), ("s2", True)]

    @pytest.mark.asyncio
    async def test_save_failure_recorded(self):
        save = AsyncMock(side_effect=ServerError(500, "db down"))
        builder = make_builder(save=save)
        builder.load("s1", "Demo", None)
        builder.add_step(StepType.RISK)
        await asyncio.sleep(WINDOW * 3)
        assert builder.error == "Server error: db down"
        assert builder.last_model is None
