"""
test_rest_api.py — Tests for the REST wrappers (strategies, orders, broker,
marketplace, ai, backtesting, market data, portfolio, devices, auth).

A small FastAPI app plays the backend and is mounted through
httpx.ASGITransport, so requests go through the real ApiClient and the
backend's own error shapes ({"detail": ...}).
"""

from __future__ import annotations

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import json
from typing import Any, Dict, List

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, HTTPException, Request, Response

import ai_api
import auth_api
import backtesting_api
import broker_api
import device
import market_data_api
import marketplace_api
import orders_api
import portfolio_api
import strategies_api
from api_client import ApiClient
from config import DeskConfig
from errors import AuthenticationError, ServerError, ValidationError
from session import SessionManager, StateStore, User


# ─── Fake backend ─────────────────────────────────────────────────────────────

CONFIG = DeskConfig(api_url="http://desk.test")

STRATEGY = {
    "id": "s1",
    "name": "Moving Average",
    "status": "inactive",
    "strategy_code": "def initialize(context):\n    pass\n",
    "total_trades": 4,
    "win_rate": 0.5,
}


def bar(day: str, close: float) -> Dict[str, Any]:
    return {"date": day, "open": close, "high": close + 1, "low": close - 1, "close": close, "volume": 100}


class FakeBackend:
    """In-memory stand-in for the algodesk backend; records every request."""

    def __init__(self) -> None:
        self.requests: List[Dict[str, Any]] = []
        self.marketplace: Dict[str, Dict[str, Any]] = {}
        self.app = self._build()

    @property
    def last(self) -> Dict[str, Any]:
        return self.requests[-1]

    async def _record(self, request: Request) -> Dict[str, Any]:
        body = await request.body()
        entry = {
            "method": request.method,
            "path": request.url.path,
            "params": dict(request.query_params),
            "json": json.loads(body) if body else None,
            "headers": dict(request.headers),
        }
        self.requests.append(entry)
        return entry

    def _build(self) -> FastAPI:
        app = FastAPI()

        # ── auth ──
        @app.post("/api/auth/login")
        async def auth_login(request: Request):
            entry = await self._record(request)
            if entry["json"]["id_token"] == "bad":
                raise HTTPException(status_code=401, detail="Invalid token")
            return {"user": {"id": "u1", "email": "a@b.com", "name": "Ada"}}

        @app.post("/api/auth/register")
        async def auth_register(request: Request):
            entry = await self._record(request)
            return {"uid": "u2", "email": "new@b.com", "name": entry["json"]["name"]}

        @app.get("/api/auth/me")
        async def auth_me(request: Request):
            entry = await self._record(request)
            if entry["headers"].get("authorization") != "Bearer tok-1":
                raise HTTPException(status_code=401, detail="Token expired")
            return {"uid": "u1", "email": "a@b.com", "name": "Ada"}

        # ── strategies ──
        @app.get("/api/strategies")
        async def strategies_list(request: Request):
            await self._record(request)
            return {"strategies": [STRATEGY, {"id": "s2", "name": "RSI", "status": "weird"}]}

        @app.post("/api/strategies/validate-code")
        async def strategies_validate(request: Request):
            await self._record(request)
            return {
                "valid": False,
                "errors": [{"line": 3, "column": 5, "message": "undefined name 'sma'"}],
                "warnings": [],
                "suggestions": ["import talib"],
            }

        @app.get("/api/strategies/{sid}")
        async def strategies_get(sid: str, request: Request):
            await self._record(request)
            if sid != "s1":
                raise HTTPException(status_code=404, detail="Strategy not found")
            return STRATEGY

        @app.put("/api/strategies/{sid}")
        async def strategies_update(sid: str, request: Request):
            entry = await self._record(request)
            return {**STRATEGY, **entry["json"], "id": sid}

        @app.delete("/api/strategies/{sid}")
        async def strategies_delete(sid: str, request: Request):
            await self._record(request)
            return Response(status_code=204)

        @app.post("/api/strategies/{sid}/{action}")
        async def strategies_action(sid: str, action: str, request: Request):
            await self._record(request)
            status = {"start": "active", "stop": "stopped", "pause": "paused", "resume": "active"}[action]
            return {"strategy_id": sid, "status": status, "message": f"{action} ok"}

        @app.put("/api/strategies/{sid}/visual-builder")
        async def strategies_visual_builder(sid: str, request: Request):
            entry = await self._record(request)
            return {"strategy_id": sid, "code_generated": entry["json"]["generate_code"]}

        # ── orders ──
        @app.post("/api/orders")
        async def orders_place(request: Request):
            entry = await self._record(request)
            return {"id": "o1", "status": "OPEN", **entry["json"]}

        @app.get("/api/orders")
        async def orders_list(request: Request):
            await self._record(request)
            return [{"id": "o1", "symbol": "INFY", "quantity": 10, "status": "OPEN", "strategy_id": "s1"}]

        @app.post("/api/orders/{oid}/cancel")
        async def orders_cancel(oid: str, request: Request):
            await self._record(request)
            return {"id": oid, "status": "CANCELLED"}

        # ── broker ──
        @app.get("/api/broker-credentials")
        async def broker_list(request: Request):
            await self._record(request)
            return [{"id": "c1", "broker_type": "zerodha", "api_key": "abcdef123456"}]

        @app.get("/api/zerodha/oauth/status")
        async def broker_oauth_status(request: Request):
            await self._record(request)
            return {"is_connected": False, "has_credentials": True, "has_tokens": False}

        # ── marketplace ──
        @app.get("/api/marketplace/status")
        async def marketplace_statuses(request: Request):
            entry = await self._record(request)
            api_type = entry["params"].get("api_type")
            return [s for s in self.marketplace.values() if api_type in (None, s["api_type"])]

        @app.post("/api/marketplace/status")
        async def marketplace_create(request: Request):
            entry = await self._record(request)
            status = {"id": f"m{len(self.marketplace) + 1}", **entry["json"]}
            self.marketplace[status["id"]] = status
            return status

        @app.patch("/api/marketplace/status/{status_id}")
        async def marketplace_patch(status_id: str, request: Request):
            entry = await self._record(request)
            self.marketplace[status_id].update(entry["json"])
            return self.marketplace[status_id]

        # ── ai ──
        @app.post("/api/ai/chat")
        async def ai_chat(request: Request):
            entry = await self._record(request)
            if entry["json"]["message"] == "boom":
                raise HTTPException(status_code=500, detail="model overloaded")
            return {
                "response": "Here is an RSI strategy.",
                "conversation_id": entry["json"].get("conversation_id") or "c1",
                "strategy_code": "def initialize(context):\n    context.rsi = 14\n",
                "suggestions": [],
            }

        @app.get("/api/ai/conversations/strategy/{sid}")
        async def ai_strategy_conversation(sid: str, request: Request):
            await self._record(request)
            return {
                "conversation_id": "c9",
                "messages": [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
            }

        # ── backtesting ──
        @app.post("/api/backtesting/run")
        async def backtest_run(request: Request):
            entry = await self._record(request)
            if entry["json"]["symbol"] == "XYZ":
                raise HTTPException(status_code=400, detail="Instrument not found: XYZ on NSE")
            return {"backtest_id": "b1", "symbol": entry["json"]["symbol"], "total_trades": 3,
                    "total_return_pct": 12.5, "win_rate": 66.7}

        @app.get("/api/backtesting/jobs")
        async def backtest_jobs(request: Request):
            entry = await self._record(request)
            if entry["params"].get("strategy_id") == "s1":
                return {"jobs": [{"job_id": "j1", "status": "completed", "progress": 100}]}
            return {"jobs": []}

        @app.get("/api/backtesting/jobs/{job_id}/historical-data")
        async def backtest_job_data(job_id: str, request: Request):
            await self._record(request)
            return [bar("2024-01-01", 10.0), bar("2024-01-02", 11.0)]

        # ── market data / portfolio ──
        @app.get("/api/market-data/ohlc")
        async def market_ohlc(request: Request):
            await self._record(request)
            return [{"timestamp": "2024-01-01T09:15:00", "open": 1, "high": 2, "low": 0.5, "close": 1.5}]

        @app.get("/api/portfolio")
        async def portfolio(request: Request):
            await self._record(request)
            return {"total_value": 150000, "available_cash": 50000, "profit_loss": 2500.5}

        @app.get("/api/portfolio/pnl")
        async def portfolio_pnl(request: Request):
            await self._record(request)
            return {"realised": 100, "unrealised": -20.5, "currency": "INR"}

        # ── devices ──
        @app.post("/api/devices/track")
        async def devices_track(request: Request):
            entry = await self._record(request)
            return {"id": "d1", **entry["json"]}

        @app.get("/api/devices")
        async def devices_list(request: Request):
            await self._record(request)
            return {"devices": [{"id": "d1", "device_id": "dev-1", "platform": "cli", "device_name": "laptop"}]}

        @app.delete("/api/devices/{device_id}")
        async def devices_revoke(device_id: str, request: Request):
            await self._record(request)
            return {"revoked": device_id}

        return app


@pytest.fixture
def fake() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def client(fake):
    sessions = SessionManager(StateStore())
    sessions.login("tok-1", User(id="u1", email="a@b.com"))
    api = ApiClient(CONFIG, sessions, transport=httpx.ASGITransport(app=fake.app))
    yield api
    await api.aclose()


# ─── Strategies ───────────────────────────────────────────────────────────────

class TestStrategiesApi:
    @pytest.mark.asyncio
    async def test_list_parses_status(self, client, fake):
        strategies = await strategies_api.list_strategies(client, status_filter="active")
        assert fake.last["params"] == {"status_filter": "active"}
        assert [s.id for s in strategies] == ["s1", "s2"]
        assert strategies[0].status == strategies_api.StrategyStatus.STOPPED
        assert strategies[0].code.startswith("def initialize")
        assert strategies[1].status == strategies_api.StrategyStatus.ERROR

    @pytest.mark.asyncio
    async def test_get_missing_is_validation_error(self, client):
        with pytest.raises(ValidationError) as info:
            await strategies_api.get_strategy(client, "nope")
        assert info.value.status_code == 404
        assert info.value.detail == "Strategy not found"

    @pytest.mark.asyncio
    async def test_autosave_update_flags_request(self, client, fake):
        strategy = await strategies_api.update_strategy(client, "s1", {"strategy_code": "x = 1"}, auto_save=True)
        assert fake.last["method"] == "PUT"
        assert fake.last["params"] == {"auto_save": "true"}
        assert strategy.code == "x = 1"

    @pytest.mark.asyncio
    async def test_explicit_update_has_no_autosave_flag(self, client, fake):
        await strategies_api.update_strategy(client, "s1", {"name": "MA2"})
        assert fake.last["params"] == {}

    @pytest.mark.asyncio
    async def test_start_sends_broker(self, client, fake):
        result = await strategies_api.start_strategy(client, "s1")
        assert fake.last["path"] == "/api/strategies/s1/start"
        assert fake.last["params"] == {"broker_type": "zerodha"}
        assert result.status == strategies_api.StrategyStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_pause(self, client):
        result = await strategies_api.pause_strategy(client, "s1")
        assert result.status == strategies_api.StrategyStatus.PAUSED
        assert result.message == "pause ok"

    @pytest.mark.asyncio
    async def test_delete(self, client, fake):
        assert await strategies_api.delete_strategy(client, "s1") is None
        assert fake.last["method"] == "DELETE"

    @pytest.mark.asyncio
    async def test_validate_code(self, client, fake):
        result = await strategies_api.validate_code(client, "sma(20)", market_type="equity")
        assert fake.last["json"] == {"strategy_code": "sma(20)", "market_type": "equity"}
        assert result.valid is False
        assert result.errors[0].line == 3
        assert result.suggestions == ["import talib"]

    @pytest.mark.asyncio
    async def test_visual_builder_save(self, client, fake):
        model = {"meta": {"class_name": "MA", "version": "2.0"}, "flow": []}
        data = await strategies_api.update_visual_builder_model(client, "s1", model, generate_code=True)
        assert fake.last["json"] == {"strategy_model": model, "generate_code": True}
        assert data["code_generated"] is True

    @pytest.mark.asyncio
    async def test_create_requires_name(self, client):
        with pytest.raises(ValueError):
            await strategies_api.create_strategy(client, "   ")


# ─── Orders / broker ──────────────────────────────────────────────────────────

class TestOrdersApi:
    @pytest.mark.asyncio
    async def test_place_limit_order(self, client, fake):
        request = orders_api.OrderRequest("INFY", "NSE", "BUY", 10, order_type="LIMIT", price=1500.0)
        order = await orders_api.place_order(client, request, broker_type="zerodha", validity="DAY")
        assert fake.last["json"]["price"] == 1500.0
        assert "trigger_price" not in fake.last["json"]
        assert fake.last["params"] == {"broker_type": "zerodha", "validity": "DAY"}
        assert order.id == "o1"
        assert order.quantity == 10

    @pytest.mark.asyncio
    async def test_invalid_order_never_sent(self, client, fake):
        with pytest.raises(ValueError):
            await orders_api.place_order(client, orders_api.OrderRequest("INFY", "NSE", "BUY", 1, order_type="SL"))
        with pytest.raises(ValueError):
            await orders_api.place_order(client, orders_api.OrderRequest("INFY", "NSE", "HOLD", 1))
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_list_bare_array(self, client, fake):
        orders = await orders_api.list_orders(client, status_filter="OPEN", sync=True)
        assert fake.last["params"] == {"status_filter": "OPEN", "sync": "true"}
        assert orders[0].strategy_id == "s1"

    @pytest.mark.asyncio
    async def test_cancel(self, client, fake):
        order = await orders_api.cancel_order(client, "o7")
        assert fake.last["path"] == "/api/orders/o7/cancel"
        assert order.status == "CANCELLED"


class TestBrokerApi:
    @pytest.mark.asyncio
    async def test_credentials_masked(self, client):
        creds = await broker_api.list_credentials(client)
        assert creds[0].masked_key == "********3456"
        assert creds[0].api_secret is None

    @pytest.mark.asyncio
    async def test_oauth_status(self, client, fake):
        status = await broker_api.oauth_status(client, credentials_id="c1")
        assert fake.last["params"] == {"credentials_id": "c1"}
        assert status.has_credentials and not status.is_connected


# ─── Marketplace / AI ─────────────────────────────────────────────────────────

class TestMarketplaceApi:
    @pytest.mark.asyncio
    async def test_toggle_creates_then_patches(self, client, fake):
        created = await marketplace_api.toggle_api(client, "news", True, credentials={"key": "k"})
        assert fake.last["method"] == "POST"
        assert created.is_enabled is True
        assert created.credentials == {"key": "k"}

        patched = await marketplace_api.toggle_api(client, "news", False)
        assert fake.last["method"] == "PATCH"
        assert fake.last["path"] == f"/api/marketplace/status/{created.id}"
        assert patched.id == created.id
        assert patched.is_enabled is False


class TestAiApi:
    @pytest.mark.asyncio
    async def test_chat_session_keeps_conversation(self, client, fake):
        chat = ai_api.AIChatSession(client)
        reply = await chat.send("Write an RSI strategy", strategy_id="s1", auto_save_code=True)
        assert fake.last["json"]["auto_save_code"] is True
        assert fake.last["json"]["context"] == {"strategy_id": "s1"}
        assert reply.has_code
        assert chat.conversation_id == "c1"

        await chat.send("Tighten the stop")
        assert fake.last["json"]["conversation_id"] == "c1"
        assert "auto_save_code" not in fake.last["json"]
        assert [m.role for m in chat.messages] == ["user", "assistant", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_chat_failure_sets_error(self, client):
        chat = ai_api.AIChatSession(client)
        with pytest.raises(ServerError):
            await chat.send("boom")
        assert chat.error == "Server error: model overloaded"
        assert chat.messages == []
        assert chat.loading is False

    @pytest.mark.asyncio
    async def test_load_for_strategy(self, client):
        chat = ai_api.AIChatSession(client)
        await chat.load_for_strategy("s1")
        assert chat.conversation_id == "c9"
        assert [m.content for m in chat.messages] == ["hi", "hello"]

    @pytest.mark.asyncio
    async def test_blank_message_rejected(self, client):
        with pytest.raises(ValueError):
            await ai_api.AIChatSession(client).send("  ")


# ─── Backtesting / market data ────────────────────────────────────────────────

class TestBacktestingApi:
    @pytest.mark.asyncio
    async def test_run(self, client, fake):
        request = backtesting_api.BacktestRequest("code", "infy", "nse", "2024-01-01", "2024-03-31")
        result = await backtesting_api.run_backtest(client, request)
        assert fake.last["json"]["symbol"] == "INFY"
        assert fake.last["params"] == {"broker_type": "zerodha"}
        assert result.backtest_id == "b1"
        assert result.total_trades == 3

    @pytest.mark.asyncio
    async def test_known_failure_explained(self, client):
        request = backtesting_api.BacktestRequest("code", "XYZ", "NSE", "2024-01-01", "2024-03-31")
        with pytest.raises(ValidationError) as info:
            await backtesting_api.run_backtest(client, request)
        assert info.value.detail == "Invalid symbol: XYZ. Please check the symbol and try again."

    @pytest.mark.asyncio
    async def test_dates_checked_before_sending(self, client, fake):
        request = backtesting_api.BacktestRequest("code", "INFY", "NSE", "2024-05-01", "2024-01-01")
        with pytest.raises(ValueError):
            await backtesting_api.run_backtest(client, request)
        assert fake.requests == []


class TestMarketDataApi:
    @pytest.mark.asyncio
    async def test_chart_data_uses_latest_job(self, client, fake):
        points = await market_data_api.get_backtest_chart_data(client, "s1")
        assert fake.requests[0]["params"] == {"strategy_id": "s1", "limit": "1"}
        assert fake.last["path"] == "/api/backtesting/jobs/j1/historical-data"
        assert [p.time for p in points] == ["2024-01-01", "2024-01-02"]
        assert points[1].close == 11.0

    @pytest.mark.asyncio
    async def test_chart_data_without_jobs(self, client):
        assert await market_data_api.get_backtest_chart_data(client, "s2") == []

    @pytest.mark.asyncio
    async def test_live_ohlc_timestamp_key(self, client):
        points = await market_data_api.get_live_market_data(client, "INFY")
        assert points[0].time == "2024-01-01T09:15:00"
        assert points[0].volume is None


class TestPortfolioApi:
    @pytest.mark.asyncio
    async def test_summary(self, client):
        portfolio = await portfolio_api.get_portfolio(client)
        assert portfolio.total_value == 150000.0
        assert portfolio.invested_amount == 0.0

    @pytest.mark.asyncio
    async def test_pnl_keeps_numbers_only(self, client):
        assert await portfolio_api.get_pnl(client) == {"realised": 100.0, "unrealised": -20.5}


# ─── Devices / auth ───────────────────────────────────────────────────────────

class TestDeviceApi:
    @pytest.mark.asyncio
    async def test_track_reports_machine(self, client, fake):
        info = device.get_device_info(client.sessions.current.device_id)
        tracked = await device.track_device(client, info)
        assert fake.last["json"]["device_id"] == client.sessions.current.device_id
        assert fake.last["json"]["platform"] == "cli"
        assert tracked.id == "d1"

    @pytest.mark.asyncio
    async def test_list_and_revoke(self, client, fake):
        devices = await device.list_devices(client, include_revoked=True)
        assert fake.last["params"] == {"include_revoked": "true"}
        assert devices[0].device_name == "laptop"
        await device.revoke_device(client, "dev-1", reason="lost")
        assert fake.last["method"] == "DELETE"
        assert fake.last["json"] == {"reason": "lost"}


class TestBackendAuth:
    @pytest.mark.asyncio
    async def test_backend_login_reads_nested_user(self, client, fake):
        user = await auth_api.backend_login(client, "id-token")
        assert fake.last["json"] == {"id_token": "id-token"}
        assert user == User(id="u1", email="a@b.com", name="Ada")

    @pytest.mark.asyncio
    async def test_register_reads_uid(self, client):
        user = await auth_api.backend_register(client, "id-token", "Grace")
        assert user.id == "u2"
        assert user.name == "Grace"

    @pytest.mark.asyncio
    async def test_restore_keeps_valid_session(self, client):
        user = await auth_api.restore_session(client)
        assert user.email == "a@b.com"
        assert client.sessions.current.token == "tok-1"

    @pytest.mark.asyncio
    async def test_restore_clears_rejected_token(self, client):
        client.sessions.login("stale")
        assert await auth_api.restore_session(client) is None
        assert client.sessions.current.token is None

    @pytest.mark.asyncio
    async def test_rejected_login_token(self, client):
        with pytest.raises(AuthenticationError):
            await auth_api.backend_login(client, "bad")
