"""
test_session.py — Tests for session.py (state store, session value, manager).
"""

from __future__ import annotations

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import json
from unittest.mock import AsyncMock

import pytest

from errors import AuthenticationError, NetworkError
from session import (
    DEVICE_KEY,
    TOKEN_KEY,
    Session,
    SessionManager,
    StateStore,
    User,
    get_or_create_device_id,
)


# ─── Helpers ──────────────────────────────────────────────────────────────────

def make_user(uid: str = "u1") -> User:
    return User(id=uid, email=f"{uid}@example.com", name="Trader")


# ─── StateStore ───────────────────────────────────────────────────────────────

class TestStateStore:
    def test_in_memory_store(self):
        store = StateStore()
        store.set("a", "1")
        assert store.get("a") == "1"
        store.delete("a")
        assert store.get("a") is None

    def test_persists_to_file(self, tmp_path):
        path = tmp_path / "nested" / "state.json"
        StateStore(path).set(TOKEN_KEY, "tok")
        assert json.loads(path.read_text()) == {TOKEN_KEY: "tok"}
        assert StateStore(path).get(TOKEN_KEY) == "tok"

    def test_missing_file_is_empty(self, tmp_path):
        assert StateStore(tmp_path / "none.json").get(TOKEN_KEY) is None

    def test_corrupt_file_is_empty(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        assert StateStore(path).get(TOKEN_KEY) is None

    def test_delete_missing_key_is_noop(self, tmp_path):
        path = tmp_path / "state.json"
        StateStore(path).delete("nope")
        assert not path.exists()


# ─── Session value ────────────────────────────────────────────────────────────

class TestSession:
    def test_headers_with_token(self):
        session = Session(token="tok", device_id="dev")
        assert session.is_authenticated
        assert session.auth_headers() == {"X-Device-ID": "dev", "Authorization": "Bearer tok"}

    def test_headers_without_token(self):
        session = Session(token=None, device_id="dev")
        assert not session.is_authenticated
        assert session.auth_headers() == {"X-Device-ID": "dev"}

    def test_user_from_uid(self):
        user = User.from_dict({"uid": "abc", "email": "a@b.c", "name": None})
        assert user.id == "abc"
        assert user.name == ""

    def test_device_id_generated_once(self):
        store = StateStore()
        first = get_or_create_device_id(store)
        assert first
        assert get_or_create_device_id(store) == first
        assert store.get(DEVICE_KEY) == first


# ─── SessionManager ───────────────────────────────────────────────────────────

class TestSessionManager:
    def test_starts_from_stored_token(self):
        store = StateStore()
        store.set(TOKEN_KEY, "saved")
        assert SessionManager(store).current.token == "saved"

    def test_login_persists_and_notifies(self):
        store = StateStore()
        manager = SessionManager(store)
        seen = []
        manager.add_listener(seen.append)
        session = manager.login("tok", make_user())
        assert store.get(TOKEN_KEY) == "tok"
        assert seen == [session]
        assert session.user.id == "u1"

    def test_login_empty_token_rejected(self):
        with pytest.raises(ValueError):
            SessionManager(StateStore()).login("")

    def test_logout_clears_and_notifies(self):
        store = StateStore()
        manager = SessionManager(store)
        manager.login("tok", make_user())
        seen = []
        manager.add_listener(seen.append)
        manager.logout()
        assert store.get(TOKEN_KEY) is None
        assert len(seen) == 1
        assert seen[0].token is None
        assert seen[0].user is None

    def test_logout_when_logged_out_is_silent(self):
        manager = SessionManager(StateStore())
        seen = []
        manager.add_listener(seen.append)
        manager.logout()
        assert seen == []

    def test_device_id_survives_logout(self):
        manager = SessionManager(StateStore())
        device = manager.current.device_id
        manager.login("tok")
        manager.logout()
        assert manager.current.device_id == device

    def test_listener_may_remove_itself(self):
        manager = SessionManager(StateStore())
        calls = []

        def once(session):
            calls.append(session)
            manager.remove_listener(once)

        manager.add_listener(once)
        manager.login("a")
        manager.login("b")
        assert len(calls) == 1

    def test_listener_added_once(self):
        manager = SessionManager(StateStore())
        seen = []
        manager.add_listener(seen.append)
        manager.add_listener(seen.append)
        manager.login("tok")
        assert len(seen) == 1


class TestRestore:
    @pytest.mark.asyncio
    async def test_no_token_skips_fetch(self):
        manager = SessionManager(StateStore())
        fetch = AsyncMock()
        session = await manager.restore(fetch)
        fetch.assert_not_called()
        assert session.user is None

    @pytest.mark.asyncio
    async def test_valid_token_sets_user(self):
        store = StateStore()
        store.set(TOKEN_KEY, "tok")
        manager = SessionManager(store)
        session = await manager.restore(AsyncMock(return_value=make_user("u9")))
        assert session.token == "tok"
        assert session.user.id == "u9"

    @pytest.mark.asyncio
    async def test_rejected_token_cleared(self):
        store = StateStore()
        store.set(TOKEN_KEY, "stale")
        manager = SessionManager(store)
        session = await manager.restore(AsyncMock(side_effect=AuthenticationError("expired")))
        assert session.token is None
        assert store.get(TOKEN_KEY) is None

    @pytest.mark.asyncio
    async def test_network_failure_clears_token(self):
        store = StateStore()
        store.set(TOKEN_KEY, "tok")
        manager = SessionManager(store)
        await manager.restore(AsyncMock(side_effect=NetworkError("down")))
        assert manager.current.token is None
