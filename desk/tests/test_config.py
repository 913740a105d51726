"""
test_config.py — Tests for config.py.

Environment is passed as a dict; os.environ and .env files are never read.
"""

from __future__ import annotations

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from pathlib import Path

import pytest

from config import (
    DEFAULT_API_URL,
    DEFAULT_STATE_PATH,
    PLACEHOLDER_FIREBASE_KEY,
    DeskConfig,
    FirebaseConfig,
    load_config,
)
from errors import ConfigError


class TestDefaults:
    def test_empty_env_gives_defaults(self):
        config = load_config({})
        assert config.api_url == DEFAULT_API_URL
        assert config.state_path == DEFAULT_STATE_PATH
        assert config.request_timeout == 30.0
        assert config.sse_retry_seconds == 3.0
        assert config.autosave_delay == 2.0
        assert config.validation_delay == 1.0
        assert config.log_level == "INFO"

    def test_firebase_unconfigured_by_default(self):
        assert load_config({}).firebase.is_configured is False


class TestOverrides:
    def test_api_url_trailing_slash_dropped(self):
        config = load_config({"ALGODESK_API_URL": "https://api.example.com/"})
        assert config.api_url == "https://api.example.com"

    def test_numeric_values_parsed(self):
        config = load_config({
            "ALGODESK_TIMEOUT": "5",
            "ALGODESK_SSE_RETRY": "0.5",
            "ALGODESK_AUTOSAVE_DELAY": "1.5",
        })
        assert config.request_timeout == 5.0
        assert config.sse_retry_seconds == 0.5
        assert config.autosave_delay == 1.5

    def test_blank_numeric_uses_default(self):
        assert load_config({"ALGODESK_TIMEOUT": "  "}).request_timeout == 30.0

    def test_invalid_number_raises(self):
        with pytest.raises(ConfigError, match="ALGODESK_TIMEOUT"):
            load_config({"ALGODESK_TIMEOUT": "soon"})

    def test_negative_number_raises(self):
        with pytest.raises(ConfigError):
            load_config({"ALGODESK_SSE_RETRY": "-1"})

    def test_state_path_expanded(self):
        config = load_config({"ALGODESK_STATE_PATH": "~/desk-state.json"})
        assert config.state_path == Path("~/desk-state.json").expanduser()

    def test_log_level_uppercased(self):
        assert load_config({"ALGODESK_LOG_LEVEL": "debug"}).log_level == "DEBUG"

    def test_firebase_configured_with_real_key(self):
        config = load_config({"FIREBASE_API_KEY": "AIza-test", "FIREBASE_PROJECT_ID": "desk"})
        assert config.firebase.is_configured is True
        assert config.firebase.project_id == "desk"

    def test_placeholder_key_not_configured(self):
        assert FirebaseConfig(api_key=PLACEHOLDER_FIREBASE_KEY).is_configured is False


class TestSseBaseUrl:
    def test_path_dropped(self):
        assert DeskConfig(api_url="https://api.example.com/v1").sse_base_url == "https://api.example.com"

    def test_port_kept(self):
        assert DeskConfig(api_url="http://localhost:8080").sse_base_url == "http://localhost:8080"

    def test_schemeless_url_returned_as_is(self):
        assert DeskConfig(api_url="backend/").sse_base_url == "backend"
