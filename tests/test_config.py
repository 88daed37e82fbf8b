"""Tests for Settings defaults, env loading and budget validation."""

import pytest
from pydantic import ValidationError

from coda.config import Settings
from tests.conftest import make_settings


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.context_window == 200_000
        assert settings.compression_threshold == 180_000
        assert settings.preserve_recent_messages == 10
        assert settings.max_tool_iterations == 25
        assert settings.retry_max_attempts == 3
        assert settings.turn_timeout == 120.0
        assert settings.keep_partial_on_cancel is False

    def test_prefixed_env(self, monkeypatch):
        monkeypatch.setenv("CODA_MAX_TOOL_ITERATIONS", "7")
        monkeypatch.setenv("CODA_COMPRESSION_STRATEGY", "truncate")
        settings = Settings(_env_file=None)
        assert settings.max_tool_iterations == 7
        assert settings.compression_strategy == "truncate"

    def test_unprefixed_credentials(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-from-env")
        assert Settings(_env_file=None).anthropic_api_key == "sk-ant-from-env"

    def test_threshold_must_leave_room(self):
        with pytest.raises(ValidationError, match="compression_threshold"):
            make_settings(compression_threshold=200_000, context_window=200_000)

    def test_retry_attempts_at_least_one(self):
        with pytest.raises(ValidationError):
            make_settings(retry_max_attempts=0)

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(compression_strategy="forget")
