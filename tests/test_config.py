"""Tests for settings, validation and logging setup."""

from __future__ import annotations

import json
import logging

import pytest

from llm_dispatch.core.config import Settings, settings, validate_settings
from llm_dispatch.core.logging import JSONFormatter, setup_logging
from llm_dispatch.gateway.errors import ConfigurationError


class TestSettings:
    def test_defaults(self):
        config = Settings(_env_file=None)
        assert config.rate_limit_points == 50
        assert config.rate_limit_window_seconds == 60
        assert config.rate_limit_block_seconds == 30
        assert config.rate_limit_per_stream is True
        assert config.cache_map_path.endswith("gemini_cache_map.json")

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_POINTS", "7")
        monkeypatch.setenv("RATE_LIMIT_PER_STREAM", "false")
        config = Settings(_env_file=None)
        assert config.rate_limit_points == 7
        assert config.rate_limit_per_stream is False

    def test_valid_settings_pass(self):
        validate_settings(Settings(_env_file=None, gemini_api_key="key"))

    def test_missing_api_key(self):
        with pytest.raises(ConfigurationError, match="GEMINI_API_KEY"):
            validate_settings(Settings(_env_file=None, gemini_api_key="", app_env="production"))

    def test_missing_api_key_allowed_in_tests(self):
        validate_settings(Settings(_env_file=None, gemini_api_key="", app_env="test"))

    def test_collects_all_errors(self):
        config = Settings(
            _env_file=None,
            gemini_api_key="key",
            rate_limit_points=0,
            initial_delay_ms=5000,
            max_delay_ms=1000,
        )
        with pytest.raises(ConfigurationError) as exc_info:
            validate_settings(config)
        message = str(exc_info.value)
        assert "RATE_LIMIT_POINTS" in message
        assert "MAX_DELAY_MS" in message


class TestJSONFormatter:
    def test_format(self):
        record = logging.LogRecord("llm_dispatch.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.task_type = "extract"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["logger"] == "llm_dispatch.test"
        assert data["task_type"] == "extract"
        assert "model" not in data

    def test_none_context_fields_omitted(self):
        record = logging.LogRecord("llm_dispatch.test", logging.INFO, __file__, 1, "no model", (), None)
        record.task_type = "extract"
        record.model = None
        record.batch_index = 0

        data = json.loads(JSONFormatter().format(record))

        assert data["batch_index"] == 0
        assert "model" not in data


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_output(self, monkeypatch):
        monkeypatch.setattr(settings, "log_json", True)
        monkeypatch.setattr(settings, "log_level", "debug")

        setup_logging()

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_plain_output(self, monkeypatch):
        monkeypatch.setattr(settings, "log_json", False)

        setup_logging()

        assert not isinstance(logging.getLogger().handlers[0].formatter, JSONFormatter)

    def test_explicit_config(self):
        setup_logging(Settings(_env_file=None, log_json=True, log_level="warning"))

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
