"""Tests for structured logging configuration."""

import json
import logging
import sys
from unittest.mock import patch

from bucketguard.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
    setup_logging,
)


def _record(msg="Request denied", **extra):
    record = logging.LogRecord(
        name="bucketguard.limiter",
        level=logging.INFO,
        pathname="service.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        data = json.loads(JSONFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "bucketguard.limiter"
        assert data["message"] == "Request denied"
        assert data["source"] == {"file": "service.py", "line": 10, "function": None}
        assert "timestamp" in data

    def test_context_fields_promoted(self):
        record = _record(token_key="api:1.2.3.4", backend="redis", balance=0, attempt=4)
        data = json.loads(JSONFormatter().format(record))

        assert data["token_key"] == "api:1.2.3.4"
        assert data["backend"] == "redis"
        assert data["balance"] == 0
        assert data["extra"] == {"attempt": 4}
        assert "block_key" not in data

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in "".join(data["exception"])


class TestContextFilter:
    def test_adds_defaults(self):
        record = _record()
        assert ContextFilter().filter(record) is True
        assert record.backend is None
        assert record.balance is None

    def test_keeps_existing_values(self):
        record = _record(backend="insurance")
        ContextFilter().filter(record)
        assert record.backend == "insurance"


class TestLoggingConfig:
    """Test logging configuration selection."""

    def test_text_format(self):
        with patch("bucketguard.core.logging.settings") as mock_settings:
            mock_settings.log_format = "text"
            mock_settings.log_level = "debug"
            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "standard"
        assert config["loggers"]["bucketguard"]["level"] == "DEBUG"

    def test_json_format(self):
        with patch("bucketguard.core.logging.settings") as mock_settings:
            mock_settings.log_format = "json"
            mock_settings.log_level = "INFO"
            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["formatters"]["json"]["()"] == "bucketguard.core.logging.JSONFormatter"

    def test_setup_logging_applies_config(self):
        setup_logging()
        assert get_logger().level == logging.INFO
        assert logging.getLogger("redis").level == logging.WARNING


def test_get_log_context_drops_none():
    assert get_log_context(token_key="k", backend=None, balance=0, attempt=2) == {
        "token_key": "k",
        "balance": 0,
        "attempt": 2,
    }
