"""Structured logging configuration for the limiter.

This module provides a structured logging setup using Python's standard
logging module, with JSON formatting for production environments.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from bucketguard.core.config import settings


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs log records as JSON objects for consumption by log aggregation
    systems.
    """

    # Contextual fields describing a limiter decision
    CONTEXT_FIELDS = [
        "limiter",       # Limiter name / key prefix
        "token_key",     # Fully-qualified token bucket key
        "block_key",     # Fully-qualified abuse guard key
        "backend",       # memory | redis | insurance | fail_open | abuse_guard
        "balance",       # Token balance reported to the caller
    ]

    _RESERVED = (
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "timestamp", "logger", "level", "source", "taskName",
    )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON string representation of the log record
        """
        record.message = record.getMessage()

        log_data: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        for key, value in record.__dict__.items():
            if key in self._RESERVED or key in self.CONTEXT_FIELDS:
                continue
            log_data.setdefault("extra", {})[key] = value

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that adds default limiter context fields to records."""

    CONTEXT_DEFAULTS = {
        "limiter": None,
        "token_key": None,
        "block_key": None,
        "backend": None,
        "balance": None,
    }

    def filter(self, record: logging.LogRecord) -> bool:
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = getattr(settings, "log_level", "INFO").upper()

    formatters: Dict[str, Any] = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - backend=%(backend)s - token_key=%(token_key)s - balance=%(balance)s"
        },
    }

    if log_format == "json":
        formatters["json"] = {"()": "bucketguard.core.logging.JSONFormatter"}
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {"()": "bucketguard.core.logging.ContextFilter"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": default_formatter,
                "stream": sys.stdout,
                "filters": ["context"],
            },
        },
        "loggers": {
            "bucketguard": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
    }


def setup_logging() -> None:
    """Configure logging for the limiter package."""
    logging.config.dictConfig(get_logging_config())
    # redis-py is chatty at DEBUG about connection handling
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str = "bucketguard") -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def get_log_context(
    limiter: Optional[str] = None,
    token_key: Optional[str] = None,
    block_key: Optional[str] = None,
    backend: Optional[str] = None,
    balance: Optional[float] = None,
    **extra,
) -> Dict[str, Any]:
    """Create a log context dictionary for use with the extra parameter.

    Example:
        >>> logger.debug(
        ...     "Request allowed",
        ...     extra=get_log_context(token_key="api:1.2.3.4", backend="redis", balance=4),
        ... )
    """
    context = {
        "limiter": limiter,
        "token_key": token_key,
        "block_key": block_key,
        "backend": backend,
        "balance": balance,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
