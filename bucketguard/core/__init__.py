"""Core utilities for the limiter package."""

from bucketguard.core.client_ip import get_client_ip
from bucketguard.core.config import Settings, settings
from bucketguard.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "Settings",
    "settings",
    "get_client_ip",
    "get_logger",
    "get_log_context",
    "setup_logging",
]
