"""Utility modules for RideCoach"""

from .logger import (
    get_logger,
    log_provider_call,
    sanitize_log_content,
    setup_logging,
)
from .mixins import LoggerMixin

__all__ = [
    "LoggerMixin",
    "get_logger",
    "setup_logging",
    "log_provider_call",
    "sanitize_log_content",
]
