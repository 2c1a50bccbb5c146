"""
Logging configuration for RideCoach
"""

import logging
import re
from typing import Any, cast

import structlog
from rich.console import Console
from rich.logging import RichHandler

from ridecoach.config import get_settings


def setup_logging() -> None:
    """Set up structured logging with rich formatting"""

    settings = get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [
        RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=True,
            markup=False,
            rich_tracebacks=True,
        )
    ]
    if settings.log_dir is not None:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.FileHandler(settings.log_dir / "ridecoach.log", encoding="utf-8")
        )

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            (
                structlog.processors.JSONRenderer()
                if settings.log_format == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance"""
    logger = structlog.get_logger(name)
    return cast("structlog.stdlib.BoundLogger", logger)


_SENSITIVE_PATTERNS = [
    r'token[=:\s]*["\']?[\w\-\.]{20,}["\']?',
    r'secret[=:\s]*["\']?[\w\-\.]{20,}["\']?',
    r'key[=:\s]*["\']?[\w\-\.]{20,}["\']?',
    r"bearer\s+[\w\-\.]+",
]


def sanitize_log_content(content: str, max_length: int = 200) -> str:
    """Mask anything that looks like a credential before it reaches a log line."""
    sanitized = content
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = re.sub(pattern, "[REDACTED]", sanitized, flags=re.IGNORECASE)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


def log_provider_call(provider: str, **kwargs: Any) -> None:
    """Log an outbound provider request; string values are sanitized."""
    fields = {
        key: sanitize_log_content(value) if isinstance(value, str) else value
        for key, value in kwargs.items()
    }
    get_logger("provider_usage").debug(f"{provider} request", **fields)
