"""Configuration settings for RideCoach with caching utilities."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """RideCoach sync engine settings"""

    model_config = SettingsConfigDict(
        env_prefix="RIDECOACH_",
        env_file=[".env.test", ".env"],
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_url: str = "sqlite:///./ridecoach.db"
    secrets_dir: Path = Path.home() / ".ridecoach" / "secrets"

    # Reconciliation
    matching_window_hours: float = 4.0
    history_days: int = 30  # how far back to pull activities/workouts

    # Conflict detection
    lookahead_days: int = 14
    default_session_minutes: int = 60
    too_close_minutes: int = 30
    travel_window_minutes: int = 120
    alternative_slots: list[str] = Field(
        default_factory=lambda: ["06:00", "07:00", "12:00", "17:00", "18:00", "19:00"]
    )

    # Notifications
    weekly_review_weekday: int = 6  # 0=Monday ... 6=Sunday
    weekly_review_hour: int = 18

    # Periodic host cadence
    check_training_interval_hours: float = 4.0
    detect_conflicts_interval_hours: float = 24.0
    run_time_budget_seconds: float = 25.0
    provider_timeout_seconds: float = 10.0
    max_concurrent_owners: int = 4

    # Providers
    calendar_base_url: str = "https://www.googleapis.com/calendar/v3"
    calendar_id: str = "primary"
    garmin_base_url: str = "https://connect.garmin.com"
    intervals_base_url: str = "https://intervals.icu/api/v1"
    platform_activity_types: list[str] = Field(default_factory=lambda: ["ride"])

    # Secret names (values live in the secret store)
    calendar_token_secret: str = "calendar.access_token"
    garmin_token_secret: str = "health_store.access_token"
    platform_token_secret: str = "training_platform.api_key"

    # Local time zone for naive provider timestamps
    timezone: str = "UTC"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_dir: Path | None = None

    # Environment
    environment: str = "personal"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment.lower() in ["development", "dev"]

    @property
    def is_testing(self) -> bool:
        """Check if running in testing mode"""
        return self.environment.lower() in ["testing", "test"]


_SETTINGS_LOCK = RLock()
_SETTINGS_CACHE: Settings | None = None


def get_settings(*, refresh: bool = False) -> Settings:
    """Return a cached ``Settings`` instance.

    Parameters
    ----------
    refresh:
        When ``True`` the cached instance is discarded and a new one is created.
    """

    global _SETTINGS_CACHE

    with _SETTINGS_LOCK:
        if refresh or _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = Settings()
        return _SETTINGS_CACHE


def clear_settings_cache() -> None:
    """Clear the cached settings instance."""

    global _SETTINGS_CACHE

    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None


get_settings.cache_clear = clear_settings_cache  # type: ignore[attr-defined]


@contextmanager
def override_settings(**overrides: Any) -> Iterator[Settings]:
    """Temporarily override the cached settings within a context."""

    global _SETTINGS_CACHE

    with _SETTINGS_LOCK:
        previous_settings = _SETTINGS_CACHE

    base_settings = previous_settings or Settings()
    patched_settings = base_settings.model_copy(update=overrides)

    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = patched_settings

    try:
        yield patched_settings
    finally:
        with _SETTINGS_LOCK:
            _SETTINGS_CACHE = previous_settings
