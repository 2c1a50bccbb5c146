"""External data providers"""

from ridecoach.providers.base import (
    BaseProvider,
    CalendarProvider,
    ProviderRegistry,
    ProviderStatus,
    TrainingPlatformProvider,
    WorkoutProvider,
    parse_timestamp,
    provider_registry,
    register_provider,
)
from ridecoach.providers.google_calendar import GoogleCalendarProvider
from ridecoach.providers.garmin import GarminWorkoutProvider
from ridecoach.providers.intervals import IntervalsICUProvider

__all__ = [
    "BaseProvider",
    "CalendarProvider",
    "GarminWorkoutProvider",
    "GoogleCalendarProvider",
    "IntervalsICUProvider",
    "ProviderRegistry",
    "ProviderStatus",
    "TrainingPlatformProvider",
    "WorkoutProvider",
    "parse_timestamp",
    "provider_registry",
    "register_provider",
]
