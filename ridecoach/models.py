"""
Data model for the training sync engine

Sessions, external records, calendar events, conflicts, alerts and
notification requests shared by every pipeline stage.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class SourceTag(str, Enum):
    """External record sources"""

    # planned events and activities on the platform are separate id namespaces
    PLATFORM_EVENT = "platform_event"
    PLATFORM_ACTIVITY = "platform_activity"
    HEALTH_STORE = "health_store"


class RecordKind(str, Enum):
    """Planned workout vs. completed activity"""

    PLANNED = "planned"
    ACTIVITY = "activity"


class ConflictType(str, Enum):
    """Scheduling conflict classes, in precedence order"""

    OVERLAP = "overlap"
    TOO_CLOSE_BEFORE = "too_close_before"
    TOO_CLOSE_AFTER = "too_close_after"
    TRAVEL_REQUIRED = "travel_required"

    @property
    def severity(self) -> int:
        return CONFLICT_SEVERITY[self]


CONFLICT_SEVERITY: dict[ConflictType, int] = {
    ConflictType.OVERLAP: 3,
    ConflictType.TOO_CLOSE_BEFORE: 2,
    ConflictType.TOO_CLOSE_AFTER: 2,
    ConflictType.TRAVEL_REQUIRED: 1,
}


class AlertStatus(str, Enum):
    """Conflict alert status"""

    PENDING = "pending"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class NotificationKind(str, Enum):
    """Notification kinds emitted by the scheduler"""

    MISSED_WORKOUT = "missed_workout"
    PRE_WORKOUT = "pre_workout"
    CONFLICT_WARNING = "conflict_warning"
    WEEKLY_REVIEW = "weekly_review"


class NotificationCategory(str, Enum):
    """Category tags the receiving side attaches actions to"""

    MISSED_WORKOUT = "MISSED_WORKOUT"
    TRAINING_CONFLICT = "TRAINING_CONFLICT"
    CHECK_IN = "CHECK_IN"
    UPCOMING_WORKOUT = "UPCOMING_WORKOUT"


PLANNED_FIELDS: tuple[str, ...] = (
    "planned_duration_minutes",
    "planned_distance_km",
    "planned_intensity",
    "planned_load",
)

ACTUAL_FIELDS: tuple[str, ...] = (
    "actual_duration_minutes",
    "actual_distance_km",
    "average_heart_rate",
    "max_heart_rate",
    "average_power_watts",
    "normalized_power_watts",
    "actual_load",
    "perceived_effort",
)


class TrainingSession(BaseModel):
    """A planned or completed workout"""

    id: str = Field(default_factory=_new_id)
    owner_id: str
    scheduled_start: datetime
    session_type: str = Field(default="unknown")
    title: str
    description: str | None = None

    # Planned workout details
    planned_duration_minutes: int | None = None
    planned_distance_km: float | None = None
    planned_intensity: str | None = None  # easy, moderate, hard, max
    planned_load: int | None = Field(default=None, description="Planned TSS")

    # Actual workout data
    completed: bool = False
    completed_at: datetime | None = None
    actual_duration_minutes: int | None = None
    actual_distance_km: float | None = None
    average_heart_rate: int | None = None
    max_heart_rate: int | None = None
    average_power_watts: int | None = None
    normalized_power_watts: int | None = None
    actual_load: int | None = Field(default=None, description="Actual TSS")
    perceived_effort: int | None = Field(default=None, ge=1, le=10)

    # Provenance
    sources: set[SourceTag] = Field(default_factory=set)
    external_ids: dict[SourceTag, str] = Field(default_factory=dict)

    user_notes: str | None = None
    coaching_feedback: str | None = None

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def external_id_for(self, source: SourceTag) -> str | None:
        return self.external_ids.get(source)

    def content_fingerprint(self) -> dict[str, Any]:
        """Everything except bookkeeping timestamps, for change detection."""
        return self.model_dump(exclude={"updated_at"})


class ExternalRecord(BaseModel):
    """One workout-like record as reported by a single source"""

    source: SourceTag
    kind: RecordKind
    external_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    activity_type: str | None = None
    title: str | None = None
    description: str | None = None

    planned_duration_minutes: int | None = None
    planned_distance_km: float | None = None
    planned_intensity: str | None = None
    planned_load: int | None = None

    actual_duration_minutes: int | None = None
    actual_distance_km: float | None = None
    average_heart_rate: int | None = None
    max_heart_rate: int | None = None
    average_power_watts: int | None = None
    normalized_power_watts: int | None = None
    actual_load: int | None = None
    perceived_effort: int | None = None

    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    def metric_values(self) -> dict[str, Any]:
        """Set metrics belonging to this record's kind; unset metrics are absent."""
        fields = PLANNED_FIELDS if self.kind == RecordKind.PLANNED else ACTUAL_FIELDS
        values = {}
        for field in fields:
            value = getattr(self, field)
            if value is not None:
                values[field] = value
        return values


class CalendarEvent(BaseModel):
    """Calendar commitment"""

    id: str
    title: str = ""
    start: datetime
    end: datetime
    all_day: bool = False
    location: str | None = None

    @property
    def has_location(self) -> bool:
        return bool(self.location and self.location.strip())


class Conflict(BaseModel):
    """A classified (session, calendar event) pairing"""

    model_config = ConfigDict(frozen=True)

    session_id: str
    owner_id: str
    event_id: str
    event_title: str
    conflict_type: ConflictType
    severity: int
    conflict_at: datetime

    @property
    def pair(self) -> tuple[str, str]:
        return (self.session_id, self.event_id)


class ConflictAlert(BaseModel):
    """Persisted scheduling conflict warning"""

    id: str = Field(default_factory=_new_id)
    owner_id: str
    session_id: str
    calendar_event_id: str
    calendar_event_title: str = ""
    conflict_at: datetime
    conflict_type: ConflictType

    status: AlertStatus = AlertStatus.PENDING
    resolution: str | None = None
    resolved_at: datetime | None = None

    notification_sent: bool = False
    notification_sent_at: datetime | None = None

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def pair(self) -> tuple[str, str]:
        return (self.session_id, self.calendar_event_id)


class NotificationRequest(BaseModel):
    """Intent to deliver a message at a trigger time"""

    model_config = ConfigDict(frozen=True)

    identifier: str
    kind: NotificationKind
    trigger_time: datetime
    title: str
    body: str
    category: NotificationCategory
    metadata: dict[str, str] = Field(default_factory=dict)


class User(BaseModel):
    """Athlete owning sessions, goals and alerts"""

    id: str = Field(default_factory=_new_id)
    name: str
    email: str | None = None
    platform_athlete_id: str | None = None

    preferred_training_days: list[str] = Field(default_factory=list)
    preferred_training_time: str | None = None  # morning, afternoon, evening
    ftp_watts: int | None = None
    threshold_heart_rate: int | None = None

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


# goals still being worked towards
OPEN_GOAL_STATUSES: tuple[str, ...] = ("active", "on_track", "at_risk")


class Goal(BaseModel):
    """Athlete training goal"""

    id: str = Field(default_factory=_new_id)
    owner_id: str
    title: str
    description: str | None = None
    type: str = "fitness"  # event, fitness, distance, power

    target_date: datetime | None = None
    target_metric: str | None = None
    target_value: float | None = None
    current_value: float | None = None
    unit: str | None = None

    status: str = "active"  # active, on_track, at_risk, completed, abandoned
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    last_progress_update: datetime | None = None

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_GOAL_STATUSES
