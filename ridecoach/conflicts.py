"""
Calendar conflict detection for upcoming training sessions.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo

import structlog

from ridecoach.models import (
    CalendarEvent,
    Conflict,
    ConflictType,
    TrainingSession,
)
from ridecoach.timewindow import (
    duration_or_default,
    first_free_slot,
    overlaps,
    parse_slot,
)

logger = structlog.get_logger(__name__)

CANONICAL_SLOTS: tuple[time, ...] = (
    time(6, 0),
    time(7, 0),
    time(12, 0),
    time(17, 0),
    time(18, 0),
    time(19, 0),
)


@dataclass(frozen=True)
class ConflictPolicy:
    """Thresholds used to classify a (session, event) pair"""

    default_session_duration: timedelta = timedelta(minutes=60)
    too_close: timedelta = timedelta(minutes=30)
    travel_window: timedelta = timedelta(hours=2)
    slots: tuple[time, ...] = field(default=CANONICAL_SLOTS)
    # zone for calendar days and slot times; None uses the session's own
    tz: tzinfo | None = None

    @classmethod
    def from_settings(cls, settings) -> "ConflictPolicy":
        return cls(
            default_session_duration=timedelta(
                minutes=settings.default_session_minutes
            ),
            too_close=timedelta(minutes=settings.too_close_minutes),
            travel_window=timedelta(minutes=settings.travel_window_minutes),
            slots=tuple(parse_slot(slot) for slot in settings.alternative_slots),
            tz=ZoneInfo(settings.timezone),
        )

    def session_end(self, session: TrainingSession) -> datetime:
        default_minutes = int(self.default_session_duration.total_seconds() // 60)
        return session.scheduled_start + duration_or_default(
            session.planned_duration_minutes, default_minutes
        )


def classify(
    session: TrainingSession,
    event: CalendarEvent,
    policy: ConflictPolicy | None = None,
) -> Conflict | None:
    """Classify one pair; the first matching rule wins."""
    policy = policy or ConflictPolicy()
    if event.all_day:
        return None

    session_start = session.scheduled_start
    session_end = policy.session_end(session)
    conflict_type: ConflictType | None = None

    if overlaps(event.start, event.end, session_start, session_end):
        conflict_type = ConflictType.OVERLAP
    else:
        gap_before = session_start - event.end
        gap_after = event.start - session_end
        if timedelta(0) < gap_before <= policy.too_close:
            conflict_type = ConflictType.TOO_CLOSE_BEFORE
        elif timedelta(0) < gap_after <= policy.too_close:
            conflict_type = ConflictType.TOO_CLOSE_AFTER
        elif event.has_location and timedelta(0) < gap_before <= policy.travel_window:
            conflict_type = ConflictType.TRAVEL_REQUIRED

    if conflict_type is None:
        return None

    return Conflict(
        session_id=session.id,
        owner_id=session.owner_id,
        event_id=event.id,
        event_title=event.title,
        conflict_type=conflict_type,
        severity=conflict_type.severity,
        conflict_at=session_start,
    )


def detect_conflicts(
    sessions: Iterable[TrainingSession],
    events: Sequence[CalendarEvent],
    policy: ConflictPolicy | None = None,
) -> list[Conflict]:
    """Pair every incomplete session with every timed event and keep the conflicts.

    The result has set semantics; callers must not rely on its order.
    """
    policy = policy or ConflictPolicy()
    timed_events = [event for event in events if not event.all_day]
    conflicts: list[Conflict] = []

    for session in sessions:
        if session.completed:
            continue
        for event in timed_events:
            conflict = classify(session, event, policy)
            if conflict is not None:
                conflicts.append(conflict)

    logger.debug(
        "Conflict detection finished",
        events=len(timed_events),
        conflicts=len(conflicts),
    )
    return conflicts


def suggest_alternative_time(
    session: TrainingSession,
    busy_events: Iterable[CalendarEvent],
    policy: ConflictPolicy | None = None,
) -> datetime | None:
    """First canonical slot on the session's day with a free session-length window."""
    policy = policy or ConflictPolicy()
    start = session.scheduled_start
    tz = policy.tz or start.tzinfo
    local_day = start.astimezone(tz).date() if tz is not None else start.date()
    duration = policy.session_end(session) - start
    busy = [(event.start, event.end) for event in busy_events if not event.all_day]
    return first_free_slot(local_day, policy.slots, duration, busy, tz=tz)
