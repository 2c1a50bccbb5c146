"""
Time-windowed notification scheduling.

Every run recomputes which subjects are inside their trigger window. Requests
carry an identifier derived only from (kind, subject), so re-running inside
the same window yields the same identifier and the dispatcher drops the repeat.
"""

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Protocol, runtime_checkable

import structlog

from ridecoach.models import (
    AlertStatus,
    ConflictAlert,
    ConflictType,
    NotificationCategory,
    NotificationKind,
    NotificationRequest,
    TrainingSession,
)
from ridecoach.utils.mixins import LoggerMixin

logger = structlog.get_logger(__name__)

PRE_WORKOUT_MESSAGES: tuple[str, ...] = (
    "Time to ride! Your workout today: {title}",
    "Let's do this! Your training session is coming up: {title}",
    "Ready to crush it? {title} is scheduled soon!",
    "Get pumped! Your workout {title} starts soon.",
)

CONFLICT_PHRASES: dict[ConflictType, str] = {
    ConflictType.OVERLAP: "overlaps with",
    ConflictType.TOO_CLOSE_BEFORE: "ends right before",
    ConflictType.TOO_CLOSE_AFTER: "starts right after",
    ConflictType.TRAVEL_REQUIRED: "may not leave enough travel time before",
}


def notification_id(kind: NotificationKind, subject_id: str) -> str:
    """Stable, collision-resistant identifier for a (kind, subject) pair."""
    digest = hashlib.sha256(f"{kind.value}:{subject_id}".encode()).hexdigest()
    return f"{kind.value}_{digest[:24]}"


def session_notification_ids(session_id: str) -> list[str]:
    """Identifiers of every request that can be scheduled for a session."""
    return [
        notification_id(NotificationKind.MISSED_WORKOUT, session_id),
        notification_id(NotificationKind.PRE_WORKOUT, session_id),
    ]


def alert_notification_id(alert_id: str) -> str:
    return notification_id(NotificationKind.CONFLICT_WARNING, alert_id)


@dataclass(frozen=True)
class NotificationPolicy:
    """Trigger windows relative to each subject's anchor time"""

    missed_after: timedelta = timedelta(hours=2)
    missed_until: timedelta = timedelta(hours=3)
    pre_workout_earliest: timedelta = timedelta(minutes=60)
    pre_workout_latest: timedelta = timedelta(minutes=30)
    conflict_lead: timedelta = timedelta(hours=24)
    weekly_review_weekday: int = 6  # Sunday
    weekly_review_hour: int = 18

    @classmethod
    def from_settings(cls, settings) -> "NotificationPolicy":
        return cls(
            weekly_review_weekday=settings.weekly_review_weekday,
            weekly_review_hour=settings.weekly_review_hour,
        )


@dataclass
class ScheduleResult:
    """Requests to dispatch and alerts whose notification flag must flip"""

    requests: list[NotificationRequest] = field(default_factory=list)
    alert_updates: list[ConflictAlert] = field(default_factory=list)
    # identifiers to withdraw because their subject is finished
    cancellations: list[str] = field(default_factory=list)


class NotificationScheduler:
    """Evaluates trigger windows and builds notification requests."""

    def __init__(self, policy: NotificationPolicy | None = None) -> None:
        self.policy = policy or NotificationPolicy()

    def missed_workout(
        self, session: TrainingSession, now: datetime
    ) -> NotificationRequest | None:
        if session.completed:
            return None
        elapsed = now - session.scheduled_start
        if not (self.policy.missed_after <= elapsed < self.policy.missed_until):
            return None

        return NotificationRequest(
            identifier=notification_id(NotificationKind.MISSED_WORKOUT, session.id),
            kind=NotificationKind.MISSED_WORKOUT,
            trigger_time=session.scheduled_start + self.policy.missed_after,
            title="Missed Workout",
            body=f"Hey! I noticed you didn't complete {session.title}. Everything okay?",
            category=NotificationCategory.MISSED_WORKOUT,
            metadata={
                "type": NotificationKind.MISSED_WORKOUT.value,
                "training_id": session.id,
                "user_id": session.owner_id,
            },
        )

    def pre_workout(
        self, session: TrainingSession, now: datetime
    ) -> NotificationRequest | None:
        if session.completed:
            return None
        window_open = session.scheduled_start - self.policy.pre_workout_earliest
        window_close = session.scheduled_start - self.policy.pre_workout_latest
        if not (window_open <= now < window_close):
            return None

        # same subject, same wording on every run
        index = int(hashlib.sha256(session.id.encode()).hexdigest(), 16) % len(
            PRE_WORKOUT_MESSAGES
        )
        return NotificationRequest(
            identifier=notification_id(NotificationKind.PRE_WORKOUT, session.id),
            kind=NotificationKind.PRE_WORKOUT,
            trigger_time=window_close,
            title="Upcoming Workout",
            body=PRE_WORKOUT_MESSAGES[index].format(title=session.title),
            category=NotificationCategory.UPCOMING_WORKOUT,
            metadata={
                "type": NotificationKind.PRE_WORKOUT.value,
                "training_id": session.id,
                "user_id": session.owner_id,
            },
        )

    def conflict_warning(
        self, alert: ConflictAlert, now: datetime
    ) -> NotificationRequest | None:
        if alert.status != AlertStatus.PENDING or alert.notification_sent:
            return None
        trigger_time = alert.conflict_at - self.policy.conflict_lead
        if trigger_time <= now:
            return None

        phrase = CONFLICT_PHRASES.get(alert.conflict_type, "conflicts with")
        return NotificationRequest(
            identifier=alert_notification_id(alert.id),
            kind=NotificationKind.CONFLICT_WARNING,
            trigger_time=trigger_time,
            title="Training Schedule Conflict",
            body=(
                f"Your calendar event '{alert.calendar_event_title}' {phrase} "
                "your training. Would you like to reschedule?"
            ),
            category=NotificationCategory.TRAINING_CONFLICT,
            metadata={
                "type": NotificationKind.CONFLICT_WARNING.value,
                "conflict_id": alert.id,
                "training_id": alert.session_id,
                "user_id": alert.owner_id,
            },
        )

    def next_weekly_review(self, now: datetime) -> datetime:
        """Next configured weekday/hour at or after ``now`` in ``now``'s timezone."""
        days_ahead = (self.policy.weekly_review_weekday - now.weekday()) % 7
        candidate = datetime.combine(
            now.date() + timedelta(days=days_ahead),
            time(self.policy.weekly_review_hour),
            tzinfo=now.tzinfo,
        )
        if candidate < now:
            candidate += timedelta(days=7)
        return candidate

    def weekly_review(self, owner_id: str, now: datetime) -> NotificationRequest:
        trigger_time = self.next_weekly_review(now)
        subject = f"{owner_id}:{trigger_time.date().isoformat()}"
        return NotificationRequest(
            identifier=notification_id(NotificationKind.WEEKLY_REVIEW, subject),
            kind=NotificationKind.WEEKLY_REVIEW,
            trigger_time=trigger_time,
            title="Weekly Training Review",
            body="Let's review your training week! How did it go?",
            category=NotificationCategory.CHECK_IN,
            metadata={
                "type": NotificationKind.WEEKLY_REVIEW.value,
                "user_id": owner_id,
            },
        )

    def evaluate(
        self,
        now: datetime,
        sessions: Iterable[TrainingSession] = (),
        alerts: Iterable[ConflictAlert] = (),
        *,
        weekly_review_owner: str | None = None,
    ) -> ScheduleResult:
        """Collect every request whose subject is inside its trigger window."""
        result = ScheduleResult()

        for session in sessions:
            for build in (self.missed_workout, self.pre_workout):
                request = build(session, now)
                if request is not None:
                    result.requests.append(request)

        for alert in alerts:
            request = self.conflict_warning(alert, now)
            if request is None:
                continue
            result.requests.append(request)
            result.alert_updates.append(
                alert.model_copy(
                    update={
                        "notification_sent": True,
                        "notification_sent_at": now,
                        "updated_at": now,
                    }
                )
            )

        if weekly_review_owner is not None:
            result.requests.append(self.weekly_review(weekly_review_owner, now))

        return result


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Delivers requests; de-duplicates by identifier."""

    async def dispatch(self, request: NotificationRequest) -> None: ...

    async def cancel(self, identifier: str) -> None:
        """Withdraw a pending request; unknown identifiers are ignored."""
        ...


class LoggingDispatcher(LoggerMixin):
    """Dispatcher that only logs, for dry runs"""

    def __init__(self) -> None:
        self._seen: set[str] = set()

    async def dispatch(self, request: NotificationRequest) -> None:
        if request.identifier in self._seen:
            return
        self._seen.add(request.identifier)
        self.logger.info(
            "Notification requested",
            identifier=request.identifier,
            kind=request.kind.value,
            trigger_time=request.trigger_time.isoformat(),
            category=request.category.value,
        )

    async def cancel(self, identifier: str) -> None:
        if identifier not in self._seen:
            return
        self._seen.discard(identifier)
        self.logger.info("Notification cancelled", identifier=identifier)


class RecordingDispatcher:
    """In-memory dispatcher keyed by request identifier"""

    def __init__(self) -> None:
        self.delivered: dict[str, NotificationRequest] = {}
        self.attempts = 0
        self.cancelled: list[str] = []

    async def dispatch(self, request: NotificationRequest) -> None:
        self.attempts += 1
        self.delivered.setdefault(request.identifier, request)

    async def cancel(self, identifier: str) -> None:
        self.cancelled.append(identifier)
        self.delivered.pop(identifier, None)
