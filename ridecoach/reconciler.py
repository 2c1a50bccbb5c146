"""
Multi-source reconciliation of external workout records into training sessions.

Sources share no primary key, so a record is matched first by its own
(source, external id) and then by temporal proximity inside a tunable window.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from ridecoach.errors import MalformedRecord
from ridecoach.models import (
    ACTUAL_FIELDS,
    PLANNED_FIELDS,
    ExternalRecord,
    RecordKind,
    TrainingSession,
)
from ridecoach.timewindow import utc_now, within

logger = structlog.get_logger(__name__)

# first keyword hit wins
SESSION_TYPE_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("virtual", "indoor_ride"),
    ("indoor", "indoor_ride"),
    ("trainer", "indoor_ride"),
    ("interval", "interval"),
    ("tempo", "tempo"),
    ("recovery", "recovery"),
    ("endurance", "endurance"),
    ("race", "race"),
    ("cycling", "outdoor_ride"),
    ("ride", "ride"),
    ("bik", "ride"),
)


def classify_session_type(activity_type: str | None) -> str:
    """Map a source's activity classification onto a session type."""
    if not activity_type:
        return "unknown"
    normalized = activity_type.strip().lower()
    for keyword, session_type in SESSION_TYPE_KEYWORDS:
        if keyword in normalized:
            return session_type
    return "unknown"


@dataclass(frozen=True)
class MatchingPolicy:
    """Temporal matching parameters"""

    window: timedelta = timedelta(hours=4)

    @classmethod
    def from_hours(cls, hours: float) -> "MatchingPolicy":
        return cls(window=timedelta(hours=hours))


@dataclass
class ReconcileResult:
    """Sessions to insert and update, plus records that were dropped"""

    to_insert: list[TrainingSession] = field(default_factory=list)
    to_update: list[TrainingSession] = field(default_factory=list)
    skipped: list[MalformedRecord] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.to_insert or self.to_update)


class Reconciler:
    """Merges external records into canonical training sessions."""

    def __init__(
        self,
        policy: MatchingPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.policy = policy or MatchingPolicy()
        self._clock = clock

    def reconcile(
        self,
        owner_id: str,
        records: Sequence[ExternalRecord],
        existing: Sequence[TrainingSession],
    ) -> ReconcileResult:
        """Compute inserts and updates for one owner.

        Inputs are not mutated. Sessions created earlier in the batch are
        candidates for later records, so two sources reporting the same ride
        in one batch still produce a single session.
        """
        now = self._clock()
        working = [
            session.model_copy(deep=True)
            for session in existing
            if session.owner_id == owner_id
        ]
        baseline = {session.id: session.content_fingerprint() for session in working}
        inserted: list[str] = []
        result = ReconcileResult()

        for record in records:
            if record.start is None:
                issue = MalformedRecord(
                    record.source.value, "missing start time", record.raw
                )
                result.skipped.append(issue)
                logger.warning(
                    "Skipping malformed record",
                    owner_id=owner_id,
                    source=record.source.value,
                    external_id=record.external_id,
                    reason=issue.reason,
                )
                continue

            session = self._match_by_external_id(record, working)
            if session is not None:
                self._refresh_from_same_source(session, record)
                continue

            session = self._closest_candidate(record, working)
            if session is not None:
                self._attach(session, record)
                logger.debug(
                    "Matched record to existing session",
                    owner_id=owner_id,
                    session_id=session.id,
                    source=record.source.value,
                    delta_seconds=(record.start - session.scheduled_start).total_seconds(),
                )
                continue

            session = self._create(owner_id, record, now)
            working.append(session)
            inserted.append(session.id)

        inserted_ids = set(inserted)
        for session in working:
            if session.id in inserted_ids:
                result.to_insert.append(session)
            elif session.content_fingerprint() != baseline[session.id]:
                session.updated_at = now
                result.to_update.append(session)

        logger.info(
            "Reconciled records",
            owner_id=owner_id,
            records=len(records),
            inserts=len(result.to_insert),
            updates=len(result.to_update),
            skipped=len(result.skipped),
        )
        return result

    def absorb(
        self, target: TrainingSession, incoming: TrainingSession
    ) -> TrainingSession:
        """Fold ``incoming`` into ``target`` without discarding anything either holds.

        Used when an insert loses a uniqueness race against a concurrent run.
        """
        merged = target.model_copy(deep=True)
        for name in PLANNED_FIELDS + ACTUAL_FIELDS:
            if getattr(merged, name) is None and getattr(incoming, name) is not None:
                setattr(merged, name, getattr(incoming, name))
        for source, external_id in incoming.external_ids.items():
            merged.external_ids.setdefault(source, external_id)
        merged.sources |= incoming.sources
        if incoming.completed and not merged.completed:
            merged.completed = True
            merged.completed_at = incoming.completed_at
        if merged.session_type == "unknown":
            merged.session_type = incoming.session_type
        if merged.description is None:
            merged.description = incoming.description
        if merged.content_fingerprint() != target.content_fingerprint():
            merged.updated_at = self._clock()
        return merged

    def _match_by_external_id(
        self, record: ExternalRecord, sessions: list[TrainingSession]
    ) -> TrainingSession | None:
        if not record.external_id:
            return None
        for session in sessions:
            if session.external_id_for(record.source) == record.external_id:
                return session
        return None

    def _closest_candidate(
        self, record: ExternalRecord, sessions: list[TrainingSession]
    ) -> TrainingSession | None:
        assert record.start is not None
        candidates: list[tuple[timedelta, datetime, int, TrainingSession]] = []
        for position, session in enumerate(sessions):
            if session.external_id_for(record.source) is not None:
                continue
            delta = record.start - session.scheduled_start
            if not within(delta, self.policy.window):
                continue
            candidates.append((abs(delta), session.created_at, position, session))

        if not candidates:
            return None
        # minimum delta, then earliest created, then input order
        candidates.sort(key=lambda item: (item[0], item[1], item[2]))
        return candidates[0][3]

    def _refresh_from_same_source(
        self, session: TrainingSession, record: ExternalRecord
    ) -> None:
        assert record.start is not None
        # a source only overwrites values on sessions nobody else contributed to
        authoritative = session.sources <= {record.source}
        for name, value in record.metric_values().items():
            if authoritative or getattr(session, name) is None:
                setattr(session, name, value)
        session.sources.add(record.source)

        if record.kind == RecordKind.ACTIVITY:
            self._mark_completed(session, record, overwrite=authoritative)
        elif not session.completed and session.scheduled_start != record.start:
            # the platform moved a still-open planned workout
            session.scheduled_start = record.start

    def _attach(self, session: TrainingSession, record: ExternalRecord) -> None:
        if record.external_id:
            session.external_ids[record.source] = record.external_id
        session.sources.add(record.source)

        for name, value in record.metric_values().items():
            if getattr(session, name) is None:
                setattr(session, name, value)

        if session.description is None and record.description:
            session.description = record.description
        if session.session_type == "unknown":
            session.session_type = classify_session_type(record.activity_type)
        if record.kind == RecordKind.ACTIVITY:
            self._mark_completed(session, record, overwrite=False)

    def _create(
        self, owner_id: str, record: ExternalRecord, now: datetime
    ) -> TrainingSession:
        assert record.start is not None
        session_type = classify_session_type(record.activity_type)
        session = TrainingSession(
            owner_id=owner_id,
            scheduled_start=record.start,
            session_type=session_type,
            title=record.title or _default_title(session_type, record.kind),
            description=record.description,
            sources={record.source},
            external_ids=(
                {record.source: record.external_id} if record.external_id else {}
            ),
            created_at=now,
            updated_at=now,
            **record.metric_values(),
        )
        if record.kind == RecordKind.ACTIVITY:
            self._mark_completed(session, record, overwrite=True)

        logger.debug(
            "Created session from record",
            owner_id=owner_id,
            session_id=session.id,
            source=record.source.value,
            kind=record.kind.value,
        )
        return session

    @staticmethod
    def _mark_completed(
        session: TrainingSession, record: ExternalRecord, *, overwrite: bool
    ) -> None:
        session.completed = True
        if session.completed_at is not None and not overwrite:
            return
        if record.end is not None:
            session.completed_at = record.end
        elif record.start is not None and record.actual_duration_minutes:
            session.completed_at = record.start + timedelta(
                minutes=record.actual_duration_minutes
            )
        else:
            session.completed_at = record.start


def _default_title(session_type: str, kind: RecordKind) -> str:
    if session_type in ("unknown", "ride"):
        label = "Cycling"
    else:
        label = session_type.replace("_", " ").title()
    return f"{label} Workout" if kind == RecordKind.ACTIVITY else f"Planned {label}"


def reconcile(
    owner_id: str,
    records: Sequence[ExternalRecord],
    existing: Sequence[TrainingSession],
    policy: MatchingPolicy | None = None,
) -> ReconcileResult:
    """Reconcile with a fresh ``Reconciler``."""
    return Reconciler(policy).reconcile(owner_id, records, existing)
