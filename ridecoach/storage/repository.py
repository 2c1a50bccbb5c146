"""
Persisted store for users, goals, training sessions and conflict alerts

All writes for one owner's run go through a single ``StoreTransaction`` so the
reconcile, detect and alert steps either land together or not at all.
"""

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ridecoach.errors import PersistenceConflict, RecordNotFound
from ridecoach.models import (
    ACTUAL_FIELDS,
    OPEN_GOAL_STATUSES,
    PLANNED_FIELDS,
    AlertStatus,
    ConflictAlert,
    ConflictType,
    Goal,
    SourceTag,
    TrainingSession,
    User,
)
from ridecoach.reconciler import ReconcileResult, Reconciler
from ridecoach.storage.database import (
    ConflictAlertRow,
    GoalRow,
    SessionSourceRow,
    TrainingSessionRow,
    UserRow,
    build_engine,
    create_schema,
    is_memory_sqlite,
)
from ridecoach.timewindow import utc_now
from ridecoach.utils.mixins import LoggerMixin

_SESSION_COLUMNS: tuple[str, ...] = (
    "owner_id",
    "scheduled_start",
    "session_type",
    "title",
    "description",
    *PLANNED_FIELDS,
    "completed",
    "completed_at",
    *ACTUAL_FIELDS,
    "user_notes",
    "coaching_feedback",
    "created_at",
    "updated_at",
)

_USER_COLUMNS: tuple[str, ...] = tuple(User.model_fields)
_GOAL_COLUMNS: tuple[str, ...] = tuple(Goal.model_fields)


@dataclass
class ApplyOutcome:
    """What a reconciliation apply actually wrote"""

    inserted: int = 0
    updated: int = 0
    merged: int = 0
    missing: int = 0


class TrainingStats(BaseModel):
    """Totals over completed sessions in a trailing window"""

    days: int
    total_workouts: int = 0
    total_distance_km: float = 0.0
    total_duration_minutes: int = 0
    total_load: int = 0

    @property
    def average_distance_km(self) -> float:
        return self.total_distance_km / self.total_workouts if self.total_workouts else 0.0

    @property
    def average_duration_minutes(self) -> int:
        return self.total_duration_minutes // self.total_workouts if self.total_workouts else 0

    @property
    def total_duration_hours(self) -> float:
        return self.total_duration_minutes / 60.0


def session_from_row(row: TrainingSessionRow) -> TrainingSession:
    values = {name: getattr(row, name) for name in _SESSION_COLUMNS}
    return TrainingSession(
        id=row.id,
        sources={SourceTag(source) for source in row.sources or []},
        external_ids={
            SourceTag(ref.source): ref.external_id for ref in row.external_refs
        },
        **values,
    )


def _goal_from_row(row: GoalRow) -> Goal:
    return Goal.model_validate({name: getattr(row, name) for name in _GOAL_COLUMNS})


def alert_from_row(row: ConflictAlertRow) -> ConflictAlert:
    return ConflictAlert(
        id=row.id,
        owner_id=row.owner_id,
        session_id=row.session_id,
        calendar_event_id=row.calendar_event_id,
        calendar_event_title=row.calendar_event_title,
        conflict_at=row.conflict_at,
        conflict_type=ConflictType(row.conflict_type),
        status=AlertStatus(row.status),
        resolution=row.resolution,
        resolved_at=row.resolved_at,
        notification_sent=row.notification_sent,
        notification_sent_at=row.notification_sent_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _write_session(
    row: TrainingSessionRow, session: TrainingSession, *, with_new_ids: bool = True
) -> None:
    for name in _SESSION_COLUMNS:
        setattr(row, name, getattr(session, name))
    row.sources = sorted(source.value for source in session.sources)

    refs = {ref.source: ref for ref in row.external_refs}
    for source, external_id in session.external_ids.items():
        ref = refs.get(source.value)
        if ref is not None:
            ref.external_id = external_id
        elif with_new_ids:
            row.external_refs.append(
                SessionSourceRow(
                    owner_id=session.owner_id,
                    source=source.value,
                    external_id=external_id,
                )
            )


def _alert_row(alert: ConflictAlert) -> ConflictAlertRow:
    return ConflictAlertRow(
        id=alert.id,
        owner_id=alert.owner_id,
        session_id=alert.session_id,
        calendar_event_id=alert.calendar_event_id,
        calendar_event_title=alert.calendar_event_title,
        conflict_at=alert.conflict_at,
        conflict_type=alert.conflict_type.value,
        status=alert.status.value,
        resolution=alert.resolution,
        resolved_at=alert.resolved_at,
        notification_sent=alert.notification_sent,
        notification_sent_at=alert.notification_sent_at,
        created_at=alert.created_at,
        updated_at=alert.updated_at,
    )


class StoreTransaction(LoggerMixin):
    """Owner-scoped view over one database transaction"""

    def __init__(self, db: Session, owner_id: str, reconciler: Reconciler) -> None:
        self.db = db
        self.owner_id = owner_id
        self.reconciler = reconciler

    def sessions(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        incomplete_only: bool = False,
    ) -> list[TrainingSession]:
        stmt = select(TrainingSessionRow).where(
            TrainingSessionRow.owner_id == self.owner_id
        )
        if start is not None:
            stmt = stmt.where(TrainingSessionRow.scheduled_start >= start)
        if end is not None:
            stmt = stmt.where(TrainingSessionRow.scheduled_start <= end)
        if incomplete_only:
            stmt = stmt.where(TrainingSessionRow.completed.is_(False))
        stmt = stmt.order_by(TrainingSessionRow.scheduled_start)
        return [session_from_row(row) for row in self.db.scalars(stmt)]

    def alerts(
        self, *, status: AlertStatus | None = None
    ) -> list[ConflictAlert]:
        stmt = select(ConflictAlertRow).where(
            ConflictAlertRow.owner_id == self.owner_id
        )
        if status is not None:
            stmt = stmt.where(ConflictAlertRow.status == status.value)
        stmt = stmt.order_by(ConflictAlertRow.conflict_at)
        return [alert_from_row(row) for row in self.db.scalars(stmt)]

    def apply_reconciliation(self, result: ReconcileResult) -> ApplyOutcome:
        """Write reconciler output, folding lost insert races into the winner."""
        outcome = ApplyOutcome()

        for session in result.to_update:
            row = self.db.get(TrainingSessionRow, session.id)
            if row is None:
                # deleted by the user since it was loaded
                outcome.missing += 1
                self.logger.warning(
                    "Session vanished before update", session_id=session.id
                )
                continue
            try:
                with self.db.begin_nested():
                    _write_session(row, session)
                    self.db.flush()
            except IntegrityError:
                # another run claimed one of the new external ids first
                self.logger.warning(
                    "External id already claimed, keeping existing links",
                    session_id=session.id,
                )
                row = self.db.get(TrainingSessionRow, session.id)
                if row is None:
                    outcome.missing += 1
                    continue
                _write_session(row, session, with_new_ids=False)
                self.db.flush()
            outcome.updated += 1

        for session in result.to_insert:
            try:
                with self.db.begin_nested():
                    row = TrainingSessionRow(id=session.id, external_refs=[])
                    _write_session(row, session)
                    self.db.add(row)
                    self.db.flush()
                outcome.inserted += 1
            except IntegrityError as exc:
                conflict = PersistenceConflict(
                    "training_session",
                    tuple(
                        (source.value, external_id)
                        for source, external_id in session.external_ids.items()
                    ),
                )
                winner = self._row_by_external_ids(session)
                if winner is None:
                    raise conflict from exc
                self.logger.info(
                    "Insert lost a uniqueness race, merging",
                    error=str(conflict),
                    session_id=winner.id,
                )
                merged = self.reconciler.absorb(session_from_row(winner), session)
                _write_session(winner, merged, with_new_ids=False)
                self.db.flush()
                outcome.merged += 1

        return outcome

    def _row_by_external_ids(
        self, session: TrainingSession
    ) -> TrainingSessionRow | None:
        for source, external_id in session.external_ids.items():
            stmt = select(SessionSourceRow).where(
                SessionSourceRow.owner_id == self.owner_id,
                SessionSourceRow.source == source.value,
                SessionSourceRow.external_id == external_id,
            )
            ref = self.db.scalars(stmt).first()
            if ref is not None:
                return ref.session
        return None

    def insert_alerts(self, alerts: Iterable[ConflictAlert]) -> int:
        """Insert alerts; a pair that already exists counts as already done."""
        inserted = 0
        for alert in alerts:
            try:
                with self.db.begin_nested():
                    self.db.add(_alert_row(alert))
                    self.db.flush()
                inserted += 1
            except IntegrityError:
                self.logger.debug(
                    "Alert already exists",
                    session_id=alert.session_id,
                    calendar_event_id=alert.calendar_event_id,
                )
        return inserted

    def mark_alerts_notified(self, alerts: Iterable[ConflictAlert]) -> int:
        marked = 0
        for alert in alerts:
            row = self.db.get(ConflictAlertRow, alert.id)
            if row is None or row.notification_sent:
                continue
            row.notification_sent = True
            row.notification_sent_at = alert.notification_sent_at or utc_now()
            row.updated_at = alert.updated_at
            marked += 1
        return marked


class SyncStore(LoggerMixin):
    """SQLAlchemy-backed store"""

    def __init__(
        self,
        database_url: str = "sqlite://",
        *,
        engine: Engine | None = None,
        reconciler: Reconciler | None = None,
    ) -> None:
        self.engine = engine or build_engine(database_url)
        self.reconciler = reconciler or Reconciler()
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        # an in-memory database is a single shared connection
        self._serial = (
            threading.RLock()
            if is_memory_sqlite(str(self.engine.url))
            else None
        )

    @classmethod
    def from_settings(cls, settings, reconciler: Reconciler | None = None) -> "SyncStore":
        store = cls(settings.database_url, reconciler=reconciler)
        store.create_schema()
        return store

    def create_schema(self) -> None:
        create_schema(self.engine)
        self.logger.debug("Schema ready", url=str(self.engine.url))

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        with self._serial or nullcontext():
            db = self._session_factory()
            try:
                yield db
                db.commit()
            except BaseException:
                db.rollback()
                raise
            finally:
                db.close()

    @contextmanager
    def owner_transaction(self, owner_id: str) -> Iterator[StoreTransaction]:
        with self.session_scope() as db:
            yield StoreTransaction(db, owner_id, self.reconciler)

    # Users and goals

    def add_user(self, user: User) -> User:
        with self.session_scope() as db:
            try:
                with db.begin_nested():
                    db.add(UserRow(**user.model_dump(include=set(_USER_COLUMNS))))
                    db.flush()
            except IntegrityError as exc:
                raise PersistenceConflict("user", (user.id,)) from exc
        self.logger.info("User created", user_id=user.id)
        return user

    def get_user(self, user_id: str) -> User | None:
        with self.session_scope() as db:
            row = db.get(UserRow, user_id)
            if row is None:
                return None
            return User.model_validate(
                {name: getattr(row, name) for name in _USER_COLUMNS}
            )

    def list_users(self) -> list[User]:
        with self.session_scope() as db:
            rows = db.scalars(select(UserRow).order_by(UserRow.created_at))
            return [
                User.model_validate({name: getattr(row, name) for name in _USER_COLUMNS})
                for row in rows
            ]

    def add_goal(self, goal: Goal) -> Goal:
        with self.session_scope() as db:
            if db.get(UserRow, goal.owner_id) is None:
                raise RecordNotFound("user", goal.owner_id)
            db.add(GoalRow(**goal.model_dump(include=set(_GOAL_COLUMNS))))
        return goal

    def list_active_goals(self, owner_id: str) -> list[Goal]:
        """Goals still being worked on (active, on track or at risk)."""
        return self._goals(owner_id, GoalRow.status.in_(OPEN_GOAL_STATUSES))

    def list_goals(self, owner_id: str) -> list[Goal]:
        return self._goals(owner_id)

    def _goals(self, owner_id: str, *criteria) -> list[Goal]:
        with self.session_scope() as db:
            stmt = (
                select(GoalRow)
                .where(GoalRow.owner_id == owner_id, *criteria)
                .order_by(GoalRow.created_at.desc())
            )
            return [_goal_from_row(row) for row in db.scalars(stmt)]

    def update_goal_progress(
        self, goal_id: str, progress: float, now: datetime | None = None
    ) -> Goal:
        """Record progress and derive the goal's status from it.

        Full progress completes the goal, more than 70% puts it on track, and a
        goal whose target date has passed is at risk.
        """
        if not 0.0 <= progress <= 1.0:
            raise ValueError(f"goal progress must be between 0 and 1, got {progress}")
        now = now or utc_now()
        with self.session_scope() as db:
            row = db.get(GoalRow, goal_id)
            if row is None:
                raise RecordNotFound("goal", goal_id)
            row.progress = progress
            row.last_progress_update = now
            row.updated_at = now
            if progress >= 1.0:
                row.status = "completed"
            elif progress > 0.7:
                row.status = "on_track"
            elif row.target_date is not None and row.target_date < now:
                row.status = "at_risk"
            db.flush()
            goal = _goal_from_row(row)
        self.logger.info(
            "Goal progress updated", goal_id=goal_id, progress=progress, status=goal.status
        )
        return goal

    def toggle_goal_status(self, goal_id: str) -> Goal:
        """Complete an open goal, or reopen a completed one."""
        with self.session_scope() as db:
            row = db.get(GoalRow, goal_id)
            if row is None:
                raise RecordNotFound("goal", goal_id)
            if row.status == "completed":
                row.status = "active"
            else:
                row.status = "completed"
                row.progress = 1.0
            row.updated_at = utc_now()
            db.flush()
            return _goal_from_row(row)

    def delete_goal(self, goal_id: str) -> None:
        with self.session_scope() as db:
            row = db.get(GoalRow, goal_id)
            if row is None:
                raise RecordNotFound("goal", goal_id)
            db.delete(row)
        self.logger.info("Goal deleted", goal_id=goal_id)

    # Sessions and alerts

    def list_sessions(
        self,
        owner_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        incomplete_only: bool = False,
    ) -> list[TrainingSession]:
        with self.owner_transaction(owner_id) as tx:
            return tx.sessions(start, end, incomplete_only=incomplete_only)

    def get_session(self, session_id: str) -> TrainingSession | None:
        with self.session_scope() as db:
            row = db.get(TrainingSessionRow, session_id)
            return session_from_row(row) if row is not None else None

    def apply_reconciliation(
        self, owner_id: str, result: ReconcileResult
    ) -> ApplyOutcome:
        with self.owner_transaction(owner_id) as tx:
            return tx.apply_reconciliation(result)

    def list_alerts(
        self, owner_id: str, status: AlertStatus | None = None
    ) -> list[ConflictAlert]:
        with self.owner_transaction(owner_id) as tx:
            return tx.alerts(status=status)

    def insert_alerts(self, owner_id: str, alerts: Iterable[ConflictAlert]) -> int:
        with self.owner_transaction(owner_id) as tx:
            return tx.insert_alerts(alerts)

    def mark_alerts_notified(
        self, owner_id: str, alerts: Iterable[ConflictAlert]
    ) -> int:
        with self.owner_transaction(owner_id) as tx:
            return tx.mark_alerts_notified(alerts)

    def resolve_alert(
        self,
        alert_id: str,
        resolution: str | None = None,
        *,
        status: AlertStatus = AlertStatus.RESOLVED,
    ) -> ConflictAlert:
        if status == AlertStatus.PENDING:
            raise ValueError("an alert can only move to resolved or ignored")
        now = utc_now()
        with self.session_scope() as db:
            row = db.get(ConflictAlertRow, alert_id)
            if row is None:
                raise RecordNotFound("conflict_alert", alert_id)
            row.status = status.value
            row.resolution = resolution
            row.resolved_at = now
            row.updated_at = now
            db.flush()
            alert = alert_from_row(row)
        self.logger.info("Alert closed", alert_id=alert_id, status=status.value)
        return alert

    def ignore_alert(self, alert_id: str) -> ConflictAlert:
        return self.resolve_alert(alert_id, status=AlertStatus.IGNORED)

    # User edits

    @contextmanager
    def _editing(self, session_id: str) -> Iterator[TrainingSessionRow]:
        with self.session_scope() as db:
            row = db.get(TrainingSessionRow, session_id)
            if row is None:
                raise RecordNotFound("training_session", session_id)
            yield row
            row.updated_at = utc_now()

    def mark_completed(
        self, session_id: str, completed_at: datetime | None = None
    ) -> TrainingSession:
        with self._editing(session_id) as row:
            row.completed = True
            row.completed_at = completed_at or utc_now()
        return self.get_session(session_id)

    def add_note(self, session_id: str, note: str) -> None:
        with self._editing(session_id) as row:
            row.user_notes = note

    def set_perceived_effort(self, session_id: str, effort: int) -> None:
        if not 1 <= effort <= 10:
            raise ValueError(f"perceived effort must be 1-10, got {effort}")
        with self._editing(session_id) as row:
            row.perceived_effort = effort

    def delete_session(self, session_id: str) -> list[str]:
        """Remove a session together with its source links and alerts.

        Returns the ids of the alerts that went with it.
        """
        with self.session_scope() as db:
            row = db.get(TrainingSessionRow, session_id)
            if row is None:
                raise RecordNotFound("training_session", session_id)
            alert_ids = list(
                db.scalars(
                    select(ConflictAlertRow.id).where(
                        ConflictAlertRow.session_id == session_id
                    )
                )
            )
            db.delete(row)
        self.logger.info(
            "Session deleted", session_id=session_id, alerts=len(alert_ids)
        )
        return alert_ids

    def training_stats(
        self, owner_id: str, days: int = 30, now: datetime | None = None
    ) -> TrainingStats:
        since = (now or utc_now()) - timedelta(days=days)
        stats = TrainingStats(days=days)
        for session in self.list_sessions(owner_id, start=since):
            if not session.completed:
                continue
            stats.total_workouts += 1
            stats.total_distance_km += session.actual_distance_km or 0.0
            stats.total_duration_minutes += session.actual_duration_minutes or 0
            stats.total_load += session.actual_load or 0
        return stats
