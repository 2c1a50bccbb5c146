"""
Periodic orchestrator

A single-shot run over every user: fetch from providers, reconcile, detect
conflicts, sync alerts, schedule notifications. Each run re-arms its own next
invocation with the scheduling host before doing any work.
"""

import asyncio
import json
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from ridecoach.alerts import AlertSynchronizer
from ridecoach.config.secrets import SecretStore
from ridecoach.config.settings import Settings, get_settings
from ridecoach.conflicts import ConflictPolicy, detect_conflicts
from ridecoach.errors import AuthenticationFailure, ProviderUnavailable
from ridecoach.models import (
    AlertStatus,
    CalendarEvent,
    ExternalRecord,
    NotificationRequest,
    User,
)
from ridecoach.notifications import (
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationPolicy,
    NotificationScheduler,
    ScheduleResult,
    session_notification_ids,
)
from ridecoach.providers.base import (
    CalendarProvider,
    TrainingPlatformProvider,
    WorkoutProvider,
    provider_registry,
)
from ridecoach.reconciler import MatchingPolicy, Reconciler
from ridecoach.storage.repository import SyncStore
from ridecoach.timewindow import utc_now
from ridecoach.utils.mixins import LoggerMixin


class JobKind(str, Enum):
    """Orchestrator job kinds"""

    CHECK_TRAINING = "check_training"
    DETECT_CONFLICTS = "detect_conflicts"
    FULL = "full"


@dataclass(frozen=True)
class JobStages:
    """Which pipeline stages a job runs; reconciliation always runs."""

    detect_conflicts: bool
    session_notifications: bool
    conflict_warnings: bool
    weekly_review: bool


JOB_STAGES: dict[JobKind, JobStages] = {
    JobKind.CHECK_TRAINING: JobStages(
        detect_conflicts=False,
        session_notifications=True,
        conflict_warnings=False,
        weekly_review=False,
    ),
    JobKind.DETECT_CONFLICTS: JobStages(
        detect_conflicts=True,
        session_notifications=False,
        conflict_warnings=True,
        weekly_review=False,
    ),
    JobKind.FULL: JobStages(
        detect_conflicts=True,
        session_notifications=True,
        conflict_warnings=True,
        weekly_review=True,
    ),
}


class JobRequest(BaseModel):
    """Ask the host to run ``job`` no earlier than ``earliest_begin``."""

    job: JobKind
    earliest_begin: datetime


@runtime_checkable
class SchedulingHost(Protocol):
    def submit(self, request: JobRequest) -> None: ...


class MemorySchedulingHost:
    """Keeps submitted requests in memory."""

    def __init__(self) -> None:
        self.submitted: list[JobRequest] = []

    def submit(self, request: JobRequest) -> None:
        self.submitted.append(request)

    def pending(self) -> dict[JobKind, datetime]:
        return {request.job: request.earliest_begin for request in self.submitted}


class FileSchedulingHost(LoggerMixin):
    """JSON file of the next earliest-begin time per job, read by cron or systemd timers."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def pending(self) -> dict[JobKind, datetime]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            return {
                JobKind(job): datetime.fromisoformat(at) for job, at in data.items()
            }
        except (ValueError, TypeError, AttributeError) as exc:
            # rewritten whole on the next submit
            self.logger.warning(
                "Unreadable schedule file, starting empty",
                path=str(self.path),
                error=str(exc),
            )
            return {}

    def submit(self, request: JobRequest) -> None:
        schedule = {job.value: at.isoformat() for job, at in self.pending().items()}
        schedule[request.job.value] = request.earliest_begin.isoformat()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(schedule, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)
        self.logger.debug(
            "Next run requested",
            job=request.job.value,
            earliest_begin=request.earliest_begin.isoformat(),
        )


class OwnerStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OwnerReport(BaseModel):
    """Outcome of one owner's pipeline"""

    owner_id: str
    status: OwnerStatus = OwnerStatus.OK
    records_fetched: int = 0
    sessions_inserted: int = 0
    sessions_updated: int = 0
    sessions_merged: int = 0
    records_skipped: int = 0
    conflicts_detected: int = 0
    alerts_created: int = 0
    notifications_dispatched: int = 0
    notifications_cancelled: int = 0
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class RunReport(BaseModel):
    """Outcome of one orchestrator invocation"""

    job: JobKind
    started_at: datetime
    finished_at: datetime | None = None
    next_run_at: datetime | None = None
    owners: list[OwnerReport] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(owner.status == OwnerStatus.OK for owner in self.owners)


@dataclass
class _FetchResult:
    records: list[ExternalRecord]
    events: list[CalendarEvent] | None


class PeriodicOrchestrator(LoggerMixin):
    """Runs the sync pipeline for every user in the store."""

    def __init__(
        self,
        store: SyncStore,
        *,
        calendar: CalendarProvider | None = None,
        workouts: WorkoutProvider | None = None,
        platform: TrainingPlatformProvider | None = None,
        dispatcher: NotificationDispatcher | None = None,
        host: SchedulingHost | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.calendar = calendar
        self.workouts = workouts
        self.platform = platform
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.host = host or MemorySchedulingHost()
        self._clock = clock

        self.reconciler = Reconciler(
            MatchingPolicy.from_hours(self.settings.matching_window_hours), clock
        )
        self.conflict_policy = ConflictPolicy.from_settings(self.settings)
        self.alert_sync = AlertSynchronizer(clock)
        self.scheduler = NotificationScheduler(
            NotificationPolicy.from_settings(self.settings)
        )
        self.local_tz = ZoneInfo(self.settings.timezone)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        secrets: SecretStore,
        *,
        store: SyncStore | None = None,
        dispatcher: NotificationDispatcher | None = None,
        host: SchedulingHost | None = None,
    ) -> "PeriodicOrchestrator":
        """Wire the bundled providers from the registry."""
        return cls(
            store or SyncStore.from_settings(settings),
            calendar=provider_registry.create("google_calendar", settings, secrets),
            workouts=provider_registry.create("garmin", settings, secrets),
            platform=provider_registry.create("intervals_icu", settings, secrets),
            dispatcher=dispatcher,
            host=host,
            settings=settings,
        )

    async def aclose(self) -> None:
        for provider in (self.calendar, self.workouts, self.platform):
            close = getattr(provider, "close", None)
            if close is not None:
                await close()

    def interval_for(self, job: JobKind) -> timedelta:
        if job == JobKind.CHECK_TRAINING:
            return timedelta(hours=self.settings.check_training_interval_hours)
        return timedelta(hours=self.settings.detect_conflicts_interval_hours)

    def _rearm(self, job: JobKind, now: datetime, report: RunReport) -> None:
        request = JobRequest(job=job, earliest_begin=now + self.interval_for(job))
        try:
            self.host.submit(request)
        except OSError as exc:
            report.errors.append(f"failed to re-arm {job.value}: {exc}")
            self.logger.error("Failed to re-arm job", job=job.value, error=str(exc))
            return
        report.next_run_at = request.earliest_begin

    async def run(self, job: JobKind, now: datetime | None = None) -> RunReport:
        """Run ``job`` once over all users and report the outcome."""
        now = now or self._clock()
        report = RunReport(job=job, started_at=now)
        self._rearm(job, now, report)

        users = await asyncio.to_thread(self.store.list_users)
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_owners)
        tasks = {
            asyncio.create_task(self._run_bounded(semaphore, user, job, now)): user
            for user in users
        }

        pending: set[asyncio.Task] = set()
        if tasks:
            _, pending = await asyncio.wait(
                tasks, timeout=self.settings.run_time_budget_seconds
            )
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for task, user in tasks.items():
            if task in pending or task.cancelled():
                report.owners.append(
                    OwnerReport(
                        owner_id=user.id,
                        status=OwnerStatus.CANCELLED,
                        errors=["time budget exceeded"],
                    )
                )
            else:
                report.owners.append(task.result())

        report.finished_at = self._clock()
        self.logger.info(
            "Orchestrator run finished",
            job=job.value,
            owners=len(report.owners),
            success=report.success,
            cancelled=len(pending),
        )
        return report

    async def _run_bounded(
        self, semaphore: asyncio.Semaphore, user: User, job: JobKind, now: datetime
    ) -> OwnerReport:
        async with semaphore:
            try:
                return await self.run_owner(user, job, now)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.exception(
                    "Owner pipeline failed", owner_id=user.id, job=job.value
                )
                return OwnerReport(
                    owner_id=user.id, status=OwnerStatus.FAILED, errors=[str(exc)]
                )

    async def run_owner(self, user: User, job: JobKind, now: datetime) -> OwnerReport:
        """Fetch, persist in one transaction, then dispatch."""
        stages = JOB_STAGES[job]
        report = OwnerReport(owner_id=user.id)

        fetched = await self._fetch(user, stages, now, report)
        report.records_fetched = len(fetched.records)

        schedule = await asyncio.to_thread(
            self._persist_owner, user, stages, now, fetched, report
        )

        delivered = await self._dispatch(schedule.requests, report)
        await self._cancel(schedule.cancellations, report)
        sent_alerts = [
            alert
            for alert in schedule.alert_updates
            if any(
                request.metadata.get("conflict_id") == alert.id for request in delivered
            )
        ]
        if sent_alerts:
            await asyncio.to_thread(
                self.store.mark_alerts_notified, user.id, sent_alerts
            )

        self.logger.info(
            "Owner pipeline finished",
            owner_id=user.id,
            job=job.value,
            inserted=report.sessions_inserted,
            updated=report.sessions_updated,
            alerts_created=report.alerts_created,
            dispatched=report.notifications_dispatched,
            cancelled=report.notifications_cancelled,
        )
        return report

    async def _bounded(self, name: str, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(
                call, timeout=self.settings.provider_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise ProviderUnavailable(name, "timed out") from exc

    async def _fetch(
        self, user: User, stages: JobStages, now: datetime, report: OwnerReport
    ) -> _FetchResult:
        history_start = now - timedelta(days=self.settings.history_days)
        horizon = now + timedelta(days=self.settings.lookahead_days)

        calls: dict[str, Awaitable[Any]] = {}
        if self.platform is not None and user.platform_athlete_id:
            athlete_id = user.platform_athlete_id
            calls["platform_event"] = self.platform.fetch_planned_events(
                athlete_id, history_start, horizon
            )
            calls["platform_activity"] = self.platform.fetch_activities(
                athlete_id, history_start, now
            )
        if self.workouts is not None:
            calls["health_store"] = self.workouts.fetch_workouts(history_start, now)

        want_calendar = stages.detect_conflicts and self.calendar is not None
        if want_calendar:
            if await self.calendar.is_authorized():
                calls["calendar"] = self.calendar.fetch_events(now, horizon)
            else:
                report.warnings.append("calendar: access not granted")

        names = list(calls)
        results = await asyncio.gather(
            *(self._bounded(name, calls[name]) for name in names),
            return_exceptions=True,
        )

        records: list[ExternalRecord] = []
        events: list[CalendarEvent] | None = None
        for name, result in zip(names, results):
            if isinstance(result, ProviderUnavailable):
                report.warnings.append(str(result))
                self.logger.warning(
                    "Provider unavailable, skipping source",
                    owner_id=user.id,
                    source=name,
                    error=str(result),
                )
            elif isinstance(result, AuthenticationFailure):
                report.errors.append(str(result))
                self.logger.error(
                    "Provider rejected credential",
                    owner_id=user.id,
                    source=name,
                )
            elif isinstance(result, BaseException):
                raise result
            elif name == "calendar":
                events = result
            else:
                records.extend(result)

        if want_calendar and events is None:
            self.logger.info(
                "Calendar unavailable, skipping conflict detection", owner_id=user.id
            )
        return _FetchResult(records=records, events=events)

    def _persist_owner(
        self,
        user: User,
        stages: JobStages,
        now: datetime,
        fetched: _FetchResult,
        report: OwnerReport,
    ) -> ScheduleResult:
        """Reconcile, detect and sync alerts inside one owner transaction."""
        history_start = now - timedelta(days=self.settings.history_days)
        horizon = now + timedelta(days=self.settings.lookahead_days)
        margin = self.reconciler.policy.window

        with self.store.owner_transaction(user.id) as tx:
            existing = tx.sessions(history_start - margin, horizon + margin)
            result = self.reconciler.reconcile(user.id, fetched.records, existing)
            applied = tx.apply_reconciliation(result)
            report.sessions_inserted = applied.inserted
            report.sessions_updated = applied.updated
            report.sessions_merged = applied.merged
            report.records_skipped = len(result.skipped)
            was_open = {s.id for s in existing if not s.completed}
            finished = [
                s.id for s in result.to_update if s.completed and s.id in was_open
            ]

            sessions = tx.sessions(history_start, horizon)

            if stages.detect_conflicts and fetched.events is not None:
                upcoming = [s for s in sessions if s.scheduled_start >= now]
                conflicts = detect_conflicts(
                    upcoming, fetched.events, self.conflict_policy
                )
                report.conflicts_detected = len(conflicts)
                new_alerts = self.alert_sync.sync(user.id, conflicts, tx.alerts())
                report.alerts_created = tx.insert_alerts(new_alerts)

            alerts = (
                tx.alerts(status=AlertStatus.PENDING)
                if stages.conflict_warnings
                else []
            )
            schedule = self.scheduler.evaluate(
                now,
                sessions if stages.session_notifications else [],
                alerts,
            )
            for session_id in finished:
                schedule.cancellations.extend(session_notification_ids(session_id))

        if stages.weekly_review:
            schedule.requests.append(
                self.scheduler.weekly_review(user.id, now.astimezone(self.local_tz))
            )
        return schedule

    async def _dispatch(
        self, requests: list[NotificationRequest], report: OwnerReport
    ) -> list[NotificationRequest]:
        delivered: list[NotificationRequest] = []
        for request in requests:
            try:
                await self.dispatcher.dispatch(request)
            except Exception as exc:
                report.warnings.append(f"dispatch {request.identifier}: {exc}")
                self.logger.warning(
                    "Notification dispatch failed",
                    identifier=request.identifier,
                    kind=request.kind.value,
                    error=str(exc),
                )
                continue
            delivered.append(request)
        report.notifications_dispatched = len(delivered)
        return delivered

    async def _cancel(self, identifiers: list[str], report: OwnerReport) -> None:
        for identifier in identifiers:
            try:
                await self.dispatcher.cancel(identifier)
            except Exception as exc:
                report.warnings.append(f"cancel {identifier}: {exc}")
                self.logger.warning(
                    "Notification cancel failed", identifier=identifier, error=str(exc)
                )
                continue
            report.notifications_cancelled += 1
