"""End-to-end orchestrator runs with in-process providers."""

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest

from ridecoach.config import Settings
from ridecoach.errors import AuthenticationFailure, ProviderUnavailable
from ridecoach.models import (
    AlertStatus,
    CalendarEvent,
    ExternalRecord,
    NotificationKind,
    RecordKind,
    SourceTag,
    User,
)
from ridecoach.notifications import RecordingDispatcher, session_notification_ids
from ridecoach.orchestrator import (
    FileSchedulingHost,
    JobKind,
    JobRequest,
    MemorySchedulingHost,
    OwnerStatus,
    PeriodicOrchestrator,
)

NOW = datetime(2025, 3, 12, 9, 0, tzinfo=UTC)
YESTERDAY_RIDE = datetime(2025, 3, 11, 7, 0, tzinfo=UTC)
TOMORROW_RIDE = datetime(2025, 3, 13, 18, 0, tzinfo=UTC)


class FakePlatform:
    def __init__(self, planned=None, activities=None, error=None) -> None:
        self.planned = planned or []
        self.activities = activities or []
        self.error = error
        self.calls = 0

    async def fetch_planned_events(self, athlete_id, start, end):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.planned)

    async def fetch_activities(self, athlete_id, start, end):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.activities)


class FakeWorkouts:
    def __init__(self, records=None, error=None, delay: float = 0.0) -> None:
        self.records = records or []
        self.error = error
        self.delay = delay

    async def fetch_workouts(self, start, end):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.records)


class FakeCalendar:
    def __init__(self, events=None, authorized: bool = True, error=None) -> None:
        self.events = events or []
        self.authorized = authorized
        self.error = error
        self.fetches = 0

    async def is_authorized(self) -> bool:
        return self.authorized

    async def fetch_events(self, start, end):
        self.fetches += 1
        if self.error:
            raise self.error
        return list(self.events)


class BrokenHost:
    def submit(self, request: JobRequest) -> None:
        raise OSError("read-only file system")


def _planned(external_id: str, start: datetime, minutes: int = 60) -> ExternalRecord:
    return ExternalRecord(
        source=SourceTag.PLATFORM_EVENT,
        kind=RecordKind.PLANNED,
        external_id=external_id,
        start=start,
        activity_type="Ride",
        title="Sweet Spot",
        planned_duration_minutes=minutes,
        planned_load=70,
    )


def _activity(external_id: str, start: datetime) -> ExternalRecord:
    return ExternalRecord(
        source=SourceTag.PLATFORM_ACTIVITY,
        kind=RecordKind.ACTIVITY,
        external_id=external_id,
        start=start,
        end=start + timedelta(minutes=62),
        activity_type="Ride",
        actual_duration_minutes=62,
        actual_load=74,
    )


def _garmin(external_id: str, start: datetime) -> ExternalRecord:
    return ExternalRecord(
        source=SourceTag.HEALTH_STORE,
        kind=RecordKind.ACTIVITY,
        external_id=external_id,
        start=start,
        activity_type="cycling",
        actual_duration_minutes=61,
        average_heart_rate=142,
        average_power_watts=205,
    )


def _dinner() -> CalendarEvent:
    # starts 15 minutes after the ride ends
    return CalendarEvent(
        id="cal-dinner",
        title="Dinner",
        start=TOMORROW_RIDE + timedelta(minutes=75),
        end=TOMORROW_RIDE + timedelta(hours=3),
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url="sqlite://",
        secrets_dir=tmp_path / "secrets",
        timezone="UTC",
        run_time_budget_seconds=5.0,
        provider_timeout_seconds=5.0,
    )


@pytest.fixture
def host() -> MemorySchedulingHost:
    return MemorySchedulingHost()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


def _orchestrator(store, settings, host, dispatcher, **providers):
    providers.setdefault(
        "platform",
        FakePlatform(
            planned=[
                _planned("evt-0", YESTERDAY_RIDE),
                _planned("evt-1", TOMORROW_RIDE),
            ],
            activities=[_activity("act-0", YESTERDAY_RIDE)],
        ),
    )
    providers.setdefault(
        "workouts",
        FakeWorkouts(records=[_garmin("g-0", YESTERDAY_RIDE + timedelta(minutes=5))]),
    )
    providers.setdefault("calendar", FakeCalendar(events=[_dinner()]))
    return PeriodicOrchestrator(
        store,
        dispatcher=dispatcher,
        host=host,
        settings=settings,
        clock=lambda: NOW,
        **providers,
    )


@pytest.mark.asyncio
async def test_full_run_reconciles_detects_and_notifies(
    store, user, settings, host, dispatcher
) -> None:
    orchestrator = _orchestrator(store, settings, host, dispatcher)

    report = await orchestrator.run(JobKind.FULL)

    assert report.success
    assert report.next_run_at == NOW + timedelta(hours=24)
    assert host.pending() == {JobKind.FULL: NOW + timedelta(hours=24)}

    owner = report.owners[0]
    assert owner.status == OwnerStatus.OK
    assert owner.records_fetched == 4
    assert owner.sessions_inserted == 2
    assert owner.conflicts_detected == 1
    assert owner.alerts_created == 1
    assert owner.notifications_dispatched == 2

    sessions = store.list_sessions(user.id)
    assert [s.scheduled_start for s in sessions] == [YESTERDAY_RIDE, TOMORROW_RIDE]
    ridden = sessions[0]
    assert ridden.completed
    assert ridden.sources == {
        SourceTag.PLATFORM_EVENT,
        SourceTag.PLATFORM_ACTIVITY,
        SourceTag.HEALTH_STORE,
    }
    assert ridden.planned_load == 70
    assert ridden.actual_load == 74
    assert ridden.average_power_watts == 205

    alerts = store.list_alerts(user.id)
    assert len(alerts) == 1
    assert alerts[0].calendar_event_id == "cal-dinner"
    assert alerts[0].session_id == sessions[1].id
    assert alerts[0].notification_sent is True

    kinds = sorted(request.kind for request in dispatcher.delivered.values())
    assert kinds == sorted(
        [NotificationKind.CONFLICT_WARNING, NotificationKind.WEEKLY_REVIEW]
    )


@pytest.mark.asyncio
async def test_second_run_changes_nothing(store, user, settings, host, dispatcher) -> None:
    orchestrator = _orchestrator(store, settings, host, dispatcher)
    await orchestrator.run(JobKind.FULL)
    sessions_before = [s.model_dump() for s in store.list_sessions(user.id)]
    alerts_before = [a.model_dump() for a in store.list_alerts(user.id)]
    delivered_before = set(dispatcher.delivered)

    report = await orchestrator.run(JobKind.FULL)

    owner = report.owners[0]
    assert owner.sessions_inserted == 0
    assert owner.sessions_updated == 0
    assert owner.alerts_created == 0
    assert [s.model_dump() for s in store.list_sessions(user.id)] == sessions_before
    assert [a.model_dump() for a in store.list_alerts(user.id)] == alerts_before
    # only the weekly review is re-sent, under the same identifier
    assert set(dispatcher.delivered) == delivered_before


@pytest.mark.asyncio
async def test_check_training_skips_calendar_and_flags_missed_workout(
    store, user, settings, host, dispatcher
) -> None:
    calendar = FakeCalendar(events=[_dinner()])
    missed_start = NOW - timedelta(hours=2, minutes=30)
    orchestrator = _orchestrator(
        store,
        settings,
        host,
        dispatcher,
        calendar=calendar,
        platform=FakePlatform(planned=[_planned("evt-m", missed_start)]),
        workouts=FakeWorkouts(),
    )

    report = await orchestrator.run(JobKind.CHECK_TRAINING)

    assert report.success
    assert calendar.fetches == 0
    assert report.next_run_at == NOW + timedelta(hours=4)
    assert store.list_alerts(user.id) == []
    kinds = [request.kind for request in dispatcher.delivered.values()]
    assert kinds == [NotificationKind.MISSED_WORKOUT]


@pytest.mark.asyncio
async def test_unauthorized_calendar_skips_detection(
    store, user, settings, host, dispatcher
) -> None:
    calendar = FakeCalendar(events=[_dinner()], authorized=False)
    orchestrator = _orchestrator(store, settings, host, dispatcher, calendar=calendar)

    report = await orchestrator.run(JobKind.DETECT_CONFLICTS)

    owner = report.owners[0]
    assert report.success
    assert calendar.fetches == 0
    assert owner.conflicts_detected == 0
    assert "calendar: access not granted" in owner.warnings
    assert owner.sessions_inserted == 2
    assert store.list_alerts(user.id) == []


@pytest.mark.asyncio
async def test_unavailable_calendar_keeps_existing_alerts(
    store, user, settings, host, dispatcher
) -> None:
    await _orchestrator(store, settings, host, dispatcher).run(JobKind.DETECT_CONFLICTS)
    calendar = FakeCalendar(error=ProviderUnavailable("calendar", "HTTP 503"))
    orchestrator = _orchestrator(store, settings, host, dispatcher, calendar=calendar)

    report = await orchestrator.run(JobKind.DETECT_CONFLICTS)

    assert report.success
    assert "calendar: HTTP 503" in report.owners[0].warnings
    alerts = store.list_alerts(user.id)
    assert len(alerts) == 1
    assert alerts[0].status == AlertStatus.PENDING


@pytest.mark.asyncio
async def test_rejected_credential_is_reported_without_failing_owner(
    store, user, settings, host, dispatcher
) -> None:
    orchestrator = _orchestrator(
        store,
        settings,
        host,
        dispatcher,
        platform=FakePlatform(error=AuthenticationFailure("training_platform")),
    )

    report = await orchestrator.run(JobKind.FULL)

    owner = report.owners[0]
    assert report.success
    assert owner.status == OwnerStatus.OK
    assert owner.errors == [
        "training_platform: credential rejected",
        "training_platform: credential rejected",
    ]
    # the health store still contributed its ride
    assert owner.sessions_inserted == 1


@pytest.mark.asyncio
async def test_unexpected_error_fails_owner_but_still_rearms(
    store, user, settings, host, dispatcher
) -> None:
    store.add_user(User(name="Second Rider"))
    orchestrator = _orchestrator(
        store,
        settings,
        host,
        dispatcher,
        workouts=FakeWorkouts(error=RuntimeError("boom")),
    )

    report = await orchestrator.run(JobKind.FULL)

    assert not report.success
    assert {owner.status for owner in report.owners} == {OwnerStatus.FAILED}
    assert report.owners[0].errors == ["boom"]
    assert host.pending() == {JobKind.FULL: NOW + timedelta(hours=24)}


@pytest.mark.asyncio
async def test_slow_provider_times_out_as_unavailable(
    store, user, settings, host, dispatcher
) -> None:
    settings = settings.model_copy(update={"provider_timeout_seconds": 0.05})
    orchestrator = _orchestrator(
        store, settings, host, dispatcher, workouts=FakeWorkouts(delay=1.0)
    )

    report = await orchestrator.run(JobKind.FULL)

    owner = report.owners[0]
    assert report.success
    assert "health_store: timed out" in owner.warnings
    assert owner.sessions_inserted == 2


@pytest.mark.asyncio
async def test_time_budget_cancels_owners(store, user, settings, host, dispatcher) -> None:
    settings = settings.model_copy(update={"run_time_budget_seconds": 0.05})
    orchestrator = _orchestrator(
        store, settings, host, dispatcher, workouts=FakeWorkouts(delay=2.0)
    )

    report = await orchestrator.run(JobKind.FULL)

    assert not report.success
    assert report.owners[0].status == OwnerStatus.CANCELLED
    assert report.owners[0].errors == ["time budget exceeded"]
    assert report.next_run_at is not None
    assert store.list_sessions(user.id) == []


@pytest.mark.asyncio
async def test_rearm_failure_is_recorded(store, user, settings, dispatcher) -> None:
    orchestrator = _orchestrator(store, settings, BrokenHost(), dispatcher)

    report = await orchestrator.run(JobKind.DETECT_CONFLICTS)

    assert report.success
    assert report.next_run_at is None
    assert report.errors == ["failed to re-arm detect_conflicts: read-only file system"]


@pytest.mark.asyncio
async def test_owners_are_isolated(file_store, settings, host, dispatcher) -> None:
    riders = [
        file_store.add_user(User(name=f"Rider {n}", platform_athlete_id=f"i{n}"))
        for n in range(3)
    ]
    orchestrator = _orchestrator(file_store, settings, host, dispatcher)

    report = await orchestrator.run(JobKind.FULL)

    assert report.success
    assert len(report.owners) == 3
    for rider in riders:
        sessions = file_store.list_sessions(rider.id)
        assert len(sessions) == 2
        assert all(s.owner_id == rider.id for s in sessions)
        assert len(file_store.list_alerts(rider.id)) == 1


def test_file_scheduling_host_keeps_one_entry_per_job(tmp_path) -> None:
    path = tmp_path / "state" / "schedule.json"
    host = FileSchedulingHost(path)

    host.submit(JobRequest(job=JobKind.CHECK_TRAINING, earliest_begin=NOW))
    host.submit(JobRequest(job=JobKind.FULL, earliest_begin=NOW))
    later = NOW + timedelta(hours=4)
    host.submit(JobRequest(job=JobKind.CHECK_TRAINING, earliest_begin=later))

    assert host.pending() == {JobKind.CHECK_TRAINING: later, JobKind.FULL: NOW}
    with open(path, encoding="utf-8") as f:
        assert json.load(f)["check_training"] == later.isoformat()
    assert not path.with_suffix(".json.tmp").exists()


@pytest.mark.asyncio
async def test_corrupt_schedule_file_is_replaced(
    store, user, settings, dispatcher, tmp_path
) -> None:
    path = tmp_path / "schedule.json"
    path.write_text("{not json", encoding="utf-8")
    host = FileSchedulingHost(path)
    orchestrator = _orchestrator(store, settings, host, dispatcher)

    report = await orchestrator.run(JobKind.CHECK_TRAINING)

    assert report.success
    assert report.errors == []
    assert report.owners[0].sessions_inserted == 2
    assert host.pending() == {JobKind.CHECK_TRAINING: NOW + timedelta(hours=4)}


@pytest.mark.asyncio
async def test_completed_ride_withdraws_its_session_notifications(
    store, user, settings, host, dispatcher
) -> None:
    planned_only = FakePlatform(planned=[_planned("evt-0", YESTERDAY_RIDE)])
    first = _orchestrator(
        store, settings, host, dispatcher, platform=planned_only, workouts=FakeWorkouts()
    )
    await first.run(JobKind.CHECK_TRAINING)
    (session,) = store.list_sessions(user.id)
    assert not session.completed

    ridden = FakePlatform(
        planned=[_planned("evt-0", YESTERDAY_RIDE)],
        activities=[_activity("act-0", YESTERDAY_RIDE)],
    )
    second = _orchestrator(
        store, settings, host, dispatcher, platform=ridden, workouts=FakeWorkouts()
    )
    report = await second.run(JobKind.CHECK_TRAINING)

    assert report.owners[0].sessions_updated == 1
    assert report.owners[0].notifications_cancelled == 2
    assert dispatcher.cancelled == session_notification_ids(session.id)
    assert store.get_session(session.id).completed
