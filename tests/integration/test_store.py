"""Store behaviour against a real SQLite database."""

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from ridecoach.config import Settings
from ridecoach.conflicts import ConflictPolicy, suggest_alternative_time
from ridecoach.errors import PersistenceConflict, RecordNotFound
from ridecoach.models import (
    AlertStatus,
    CalendarEvent,
    ConflictAlert,
    ConflictType,
    ExternalRecord,
    Goal,
    RecordKind,
    SourceTag,
    TrainingSession,
    User,
)
from ridecoach.reconciler import ReconcileResult, Reconciler

NOW = datetime(2025, 3, 12, 9, 0, tzinfo=UTC)


def _session(owner_id: str, **kwargs) -> TrainingSession:
    return TrainingSession(
        owner_id=owner_id,
        scheduled_start=kwargs.pop("scheduled_start", NOW + timedelta(days=1)),
        title=kwargs.pop("title", "Endurance"),
        **kwargs,
    )


def _alert(owner_id: str, session_id: str, event_id: str = "evt-1") -> ConflictAlert:
    return ConflictAlert(
        owner_id=owner_id,
        session_id=session_id,
        calendar_event_id=event_id,
        calendar_event_title="Dinner",
        conflict_at=NOW + timedelta(days=1),
        conflict_type=ConflictType.TOO_CLOSE_AFTER,
    )


def test_users_and_goals(store) -> None:
    user = store.add_user(User(name="Sam", preferred_training_days=["Mon", "Thu"]))
    store.add_goal(Goal(owner_id=user.id, title="Etape"))
    store.add_goal(Goal(owner_id=user.id, title="Done", status="completed"))

    loaded = store.get_user(user.id)
    assert loaded is not None
    assert loaded.preferred_training_days == ["Mon", "Thu"]
    assert [u.id for u in store.list_users()] == [user.id]
    assert [g.title for g in store.list_active_goals(user.id)] == ["Etape"]
    assert store.get_user("nobody") is None

    with pytest.raises(PersistenceConflict):
        store.add_user(user)
    with pytest.raises(RecordNotFound):
        store.add_goal(Goal(owner_id="nobody", title="x"))


def test_goal_progress_drives_status(store, user) -> None:
    overdue = store.add_goal(
        Goal(owner_id=user.id, title="FTP 300", target_date=NOW - timedelta(days=1))
    )
    fondo = store.add_goal(Goal(owner_id=user.id, title="Gran Fondo"))

    assert store.update_goal_progress(overdue.id, 0.3, now=NOW).status == "at_risk"
    updated = store.update_goal_progress(fondo.id, 0.8, now=NOW)
    assert updated.status == "on_track"
    assert updated.progress == 0.8
    assert updated.last_progress_update == NOW
    # on track and at risk goals are still being worked on
    open_titles = {g.title for g in store.list_active_goals(user.id)}
    assert open_titles == {"FTP 300", "Gran Fondo"}

    assert store.update_goal_progress(fondo.id, 1.0, now=NOW).status == "completed"
    assert [g.title for g in store.list_active_goals(user.id)] == ["FTP 300"]
    assert len(store.list_goals(user.id)) == 2

    with pytest.raises(ValueError):
        store.update_goal_progress(fondo.id, 1.5)
    with pytest.raises(RecordNotFound):
        store.update_goal_progress("missing", 0.5)


def test_toggle_and_delete_goal(store, user) -> None:
    goal = store.add_goal(Goal(owner_id=user.id, title="Century", progress=0.4))

    completed = store.toggle_goal_status(goal.id)
    assert completed.status == "completed"
    assert completed.progress == 1.0
    reopened = store.toggle_goal_status(goal.id)
    assert reopened.status == "active"
    assert reopened.progress == 1.0

    store.delete_goal(goal.id)
    assert store.list_goals(user.id) == []
    with pytest.raises(RecordNotFound):
        store.delete_goal(goal.id)
    with pytest.raises(RecordNotFound):
        store.toggle_goal_status(goal.id)


def test_session_round_trip_preserves_provenance_and_timezone(store, user) -> None:
    session = _session(
        user.id,
        planned_duration_minutes=90,
        sources={SourceTag.PLATFORM_EVENT},
        external_ids={SourceTag.PLATFORM_EVENT: "evt-7"},
    )

    outcome = store.apply_reconciliation(user.id, ReconcileResult(to_insert=[session]))

    assert outcome.inserted == 1
    loaded = store.get_session(session.id)
    assert loaded is not None
    assert loaded.scheduled_start == session.scheduled_start
    assert loaded.scheduled_start.tzinfo is not None
    assert loaded.external_ids == {SourceTag.PLATFORM_EVENT: "evt-7"}
    assert loaded.sources == {SourceTag.PLATFORM_EVENT}
    assert loaded.planned_duration_minutes == 90


def test_list_sessions_filters(store, user) -> None:
    past = _session(user.id, scheduled_start=NOW - timedelta(days=2), completed=True)
    future = _session(user.id, scheduled_start=NOW + timedelta(days=2))
    store.apply_reconciliation(user.id, ReconcileResult(to_insert=[past, future]))

    assert [s.id for s in store.list_sessions(user.id)] == [past.id, future.id]
    assert [s.id for s in store.list_sessions(user.id, start=NOW)] == [future.id]
    assert [s.id for s in store.list_sessions(user.id, incomplete_only=True)] == [future.id]
    assert store.list_sessions("someone-else") == []


def test_lost_insert_race_is_merged_into_existing_row(store, user) -> None:
    winner = _session(
        user.id,
        planned_duration_minutes=60,
        sources={SourceTag.HEALTH_STORE},
        external_ids={SourceTag.HEALTH_STORE: "g-1"},
    )
    store.apply_reconciliation(user.id, ReconcileResult(to_insert=[winner]))

    # a second run that did not see the winner computes its own insert
    loser = _session(
        user.id,
        average_power_watts=215,
        completed=True,
        sources={SourceTag.HEALTH_STORE},
        external_ids={SourceTag.HEALTH_STORE: "g-1"},
    )
    outcome = store.apply_reconciliation(user.id, ReconcileResult(to_insert=[loser]))

    assert outcome.inserted == 0
    assert outcome.merged == 1
    sessions = store.list_sessions(user.id)
    assert [s.id for s in sessions] == [winner.id]
    assert sessions[0].average_power_watts == 215
    assert sessions[0].planned_duration_minutes == 60
    assert sessions[0].completed is True


def test_update_that_claims_a_taken_external_id_keeps_other_changes(store, user) -> None:
    holder = _session(
        user.id,
        sources={SourceTag.HEALTH_STORE},
        external_ids={SourceTag.HEALTH_STORE: "g-1"},
    )
    other = _session(user.id, scheduled_start=NOW + timedelta(days=3))
    store.apply_reconciliation(user.id, ReconcileResult(to_insert=[holder, other]))

    stale = other.model_copy(deep=True)
    stale.external_ids[SourceTag.HEALTH_STORE] = "g-1"
    stale.max_heart_rate = 181
    outcome = store.apply_reconciliation(user.id, ReconcileResult(to_update=[stale]))

    assert outcome.updated == 1
    reloaded = store.get_session(other.id)
    assert reloaded is not None
    assert reloaded.max_heart_rate == 181
    assert SourceTag.HEALTH_STORE not in reloaded.external_ids


def test_update_of_deleted_session_is_counted_missing(store, user) -> None:
    session = _session(user.id)
    store.apply_reconciliation(user.id, ReconcileResult(to_insert=[session]))
    store.delete_session(session.id)

    outcome = store.apply_reconciliation(user.id, ReconcileResult(to_update=[session]))

    assert outcome.missing == 1
    assert outcome.updated == 0


def test_reconcile_then_apply_is_idempotent(store, user) -> None:
    reconciler = Reconciler(clock=lambda: NOW)
    batch = [
        ExternalRecord(
            source=SourceTag.PLATFORM_EVENT,
            kind=RecordKind.PLANNED,
            external_id="evt-1",
            start=NOW - timedelta(hours=5),
            planned_duration_minutes=60,
        ),
        ExternalRecord(
            source=SourceTag.HEALTH_STORE,
            kind=RecordKind.ACTIVITY,
            external_id="g-1",
            start=NOW - timedelta(hours=4, minutes=55),
            actual_duration_minutes=61,
        ),
    ]

    for _ in range(2):
        existing = store.list_sessions(user.id)
        store.apply_reconciliation(user.id, reconciler.reconcile(user.id, batch, existing))
    snapshot = [s.model_dump() for s in store.list_sessions(user.id)]

    existing = store.list_sessions(user.id)
    result = reconciler.reconcile(user.id, batch, existing)

    assert not result.changed
    assert len(snapshot) == 1
    assert [s.model_dump() for s in store.list_sessions(user.id)] == snapshot


def test_alert_uniqueness_and_user_resolution(store, user) -> None:
    session = _session(user.id)
    store.apply_reconciliation(user.id, ReconcileResult(to_insert=[session]))

    first = _alert(user.id, session.id)
    assert store.insert_alerts(user.id, [first]) == 1
    assert store.insert_alerts(user.id, [_alert(user.id, session.id)]) == 0

    alerts = store.list_alerts(user.id)
    assert [a.id for a in alerts] == [first.id]

    notified = first.model_copy(update={"notification_sent": True, "notification_sent_at": NOW})
    assert store.mark_alerts_notified(user.id, [notified]) == 1
    assert store.mark_alerts_notified(user.id, [notified]) == 0
    assert store.list_alerts(user.id)[0].notification_sent_at == NOW

    resolved = store.resolve_alert(first.id, "Moved ride to 07:00")
    assert resolved.status == AlertStatus.RESOLVED
    assert resolved.resolution == "Moved ride to 07:00"
    assert resolved.resolved_at is not None
    assert store.list_alerts(user.id, AlertStatus.PENDING) == []

    with pytest.raises(ValueError):
        store.resolve_alert(first.id, status=AlertStatus.PENDING)
    with pytest.raises(RecordNotFound):
        store.ignore_alert("missing")


def test_ignore_alert(store, user) -> None:
    session = _session(user.id)
    store.apply_reconciliation(user.id, ReconcileResult(to_insert=[session]))
    alert = _alert(user.id, session.id)
    store.insert_alerts(user.id, [alert])

    assert store.ignore_alert(alert.id).status == AlertStatus.IGNORED


def test_user_edits(store, user) -> None:
    session = _session(user.id)
    store.apply_reconciliation(user.id, ReconcileResult(to_insert=[session]))

    store.mark_completed(session.id, completed_at=NOW)
    store.add_note(session.id, "Legs felt heavy")
    store.set_perceived_effort(session.id, 8)

    edited = store.get_session(session.id)
    assert edited is not None
    assert edited.completed is True
    assert edited.completed_at == NOW
    assert edited.user_notes == "Legs felt heavy"
    assert edited.perceived_effort == 8

    with pytest.raises(ValueError):
        store.set_perceived_effort(session.id, 11)
    with pytest.raises(RecordNotFound):
        store.add_note("missing", "x")


def test_delete_session_removes_links_and_alerts(store, user) -> None:
    session = _session(
        user.id,
        sources={SourceTag.HEALTH_STORE},
        external_ids={SourceTag.HEALTH_STORE: "g-1"},
    )
    store.apply_reconciliation(user.id, ReconcileResult(to_insert=[session]))
    store.insert_alerts(user.id, [_alert(user.id, session.id)])

    store.delete_session(session.id)

    assert store.get_session(session.id) is None
    assert store.list_alerts(user.id) == []
    # the external id is free again
    again = _session(
        user.id,
        sources={SourceTag.HEALTH_STORE},
        external_ids={SourceTag.HEALTH_STORE: "g-1"},
    )
    assert store.apply_reconciliation(user.id, ReconcileResult(to_insert=[again])).inserted == 1


def test_training_stats(store, user) -> None:
    sessions = [
        _session(
            user.id,
            scheduled_start=NOW - timedelta(days=d),
            completed=True,
            actual_distance_km=40.0,
            actual_duration_minutes=90,
            actual_load=80,
        )
        for d in (1, 3, 5)
    ]
    sessions.append(_session(user.id, scheduled_start=NOW - timedelta(days=2)))
    sessions.append(
        _session(
            user.id,
            scheduled_start=NOW - timedelta(days=40),
            completed=True,
            actual_distance_km=100.0,
        )
    )
    store.apply_reconciliation(user.id, ReconcileResult(to_insert=sessions))

    stats = store.training_stats(user.id, days=30, now=NOW)

    assert stats.total_workouts == 3
    assert stats.total_distance_km == 120.0
    assert stats.total_duration_minutes == 270
    assert stats.total_load == 240
    assert stats.average_distance_km == 40.0
    assert stats.average_duration_minutes == 90
    assert stats.total_duration_hours == 4.5


def test_alternative_slot_uses_local_day_after_round_trip(store, user) -> None:
    la = ZoneInfo("America/Los_Angeles")
    policy = ConflictPolicy.from_settings(Settings(timezone="America/Los_Angeles"))
    session = _session(
        user.id,
        scheduled_start=datetime(2025, 3, 12, 18, 0, tzinfo=la),
        planned_duration_minutes=60,
    )
    busy = [
        CalendarEvent(
            id="gym",
            title="Gym",
            start=datetime(2025, 3, 12, 6, 0, tzinfo=la),
            end=datetime(2025, 3, 12, 7, 30, tzinfo=la),
        )
    ]
    store.apply_reconciliation(user.id, ReconcileResult(to_insert=[session]))
    stored = store.get_session(session.id)
    assert stored is not None
    assert stored.scheduled_start.utcoffset() == timedelta(0)

    expected = datetime(2025, 3, 12, 12, 0, tzinfo=la)
    assert suggest_alternative_time(session, busy, policy) == expected
    assert suggest_alternative_time(stored, busy, policy) == expected
