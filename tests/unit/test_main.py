"""Command line entry point."""

import json

import pytest

from ridecoach.config import MemorySecretStore, get_settings
from ridecoach.main import build_parser, main
from ridecoach.orchestrator import PeriodicOrchestrator
from ridecoach.providers import (
    GarminWorkoutProvider,
    GoogleCalendarProvider,
    IntervalsICUProvider,
)


def test_parser_rejects_unknown_job() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["run", "nightly"])


def test_add_user_prints_new_id(capsys) -> None:
    assert main(["add-user", "--name", "Sam", "--athlete-id", "i9", "--ftp", "250"]) == 0

    printed = capsys.readouterr().out.strip()
    assert len(printed) == 36


def test_run_without_users_rearms_and_succeeds(tmp_path) -> None:
    schedule = tmp_path / "schedule.json"

    assert main(["run", "check_training", "--schedule-file", str(schedule)]) == 0

    with open(schedule, encoding="utf-8") as f:
        assert list(json.load(f)) == ["check_training"]


def test_interrupt_exits_with_130(monkeypatch, capsys) -> None:
    def interrupted(coro):
        coro.close()
        raise KeyboardInterrupt

    monkeypatch.setattr("ridecoach.main.asyncio.run", interrupted)

    assert main(["run", "full"]) == 130
    assert "Interrupted" in capsys.readouterr().out


def test_interrupted_secret_prompt_exits_with_130(monkeypatch) -> None:
    def interrupted(prompt):
        raise KeyboardInterrupt

    monkeypatch.setattr("ridecoach.main.getpass.getpass", interrupted)

    assert main(["set-secret", "intervals_api_key"]) == 130


@pytest.mark.asyncio
async def test_from_settings_wires_registered_providers() -> None:
    orchestrator = PeriodicOrchestrator.from_settings(
        get_settings(), MemorySecretStore()
    )
    try:
        assert isinstance(orchestrator.calendar, GoogleCalendarProvider)
        assert isinstance(orchestrator.workouts, GarminWorkoutProvider)
        assert isinstance(orchestrator.platform, IntervalsICUProvider)
    finally:
        await orchestrator.aclose()
