"""
Shared fixtures.

- test environment variables are set for every test (autouse)
- the settings cache is cleared around each test
- the project root is put on ``sys.path`` so ``import ridecoach`` resolves
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Minimal dummy environment; restored by ``monkeypatch`` after each test."""
    from ridecoach.config import clear_settings_cache

    env: dict[str, str] = {
        "RIDECOACH_ENVIRONMENT": "testing",
        "RIDECOACH_DATABASE_URL": "sqlite://",
        "RIDECOACH_SECRETS_DIR": str(tmp_path / "secrets"),
        "RIDECOACH_LOG_FORMAT": "console",
        "RIDECOACH_TIMEZONE": "UTC",
    }
    for k, v in env.items():
        monkeypatch.setenv(k, v)

    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def now() -> datetime:
    # a Wednesday
    return datetime(2025, 3, 12, 9, 0, tzinfo=UTC)


@pytest.fixture
def clock(now: datetime):
    return lambda: now


@pytest.fixture
def store():
    from ridecoach.storage import SyncStore

    sync_store = SyncStore("sqlite://")
    sync_store.create_schema()
    return sync_store


@pytest.fixture
def file_store(tmp_path: Path):
    """File-backed store, for tests that run owners on several threads."""
    from ridecoach.storage import SyncStore

    sync_store = SyncStore(f"sqlite:///{tmp_path / 'ridecoach.db'}")
    sync_store.create_schema()
    return sync_store


@pytest.fixture
def user(store):
    from ridecoach.models import User

    return store.add_user(User(name="Test Rider", platform_athlete_id="i12345"))
