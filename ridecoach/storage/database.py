"""SQLAlchemy schema and engine setup for the sync store."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.pool import StaticPool

logger = structlog.get_logger(__name__)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC. Naive input is taken as UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: Any, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    platform_athlete_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    preferred_training_days: Mapped[list[str]] = mapped_column(JSON, default=list)
    preferred_training_time: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ftp_watts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    threshold_heart_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)


class GoalRow(Base):
    __tablename__ = "goals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(32))
    target_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    target_metric: Mapped[str | None] = mapped_column(String(32), nullable=True)
    target_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="active")
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    last_progress_update: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)


class TrainingSessionRow(Base):
    __tablename__ = "training_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    scheduled_start: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    session_type: Mapped[str] = mapped_column(String(32), default="unknown")
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    planned_duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    planned_distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    planned_intensity: Mapped[str | None] = mapped_column(String(16), nullable=True)
    planned_load: Mapped[int | None] = mapped_column(Integer, nullable=True)

    completed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    actual_duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actual_distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_heart_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_heart_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    average_power_watts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    normalized_power_watts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actual_load: Mapped[int | None] = mapped_column(Integer, nullable=True)
    perceived_effort: Mapped[int | None] = mapped_column(Integer, nullable=True)

    sources: Mapped[list[str]] = mapped_column(JSON, default=list)
    user_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    coaching_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)

    external_refs: Mapped[list[SessionSourceRow]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    alerts: Mapped[list[ConflictAlertRow]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
    )


class SessionSourceRow(Base):
    """External id of one session at one source; the dedup key lives here."""

    __tablename__ = "session_sources"
    __table_args__ = (
        UniqueConstraint(
            "owner_id", "source", "external_id", name="uq_session_source_external"
        ),
        UniqueConstraint("session_id", "source", name="uq_session_source_once"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("training_sessions.id", ondelete="CASCADE"), index=True
    )
    owner_id: Mapped[str] = mapped_column(String(64))
    source: Mapped[str] = mapped_column(String(32))
    external_id: Mapped[str] = mapped_column(String(128))

    session: Mapped[TrainingSessionRow] = relationship(back_populates="external_refs")


class ConflictAlertRow(Base):
    __tablename__ = "conflict_alerts"
    __table_args__ = (
        UniqueConstraint(
            "session_id", "calendar_event_id", name="uq_alert_session_event"
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("training_sessions.id", ondelete="CASCADE")
    )
    calendar_event_id: Mapped[str] = mapped_column(String(256))
    calendar_event_title: Mapped[str] = mapped_column(String(500), default="")
    conflict_at: Mapped[datetime] = mapped_column(UTCDateTime)
    conflict_type: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    notification_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    notification_sent_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)

    session: Mapped[TrainingSessionRow] = relationship(back_populates="alerts")


def is_sqlite(database_url: str) -> bool:
    return database_url.lower().startswith("sqlite")


def is_memory_sqlite(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:")


def build_engine(database_url: str, *, echo: bool = False) -> Engine:
    """Create an engine for ``database_url``.

    SQLite connections are shared across worker threads and open write
    transactions eagerly, so concurrent owners queue on the file lock
    instead of failing on lock upgrade.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    sqlite = is_sqlite(database_url)
    if sqlite:
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if is_memory_sqlite(database_url):
            kwargs["poolclass"] = StaticPool
        logger.debug("Using SQLite database", url=database_url)

    engine = create_engine(database_url, **kwargs)

    if sqlite:

        @event.listens_for(engine, "connect")
        def _disable_driver_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)
