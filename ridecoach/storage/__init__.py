"""Persistence layer"""

from ridecoach.storage.database import Base, build_engine, create_schema
from ridecoach.storage.repository import (
    ApplyOutcome,
    StoreTransaction,
    SyncStore,
    TrainingStats,
)

__all__ = [
    "ApplyOutcome",
    "Base",
    "StoreTransaction",
    "SyncStore",
    "TrainingStats",
    "build_engine",
    "create_schema",
]
