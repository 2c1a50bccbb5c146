"""Error taxonomy for the sync engine.

Every error here is scoped to a single source, record or owner; none of them is
meant to abort a whole orchestrator invocation.
"""

from typing import Any


class RideCoachError(Exception):
    """Base class for sync engine errors"""


class ProviderUnavailable(RideCoachError):
    """Source temporarily unreachable or not authorized."""

    def __init__(
        self, provider: str, message: str, *, retryable: bool = True
    ) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.retryable = retryable


class AuthenticationFailure(RideCoachError):
    """Credential rejected by a provider."""

    def __init__(self, provider: str, message: str = "credential rejected") -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class MalformedRecord(RideCoachError):
    """A fetched record is missing required fields."""

    def __init__(
        self, source: str, reason: str, raw: dict[str, Any] | None = None
    ) -> None:
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason
        self.raw = raw or {}


class PersistenceConflict(RideCoachError):
    """Uniqueness constraint hit on insert; the row already exists."""

    def __init__(self, entity: str, key: tuple[Any, ...]) -> None:
        super().__init__(f"{entity} already exists for key {key!r}")
        self.entity = entity
        self.key = key


class RecordNotFound(RideCoachError, LookupError):
    """A user action referenced a row that does not exist."""

    def __init__(self, entity: str, key: str) -> None:
        super().__init__(f"{entity} {key!r} not found")
        self.entity = entity
        self.key = key
