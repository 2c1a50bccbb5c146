"""
Provider base classes

Shared HTTP plumbing for the calendar, health-store and training-platform
providers, plus the registry that maps provider names to factories.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, tzinfo
from enum import Enum
from typing import Any, Protocol, TypeVar, runtime_checkable

import aiohttp
from dateutil import parser as date_parser
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ridecoach.config.secrets import SecretStore
from ridecoach.errors import AuthenticationFailure, ProviderUnavailable
from ridecoach.models import CalendarEvent, ExternalRecord
from ridecoach.utils.logger import log_provider_call
from ridecoach.utils.mixins import LoggerMixin


class ProviderStatus(str, Enum):
    """Provider status"""

    ENABLED = "enabled"
    AUTHENTICATED = "authenticated"
    UNAVAILABLE = "unavailable"  # transient failure on the last call
    ERROR = "error"  # credential rejected


@runtime_checkable
class CalendarProvider(Protocol):
    async def is_authorized(self) -> bool: ...

    async def fetch_events(
        self, start: datetime, end: datetime
    ) -> list[CalendarEvent]: ...


@runtime_checkable
class WorkoutProvider(Protocol):
    async def fetch_workouts(
        self, start: datetime, end: datetime
    ) -> list[ExternalRecord]: ...


@runtime_checkable
class TrainingPlatformProvider(Protocol):
    async def fetch_planned_events(
        self, athlete_id: str, start: datetime, end: datetime
    ) -> list[ExternalRecord]: ...

    async def fetch_activities(
        self, athlete_id: str, start: datetime, end: datetime
    ) -> list[ExternalRecord]: ...


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderUnavailable) and exc.retryable


def parse_timestamp(value: Any, default_tz: tzinfo = UTC) -> datetime | None:
    """Parse an ISO-like timestamp; naive values are taken in ``default_tz``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = date_parser.isoparse(value.strip())
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed


class BaseProvider(LoggerMixin):
    """aiohttp session handling and error translation shared by providers."""

    name = "provider"

    def __init__(
        self,
        base_url: str,
        secrets: SecretStore,
        secret_name: str,
        *,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.secrets = secrets
        self.secret_name = secret_name
        self.timeout_seconds = timeout_seconds
        self.status = ProviderStatus.ENABLED
        self.last_error: str | None = None
        self._session: aiohttp.ClientSession | None = None

    async def get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                headers={"User-Agent": "RideCoach-Sync/1.0"},
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> BaseProvider:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def credential(self) -> str | None:
        return self.secrets.get(self.secret_name)

    def auth_headers(self, credential: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {credential}"}

    def record_error(self, error: Exception) -> None:
        self.last_error = str(error)
        if isinstance(error, AuthenticationFailure):
            self.status = ProviderStatus.ERROR
        else:
            self.status = ProviderStatus.UNAVAILABLE

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            payload = await self._send(method, url, headers=headers, params=params)
        except (AuthenticationFailure, ProviderUnavailable) as exc:
            self.record_error(exc)
            raise
        self.status = ProviderStatus.AUTHENTICATED
        self.last_error = None
        return payload

    async def _send(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        params: dict[str, Any] | None = None,
    ) -> Any:
        session = await self.get_session()
        log_provider_call(self.name, method=method, url=url)
        try:
            async with session.request(
                method, url, headers=headers, params=params
            ) as resp:
                if resp.status in (401, 403):
                    raise AuthenticationFailure(self.name, f"HTTP {resp.status}")
                if resp.status == 429 or resp.status >= 500:
                    raise ProviderUnavailable(self.name, f"HTTP {resp.status}")
                if resp.status >= 400:
                    raise ProviderUnavailable(
                        self.name, f"HTTP {resp.status}", retryable=False
                    )
                try:
                    return await resp.json(content_type=None)
                except ValueError as exc:
                    raise ProviderUnavailable(
                        self.name, "non-JSON response", retryable=False
                    ) from exc
        except aiohttp.ClientError as exc:
            raise ProviderUnavailable(self.name, f"connection error: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise ProviderUnavailable(self.name, "request timed out") from exc


TProvider = TypeVar("TProvider")
Factory = Callable[..., TProvider]


class ProviderRegistry:
    """Maps provider names to factories."""

    def __init__(self) -> None:
        self._registry: dict[str, Factory[Any]] = {}

    def register(self, name: str, factory: Factory[Any]) -> None:
        self._registry[name] = factory

    def create(self, name: str, *args: Any, **kwargs: Any) -> Any:
        factory = self._registry.get(name)
        if factory is None:
            raise KeyError(f"Provider '{name}' is not registered")
        return factory(*args, **kwargs)

    def available(self) -> dict[str, Factory[Any]]:
        return dict(self._registry)


provider_registry = ProviderRegistry()


def register_provider(name: str, factory: Factory[Any]) -> None:
    """Register via the global registry."""
    provider_registry.register(name, factory)
