"""intervals.icu training platform provider."""

from __future__ import annotations

from datetime import UTC, datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from ridecoach.config.secrets import SecretStore
from ridecoach.errors import AuthenticationFailure, MalformedRecord
from ridecoach.models import ExternalRecord, RecordKind, SourceTag
from ridecoach.providers.base import BaseProvider, parse_timestamp, register_provider


def _minutes(seconds: Any) -> int | None:
    if seconds is None:
        return None
    return int(float(seconds) // 60)


def _km(meters: Any) -> float | None:
    if meters is None:
        return None
    return float(meters) / 1000


def _int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return None


class IntervalsICUProvider(BaseProvider):
    """Planned events and completed activities for one athlete."""

    name = "training_platform"

    def __init__(
        self,
        secrets: SecretStore,
        *,
        base_url: str = "https://intervals.icu/api/v1",
        secret_name: str = "training_platform.api_key",
        activity_types: list[str] | None = None,
        local_tz: tzinfo = UTC,
        timeout_seconds: float = 10.0,
    ) -> None:
        super().__init__(
            base_url, secrets, secret_name, timeout_seconds=timeout_seconds
        )
        self.activity_types = [t.lower() for t in activity_types or ["ride"]]
        # start_date_local carries no offset
        self.local_tz = local_tz

    @classmethod
    def from_settings(cls, settings, secrets: SecretStore) -> IntervalsICUProvider:
        return cls(
            secrets,
            base_url=settings.intervals_base_url,
            secret_name=settings.platform_token_secret,
            activity_types=settings.platform_activity_types,
            local_tz=ZoneInfo(settings.timezone),
            timeout_seconds=settings.provider_timeout_seconds,
        )

    async def fetch_planned_events(
        self, athlete_id: str, start: datetime, end: datetime
    ) -> list[ExternalRecord]:
        payload = await self._get_list(athlete_id, "events", start, end)
        return self._build_all(payload, self.build_planned)

    async def fetch_activities(
        self, athlete_id: str, start: datetime, end: datetime
    ) -> list[ExternalRecord]:
        payload = await self._get_list(athlete_id, "activities", start, end)
        rides = [
            item
            for item in payload
            if any(t in str(item.get("type", "")).lower() for t in self.activity_types)
        ]
        return self._build_all(rides, self.build_activity)

    async def _get_list(
        self, athlete_id: str, resource: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]]:
        token = self.credential()
        if not token:
            raise AuthenticationFailure(self.name, "no API key stored")
        url = f"{self.base_url}/athlete/{athlete_id}/{resource}"
        params = {
            "oldest": start.strftime("%Y-%m-%d"),
            "newest": end.strftime("%Y-%m-%d"),
        }
        payload = await self._request_json(
            "GET", url, headers=self.auth_headers(token), params=params
        )
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    def _build_all(self, items, build) -> list[ExternalRecord]:
        records: list[ExternalRecord] = []
        for item in items:
            try:
                records.append(build(item))
            except MalformedRecord as exc:
                self.logger.warning(
                    "Dropping malformed platform record",
                    reason=exc.reason,
                    external_id=item.get("id"),
                )
        return records

    def build_planned(self, item: dict[str, Any]) -> ExternalRecord:
        if item.get("id") is None:
            raise MalformedRecord(SourceTag.PLATFORM_EVENT.value, "missing id", item)
        try:
            return ExternalRecord(
                source=SourceTag.PLATFORM_EVENT,
                kind=RecordKind.PLANNED,
                external_id=str(item["id"]),
                start=parse_timestamp(item.get("start_date_local"), self.local_tz),
                activity_type=item.get("type"),
                title=item.get("name"),
                description=item.get("description"),
                planned_duration_minutes=_minutes(item.get("moving_time")),
                planned_distance_km=_km(item.get("distance")),
                planned_load=_int(item.get("icu_training_load")),
                raw=item,
            )
        except (TypeError, ValueError, OverflowError) as exc:
            raise MalformedRecord(
                SourceTag.PLATFORM_EVENT.value, f"bad metric: {exc}", item
            ) from exc

    def build_activity(self, item: dict[str, Any]) -> ExternalRecord:
        if item.get("id") is None:
            raise MalformedRecord(
                SourceTag.PLATFORM_ACTIVITY.value, "missing id", item
            )
        effort = _int(item.get("perceived_exertion"))
        if effort is not None and not 1 <= effort <= 10:
            effort = None
        try:
            return ExternalRecord(
                source=SourceTag.PLATFORM_ACTIVITY,
                kind=RecordKind.ACTIVITY,
                external_id=str(item["id"]),
                start=parse_timestamp(item.get("start_date_local"), self.local_tz),
                activity_type=item.get("type"),
                title=item.get("name"),
                actual_duration_minutes=_minutes(item.get("moving_time")),
                actual_distance_km=_km(item.get("distance")),
                average_heart_rate=_int(item.get("average_heartrate")),
                max_heart_rate=_int(item.get("max_heartrate")),
                average_power_watts=_int(item.get("average_watts")),
                normalized_power_watts=_int(item.get("weighted_average_watts")),
                actual_load=_int(item.get("icu_training_load")),
                perceived_effort=effort,
                raw=item,
            )
        except (TypeError, ValueError, OverflowError) as exc:
            raise MalformedRecord(
                SourceTag.PLATFORM_ACTIVITY.value, f"bad metric: {exc}", item
            ) from exc


register_provider("intervals_icu", IntervalsICUProvider.from_settings)
