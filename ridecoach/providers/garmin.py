"""Garmin Connect workout provider."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from ridecoach.config.secrets import SecretStore
from ridecoach.errors import AuthenticationFailure, MalformedRecord
from ridecoach.models import ExternalRecord, RecordKind, SourceTag
from ridecoach.providers.base import BaseProvider, parse_timestamp, register_provider

CYCLING_TYPES = frozenset(
    {
        "cycling",
        "road_biking",
        "indoor_cycling",
        "virtual_ride",
        "mountain_biking",
        "gravel_cycling",
        "track_cycling",
    }
)


def _int_or_none(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return None


class GarminWorkoutProvider(BaseProvider):
    """Completed cycling workouts from the device datastore."""

    name = "health_store"

    def __init__(
        self,
        secrets: SecretStore,
        *,
        base_url: str = "https://connect.garmin.com",
        secret_name: str = "health_store.access_token",
        timeout_seconds: float = 10.0,
        page_size: int = 100,
    ) -> None:
        super().__init__(
            base_url, secrets, secret_name, timeout_seconds=timeout_seconds
        )
        self.page_size = page_size

    @classmethod
    def from_settings(cls, settings, secrets: SecretStore) -> GarminWorkoutProvider:
        return cls(
            secrets,
            base_url=settings.garmin_base_url,
            secret_name=settings.garmin_token_secret,
            timeout_seconds=settings.provider_timeout_seconds,
        )

    async def fetch_workouts(
        self, start: datetime, end: datetime
    ) -> list[ExternalRecord]:
        token = self.credential()
        if not token:
            raise AuthenticationFailure(self.name, "no access token stored")

        url = (
            f"{self.base_url}/modern/proxy/"
            "activitylist-service/activities/search/activities"
        )
        params = {
            "start": "0",
            "limit": str(self.page_size),
            "startDate": start.strftime("%Y-%m-%d"),
            "endDate": end.strftime("%Y-%m-%d"),
        }
        payload = await self._request_json(
            "GET", url, headers=self.auth_headers(token), params=params
        )
        if not isinstance(payload, list):
            return []

        records: list[ExternalRecord] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            activity_type = (item.get("activityType") or {}).get("typeKey", "").lower()
            if activity_type not in CYCLING_TYPES:
                continue
            try:
                records.append(self.build_record(item))
            except MalformedRecord as exc:
                self.logger.warning(
                    "Dropping malformed workout",
                    reason=exc.reason,
                    activity_id=item.get("activityId"),
                )
        return records

    def build_record(self, item: dict[str, Any]) -> ExternalRecord:
        activity_id = item.get("activityId")
        if activity_id is None:
            raise MalformedRecord(self.name, "missing activityId", item)

        try:
            return self._convert(item, str(activity_id))
        except (TypeError, ValueError, OverflowError) as exc:
            raise MalformedRecord(self.name, f"bad metric: {exc}", item) from exc

    def _convert(self, item: dict[str, Any], activity_id: str) -> ExternalRecord:
        start = parse_timestamp(item.get("startTimeGMT"))
        duration_seconds = item.get("duration")
        end = None
        duration_minutes = None
        if duration_seconds is not None:
            duration_minutes = _int_or_none(float(duration_seconds) / 60)
            if start is not None:
                end = start + timedelta(seconds=float(duration_seconds))

        distance_m = item.get("distance")
        return ExternalRecord(
            source=SourceTag.HEALTH_STORE,
            kind=RecordKind.ACTIVITY,
            external_id=activity_id,
            start=start,
            end=end,
            activity_type=(item.get("activityType") or {}).get("typeKey"),
            title=item.get("activityName"),
            actual_duration_minutes=duration_minutes,
            actual_distance_km=float(distance_m) / 1000 if distance_m is not None else None,
            average_heart_rate=_int_or_none(item.get("averageHR")),
            max_heart_rate=_int_or_none(item.get("maxHR")),
            average_power_watts=_int_or_none(item.get("avgPower")),
            normalized_power_watts=_int_or_none(item.get("normPower")),
            actual_load=_int_or_none(item.get("trainingStressScore")),
            raw=item,
        )


register_provider("garmin", GarminWorkoutProvider.from_settings)
