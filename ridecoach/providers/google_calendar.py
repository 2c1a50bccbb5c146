"""Google Calendar provider."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from urllib.parse import quote

from ridecoach.config.secrets import SecretStore
from ridecoach.errors import ProviderUnavailable
from ridecoach.models import CalendarEvent
from ridecoach.providers.base import BaseProvider, parse_timestamp, register_provider

MAX_PAGES = 10


class GoogleCalendarProvider(BaseProvider):
    """Reads events from one calendar with a bearer access token."""

    name = "calendar"

    def __init__(
        self,
        secrets: SecretStore,
        *,
        base_url: str = "https://www.googleapis.com/calendar/v3",
        calendar_id: str = "primary",
        secret_name: str = "calendar.access_token",
        timeout_seconds: float = 10.0,
    ) -> None:
        super().__init__(
            base_url, secrets, secret_name, timeout_seconds=timeout_seconds
        )
        self.calendar_id = calendar_id

    @classmethod
    def from_settings(cls, settings, secrets: SecretStore) -> GoogleCalendarProvider:
        return cls(
            secrets,
            base_url=settings.calendar_base_url,
            calendar_id=settings.calendar_id,
            secret_name=settings.calendar_token_secret,
            timeout_seconds=settings.provider_timeout_seconds,
        )

    async def is_authorized(self) -> bool:
        return bool(self.credential())

    async def fetch_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        token = self.credential()
        if not token:
            raise ProviderUnavailable(
                self.name, "calendar access not granted", retryable=False
            )

        url = f"{self.base_url}/calendars/{quote(self.calendar_id, safe='')}/events"
        query: dict[str, Any] = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        events: list[CalendarEvent] = []
        for _ in range(MAX_PAGES):
            payload = await self._request_json(
                "GET", url, headers=self.auth_headers(token), params=query
            )
            if not isinstance(payload, dict):
                break
            for item in payload.get("items", []):
                if not isinstance(item, dict):
                    continue
                event = self.build_event(item)
                if event is not None:
                    events.append(event)
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            query = {**query, "pageToken": page_token}

        self.logger.debug(
            "Fetched calendar events",
            calendar_id=self.calendar_id,
            count=len(events),
        )
        return events

    def build_event(self, raw: dict[str, Any]) -> CalendarEvent | None:
        if raw.get("status") == "cancelled":
            return None
        event_id = raw.get("id")
        start_info = raw.get("start") or {}
        end_info = raw.get("end") or {}
        all_day = "dateTime" not in start_info and "date" in start_info

        start = parse_timestamp(start_info.get("dateTime") or start_info.get("date"))
        end = parse_timestamp(end_info.get("dateTime") or end_info.get("date"))
        if not event_id or start is None or end is None:
            self.logger.debug("Skipping unparseable calendar event", event_id=event_id)
            return None

        return CalendarEvent(
            id=str(event_id),
            title=raw.get("summary") or "",
            start=start,
            end=end,
            all_day=all_day,
            location=raw.get("location"),
        )


register_provider("google_calendar", GoogleCalendarProvider.from_settings)
