"""Conflict alert synchronization.

Alerts are only ever created here. An alert whose conflict is no longer
detected is left untouched: resolving or ignoring it is a user action.
"""

from collections.abc import Callable, Iterable
from datetime import datetime

import structlog

from ridecoach.models import AlertStatus, Conflict, ConflictAlert
from ridecoach.timewindow import utc_now

logger = structlog.get_logger(__name__)


class AlertSynchronizer:
    """Turns detected conflicts into new pending alerts."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    def sync(
        self,
        owner_id: str,
        detected: Iterable[Conflict],
        existing_alerts: Iterable[ConflictAlert],
    ) -> list[ConflictAlert]:
        """Return the alerts to insert; at most one per (session id, event id)."""
        now = self._clock()
        known = {alert.pair for alert in existing_alerts if alert.owner_id == owner_id}
        to_insert: list[ConflictAlert] = []

        for conflict in detected:
            if conflict.owner_id != owner_id or conflict.pair in known:
                continue
            known.add(conflict.pair)
            to_insert.append(
                ConflictAlert(
                    owner_id=owner_id,
                    session_id=conflict.session_id,
                    calendar_event_id=conflict.event_id,
                    calendar_event_title=conflict.event_title,
                    conflict_at=conflict.conflict_at,
                    conflict_type=conflict.conflict_type,
                    status=AlertStatus.PENDING,
                    notification_sent=False,
                    created_at=now,
                    updated_at=now,
                )
            )

        if to_insert:
            logger.info("New conflict alerts", owner_id=owner_id, count=len(to_insert))
        return to_insert
