"""
User-initiated edits that also withdraw notifications made obsolete by them

Store calls are blocking and run in a worker thread; cancellation goes to the
same dispatcher the orchestrator delivers through.
"""

import asyncio
from datetime import datetime

from ridecoach.models import AlertStatus, ConflictAlert, Goal, TrainingSession
from ridecoach.notifications import (
    NotificationDispatcher,
    alert_notification_id,
    session_notification_ids,
)
from ridecoach.storage.repository import SyncStore
from ridecoach.utils.mixins import LoggerMixin


class UserActions(LoggerMixin):
    """Async entry point for the edits a rider makes between runs."""

    def __init__(self, store: SyncStore, dispatcher: NotificationDispatcher) -> None:
        self.store = store
        self.dispatcher = dispatcher

    async def complete_session(
        self, session_id: str, completed_at: datetime | None = None
    ) -> TrainingSession:
        session = await asyncio.to_thread(
            self.store.mark_completed, session_id, completed_at
        )
        pending = await asyncio.to_thread(
            self.store.list_alerts, session.owner_id, AlertStatus.PENDING
        )
        identifiers = session_notification_ids(session_id) + [
            alert_notification_id(alert.id)
            for alert in pending
            if alert.session_id == session_id
        ]
        await self._withdraw(identifiers)
        return session

    async def delete_session(self, session_id: str) -> None:
        alert_ids = await asyncio.to_thread(self.store.delete_session, session_id)
        await self._withdraw(
            session_notification_ids(session_id)
            + [alert_notification_id(alert_id) for alert_id in alert_ids]
        )

    async def resolve_alert(
        self, alert_id: str, resolution: str | None = None
    ) -> ConflictAlert:
        alert = await asyncio.to_thread(self.store.resolve_alert, alert_id, resolution)
        await self._withdraw([alert_notification_id(alert_id)])
        return alert

    async def ignore_alert(self, alert_id: str) -> ConflictAlert:
        alert = await asyncio.to_thread(self.store.ignore_alert, alert_id)
        await self._withdraw([alert_notification_id(alert_id)])
        return alert

    async def update_goal_progress(self, goal_id: str, progress: float) -> Goal:
        return await asyncio.to_thread(
            self.store.update_goal_progress, goal_id, progress
        )

    async def toggle_goal_status(self, goal_id: str) -> Goal:
        return await asyncio.to_thread(self.store.toggle_goal_status, goal_id)

    async def delete_goal(self, goal_id: str) -> None:
        await asyncio.to_thread(self.store.delete_goal, goal_id)

    async def _withdraw(self, identifiers: list[str]) -> None:
        # the edit is already committed, so a failed cancel is only logged
        for identifier in identifiers:
            try:
                await self.dispatcher.cancel(identifier)
            except Exception as exc:
                self.logger.warning(
                    "Notification cancel failed", identifier=identifier, error=str(exc)
                )
