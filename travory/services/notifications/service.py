"""
Notification Collaborator

The record flows call `schedule` after a successful write and `cancel`
after a delete, without waiting for the outcome. Delivery itself (push
service, OS scheduler) lives behind this interface.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional

import structlog

from travory.models.records import Record
from travory.services.notifications.planner import Reminder, ReminderPlanner


logger = structlog.get_logger(__name__)


class NotificationError(Exception):
    """Scheduling or cancelling reminders failed."""
    pass


class NotificationService(ABC):
    """Accepts reminder scheduling for itineraries."""

    @abstractmethod
    async def schedule(self, record: Record) -> list[Reminder]:
        """
        (Re)schedule every reminder of a record.

        Previously scheduled reminders of the same record are replaced.
        """
        pass

    @abstractmethod
    async def cancel(self, record_id: str) -> None:
        """Cancel every pending reminder of a record."""
        pass


class InMemoryNotificationService(NotificationService):
    """Keeps pending reminders in a dict. Nothing is ever delivered."""

    def __init__(
        self,
        planner: Optional[ReminderPlanner] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._planner = planner or ReminderPlanner()
        self._clock = clock
        self._pending: dict[str, Reminder] = {}

    @property
    def pending(self) -> list[Reminder]:
        return sorted(self._pending.values(), key=lambda r: r.fire_at)

    def pending_for(self, record_id: str) -> list[Reminder]:
        return [r for r in self.pending if r.record_id == record_id]

    def _now(self) -> Optional[datetime]:
        return self._clock() if self._clock else None

    async def schedule(self, record: Record) -> list[Reminder]:
        if record.id is None:
            raise NotificationError("Cannot schedule reminders for an unsaved record")
        await self.cancel(record.id)
        reminders = self._planner.plan(record, now=self._now())
        for reminder in reminders:
            self._pending[reminder.id] = reminder
        logger.debug("reminders_scheduled", record_id=record.id, count=len(reminders))
        return reminders

    async def cancel(self, record_id: str) -> None:
        for reminder_id in self._planner.reminder_ids(record_id):
            self._pending.pop(reminder_id, None)
