"""Reminder notifications package."""

from travory.services.notifications.planner import Reminder, ReminderPlanner
from travory.services.notifications.service import (
    InMemoryNotificationService,
    NotificationError,
    NotificationService,
)

__all__ = [
    "InMemoryNotificationService",
    "NotificationError",
    "NotificationService",
    "Reminder",
    "ReminderPlanner",
]
