"""
Reminder Planner

Works out which reminders an itinerary should have and when they fire.
Delivery is left to a NotificationService.

Rules:
- Trip: 7 days before the start at 10:00, and 1 day before at 18:00
- Outing: 1 day before the start at 07:00
- Daily plan: 1 day before at 07:00, plus 1 hour and 10 minutes before
  its time when one is set

Reminders whose trigger is already in the past are not planned.
Reminder ids are ``<record id>_<suffix>`` so they can be cancelled by id.
"""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from travory.models.records import Plan, PlanType, Record, TravelPlan, utc_now


class Reminder(BaseModel):
    """One planned local reminder."""

    id: str = Field(..., description="<record id>_<suffix>")
    record_id: str
    title: str
    body: str
    fire_at: datetime


def _at(day: datetime, hour: int, minute: int = 0) -> datetime:
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def _is_future(moment: datetime, now: datetime) -> bool:
    # Mixed naive/aware pairs compare on wall-clock values
    if moment.tzinfo is None and now.tzinfo is not None:
        now = now.replace(tzinfo=None)
    elif moment.tzinfo is not None and now.tzinfo is None:
        moment = moment.replace(tzinfo=None)
    return moment > now


class ReminderPlanner:
    """Computes the reminders of a record."""

    SUFFIXES = ("week", "day", "hour", "10min")

    def plan(self, record: Record, now: Optional[datetime] = None) -> list[Reminder]:
        """Reminders for `record`, oldest trigger first."""
        if record.id is None:
            return []
        now = now or utc_now()

        if isinstance(record, TravelPlan):
            candidates = self._trip_reminders(record)
        elif isinstance(record, Plan):
            candidates = self._plan_reminders(record)
        else:
            return []

        reminders = [r for r in candidates if _is_future(r.fire_at, now)]
        reminders.sort(key=lambda r: r.fire_at)
        return reminders

    def reminder_ids(self, record_id: str) -> list[str]:
        """Every id a record's reminders can have."""
        return [f"{record_id}_{suffix}" for suffix in self.SUFFIXES]

    def _trip_reminders(self, plan: TravelPlan) -> list[Reminder]:
        return [
            Reminder(
                id=f"{plan.id}_week",
                record_id=plan.id,
                title="Your trip is one week away",
                body=f"Your trip {plan.title} starts in a week. Time to start preparing!",
                fire_at=_at(plan.start_date - timedelta(days=7), 10),
            ),
            Reminder(
                id=f"{plan.id}_day",
                record_id=plan.id,
                title="Your trip is tomorrow",
                body=f"Your trip {plan.title} starts tomorrow. Check you have everything!",
                fire_at=_at(plan.start_date - timedelta(days=1), 18),
            ),
        ]

    def _plan_reminders(self, plan: Plan) -> list[Reminder]:
        if plan.plan_type == PlanType.OUTING:
            return [
                Reminder(
                    id=f"{plan.id}_day",
                    record_id=plan.id,
                    title="Your outing is tomorrow",
                    body=f"{plan.title} is tomorrow. Enjoy!",
                    fire_at=_at(plan.start_date - timedelta(days=1), 7),
                ),
            ]

        reminders = [
            Reminder(
                id=f"{plan.id}_day",
                record_id=plan.id,
                title="Your plan is tomorrow",
                body=f"{plan.title} is tomorrow. Don't forget to prepare!",
                fire_at=_at(plan.start_date - timedelta(days=1), 7),
            ),
        ]
        if plan.time is not None:
            reminders.append(Reminder(
                id=f"{plan.id}_hour",
                record_id=plan.id,
                title="Your plan starts in one hour",
                body=f"{plan.title} starts in one hour.",
                fire_at=plan.time.replace(second=0, microsecond=0) - timedelta(hours=1),
            ))
            reminders.append(Reminder(
                id=f"{plan.id}_10min",
                record_id=plan.id,
                title="Your plan starts in 10 minutes",
                body=f"{plan.title} starts in 10 minutes. Get ready!",
                fire_at=plan.time.replace(second=0, microsecond=0) - timedelta(minutes=10),
            ))
        return reminders
