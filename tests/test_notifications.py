"""Tests for reminder planning."""

import pytest
from datetime import datetime

from travory.models.records import PlanType
from travory.services.notifications import (
    InMemoryNotificationService,
    NotificationError,
    ReminderPlanner,
)

from conftest import make_place, make_plan, make_trip


NOW = datetime(2024, 7, 1, 12, 0)


class TestReminderPlanner:
    """Tests for reminder rules."""

    def test_trip_reminders(self):
        """Test the week-before and day-before trip reminders."""
        trip = make_trip(id="trip-1")
        reminders = ReminderPlanner().plan(trip, now=NOW)
        assert [(r.id, r.fire_at) for r in reminders] == [
            ("trip-1_week", datetime(2024, 7, 3, 10, 0)),
            ("trip-1_day", datetime(2024, 7, 9, 18, 0)),
        ]

    def test_outing_reminder(self):
        """Test the morning-before outing reminder."""
        plan = make_plan(id="plan-1", plan_type=PlanType.OUTING, end_date=datetime(2024, 7, 12))
        reminders = ReminderPlanner().plan(plan, now=NOW)
        assert [(r.id, r.fire_at) for r in reminders] == [("plan-1_day", datetime(2024, 7, 9, 7, 0))]

    def test_daily_plan_with_time(self):
        """Test the day, hour and ten-minute reminders of a timed daily plan."""
        plan = make_plan(id="plan-1", time=datetime(2024, 7, 10, 9, 30))
        reminders = ReminderPlanner().plan(plan, now=NOW)
        assert [(r.id, r.fire_at) for r in reminders] == [
            ("plan-1_day", datetime(2024, 7, 9, 7, 0)),
            ("plan-1_hour", datetime(2024, 7, 10, 8, 30)),
            ("plan-1_10min", datetime(2024, 7, 10, 9, 20)),
        ]

    def test_past_triggers_skipped(self):
        """Test that reminders already due are not planned."""
        trip = make_trip(id="trip-1")
        reminders = ReminderPlanner().plan(trip, now=datetime(2024, 7, 5))
        assert [r.id for r in reminders] == ["trip-1_day"]
        assert ReminderPlanner().plan(trip, now=datetime(2024, 8, 1)) == []

    def test_unsaved_and_unsupported_records(self):
        """Test that unsaved records and places get no reminders."""
        planner = ReminderPlanner()
        assert planner.plan(make_trip(), now=NOW) == []
        assert planner.plan(make_place(id="place-1"), now=NOW) == []

    def test_reminder_ids(self):
        """Test the ids used for cancelling."""
        assert ReminderPlanner().reminder_ids("x") == ["x_week", "x_day", "x_hour", "x_10min"]


class TestInMemoryNotificationService:
    """Tests for the in-memory notification service."""

    @pytest.mark.asyncio
    async def test_schedule_replaces_previous(self):
        """Test that rescheduling drops reminders that no longer apply."""
        service = InMemoryNotificationService(clock=lambda: NOW)
        plan = make_plan(id="plan-1", time=datetime(2024, 7, 10, 9, 30))
        await service.schedule(plan)
        assert len(service.pending_for("plan-1")) == 3

        await service.schedule(plan.model_copy(update={"time": None}))
        assert [r.id for r in service.pending_for("plan-1")] == ["plan-1_day"]

    @pytest.mark.asyncio
    async def test_cancel(self):
        """Test cancelling every reminder of a record."""
        service = InMemoryNotificationService(clock=lambda: NOW)
        await service.schedule(make_trip(id="trip-1"))
        await service.schedule(make_trip(id="trip-2"))
        await service.cancel("trip-1")
        assert {r.record_id for r in service.pending} == {"trip-2"}

    @pytest.mark.asyncio
    async def test_unsaved_record_rejected(self):
        """Test that records without an id cannot be scheduled."""
        with pytest.raises(NotificationError):
            await InMemoryNotificationService().schedule(make_trip())


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
