"""
Calendar Timeline Aggregator

Merges the two itinerary kinds into one time-ordered list per day.

Membership rules for a selected date:
- Daily plan: its start date is that calendar day
- Outing plan: the day lies within [start day, end day], inclusive
- Trip: its start date is that calendar day (mid-trip days are not surfaced)

DESIGN DECISION: Items are ordered by time-of-day only (hour, then minute).
The date part of an item's timestamp is ignored, so two items at the same
wall-clock time tie and keep their input order. Items are "this day's
events"; their stored dates are incidental.

The aggregator only consumes query controller results. `CalendarTimeline`
keeps two live queries and rebuilds on demand.
"""

from datetime import date, datetime, time
from enum import Enum
from typing import Callable, Optional, Union

from travory.models.records import Plan, PlanType, TravelPlan, minute_of_day, to_day
from travory.models.timeline import CalendarItemKind, TimelineItem
from travory.queries.controller import LiveQuery, QueryController, SortKey, Subscription


DayLike = Union[date, datetime]


def _date_range(start: datetime, end: datetime) -> str:
    return f"{start.month}/{start.day}~{end.month}/{end.day}"


def _day_position(start: datetime, end: datetime, day: date) -> Optional[str]:
    """'day trip', 'departure day', 'last day' or None for a middle day."""
    is_start = start.date() == day
    is_end = end.date() == day
    if is_start and is_end:
        return "day trip"
    if is_start:
        return "departure day"
    if is_end:
        return "last day"
    return None


def _day_number(start: datetime, day: date) -> int:
    return (day - start.date()).days + 1


# =============================================================================
# MEMBERSHIP
# =============================================================================

def plan_on_day(plan: Plan, day: DayLike) -> bool:
    """Whether a Plan belongs on the calendar day `day`."""
    day = to_day(day)
    if plan.plan_type == PlanType.DAILY:
        return plan.start_date.date() == day
    return plan.start_date.date() <= day <= plan.end_date.date()


def trip_on_day(trip: TravelPlan, day: DayLike) -> bool:
    """Whether a trip is surfaced on `day` (its start day only)."""
    return trip.start_date.date() == to_day(day)


# =============================================================================
# SUBTITLES
# =============================================================================

def outing_subtitle(plan: Plan, day: date) -> str:
    position = _day_position(plan.start_date, plan.end_date, day)
    if position == "day trip":
        return position
    if position is None:
        position = f"day {_day_number(plan.start_date, day)}"
    return f"{position} - {_date_range(plan.start_date, plan.end_date)}"


def trip_subtitle(trip: TravelPlan, day: date) -> str:
    position = _day_position(trip.start_date, trip.end_date, day)
    if position == "day trip":
        return f"{trip.destination} - day trip"
    if position is None:
        position = f"day {_day_number(trip.start_date, day)}"
    return f"{trip.destination} - {position} ({_date_range(trip.start_date, trip.end_date)})"


# =============================================================================
# AGGREGATION
# =============================================================================

def build_timeline(
    selected_date: DayLike,
    plans: list[Plan],
    trips: list[TravelPlan],
) -> list[TimelineItem]:
    """
    One day's timeline.

    Daily plans come first in the input order, then outings, then trips;
    the stable sort by time-of-day keeps that order for ties.
    """
    day = to_day(selected_date)
    items: list[TimelineItem] = []

    for plan in plans:
        if plan.plan_type == PlanType.DAILY and plan_on_day(plan, day):
            items.append(TimelineItem(
                time=plan.effective_time,
                title=plan.title,
                subtitle=plan.description,
                kind=CalendarItemKind.DAILY_PLAN,
                record_id=plan.id,
            ))

    for plan in plans:
        if plan.plan_type == PlanType.OUTING and plan_on_day(plan, day):
            items.append(TimelineItem(
                time=plan.effective_time,
                title=plan.title,
                subtitle=outing_subtitle(plan, day),
                kind=CalendarItemKind.OUTING_PLAN,
                record_id=plan.id,
            ))

    for trip in trips:
        if trip_on_day(trip, day):
            # All-day: sits at the top of the day
            items.append(TimelineItem(
                time=datetime.combine(day, time.min),
                title=trip.title,
                subtitle=trip_subtitle(trip, day),
                kind=CalendarItemKind.TRAVEL,
                record_id=trip.id,
            ))

    items.sort(key=lambda item: minute_of_day(item.time))
    return items


def event_kinds_on(
    day: DayLike,
    plans: list[Plan],
    trips: list[TravelPlan],
) -> set[CalendarItemKind]:
    """Which kinds of item a day has (the calendar's dots)."""
    kinds = set()
    for plan in plans:
        if plan_on_day(plan, day):
            kinds.add(
                CalendarItemKind.DAILY_PLAN
                if plan.plan_type == PlanType.DAILY
                else CalendarItemKind.OUTING_PLAN
            )
    if any(trip_on_day(trip, day) for trip in trips):
        kinds.add(CalendarItemKind.TRAVEL)
    return kinds


# =============================================================================
# TRIP OVERVIEW
# =============================================================================

class TripFilter(str, Enum):
    ALL = "all"
    ONGOING = "ongoing"
    UPCOMING = "upcoming"
    PAST = "past"


def trip_overview(
    trips: list[TravelPlan],
    at: DayLike,
    trip_filter: TripFilter = TripFilter.ALL,
) -> list[TravelPlan]:
    """
    Trips for the overview list.

    ALL puts ongoing trips first (latest start first), then upcoming trips
    (soonest first), then past trips (most recent first).
    """
    ongoing = [t for t in trips if t.is_ongoing(at)]
    upcoming = [t for t in trips if t.is_future(at)]
    past = [t for t in trips if t.is_past(at)]

    if trip_filter == TripFilter.ONGOING:
        return sorted(ongoing, key=lambda t: t.start_date)
    if trip_filter == TripFilter.UPCOMING:
        return sorted(upcoming, key=lambda t: t.start_date)
    if trip_filter == TripFilter.PAST:
        return sorted(past, key=lambda t: t.start_date, reverse=True)

    return (
        sorted(ongoing, key=lambda t: t.start_date, reverse=True)
        + sorted(upcoming, key=lambda t: t.start_date)
        + sorted(past, key=lambda t: t.start_date, reverse=True)
    )


class CalendarTimeline:
    """
    Live calendar over one caller's plans and trips.

    Keeps the latest results of two subscriptions and calls `on_change`
    whenever either of them moves.
    """

    def __init__(
        self,
        controller: QueryController,
        caller_id: str,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self._plans: list[Plan] = []
        self._trips: list[TravelPlan] = []
        self._on_change = on_change
        self._subscriptions: list[Subscription] = [
            controller.subscribe(
                LiveQuery(
                    record_type=Plan,
                    caller_id=caller_id,
                    sort_key=SortKey.START_DATE_DESC,
                ),
                self._set_plans,
            ),
            controller.subscribe(
                LiveQuery(
                    record_type=TravelPlan,
                    caller_id=caller_id,
                    sort_key=SortKey.START_DATE_DESC,
                ),
                self._set_trips,
            ),
        ]

    def _set_plans(self, plans: list[Plan]) -> None:
        self._plans = plans
        if self._on_change:
            self._on_change()

    def _set_trips(self, trips: list[TravelPlan]) -> None:
        self._trips = trips
        if self._on_change:
            self._on_change()

    def for_date(self, selected_date: DayLike) -> list[TimelineItem]:
        return build_timeline(selected_date, self._plans, self._trips)

    def event_kinds_on(self, day: DayLike) -> set[CalendarItemKind]:
        return event_kinds_on(day, self._plans, self._trips)

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
