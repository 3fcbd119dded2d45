"""Live queries and aggregators package."""

from travory.queries.controller import (
    LiveQuery,
    QueryController,
    SortKey,
    Subscription,
    sort_records,
)
from travory.queries.timeline import (
    CalendarTimeline,
    TripFilter,
    build_timeline,
    event_kinds_on,
    outing_subtitle,
    plan_on_day,
    trip_on_day,
    trip_overview,
    trip_subtitle,
)
from travory.queries.budget import (
    LiveBudget,
    member_count,
    per_day_costs,
    summarize_budget,
    total_cost,
)

__all__ = [
    # Controller
    "LiveQuery",
    "QueryController",
    "SortKey",
    "Subscription",
    "sort_records",
    # Calendar
    "CalendarTimeline",
    "TripFilter",
    "build_timeline",
    "event_kinds_on",
    "outing_subtitle",
    "plan_on_day",
    "trip_on_day",
    "trip_overview",
    "trip_subtitle",
    # Budget
    "LiveBudget",
    "member_count",
    "per_day_costs",
    "summarize_budget",
    "total_cost",
]
