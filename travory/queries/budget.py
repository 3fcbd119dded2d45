"""
Budget Aggregator

Flattens a trip's nested schedule items into cost rollups.

- Grand total: sum of every schedule item's cost, absent costs count as 0
- Per-day subtotals for every scheduled day
- "Days with spend": per-day subtotals without the days totalling exactly 0
- Cost per person: total split across the owner and every share member

Totals use Decimal throughout. How an empty budget is presented is the
caller's concern.
"""

from decimal import Decimal
from typing import Callable, Optional

from travory.models.records import TravelPlan
from travory.models.timeline import BudgetSummary, CostLine, DayCost
from travory.queries.controller import LiveQuery, QueryController, Subscription


ZERO = Decimal("0")


def member_count(plan: TravelPlan) -> int:
    """People sharing the trip's costs: the owner plus joined members."""
    if not plan.is_shared:
        return 1
    owner = plan.owner_id or plan.user_id
    return 1 + len([member for member in plan.shared_with if member != owner])


def total_cost(plan: TravelPlan) -> Decimal:
    return sum((item.cost_or_zero for item in plan.all_schedule_items), ZERO)


def per_day_costs(plan: TravelPlan) -> list[DayCost]:
    """Subtotal of every stored day schedule, ordered by day number."""
    return [
        DayCost(day_number=schedule.day_number, date=schedule.date, cost=schedule.total_cost)
        for schedule in sorted(plan.day_schedules, key=lambda s: s.day_number)
    ]


def summarize_budget(plan: TravelPlan) -> BudgetSummary:
    """Full cost rollup of one trip."""
    per_day = per_day_costs(plan)
    total = sum((day.cost for day in per_day), ZERO)
    members = member_count(plan)

    items = [
        CostLine(day_number=schedule.day_number, title=item.title, cost=item.cost)
        for schedule in sorted(plan.day_schedules, key=lambda s: s.day_number)
        for item in schedule.schedule_items
        if item.cost is not None and item.cost > 0
    ]

    return BudgetSummary(
        total_cost=total,
        per_day=per_day,
        days_with_spend=[day for day in per_day if day.cost > 0],
        items=items,
        member_count=members,
        cost_per_person=total / members,
    )


class LiveBudget:
    """
    Budget of one trip that follows store changes.

    `summary` is None while the trip is not visible to the caller
    (not yet synced, deleted, or not shared with them).
    """

    def __init__(
        self,
        controller: QueryController,
        caller_id: str,
        plan_id: str,
        on_change: Optional[Callable[[Optional[BudgetSummary]], None]] = None,
    ):
        self._summary: Optional[BudgetSummary] = None
        self._on_change = on_change
        self._subscription: Subscription = controller.subscribe(
            LiveQuery(
                record_type=TravelPlan,
                caller_id=caller_id,
                predicate=lambda plan: plan.id == plan_id,
            ),
            self._update,
        )

    @property
    def summary(self) -> Optional[BudgetSummary]:
        return self._summary

    def _update(self, plans: list[TravelPlan]) -> None:
        self._summary = summarize_budget(plans[0]) if plans else None
        if self._on_change:
            self._on_change(self._summary)

    def close(self) -> None:
        self._subscription.cancel()
