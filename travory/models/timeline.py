"""
Aggregate Result Models

Read-only projections produced by the calendar and budget aggregators.
They are never stored; they are rebuilt from live query results.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class CalendarItemKind(str, Enum):
    """Where a timeline item came from."""
    DAILY_PLAN = "daily_plan"
    OUTING_PLAN = "outing_plan"
    TRAVEL = "travel"


class TimelineItem(BaseModel):
    """
    One entry of a day's calendar timeline.

    Only the time-of-day of `time` orders the timeline.
    """

    time: datetime
    title: str
    subtitle: Optional[str] = None
    kind: CalendarItemKind
    record_id: Optional[str] = Field(
        default=None,
        description="Id of the Plan or TravelPlan the item projects"
    )


class DayCost(BaseModel):
    """Spend of one trip day."""

    day_number: int
    date: date
    cost: Decimal = Field(ge=0)


class CostLine(BaseModel):
    """A single schedule item that carries a cost."""

    day_number: int
    title: str
    cost: Decimal = Field(ge=0)


class BudgetSummary(BaseModel):
    """
    Cost rollup of a trip.

    `per_day` lists every scheduled day; `days_with_spend` drops the days
    whose subtotal is exactly zero.
    """

    total_cost: Decimal = Field(ge=0)
    per_day: list[DayCost] = Field(default_factory=list)
    days_with_spend: list[DayCost] = Field(default_factory=list)
    items: list[CostLine] = Field(default_factory=list)
    member_count: int = Field(default=1, ge=1)
    cost_per_person: Decimal = Field(default=Decimal("0"), ge=0)

    @property
    def has_spend(self) -> bool:
        return self.total_cost > 0
