"""
Data Models Package

This package contains all Pydantic models used by Travory.
Every record the store holds must conform to these schemas.
"""

from travory.models.records import (
    Coordinate,
    DaySchedule,
    Itinerary,
    PackingItem,
    Plan,
    PlaceCategory,
    PlannedPlace,
    PlanType,
    Record,
    RECORD_TYPES,
    ScheduleItem,
    TravelPlan,
    VisitedPlace,
    generate_share_code,
    parse_record,
    record_class,
    utc_now,
)
from travory.models.timeline import (
    BudgetSummary,
    CalendarItemKind,
    CostLine,
    DayCost,
    TimelineItem,
)
from travory.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Record models
    "Coordinate",
    "DaySchedule",
    "Itinerary",
    "PackingItem",
    "Plan",
    "PlaceCategory",
    "PlannedPlace",
    "PlanType",
    "Record",
    "RECORD_TYPES",
    "ScheduleItem",
    "TravelPlan",
    "VisitedPlace",
    "generate_share_code",
    "parse_record",
    "record_class",
    "utc_now",
    # Aggregate models
    "BudgetSummary",
    "CalendarItemKind",
    "CostLine",
    "DayCost",
    "TimelineItem",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
