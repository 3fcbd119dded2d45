"""
Core Record Models for Travory

These models define the strict schemas for every record the Entity Store
holds and the Replication Bridge mirrors. They are designed to:
1. Enforce type safety at runtime
2. Normalise instead of reject where the invariants allow it
3. Be serializable for local storage, remote mirroring and logging

DESIGN DECISION: TravelPlan and Plan are two variants of one "itinerary"
concept, told apart by the `kind` discriminant. They share the record base,
the persistence path and the sync path; only their date and schedule shapes
differ.

DESIGN DECISION: Absent values are explicit. A missing cost contributes 0,
a missing image reference means "no image", a missing time falls back to the
plan's own start timestamp. Those rules live here, not at call sites.
"""

import secrets
import string
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Optional, Union
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)


SHARE_CODE_ALPHABET = string.ascii_uppercase + string.digits
SHARE_CODE_LENGTH = 8


def utc_now() -> datetime:
    """Timezone-aware current time used for record timestamps."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def generate_share_code(prefix: str = "TRAVEL") -> str:
    """
    Generate a share code such as ``TRAVEL-7Q2ZK0PA``.

    Uniqueness across the store is checked by the sharing flow, not here.
    """
    suffix = "".join(secrets.choice(SHARE_CODE_ALPHABET) for _ in range(SHARE_CODE_LENGTH))
    return f"{prefix}-{suffix}"


def minute_of_day(value: datetime) -> int:
    """Time-of-day of a timestamp in minutes; the date component is ignored."""
    return value.hour * 60 + value.minute


def to_day(value: Union[date, datetime]) -> date:
    """Calendar day of a date or timestamp."""
    if isinstance(value, datetime):
        return value.date()
    return value


def _coerce_datetime(value: Any) -> Any:
    # Plain dates become midnight timestamps
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min)
    return value


def _normalise_color(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if not value.startswith("#"):
        value = f"#{value}"
    return value.upper()


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class PlanType(str, Enum):
    """Variants of the lightweight Plan record."""
    DAILY = "daily"    # single-day appointment, optionally with a time
    OUTING = "outing"  # short multi-day outing


class PlaceCategory(str, Enum):
    """Categories a visited place can be filed under."""
    SIGHTSEEING = "sightseeing"
    RESTAURANT = "restaurant"
    CAFE = "cafe"
    SHOPPING = "shopping"
    HOTEL = "hotel"
    NATURE = "nature"
    ACTIVITY = "activity"
    OTHER = "other"


# =============================================================================
# NESTED VALUE MODELS
# =============================================================================

class Coordinate(BaseModel):
    """A WGS84 coordinate."""

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)


class PackingItem(BaseModel):
    """One entry of a trip's packing list."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="What to pack"
    )
    is_checked: bool = False


class ScheduleItem(BaseModel):
    """
    A single entry of a trip day.

    Only the time-of-day of `time` is significant for ordering.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    time: datetime = Field(
        ...,
        description="When the item happens (time-of-day is what orders it)"
    )
    title: str = Field(
        ...,
        min_length=1,
        max_length=200,
    )
    location: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=2000)
    coordinate: Optional[Coordinate] = None
    cost: Optional[Decimal] = Field(
        default=None,
        ge=0,
        description="Cost of the item; absent means it contributes 0"
    )
    map_url: Optional[str] = None
    link_url: Optional[str] = None

    @field_validator("time", mode="before")
    @classmethod
    def coerce_time(cls, v: Any) -> Any:
        return _coerce_datetime(v)

    @property
    def minute_of_day(self) -> int:
        return minute_of_day(self.time)

    @property
    def cost_or_zero(self) -> Decimal:
        return self.cost if self.cost is not None else Decimal("0")


class DaySchedule(BaseModel):
    """
    Schedule of one trip day.

    `day_number` is 1-based and contiguous inside the owning plan's span.
    Lookups outside the span produce an empty schedule rather than an error,
    so no range constraint is placed on the field itself.
    """

    id: str = Field(default_factory=new_id)
    day_number: int = Field(..., description="1-based day within the trip")
    date: date
    schedule_items: list[ScheduleItem] = Field(default_factory=list)

    @field_validator("date", mode="before")
    @classmethod
    def coerce_date(cls, v: Any) -> Any:
        """Accept timestamps and keep only their calendar day."""
        if isinstance(v, datetime):
            return v.date()
        return v

    @property
    def total_cost(self) -> Decimal:
        return sum((item.cost_or_zero for item in self.schedule_items), Decimal("0"))


class PlannedPlace(BaseModel):
    """A place attached to a Plan."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=200)
    coordinate: Coordinate
    address: Optional[str] = Field(default=None, max_length=500)


# =============================================================================
# RECORDS - Top-level entities held by the Entity Store
# =============================================================================

class Record(BaseModel):
    """
    Base of every stored record.

    `id` is assigned by the Entity Store on first write and never changes.
    Records are replaced as a whole on every write; there are no partial
    field patches at the store layer.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    RECORD_TYPE: ClassVar[str] = "Record"
    IMAGE_FIELD: ClassVar[Optional[str]] = None
    IMAGE_PREFIX: ClassVar[str] = "image"

    id: Optional[str] = Field(
        default=None,
        description="Store-assigned identity"
    )
    user_id: Optional[str] = Field(
        default=None,
        description="Account the record belongs to"
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(
        default_factory=utc_now,
        description="Last write time; decides last-writer-wins conflicts"
    )

    def visible_to(self, caller_id: Optional[str]) -> bool:
        """Whether `caller_id` may see this record."""
        return caller_id is not None and self.user_id == caller_id

    @property
    def image_ref(self) -> Optional[str]:
        """Name of the side-channel image this record owns, if any."""
        if self.IMAGE_FIELD is None:
            return None
        return getattr(self, self.IMAGE_FIELD)

    def with_image_ref(self, name: Optional[str]) -> "Record":
        """Copy of the record pointing at another image (or none)."""
        if self.IMAGE_FIELD is None:
            return self.model_copy()
        return self.model_copy(update={self.IMAGE_FIELD: name})

    def content_fields(self) -> dict:
        """Field values excluding identity and write timestamps."""
        return self.model_dump(exclude={"id", "created_at", "updated_at"})


class TravelPlan(Record):
    """
    A trip: dated span with per-day schedules, packing list and sharing.

    `end_date` is never earlier than `start_date`: a violating write is
    normalised by clamping the end to the start.
    """

    RECORD_TYPE: ClassVar[str] = "TravelPlan"
    IMAGE_FIELD: ClassVar[Optional[str]] = "local_image_ref"
    IMAGE_PREFIX: ClassVar[str] = "travelPlan"

    kind: Literal["trip"] = "trip"

    title: str = Field(..., min_length=1, max_length=200)
    destination: str = Field(..., min_length=1, max_length=200)
    start_date: datetime
    end_date: datetime
    local_image_ref: Optional[str] = None
    card_color: Optional[str] = Field(
        default=None,
        pattern=r"^#[0-9A-F]{6}$",
        description="Card colour as #RRGGBB"
    )

    # Sharing
    owner_id: Optional[str] = Field(
        default=None,
        description="Original creator; stays the owner after sharing"
    )
    is_shared: bool = False
    share_code: Optional[str] = None
    shared_with: list[str] = Field(
        default_factory=list,
        description="Members who joined by share code (no duplicates)"
    )
    last_edited_by: Optional[str] = None

    day_schedules: list[DaySchedule] = Field(default_factory=list)
    packing_items: list[PackingItem] = Field(default_factory=list)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def coerce_dates(cls, v: Any) -> Any:
        return _coerce_datetime(v)

    @field_validator("card_color", mode="before")
    @classmethod
    def normalise_color(cls, v: Optional[str]) -> Optional[str]:
        return _normalise_color(v)

    @field_validator("shared_with")
    @classmethod
    def dedupe_members(cls, v: list[str]) -> list[str]:
        """Keep the first occurrence of each member."""
        seen = set()
        members = []
        for member in v:
            if member not in seen:
                seen.add(member)
                members.append(member)
        return members

    @model_validator(mode='after')
    def clamp_end_date(self) -> 'TravelPlan':
        if self.end_date < self.start_date:
            self.end_date = self.start_date
        return self

    # -------------------------------------------------------------------------
    # Ownership and visibility
    # -------------------------------------------------------------------------

    def is_owner(self, user_id: str) -> bool:
        return self.owner_id == user_id or (self.owner_id is None and self.user_id == user_id)

    def visible_to(self, caller_id: Optional[str]) -> bool:
        if caller_id is None:
            return False
        return (
            self.user_id == caller_id
            or self.owner_id == caller_id
            or caller_id in self.shared_with
        )

    # -------------------------------------------------------------------------
    # Day schedules
    # -------------------------------------------------------------------------

    @property
    def trip_duration_days(self) -> int:
        return (self.end_date.date() - self.start_date.date()).days + 1

    def date_for_day(self, day_number: int) -> date:
        return self.start_date.date() + timedelta(days=day_number - 1)

    def day_schedule(self, day_number: int) -> DaySchedule:
        """
        Schedule for `day_number`.

        Days outside [1, trip_duration_days] and days without a stored
        schedule both yield an empty schedule.
        """
        if 1 <= day_number <= self.trip_duration_days:
            for schedule in self.day_schedules:
                if schedule.day_number == day_number:
                    return schedule
        return DaySchedule(day_number=day_number, date=self.date_for_day(day_number))

    def rebuild_day_schedules(self) -> "TravelPlan":
        """
        Copy with exactly one schedule per day of the trip span.

        Schedules of days still inside the span keep their items; days that
        fell outside the span are dropped.
        """
        schedules = []
        for day_number in range(1, self.trip_duration_days + 1):
            existing = self.day_schedule(day_number)
            schedules.append(existing.model_copy(update={"date": self.date_for_day(day_number)}))
        return self.model_copy(update={"day_schedules": schedules})

    def with_schedule_item(self, day_number: int, item: ScheduleItem) -> "TravelPlan":
        """Copy with `item` added to (or replaced in) a day, ordered by time-of-day."""
        if not 1 <= day_number <= self.trip_duration_days:
            raise ValueError(
                f"Day {day_number} is outside the trip (1-{self.trip_duration_days})"
            )
        plan = self.without_schedule_item(item.id)
        schedules = []
        placed = False
        for schedule in plan.day_schedules:
            if schedule.day_number == day_number:
                items = sorted(
                    schedule.schedule_items + [item],
                    key=lambda i: i.minute_of_day,
                )
                schedule = schedule.model_copy(update={"schedule_items": items})
                placed = True
            schedules.append(schedule)
        if not placed:
            schedules.append(DaySchedule(
                day_number=day_number,
                date=self.date_for_day(day_number),
                schedule_items=[item],
            ))
            schedules.sort(key=lambda s: s.day_number)
        return plan.model_copy(update={"day_schedules": schedules})

    def without_schedule_item(self, item_id: str) -> "TravelPlan":
        schedules = [
            schedule.model_copy(update={
                "schedule_items": [i for i in schedule.schedule_items if i.id != item_id]
            })
            for schedule in self.day_schedules
        ]
        return self.model_copy(update={"day_schedules": schedules})

    @property
    def all_schedule_items(self) -> list[ScheduleItem]:
        return [item for schedule in self.day_schedules for item in schedule.schedule_items]

    # -------------------------------------------------------------------------
    # Packing list
    # -------------------------------------------------------------------------

    def with_packing_item(self, name: str) -> "TravelPlan":
        return self.model_copy(update={
            "packing_items": self.packing_items + [PackingItem(name=name)]
        })

    def with_packing_item_toggled(self, item_id: str) -> "TravelPlan":
        items = [
            item.model_copy(update={"is_checked": not item.is_checked})
            if item.id == item_id else item
            for item in self.packing_items
        ]
        return self.model_copy(update={"packing_items": items})

    # -------------------------------------------------------------------------
    # Position in time
    # -------------------------------------------------------------------------

    def is_ongoing(self, at: Union[date, datetime]) -> bool:
        day = to_day(at)
        return self.start_date.date() <= day <= self.end_date.date()

    def is_future(self, at: Union[date, datetime]) -> bool:
        return self.start_date.date() > to_day(at)

    def is_past(self, at: Union[date, datetime]) -> bool:
        return self.end_date.date() < to_day(at)


class Plan(Record):
    """
    A lightweight itinerary: a daily appointment or a short outing.

    `time` only carries meaning for daily plans; when it is absent the
    plan's own start timestamp stands in for it.
    """

    RECORD_TYPE: ClassVar[str] = "Plan"
    IMAGE_FIELD: ClassVar[Optional[str]] = "local_image_ref"
    IMAGE_PREFIX: ClassVar[str] = "plan"

    kind: Literal["daily_outline"] = "daily_outline"

    title: str = Field(..., min_length=1, max_length=200)
    start_date: datetime
    end_date: datetime
    time: Optional[datetime] = None
    places: list[PlannedPlace] = Field(default_factory=list)
    card_color: Optional[str] = Field(
        default=None,
        pattern=r"^#[0-9A-F]{6}$",
    )
    description: Optional[str] = Field(default=None, max_length=2000)
    plan_type: PlanType = PlanType.OUTING
    local_image_ref: Optional[str] = None

    @field_validator("start_date", "end_date", "time", mode="before")
    @classmethod
    def coerce_dates(cls, v: Any) -> Any:
        return _coerce_datetime(v)

    @field_validator("card_color", mode="before")
    @classmethod
    def normalise_color(cls, v: Optional[str]) -> Optional[str]:
        return _normalise_color(v)

    @model_validator(mode='after')
    def clamp_end_date(self) -> 'Plan':
        if self.end_date < self.start_date:
            self.end_date = self.start_date
        return self

    @property
    def effective_time(self) -> datetime:
        """Timestamp whose time-of-day places the plan on a day's timeline."""
        return self.time if self.time is not None else self.start_date


class VisitedPlace(Record):
    """A place the user has been to, optionally with a photo."""

    RECORD_TYPE: ClassVar[str] = "VisitedPlace"
    IMAGE_FIELD: ClassVar[Optional[str]] = "photo_ref"
    IMAGE_PREFIX: ClassVar[str] = "place"

    title: str = Field(..., min_length=1, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=2000)
    coordinate: Coordinate
    visited_at: Optional[datetime] = None
    photo_ref: Optional[str] = None
    address: Optional[str] = Field(default=None, max_length=500)
    tags: Optional[list[str]] = None
    category: PlaceCategory = PlaceCategory.OTHER
    travel_plan_id: Optional[str] = Field(
        default=None,
        description="Trip this visit was recorded from, if any"
    )

    @classmethod
    def from_schedule_item(
        cls,
        item: ScheduleItem,
        travel_plan_id: Optional[str],
        category: PlaceCategory = PlaceCategory.SIGHTSEEING,
    ) -> "VisitedPlace":
        """
        Record a trip schedule item as a visited place.

        The item must carry a coordinate; its time becomes the visit time.
        """
        if item.coordinate is None:
            raise ValueError(f"Schedule item '{item.title}' has no coordinate")
        return cls(
            title=item.title,
            notes=item.notes,
            coordinate=item.coordinate,
            visited_at=item.time,
            address=item.location,
            category=category,
            travel_plan_id=travel_plan_id,
        )


# =============================================================================
# REGISTRY
# =============================================================================

Itinerary = Annotated[Union[TravelPlan, Plan], Field(discriminator="kind")]

_itinerary_adapter = TypeAdapter(Itinerary)

RECORD_TYPES: dict[str, type[Record]] = {
    cls.RECORD_TYPE: cls for cls in (TravelPlan, Plan, VisitedPlace)
}


def record_class(record_type: str) -> type[Record]:
    """Look up a record class by its RECORD_TYPE name."""
    try:
        return RECORD_TYPES[record_type]
    except KeyError:
        raise ValueError(f"Unknown record type: {record_type}") from None


def parse_record(record_type: str, payload: dict[str, Any]) -> Record:
    """
    Rebuild a record from its JSON payload.

    Itinerary payloads are validated through the `kind` discriminant, which
    must agree with `record_type`.

    Raises:
        ValueError: If the type is unknown or the payload does not fit it
    """
    cls = record_class(record_type)
    if cls is VisitedPlace:
        return cls.model_validate(payload)
    record = _itinerary_adapter.validate_python(payload)
    if not isinstance(record, cls):
        raise ValueError(
            f"Payload kind {payload.get('kind')!r} does not match record type {record_type}"
        )
    return record
