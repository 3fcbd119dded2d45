"""
Reactive Query Controller

DESIGN DECISION: A subscription is a live, sorted, filtered view over the
entity store. It delivers the current result set as soon as it is created
and a new full result set after every store change that could affect it,
local or remote. Consumers never diff; they just re-render the list.

Visibility is part of every query: a record is only ever delivered to a
caller it is visible to (owner, creator or share member).

Cancelling a subscription is synchronous. Once `cancel()` returns, its
callback is never invoked again.
"""

from enum import Enum
from typing import Callable, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, field_validator

from travory.models.records import Record
from travory.services.storage.interface import (
    EntityStoreInterface,
    StoreChange,
    record_type_name,
)


logger = structlog.get_logger(__name__)


ResultCallback = Callable[[list[Record]], None]


class SortKey(str, Enum):
    """Result orderings. Ties always keep insertion order."""
    START_DATE_DESC = "start_date_desc"
    CREATED_AT_DESC = "created_at_desc"
    INSERTION = "insertion"


def sort_records(records: list[Record], sort_key: SortKey) -> list[Record]:
    """Sort store results (which arrive in insertion order) by `sort_key`."""
    if sort_key == SortKey.START_DATE_DESC:
        # sorted() stays stable with reverse=True
        return sorted(records, key=lambda r: r.start_date, reverse=True)
    if sort_key == SortKey.CREATED_AT_DESC:
        return sorted(records, key=lambda r: r.created_at, reverse=True)
    return list(records)


class LiveQuery(BaseModel):
    """
    What a subscription watches.

    `predicate` narrows the visible records further (e.g. one plan type).
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    record_type: str
    caller_id: Optional[str]
    predicate: Optional[Callable[[Record], bool]] = None
    sort_key: SortKey = SortKey.INSERTION

    @field_validator("record_type", mode="before")
    @classmethod
    def normalise_record_type(cls, v: Union[str, type[Record]]) -> str:
        return record_type_name(v)

    def matches(self, record: Optional[Record]) -> bool:
        if record is None or record.RECORD_TYPE != self.record_type:
            return False
        if not record.visible_to(self.caller_id):
            return False
        return self.predicate is None or self.predicate(record)

    def affected_by(self, change: StoreChange) -> bool:
        """Whether `change` can alter this query's result set."""
        if change.record_type != self.record_type:
            return False
        return self.matches(change.before) or self.matches(change.after)


class Subscription:
    """Handle of one live query."""

    def __init__(
        self,
        controller: "QueryController",
        query: LiveQuery,
        on_change: ResultCallback,
    ):
        self._controller = controller
        self._query = query
        self._on_change = on_change
        self._results: list[Record] = []
        self._active = True

    @property
    def query(self) -> LiveQuery:
        return self._query

    @property
    def results(self) -> list[Record]:
        """Last delivered result set."""
        return list(self._results)

    @property
    def is_active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        """Stop all further deliveries. Safe to call more than once."""
        if not self._active:
            return
        self._active = False
        self._controller._discard(self)

    def _deliver(self, results: list[Record]) -> None:
        if not self._active:
            return
        self._results = results
        try:
            self._on_change(list(results))
        except Exception as e:
            # A consumer bug must not stop other subscriptions
            logger.error(
                "subscription_callback_failed",
                record_type=self._query.record_type,
                error=str(e),
            )


class QueryController:
    """
    Owns every live subscription over one entity store.

    Usage:
        controller = QueryController(store)
        sub = controller.subscribe(
            LiveQuery(record_type=TravelPlan, caller_id=user_id,
                      sort_key=SortKey.START_DATE_DESC),
            on_change=render,
        )
        ...
        sub.cancel()
    """

    def __init__(self, store: EntityStoreInterface):
        self._store = store
        self._subscriptions: list[Subscription] = []
        self._remove_listener = store.add_listener(self._on_store_change)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def snapshot(self, query: LiveQuery) -> list[Record]:
        """One-shot evaluation of a query."""
        records = self._store.query(query.record_type, predicate=query.matches)
        return sort_records(records, query.sort_key)

    def subscribe(self, query: LiveQuery, on_change: ResultCallback) -> Subscription:
        """
        Start a live query.

        `on_change` receives the current result set before this returns.
        """
        subscription = Subscription(self, query, on_change)
        self._subscriptions.append(subscription)
        subscription._deliver(self.snapshot(query))
        logger.debug(
            "subscription_started",
            record_type=query.record_type,
            caller_id=query.caller_id,
        )
        return subscription

    def close(self) -> None:
        """Cancel every subscription and detach from the store."""
        for subscription in list(self._subscriptions):
            subscription.cancel()
        self._remove_listener()

    def _discard(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _on_store_change(self, change: StoreChange) -> None:
        for subscription in list(self._subscriptions):
            if subscription.is_active and subscription.query.affected_by(change):
                subscription._deliver(self.snapshot(subscription.query))
