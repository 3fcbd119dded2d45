"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Keep the local entity store swappable (SQLite today)
2. Use in-memory remote stores for testing
3. Mirror records to Google Sheets without the flows knowing about it
4. Keep business logic decoupled from storage implementation

The interface is intentionally simple - we're not building a full ORM.
Just the operations the record flows, the query controller and the
replication bridge need.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from travory.models.audit import AuditEvent
from travory.models.records import Record, TravelPlan, parse_record, record_class


RecordType = Union[str, type[Record]]
Predicate = Callable[[Record], bool]
SortFunction = Callable[[list[Record]], list[Record]]


def record_type_name(record_type: RecordType) -> str:
    """Normalise a record class or its name to the stored type name."""
    if isinstance(record_type, str):
        return record_class(record_type).RECORD_TYPE
    return record_type.RECORD_TYPE


# =============================================================================
# CHANGE EVENTS
# =============================================================================

class ChangeOrigin(str, Enum):
    """Where a store write came from."""
    LOCAL = "local"    # a flow on this device
    REMOTE = "remote"  # applied by the replication bridge


class ChangeOp(str, Enum):
    PUT = "put"
    DELETE = "delete"


class StoreChange(BaseModel):
    """
    One committed store mutation, delivered to every store listener.

    `before` is None for inserts, `after` is None for deletes.
    """
    model_config = ConfigDict(frozen=True)

    record_type: str
    record_id: str
    op: ChangeOp
    origin: ChangeOrigin = ChangeOrigin.LOCAL
    before: Optional[Record] = None
    after: Optional[Record] = None
    committed_at: datetime

    @property
    def is_delete(self) -> bool:
        return self.op == ChangeOp.DELETE


StoreListener = Callable[[StoreChange], None]


# =============================================================================
# ENTITY STORE
# =============================================================================

class EntityStoreInterface(ABC):
    """
    Abstract interface for the local entity store.

    Every operation works on local state only; nothing here blocks on
    network I/O. Writes are full replaces.
    """

    @abstractmethod
    def put(
        self,
        record: Record,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
    ) -> str:
        """
        Insert or fully replace a record.

        Args:
            record: The record to store. A missing id is assigned here.
            origin: Whether the write comes from a local flow or the
                    replication bridge.

        Returns:
            The record id

        Raises:
            RecordValidationError: If the record fails normalisation
        """
        pass

    @abstractmethod
    def get(self, record_type: RecordType, record_id: str) -> Optional[Record]:
        """
        Retrieve a record by type and id.

        Returns:
            The record if found, None otherwise
        """
        pass

    @abstractmethod
    def query(
        self,
        record_type: RecordType,
        predicate: Optional[Predicate] = None,
        sort: Optional[SortFunction] = None,
    ) -> list[Record]:
        """
        List records of one type.

        Args:
            record_type: Record class or its name
            predicate: Keep only records it accepts
            sort: Reorders the matching list; without it records come back
                  in insertion order

        Returns:
            List of matching records
        """
        pass

    @abstractmethod
    def delete(
        self,
        record_type: RecordType,
        record_id: str,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
        deleted_at: Optional[datetime] = None,
    ) -> bool:
        """
        Delete a record by id and leave a tombstone behind.

        Returns:
            True if a record was deleted, False if it did not exist
        """
        pass

    @abstractmethod
    def tombstone(self, record_type: RecordType, record_id: str) -> Optional[datetime]:
        """When the record was deleted locally, if it was."""
        pass

    @abstractmethod
    def find_by_share_code(self, share_code: str) -> Optional[TravelPlan]:
        """Look up a travel plan by its share code."""
        pass

    @abstractmethod
    def all_image_refs(self) -> set[str]:
        """Names of every side-channel image any record still references."""
        pass

    @abstractmethod
    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        """
        Register a callback for committed changes.

        Returns:
            A function that removes the listener again
        """
        pass


# =============================================================================
# REMOTE STORE
# =============================================================================

class RemoteDocument(BaseModel):
    """
    A record as mirrored in the remote, account-scoped store.

    The payload is the record's JSON-mode dump; a deleted document keeps
    the last payload it had.
    """

    account_id: str = Field(..., description="Account the record is filed under")
    record_type: str
    record_id: str
    updated_at: datetime = Field(
        ...,
        description="Write time of the mirrored state; decides last-writer-wins"
    )
    deleted: bool = False
    share_code: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    sequence: int = Field(
        0,
        description="Arrival order, stamped by the remote store on every write; pages pulls"
    )

    @classmethod
    def from_record(cls, record: Record, account_id: str) -> "RemoteDocument":
        return cls(
            account_id=account_id,
            record_type=record.RECORD_TYPE,
            record_id=record.id,
            updated_at=record.updated_at,
            share_code=getattr(record, "share_code", None),
            payload=record.model_dump(mode="json"),
        )

    @classmethod
    def deletion(
        cls,
        last_state: Record,
        account_id: str,
        deleted_at: datetime,
    ) -> "RemoteDocument":
        """Deleted document; keeps the last payload so members still see it."""
        return cls(
            account_id=account_id,
            record_type=last_state.RECORD_TYPE,
            record_id=last_state.id,
            updated_at=deleted_at,
            deleted=True,
            payload=last_state.model_dump(mode="json"),
        )

    def to_record(self) -> Record:
        """Rebuild the record this document mirrors."""
        return parse_record(self.record_type, self.payload)

    def is_visible_to(self, account_id: str) -> bool:
        """Whether a pull for `account_id` should see this document."""
        return (
            self.account_id == account_id
            or account_id in self.payload.get("shared_with", [])
        )


class RemoteStoreInterface(ABC):
    """
    Abstract interface for the remote, account-scoped record mirror.

    Only the replication bridge talks to it.
    """

    @abstractmethod
    async def upsert(self, document: RemoteDocument) -> bool:
        """
        Insert or replace a document keyed by (record_type, record_id).

        The write is skipped when the stored copy has a strictly newer
        `updated_at`. A write that lands is stamped with the next arrival
        `sequence`.

        Returns:
            True if the document was written, False if a newer copy won

        Raises:
            StorageError: If the remote write fails
        """
        pass

    @abstractmethod
    async def get(self, record_type: str, record_id: str) -> Optional[RemoteDocument]:
        """Fetch one document, or None if the remote has never seen it."""
        pass

    @abstractmethod
    async def fetch_changes(
        self,
        account_id: str,
        since: Optional[int] = None,
    ) -> list[RemoteDocument]:
        """
        Documents visible to an account that arrived after sequence `since`.

        Visible means filed under the account or shared with it. A write
        made offline is returned once it reaches the remote, however old
        its `updated_at`.

        Returns:
            Documents in ascending `sequence` order
        """
        pass

    @abstractmethod
    async def find_by_share_code(self, share_code: str) -> Optional[RemoteDocument]:
        """Find a live (not deleted) shared plan by its share code."""
        pass


# =============================================================================
# AUDIT STORAGE
# =============================================================================

class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one add flow).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Args:
            entity_type: Type of entity (e.g., 'TravelPlan', 'image')
            entity_id: The entity's ID

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ShareCodeConflictError(DuplicateError):
    """The share code is already used by another plan."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass


class RecordValidationError(StorageError):
    """A local write was rejected because the record is malformed."""

    def __init__(self, message: str, errors: Optional[list[dict]] = None):
        super().__init__(message)
        self.errors = errors or []
