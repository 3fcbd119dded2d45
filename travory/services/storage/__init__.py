"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage:
the local SQLite entity store, and the remote record mirrors (Google Sheets
and in-memory) the replication bridge pushes to.
"""

from travory.services.storage.interface import (
    AuditStorageInterface,
    ChangeOp,
    ChangeOrigin,
    ConnectionError,
    DuplicateError,
    EntityStoreInterface,
    NotFoundError,
    RecordValidationError,
    RemoteDocument,
    RemoteStoreInterface,
    ShareCodeConflictError,
    StorageError,
    StoreChange,
)
from travory.services.storage.sqlite_store import LocalEntityStore
from travory.services.storage.memory import InMemoryRemoteStore
from travory.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsRemoteStore,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "EntityStoreInterface",
    "RemoteStoreInterface",
    # Change events
    "ChangeOp",
    "ChangeOrigin",
    "RemoteDocument",
    "StoreChange",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "RecordValidationError",
    "ShareCodeConflictError",
    "StorageError",
    # Implementations
    "LocalEntityStore",
    "InMemoryRemoteStore",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsRemoteStore",
]
