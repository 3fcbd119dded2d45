"""Services package."""

from travory.services.auth import (
    AuthProvider,
    NotAuthenticatedError,
    StaticAuthProvider,
)
from travory.services.image import (
    DocumentImageStore,
    ImagePersistenceError,
    ImageService,
    ImageStoreInterface,
)
from travory.services.notifications import (
    InMemoryNotificationService,
    NotificationService,
    Reminder,
    ReminderPlanner,
)
from travory.services.storage import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    EntityStoreInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsRemoteStore,
    InMemoryRemoteStore,
    LocalEntityStore,
    NotFoundError,
    RecordValidationError,
    RemoteStoreInterface,
    ShareCodeConflictError,
    StorageError,
)

__all__ = [
    # Auth
    "AuthProvider",
    "NotAuthenticatedError",
    "StaticAuthProvider",
    # Image side channel
    "DocumentImageStore",
    "ImagePersistenceError",
    "ImageService",
    "ImageStoreInterface",
    # Notifications
    "InMemoryNotificationService",
    "NotificationService",
    "Reminder",
    "ReminderPlanner",
    # Storage services
    "AuditStorageInterface",
    "ConnectionError",
    "DuplicateError",
    "EntityStoreInterface",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsRemoteStore",
    "InMemoryRemoteStore",
    "LocalEntityStore",
    "NotFoundError",
    "RecordValidationError",
    "RemoteStoreInterface",
    "ShareCodeConflictError",
    "StorageError",
]
