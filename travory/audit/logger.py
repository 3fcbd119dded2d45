"""
Audit Logger

DESIGN DECISION: Every significant action in the system is logged.
This provides:
1. Complete traceability of local writes and their side effects
2. Debugging capability for the background replication path
3. A history of who joined and edited a shared plan

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from travory.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from travory.services.storage.interface import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An audit storage backend (Google Sheets) when one is configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger(__name__)
        self._events: list[AuditEvent] = []

    @property
    def events(self) -> list[AuditEvent]:
        """Events logged through this instance, oldest first."""
        return list(self._events)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        self._events.append(event)
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_record_saved(
        self,
        record_type: str,
        record_id: str,
        actor_id: Optional[str],
        updated: bool = False,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a local record write."""
        await self.log(AuditEventBuilder.record_saved(
            record_type=record_type,
            record_id=record_id,
            actor_id=actor_id,
            updated=updated,
            correlation_id=correlation_id,
        ))

    async def log_record_deleted(
        self,
        record_type: str,
        record_id: str,
        actor_id: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a local record delete."""
        await self.log(AuditEventBuilder.record_deleted(
            record_type=record_type,
            record_id=record_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
        ))

    async def log_write_rejected(
        self,
        record_type: str,
        reason: str,
        actor_id: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a local write that failed validation."""
        await self.log(AuditEventBuilder.write_rejected(
            record_type=record_type,
            reason=reason,
            actor_id=actor_id,
            correlation_id=correlation_id,
        ))

    async def log_image_saved(
        self,
        record_type: str,
        image_name: str,
        size_bytes: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an image stored in the side channel."""
        await self.log(AuditEventBuilder.image_saved(
            record_type=record_type,
            image_name=image_name,
            size_bytes=size_bytes,
            correlation_id=correlation_id,
        ))

    async def log_image_save_failed(
        self,
        record_type: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a non-fatal image persistence failure."""
        await self.log(AuditEventBuilder.image_save_failed(
            record_type=record_type,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_image_released(
        self,
        image_name: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.image_released(
            image_name=image_name,
            correlation_id=correlation_id,
        ))

    async def log_image_release_failed(
        self,
        image_name: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.image_release_failed(
            image_name=image_name,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_orphan_images_swept(self, removed: list[str]) -> None:
        await self.log(AuditEventBuilder.orphan_images_swept(removed))

    async def log_share_code_assigned(
        self,
        plan_id: str,
        share_code: str,
        actor_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a share code stamped onto a plan."""
        await self.log(AuditEventBuilder.share_code_assigned(
            plan_id=plan_id,
            share_code=share_code,
            actor_id=actor_id,
            correlation_id=correlation_id,
        ))

    async def log_plan_joined(
        self,
        plan_id: str,
        actor_id: str,
        already_member: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a join by share code."""
        await self.log(AuditEventBuilder.plan_joined(
            plan_id=plan_id,
            actor_id=actor_id,
            already_member=already_member,
            correlation_id=correlation_id,
        ))

    async def log_replication_pushed(
        self,
        record_type: str,
        record_id: str,
        deleted: bool,
    ) -> None:
        await self.log(AuditEventBuilder.replication_pushed(
            record_type=record_type,
            record_id=record_id,
            deleted=deleted,
        ))

    async def log_replication_failed(
        self,
        record_type: str,
        record_id: str,
        attempt: int,
        error_message: str,
    ) -> None:
        """Log a failed push attempt; the bridge keeps retrying."""
        await self.log(AuditEventBuilder.replication_failed(
            record_type=record_type,
            record_id=record_id,
            attempt=attempt,
            error_message=error_message,
        ))

    async def log_remote_change_applied(
        self,
        record_type: str,
        record_id: str,
        deleted: bool,
    ) -> None:
        await self.log(AuditEventBuilder.remote_change_applied(
            record_type=record_type,
            record_id=record_id,
            deleted=deleted,
        ))

    async def log_notification_failed(
        self,
        record_id: str,
        action: str,
        error_message: str,
    ) -> None:
        await self.log(AuditEventBuilder.notification_failed(
            record_id=record_id,
            action=action,
            error_message=error_message,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., adding a trip).
    Pass it through all subsequent operations.
    """
    return uuid4()
