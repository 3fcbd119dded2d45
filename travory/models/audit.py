"""
Audit Models for Travory

Every significant action in the system is logged for audit purposes.
This provides:
1. Traceability of every local write and its side effects
2. Debugging information when replication or images misbehave
3. Ability to reconstruct the history of a shared plan

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from travory.models.records import utc_now


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every step of a write flow has its own event type.
    """
    # Local writes
    RECORD_SAVED = "record_saved"
    RECORD_UPDATED = "record_updated"
    RECORD_DELETED = "record_deleted"
    WRITE_REJECTED = "write_rejected"

    # Image side channel
    IMAGE_SAVED = "image_saved"
    IMAGE_SAVE_FAILED = "image_save_failed"
    IMAGE_RELEASED = "image_released"
    IMAGE_RELEASE_FAILED = "image_release_failed"
    ORPHAN_IMAGES_SWEPT = "orphan_images_swept"

    # Sharing
    SHARE_CODE_ASSIGNED = "share_code_assigned"
    PLAN_JOINED = "plan_joined"

    # Replication
    REPLICATION_PUSHED = "replication_pushed"
    REPLICATION_FAILED = "replication_failed"
    REMOTE_CHANGE_APPLIED = "remote_change_applied"

    # Collaborators
    NOTIFICATION_FAILED = "notification_failed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Record type (e.g., 'TravelPlan', 'VisitedPlace') or 'image'"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., one add flow)"
    )

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_message: Optional[str] = None

    # Who did it
    actor_id: Optional[str] = Field(
        default=None,
        description="Caller id for user-initiated events"
    )

    @property
    def is_user_action(self) -> bool:
        return self.actor_id is not None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "actor_id": self.actor_id,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_message, actor_id]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            self.entity_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            self.actor_id or "",
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.record_saved("TravelPlan", plan_id, actor_id)
        event = AuditEventBuilder.image_save_failed("TravelPlan", name, error)
    """

    @staticmethod
    def record_saved(
        record_type: str,
        record_id: str,
        actor_id: Optional[str],
        updated: bool = False,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        verb = "updated" if updated else "saved"
        return AuditEvent(
            event_type=AuditEventType.RECORD_UPDATED if updated else AuditEventType.RECORD_SAVED,
            entity_type=record_type,
            entity_id=record_id,
            correlation_id=correlation_id,
            description=f"{record_type} {verb} locally",
            actor_id=actor_id,
        )

    @staticmethod
    def record_deleted(
        record_type: str,
        record_id: str,
        actor_id: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECORD_DELETED,
            entity_type=record_type,
            entity_id=record_id,
            correlation_id=correlation_id,
            description=f"{record_type} deleted locally",
            actor_id=actor_id,
        )

    @staticmethod
    def write_rejected(
        record_type: str,
        reason: str,
        actor_id: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.WRITE_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type=record_type,
            correlation_id=correlation_id,
            description=f"{record_type} write rejected",
            error_message=reason,
            actor_id=actor_id,
        )

    @staticmethod
    def image_saved(
        record_type: str,
        image_name: str,
        size_bytes: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMAGE_SAVED,
            entity_type="image",
            entity_id=image_name,
            correlation_id=correlation_id,
            description=f"Image stored for {record_type}",
            details={
                "record_type": record_type,
                "size_bytes": size_bytes,
            },
        )

    @staticmethod
    def image_save_failed(
        record_type: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMAGE_SAVE_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="image",
            correlation_id=correlation_id,
            description=f"Image could not be stored; {record_type} saved without it",
            error_message=error_message,
            details={"record_type": record_type},
        )

    @staticmethod
    def image_released(
        image_name: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMAGE_RELEASED,
            entity_type="image",
            entity_id=image_name,
            correlation_id=correlation_id,
            description=f"Image released: {image_name}",
        )

    @staticmethod
    def image_release_failed(
        image_name: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMAGE_RELEASE_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="image",
            entity_id=image_name,
            correlation_id=correlation_id,
            description=f"Image could not be released and may be orphaned: {image_name}",
            error_message=error_message,
        )

    @staticmethod
    def orphan_images_swept(removed: list[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ORPHAN_IMAGES_SWEPT,
            entity_type="image",
            description=f"Removed {len(removed)} unreferenced images",
            details={"removed": removed},
        )

    @staticmethod
    def share_code_assigned(
        plan_id: str,
        share_code: str,
        actor_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SHARE_CODE_ASSIGNED,
            entity_type="TravelPlan",
            entity_id=plan_id,
            correlation_id=correlation_id,
            description="Share code assigned to travel plan",
            details={"share_code": share_code},
            actor_id=actor_id,
        )

    @staticmethod
    def plan_joined(
        plan_id: str,
        actor_id: str,
        already_member: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PLAN_JOINED,
            entity_type="TravelPlan",
            entity_id=plan_id,
            correlation_id=correlation_id,
            description=(
                "Member re-joined travel plan (no change)"
                if already_member
                else "Member joined travel plan by share code"
            ),
            details={"already_member": already_member},
            actor_id=actor_id,
        )

    @staticmethod
    def replication_pushed(
        record_type: str,
        record_id: str,
        deleted: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REPLICATION_PUSHED,
            severity=AuditSeverity.DEBUG,
            entity_type=record_type,
            entity_id=record_id,
            description=f"{record_type} mirrored to remote store",
            details={"deleted": deleted},
        )

    @staticmethod
    def replication_failed(
        record_type: str,
        record_id: str,
        attempt: int,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REPLICATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type=record_type,
            entity_id=record_id,
            description=f"Replication attempt {attempt} failed; will retry",
            error_message=error_message,
            details={"attempt": attempt},
        )

    @staticmethod
    def remote_change_applied(
        record_type: str,
        record_id: str,
        deleted: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOTE_CHANGE_APPLIED,
            entity_type=record_type,
            entity_id=record_id,
            description=f"Remote {'deletion' if deleted else 'change'} applied locally",
            details={"deleted": deleted},
        )

    @staticmethod
    def notification_failed(
        record_id: str,
        action: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.NOTIFICATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_id=record_id,
            description=f"Reminder {action} failed",
            error_message=error_message,
            details={"action": action},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
