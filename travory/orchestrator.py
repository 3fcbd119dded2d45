"""
Main Orchestrator for Travory

This module ties together all the components and defines the
end-to-end flows for:
1. Records (add / update / delete of trips, plans and visited places)
2. Sharing (share codes and joining a shared trip)

DESIGN DECISION: The orchestrator enforces the boundaries:
- No write without a signed-in caller
- A record is only changed or deleted by a caller it is visible to
- Local writes are authoritative; replication happens behind the store
- Every step is audited

DESIGN DECISION: Images and reminders are side effects, never blockers.
An image that cannot be stored leaves the record without one; a reminder
that cannot be scheduled is logged. Neither fails the write.

TravelPlan and Plan share one flow. The record type decides which image
field and which reminders apply.
"""

import asyncio
from typing import Awaitable, Optional
from uuid import UUID

import structlog

from travory.audit import AuditLogger, create_correlation_id
from travory.config import Settings, get_settings
from travory.models.records import Plan, Record, TravelPlan, generate_share_code, utc_now
from travory.queries import QueryController
from travory.services.auth import AuthProvider
from travory.services.image import DocumentImageStore, ImagePersistenceError, ImageService
from travory.services.notifications import InMemoryNotificationService, NotificationService
from travory.services.replication import ReplicationBridge
from travory.services.storage import (
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
)


logger = structlog.get_logger(__name__)


class _FlowBase:
    """Caller resolution and background task bookkeeping shared by the flows."""

    def __init__(
        self,
        store: EntityStoreInterface,
        auth: AuthProvider,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._auth = auth
        self._audit_logger = audit_logger or AuditLogger()
        self._background: set[asyncio.Task] = set()

    def _caller(self, caller_id: Optional[str]) -> str:
        return caller_id or self._auth.require_user_id()

    def _spawn(self, coro: Awaitable, name: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_for_background(self) -> None:
        """Wait until every fire-and-forget side effect has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _get_visible(self, record_type: type[Record], record_id: Optional[str], caller: str) -> Record:
        existing = self._store.get(record_type, record_id) if record_id else None
        if existing is None or not existing.visible_to(caller):
            raise NotFoundError(f"{record_type.RECORD_TYPE} not found: {record_id}")
        return existing


class RecordFlow(_FlowBase):
    """
    Orchestrates record writes.

    Flow for add:
    1. Resolve the caller (NotAuthenticated otherwise)
    2. Store the image, if any, under a fresh name (failure is non-fatal)
    3. Stamp owner, timestamps and the image name onto the record
    4. Write the record to the local store
    5. Schedule reminders in the background

    Update stores a new image before releasing the old one, so the record
    never points at a missing file. Delete releases the image, then
    deletes the record.
    """

    def __init__(
        self,
        store: EntityStoreInterface,
        auth: AuthProvider,
        image_service: Optional[ImageService] = None,
        notifications: Optional[NotificationService] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        super().__init__(store, auth, audit_logger)
        self._image_service = image_service
        self._notifications = notifications

    # =========================================================================
    # Public flows
    # =========================================================================

    def get(self, record_type: type[Record], record_id: str, caller_id: Optional[str] = None) -> Record:
        """
        Read one record as the caller.

        Raises:
            NotFoundError: If it does not exist or is not visible to the caller
        """
        return self._get_visible(record_type, record_id, self._caller(caller_id))

    async def add(
        self,
        record: Record,
        owner_id: Optional[str] = None,
        image: Optional[bytes] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Record:
        """
        Create a record.

        Args:
            record: The new record; store-assigned fields are overwritten
            owner_id: Caller id (defaults to the signed-in user)
            image: Raw image bytes for the record's image field

        Returns:
            The stored record

        Raises:
            NotAuthenticatedError: If there is no caller
            RecordValidationError: If the record is malformed
        """
        caller = self._caller(owner_id)
        correlation_id = correlation_id or create_correlation_id()
        now = utc_now()

        stamps = {"user_id": caller, "created_at": now, "updated_at": now}
        if isinstance(record, TravelPlan):
            stamps["owner_id"] = record.owner_id or caller
            stamps["last_edited_by"] = caller
        record = record.model_copy(update=stamps)

        image_name = None
        if image is not None:
            image_name = await self._save_image(record, image, correlation_id)
        if record.IMAGE_FIELD is not None:
            record = record.with_image_ref(image_name)

        saved = await self._put(record, caller, correlation_id, new_image=image_name)

        await self._audit_logger.log_record_saved(
            record_type=saved.RECORD_TYPE,
            record_id=saved.id,
            actor_id=caller,
            correlation_id=correlation_id,
        )
        self._schedule_reminders(saved)
        return saved

    async def update(
        self,
        record: Record,
        owner_id: Optional[str] = None,
        image: Optional[bytes] = None,
        remove_image: bool = False,
        correlation_id: Optional[UUID] = None,
    ) -> Record:
        """
        Replace a record with a new version.

        The record's image field is managed here: it keeps the stored image
        unless `image` replaces it or `remove_image` clears it.

        Raises:
            NotAuthenticatedError: If there is no caller
            NotFoundError: If the record does not exist or is not visible
            RecordValidationError: If the new version is malformed
        """
        caller = self._caller(owner_id)
        correlation_id = correlation_id or create_correlation_id()
        existing = self._get_visible(type(record), record.id, caller)

        stamps = {
            "id": existing.id,
            "user_id": existing.user_id,
            "created_at": existing.created_at,
            "updated_at": utc_now(),
        }
        if isinstance(existing, TravelPlan):
            stamps["owner_id"] = existing.owner_id or record.owner_id
            stamps["last_edited_by"] = caller
        updated = record.model_copy(update=stamps)

        old_image = existing.image_ref
        image_ref = old_image
        new_image = None
        if image is not None:
            new_image = await self._save_image(updated, image, correlation_id)
            if new_image is not None:
                image_ref = new_image
        elif remove_image:
            image_ref = None
        if updated.IMAGE_FIELD is not None:
            updated = updated.with_image_ref(image_ref)

        saved = await self._put(updated, caller, correlation_id, new_image=new_image)

        # New image is durable and referenced; only now let the old one go
        if old_image and old_image != image_ref:
            self._spawn(
                self._release_image(old_image, correlation_id),
                name=f"release-image-{old_image}",
            )

        await self._audit_logger.log_record_saved(
            record_type=saved.RECORD_TYPE,
            record_id=saved.id,
            actor_id=caller,
            updated=True,
            correlation_id=correlation_id,
        )
        self._schedule_reminders(saved)
        return saved

    async def delete(
        self,
        record: Record,
        owner_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Delete a record and release its image.

        Raises:
            NotAuthenticatedError: If there is no caller
            NotFoundError: If the record does not exist or is not visible
        """
        caller = self._caller(owner_id)
        correlation_id = correlation_id or create_correlation_id()
        existing = self._get_visible(type(record), record.id, caller)

        if existing.image_ref:
            await self._release_image(existing.image_ref, correlation_id)

        deleted = self._store.delete(type(existing), existing.id)
        if deleted:
            await self._audit_logger.log_record_deleted(
                record_type=existing.RECORD_TYPE,
                record_id=existing.id,
                actor_id=caller,
                correlation_id=correlation_id,
            )
            self._cancel_reminders(existing)
        return deleted

    async def sweep_orphaned_images(self) -> list[str]:
        """
        Remove stored images that no record references.

        Images of records from interrupted add/update/delete flows are
        what this finds.
        """
        if self._image_service is None:
            return []
        await self.wait_for_background()
        referenced = self._store.all_image_refs()
        removed = await asyncio.to_thread(self._image_service.sweep_orphans, referenced)
        if removed:
            await self._audit_logger.log_orphan_images_swept(removed)
        return removed

    # =========================================================================
    # Steps
    # =========================================================================

    async def _put(
        self,
        record: Record,
        caller: str,
        correlation_id: UUID,
        new_image: Optional[str] = None,
    ) -> Record:
        try:
            record_id = self._store.put(record)
        except RecordValidationError as e:
            await self._audit_logger.log_write_rejected(
                record_type=record.RECORD_TYPE,
                reason=str(e),
                actor_id=caller,
                correlation_id=correlation_id,
            )
            if new_image:
                # Nothing references the image we just stored
                self._spawn(
                    self._release_image(new_image, correlation_id),
                    name=f"release-image-{new_image}",
                )
            raise
        return self._store.get(type(record), record_id)

    async def _save_image(
        self,
        record: Record,
        image: bytes,
        correlation_id: UUID,
    ) -> Optional[str]:
        """Store an image for `record`; None when it could not be stored."""
        if record.IMAGE_FIELD is None:
            logger.warning("image_ignored", record_type=record.RECORD_TYPE)
            return None
        if self._image_service is None:
            logger.warning("image_service_missing", record_type=record.RECORD_TYPE)
            return None
        try:
            name, size = await asyncio.to_thread(
                self._image_service.save_new, image, record.IMAGE_PREFIX
            )
        except ImagePersistenceError as e:
            logger.warning(
                "image_save_failed",
                record_type=record.RECORD_TYPE,
                error=str(e),
            )
            await self._audit_logger.log_image_save_failed(
                record_type=record.RECORD_TYPE,
                error_message=str(e),
                correlation_id=correlation_id,
            )
            return None

        await self._audit_logger.log_image_saved(
            record_type=record.RECORD_TYPE,
            image_name=name,
            size_bytes=size,
            correlation_id=correlation_id,
        )
        return name

    async def _release_image(self, name: str, correlation_id: UUID) -> None:
        if self._image_service is None:
            return
        try:
            await asyncio.to_thread(self._image_service.release, name)
        except ImagePersistenceError as e:
            logger.warning("image_release_failed", name=name, error=str(e))
            await self._audit_logger.log_image_release_failed(
                image_name=name,
                error_message=str(e),
                correlation_id=correlation_id,
            )
            return
        await self._audit_logger.log_image_released(name, correlation_id=correlation_id)

    def _schedule_reminders(self, record: Record) -> None:
        if self._notifications is None or not isinstance(record, (TravelPlan, Plan)):
            return
        self._spawn(self._notify("schedule", record), name=f"schedule-{record.id}")

    def _cancel_reminders(self, record: Record) -> None:
        if self._notifications is None or not isinstance(record, (TravelPlan, Plan)):
            return
        self._spawn(self._notify("cancel", record), name=f"cancel-{record.id}")

    async def _notify(self, action: str, record: Record) -> None:
        try:
            if action == "schedule":
                await self._notifications.schedule(record)
            else:
                await self._notifications.cancel(record.id)
        except Exception as e:
            # Reminders never fail the write that triggered them
            logger.warning(
                "reminder_failed",
                action=action,
                record_id=record.id,
                error=str(e),
            )
            await self._audit_logger.log_notification_failed(
                record_id=record.id,
                action=action,
                error_message=str(e),
            )


class SharingFlow(_FlowBase):
    """
    Orchestrates sharing a trip.

    Flow:
    1. The owner stamps a share code onto a trip
    2. Another user joins with that code and is added to `shared_with`

    Joining is idempotent: joining twice changes nothing.
    """

    def __init__(
        self,
        store: EntityStoreInterface,
        auth: AuthProvider,
        bridge: Optional[ReplicationBridge] = None,
        audit_logger: Optional[AuditLogger] = None,
        share_code_prefix: str = "TRAVEL",
    ):
        super().__init__(store, auth, audit_logger)
        self._bridge = bridge
        self._share_code_prefix = share_code_prefix

    def generate_share_code(self) -> str:
        """A share code no local plan uses yet."""
        while True:
            code = generate_share_code(self._share_code_prefix)
            if self._store.find_by_share_code(code) is None:
                return code

    async def update_share_code(
        self,
        plan_id: str,
        code: Optional[str] = None,
        owner_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> TravelPlan:
        """
        Mark a trip as shared under `code` (a fresh one if omitted).

        Raises:
            NotAuthenticatedError: If there is no caller
            NotFoundError: If the trip does not exist or is not visible
            ShareCodeConflictError: If another trip already uses the code
        """
        caller = self._caller(owner_id)
        correlation_id = correlation_id or create_correlation_id()
        plan = self._get_visible(TravelPlan, plan_id, caller)
        code = code or self.generate_share_code()

        holder = self._store.find_by_share_code(code)
        if holder is not None and holder.id != plan.id:
            raise ShareCodeConflictError(f"Share code already in use: {code}")

        shared = plan.model_copy(update={
            "is_shared": True,
            "share_code": code,
            "owner_id": caller,
            "last_edited_by": caller,
            "updated_at": utc_now(),
        })
        self._store.put(shared)

        await self._audit_logger.log_share_code_assigned(
            plan_id=plan.id,
            share_code=code,
            actor_id=caller,
            correlation_id=correlation_id,
        )
        return self._store.get(TravelPlan, plan.id)

    async def join_by_share_code(
        self,
        code: str,
        caller_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> TravelPlan:
        """
        Join the trip shared under `code`.

        The trip is looked up locally first, then in the remote store.

        Returns:
            The trip, whether or not the caller was already a member

        Raises:
            NotAuthenticatedError: If there is no caller
            NotFoundError: If no trip uses the code
        """
        caller = self._caller(caller_id)
        correlation_id = correlation_id or create_correlation_id()

        plan = self._store.find_by_share_code(code)
        if plan is None and self._bridge is not None:
            plan = await self._bridge.fetch_shared(code)
        if plan is None or not plan.is_shared:
            raise NotFoundError(f"No shared plan for code: {code}")

        already_member = caller in plan.shared_with or plan.is_owner(caller)
        if not already_member:
            joined = plan.model_copy(update={
                "shared_with": plan.shared_with + [caller],
                "updated_at": utc_now(),
            })
            self._store.put(joined)
            plan = self._store.get(TravelPlan, plan.id)

        await self._audit_logger.log_plan_joined(
            plan_id=plan.id,
            actor_id=caller,
            already_member=already_member,
            correlation_id=correlation_id,
        )
        return plan


class AppComponents:
    """Everything a front end needs, wired together."""

    def __init__(
        self,
        store: LocalEntityStore,
        controller: QueryController,
        bridge: ReplicationBridge,
        records: RecordFlow,
        sharing: SharingFlow,
        image_service: ImageService,
        notifications: NotificationService,
        audit_logger: AuditLogger,
        sheets_client: Optional[GoogleSheetsClient] = None,
    ):
        self.store = store
        self.controller = controller
        self.bridge = bridge
        self.records = records
        self.sharing = sharing
        self.image_service = image_service
        self.notifications = notifications
        self.audit_logger = audit_logger
        self.sheets_client = sheets_client

    async def start(self) -> None:
        await self.bridge.start()

    async def shutdown(self, flush: bool = False) -> None:
        """
        Stop background work and close the store.

        With `flush`, queued changes are pushed first (this waits for the
        remote store to accept them).
        """
        await self.records.wait_for_background()
        await self.sharing.wait_for_background()
        if flush:
            await self.bridge.flush()
        await self.bridge.stop()
        self.controller.close()
        self.bridge.close()
        self.store.close()


def create_app_components(
    auth: AuthProvider,
    use_storage: bool = True,
    settings: Optional[Settings] = None,
    remote: Optional[RemoteStoreInterface] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        auth: Supplies the signed-in caller
        use_storage: Whether to mirror to Google Sheets.
                    Set to False to run against an in-memory remote.
        settings: Settings to use (defaults to get_settings())
        remote: Explicit remote store; overrides use_storage

    Returns:
        The wired components
    """
    settings = settings or get_settings()
    sheets_client = None
    audit_logger = None

    if remote is None and use_storage:
        try:
            sheets_client = GoogleSheetsClient(settings.google_sheets)
            remote = GoogleSheetsRemoteStore(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue with an in-memory mirror
            logger.warning("remote_storage_not_configured", error=str(e))
            sheets_client = None
            remote = None

    remote = remote or InMemoryRemoteStore()
    audit_logger = audit_logger or AuditLogger()  # Local-only logging

    store = LocalEntityStore(settings.store.database_path)
    image_settings = settings.images
    image_service = ImageService(DocumentImageStore(image_settings.directory), image_settings)
    notifications = InMemoryNotificationService()

    bridge = ReplicationBridge(
        store=store,
        remote=remote,
        auth=auth,
        settings=settings.replication,
        audit_logger=audit_logger,
    )
    controller = QueryController(store)

    records = RecordFlow(
        store=store,
        auth=auth,
        image_service=image_service,
        notifications=notifications,
        audit_logger=audit_logger,
    )
    sharing = SharingFlow(
        store=store,
        auth=auth,
        bridge=bridge,
        audit_logger=audit_logger,
        share_code_prefix=settings.app.share_code_prefix,
    )

    return AppComponents(
        store=store,
        controller=controller,
        bridge=bridge,
        records=records,
        sharing=sharing,
        image_service=image_service,
        notifications=notifications,
        audit_logger=audit_logger,
        sheets_client=sheets_client,
    )
