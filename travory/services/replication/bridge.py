"""
Cloud Replication Bridge

Mirrors local writes to the remote store and pulls remote writes back in.

DESIGN DECISION: Local-first. A flow's write is done the moment the local
store commits it. The bridge listens to the store, queues the change and
pushes it in the background; callers never wait on the network and never
see a replication error.

DESIGN DECISION: Last writer wins, by `updated_at`. The bridge never merges
fields. A push does not overwrite a strictly newer remote copy, and a pull
only applies documents newer than the local record (or its tombstone).
Remote changes go through the normal store write path, so query
subscribers cannot tell them apart from local ones.

DESIGN DECISION: Each queued record backs off on its own. A flush pass
makes one attempt per due record; a failure goes back in the queue with
its next try pushed out exponentially. A record the remote keeps rejecting
never holds up the others.

TRADEOFFS:
- Pulls page on the remote's arrival sequence, not on `updated_at`, so a
  device re-reads nothing it has seen but still gets late offline writes
- Retries never give up unless `max_attempts` is configured
"""

import asyncio
import contextlib
import time
from datetime import datetime
from typing import Optional

import structlog
from tenacity import RetryCallState, stop_after_attempt, stop_never, wait_exponential

from travory.audit import AuditLogger
from travory.config import ReplicationSettings
from travory.models.records import Record, TravelPlan
from travory.services.auth import AuthProvider
from travory.services.storage.interface import (
    ChangeOrigin,
    EntityStoreInterface,
    RemoteDocument,
    RemoteStoreInterface,
    StoreChange,
)


logger = structlog.get_logger(__name__)


class ReplicationError(Exception):
    """A push or pull against the remote store failed (retried internally)."""
    pass


def _account_for(record: Record) -> Optional[str]:
    # Shared trips are filed under their owner
    return getattr(record, "owner_id", None) or record.user_id


class ReplicationBridge:
    """
    Background mirror between the local entity store and a remote store.

    Usage:
        bridge = ReplicationBridge(store, remote, auth)
        await bridge.start()
        ...
        await bridge.flush()
        await bridge.stop()
    """

    def __init__(
        self,
        store: EntityStoreInterface,
        remote: RemoteStoreInterface,
        auth: AuthProvider,
        settings: Optional[ReplicationSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._remote = remote
        self._auth = auth
        self._settings = settings or ReplicationSettings()
        self._audit = audit_logger or AuditLogger()

        max_attempts = self._settings.max_attempts
        self._stop = stop_after_attempt(max_attempts) if max_attempts else stop_never
        self._wait = wait_exponential(
            multiplier=1,
            min=self._settings.retry_min_wait_seconds,
            max=self._settings.retry_max_wait_seconds,
        )

        # Insertion-ordered; one entry per record, always its latest change
        self._pending: dict[tuple[str, str], StoreChange] = {}
        # Per-record retry state and monotonic time of the next try
        self._retry_states: dict[tuple[str, str], RetryCallState] = {}
        self._next_try: dict[tuple[str, str], float] = {}

        self._push_lock = asyncio.Lock()
        self._wakeup: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: list[asyncio.Task] = []

        self._cursor: Optional[int] = None
        self._cursor_account: Optional[str] = None

        self._remove_listener = store.add_listener(self._on_store_change)

    # =========================================================================
    # Queue
    # =========================================================================

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def _on_store_change(self, change: StoreChange) -> None:
        # Remote-origin writes are already mirrored
        if change.origin == ChangeOrigin.LOCAL:
            self.enqueue(change)

    def enqueue(self, change: StoreChange) -> None:
        """
        Queue a local change for pushing. Fire-and-forget.

        A change for a record that is still queued replaces the queued one.
        """
        key = (change.record_type, change.record_id)
        coalesced = key in self._pending
        self._pending[key] = change
        logger.debug(
            "replication_enqueued",
            record_type=change.record_type,
            record_id=change.record_id,
            op=change.op.value,
            coalesced=coalesced,
        )
        if self._loop is not None and self._wakeup is not None:
            self._loop.call_soon_threadsafe(self._wakeup.set)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the background push and pull loops."""
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        if self._pending:
            self._wakeup.set()
        self._tasks = [
            asyncio.create_task(self._push_loop(), name="replication-push"),
            asyncio.create_task(self._pull_loop(), name="replication-pull"),
        ]
        logger.info("replication_started", pending=self.pending_count)

    async def stop(self) -> None:
        """Stop the background loops. Queued changes stay queued."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        self._wakeup = None
        self._loop = None
        logger.info("replication_stopped", pending=self.pending_count)

    def close(self) -> None:
        """Detach from the store."""
        self._remove_listener()

    async def _push_loop(self) -> None:
        while True:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._next_retry_delay())
            self._wakeup.clear()
            await self.flush()

    async def _pull_loop(self) -> None:
        while True:
            try:
                await self.pull()
            except Exception as e:
                # Next interval tries again
                logger.warning("replication_pull_failed", error=str(e))
            await asyncio.sleep(self._settings.pull_interval_seconds)

    def _next_retry_delay(self) -> Optional[float]:
        """Seconds until the earliest queued change is due, None if the queue is empty."""
        if not self._pending:
            return None
        now = time.monotonic()
        return max(0.0, min(self._next_try.get(key, now) for key in self._pending) - now)

    # =========================================================================
    # Push
    # =========================================================================

    async def flush(self) -> int:
        """
        Make one push attempt for every queued change that is due.

        Changes that fail stay queued until their backoff expires.

        Returns:
            Number of changes still queued
        """
        async with self._push_lock:
            now = time.monotonic()
            due = [key for key in self._pending if self._next_try.get(key, now) <= now]
            for key in due:
                change = self._pending.pop(key, None)
                if change is None:
                    # A pull superseded it meanwhile
                    continue
                await self._push_once(key, change)
            return len(self._pending)

    async def _push_once(self, key: tuple[str, str], change: StoreChange) -> None:
        try:
            await self._push(change)
        except Exception as e:
            await self._push_failed(key, change, e)
        else:
            self._retry_states.pop(key, None)
            self._next_try.pop(key, None)

    async def _push_failed(self, key: tuple[str, str], change: StoreChange, error: Exception) -> None:
        state = self._retry_states.get(key)
        if state is None:
            state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
            self._retry_states[key] = state
        attempt_number = state.attempt_number

        logger.warning(
            "replication_retry",
            record_type=change.record_type,
            record_id=change.record_id,
            attempt=attempt_number,
            error=str(error),
        )
        await self._audit.log_replication_failed(
            record_type=change.record_type,
            record_id=change.record_id,
            attempt=attempt_number,
            error_message=str(error),
        )

        if self._stop(state):
            self._retry_states.pop(key, None)
            self._next_try.pop(key, None)
            logger.error(
                "replication_gave_up",
                record_type=change.record_type,
                record_id=change.record_id,
                error=str(error),
            )
            await self._audit.log_error(
                error_type="ReplicationGaveUp",
                error_message=str(error),
                details={"record_type": change.record_type, "record_id": change.record_id},
            )
            return

        self._next_try[key] = time.monotonic() + self._wait(state)
        state.attempt_number += 1
        # A change enqueued during the attempt is newer; keep it
        self._pending.setdefault(key, change)

    async def _push(self, change: StoreChange) -> None:
        last_state = change.before if change.is_delete else change.after
        account_id = _account_for(last_state) or self._auth.current_user_id()
        if not account_id:
            logger.warning(
                "replication_skipped_no_account",
                record_type=change.record_type,
                record_id=change.record_id,
            )
            return

        if change.is_delete:
            document = RemoteDocument.deletion(last_state, account_id, change.committed_at)
        else:
            document = RemoteDocument.from_record(last_state, account_id)

        try:
            written = await self._remote.upsert(document)
        except Exception as e:
            raise ReplicationError(str(e)) from e
        if not written:
            # The newer remote copy reaches us through pull
            logger.info(
                "replication_push_superseded",
                record_type=change.record_type,
                record_id=change.record_id,
            )
            return

        await self._audit.log_replication_pushed(
            record_type=change.record_type,
            record_id=change.record_id,
            deleted=document.deleted,
        )

    # =========================================================================
    # Pull
    # =========================================================================

    async def pull(self) -> int:
        """
        Apply remote changes that arrived since the last pull.

        Returns:
            Number of documents written into the local store
        """
        account_id = self._auth.current_user_id()
        if not account_id:
            return 0
        if account_id != self._cursor_account:
            self._cursor = None
            self._cursor_account = account_id

        documents = await self._remote.fetch_changes(account_id, since=self._cursor)
        applied = 0
        for document in documents:
            if await self._apply(document):
                applied += 1
            if self._cursor is None or document.sequence > self._cursor:
                self._cursor = document.sequence

        if applied:
            logger.info("replication_pulled", account_id=account_id, applied=applied)
        return applied

    def _local_version(self, record_type: str, record_id: str) -> Optional[datetime]:
        record = self._store.get(record_type, record_id)
        if record is not None:
            return record.updated_at
        return self._store.tombstone(record_type, record_id)

    async def _apply(self, document: RemoteDocument) -> bool:
        key = (document.record_type, document.record_id)
        local_version = self._local_version(*key)
        if local_version is not None and document.updated_at <= local_version:
            return False

        # Remote is newer than anything still queued for this record
        self._pending.pop(key, None)
        self._retry_states.pop(key, None)
        self._next_try.pop(key, None)

        if document.deleted:
            if not self._store.delete(
                document.record_type,
                document.record_id,
                origin=ChangeOrigin.REMOTE,
                deleted_at=document.updated_at,
            ):
                return False
        else:
            self._store.put(document.to_record(), origin=ChangeOrigin.REMOTE)

        await self._audit.log_remote_change_applied(
            record_type=document.record_type,
            record_id=document.record_id,
            deleted=document.deleted,
        )
        return True

    async def fetch_shared(self, share_code: str) -> Optional[TravelPlan]:
        """
        Find a shared plan that has not reached this device yet.

        The plan is written into the local store when it is newer than
        what the store holds.
        """
        document = await self._remote.find_by_share_code(share_code)
        if document is None or document.record_type != TravelPlan.RECORD_TYPE:
            return None
        await self._apply(document)
        return self._store.get(TravelPlan, document.record_id)
