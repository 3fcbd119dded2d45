"""
SQLite Entity Store

DESIGN DECISION: The local SQLite database is the source of truth.
Every flow reads and writes here, and the replication bridge only ever
mirrors what this store already committed. This gives us:
1. Writes that never wait on the network
2. One ordered stream of changes for queries and replication
3. Tombstones, so last-writer-wins also covers deletes

Records are stored whole, as JSON, next to the few columns we index on.
Predicates are evaluated in Python against the validated models.

TRADEOFFS:
- Full table scans per query (fine for a personal travel planner)
- One writer at a time, serialised through a lock
"""

import sqlite3
import threading
from datetime import datetime
from typing import Callable, Optional

import structlog
from pydantic import ValidationError

from travory.models.records import Record, TravelPlan, new_id, record_class, utc_now
from travory.services.storage.interface import (
    ChangeOp,
    ChangeOrigin,
    EntityStoreInterface,
    Predicate,
    RecordType,
    RecordValidationError,
    SortFunction,
    StorageError,
    StoreChange,
    StoreListener,
    record_type_name,
)


logger = structlog.get_logger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    record_type TEXT NOT NULL,
    id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    user_id TEXT,
    share_code TEXT,
    updated_at TEXT NOT NULL,
    payload TEXT NOT NULL,
    PRIMARY KEY (record_type, id)
);
CREATE INDEX IF NOT EXISTS idx_records_share_code ON records (share_code);
CREATE TABLE IF NOT EXISTS tombstones (
    record_type TEXT NOT NULL,
    id TEXT NOT NULL,
    deleted_at TEXT NOT NULL,
    PRIMARY KEY (record_type, id)
);
"""


class LocalEntityStore(EntityStoreInterface):
    """
    SQLite implementation of the entity store.

    Listeners are called after each commit, in registration order, on the
    thread that performed the write.
    """

    def __init__(self, database_path: str = ":memory:"):
        self._database_path = database_path
        self._lock = threading.RLock()
        self._listeners: list[StoreListener] = []
        try:
            self._conn = sqlite3.connect(database_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open local database {database_path}: {e}")
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -------------------------------------------------------------------------
    # Row helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return record_class(row["record_type"]).model_validate_json(row["payload"])

    def _fetch_row(self, type_name: str, record_id: str) -> Optional[sqlite3.Row]:
        return self._conn.execute(
            "SELECT * FROM records WHERE record_type = ? AND id = ?",
            (type_name, record_id),
        ).fetchone()

    def _next_seq(self) -> int:
        row = self._conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM records").fetchone()
        return row[0]

    @staticmethod
    def _normalise(record: Record) -> Record:
        """Re-run validation so model_copy() updates get normalised too."""
        try:
            return type(record).model_validate(record.model_dump())
        except ValidationError as e:
            raise RecordValidationError(
                f"Invalid {record.RECORD_TYPE}: {e.error_count()} validation error(s)",
                errors=e.errors(include_url=False),
            ) from e

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def put(
        self,
        record: Record,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
    ) -> str:
        if record.id is None:
            record = record.model_copy(update={"id": new_id()})
        record = self._normalise(record)
        type_name = record.RECORD_TYPE

        with self._lock:
            existing = self._fetch_row(type_name, record.id)
            before = self._row_to_record(existing) if existing else None
            seq = existing["seq"] if existing else self._next_seq()
            try:
                self._conn.execute(
                    "INSERT OR REPLACE INTO records "
                    "(record_type, id, seq, user_id, share_code, updated_at, payload) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        type_name,
                        record.id,
                        seq,
                        record.user_id,
                        getattr(record, "share_code", None),
                        record.updated_at.isoformat(),
                        record.model_dump_json(),
                    ),
                )
                self._conn.execute(
                    "DELETE FROM tombstones WHERE record_type = ? AND id = ?",
                    (type_name, record.id),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageError(f"Failed to save {type_name} {record.id}: {e}")

        logger.debug(
            "record_put",
            record_type=type_name,
            record_id=record.id,
            origin=origin.value,
            replaced=before is not None,
        )
        self._notify(StoreChange(
            record_type=type_name,
            record_id=record.id,
            op=ChangeOp.PUT,
            origin=origin,
            before=before,
            after=record,
            committed_at=utc_now(),
        ))
        return record.id

    def delete(
        self,
        record_type: RecordType,
        record_id: str,
        origin: ChangeOrigin = ChangeOrigin.LOCAL,
        deleted_at: Optional[datetime] = None,
    ) -> bool:
        type_name = record_type_name(record_type)
        deleted_at = deleted_at or utc_now()

        with self._lock:
            existing = self._fetch_row(type_name, record_id)
            if existing is None:
                return False
            before = self._row_to_record(existing)
            try:
                self._conn.execute(
                    "DELETE FROM records WHERE record_type = ? AND id = ?",
                    (type_name, record_id),
                )
                self._conn.execute(
                    "INSERT OR REPLACE INTO tombstones (record_type, id, deleted_at) "
                    "VALUES (?, ?, ?)",
                    (type_name, record_id, deleted_at.isoformat()),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageError(f"Failed to delete {type_name} {record_id}: {e}")

        logger.debug(
            "record_deleted",
            record_type=type_name,
            record_id=record_id,
            origin=origin.value,
        )
        self._notify(StoreChange(
            record_type=type_name,
            record_id=record_id,
            op=ChangeOp.DELETE,
            origin=origin,
            before=before,
            after=None,
            committed_at=deleted_at,
        ))
        return True

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, record_type: RecordType, record_id: str) -> Optional[Record]:
        type_name = record_type_name(record_type)
        with self._lock:
            row = self._fetch_row(type_name, record_id)
        return self._row_to_record(row) if row else None

    def query(
        self,
        record_type: RecordType,
        predicate: Optional[Predicate] = None,
        sort: Optional[SortFunction] = None,
    ) -> list[Record]:
        type_name = record_type_name(record_type)
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM records WHERE record_type = ? ORDER BY seq",
                (type_name,),
            ).fetchall()

        records = [self._row_to_record(row) for row in rows]
        if predicate is not None:
            records = [r for r in records if predicate(r)]
        if sort is not None:
            records = sort(records)
        return records

    def tombstone(self, record_type: RecordType, record_id: str) -> Optional[datetime]:
        type_name = record_type_name(record_type)
        with self._lock:
            row = self._conn.execute(
                "SELECT deleted_at FROM tombstones WHERE record_type = ? AND id = ?",
                (type_name, record_id),
            ).fetchone()
        return datetime.fromisoformat(row["deleted_at"]) if row else None

    def find_by_share_code(self, share_code: str) -> Optional[TravelPlan]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM records WHERE record_type = ? AND share_code = ? "
                "ORDER BY seq LIMIT 1",
                (TravelPlan.RECORD_TYPE, share_code),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def all_image_refs(self) -> set[str]:
        with self._lock:
            rows = self._conn.execute("SELECT record_type, payload FROM records").fetchall()
        refs = set()
        for row in rows:
            ref = self._row_to_record(row).image_ref
            if ref:
                refs.add(ref)
        return refs

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                # Committed writes stay committed
                logger.error(
                    "store_listener_failed",
                    record_type=change.record_type,
                    record_id=change.record_id,
                    error=str(e),
                )
