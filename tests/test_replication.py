"""Tests for the replication bridge and the remote mirrors."""

import asyncio
import json
import pytest
from datetime import datetime, timedelta, timezone

from travory.audit import AuditLogger
from travory.config import ReplicationSettings
from travory.models.audit import AuditEventType
from travory.models.records import TravelPlan
from travory.services.auth import StaticAuthProvider
from travory.services.replication import ReplicationBridge
from travory.services.storage.google_sheets import RECORD_COLUMNS
from travory.services.storage import (
    ChangeOrigin,
    GoogleSheetsRemoteStore,
    InMemoryRemoteStore,
    LocalEntityStore,
    RemoteDocument,
    StorageError,
)

from conftest import make_trip


T1 = datetime(2024, 7, 1, 9, 0, tzinfo=timezone.utc)
T2 = T1 + timedelta(hours=1)
T3 = T1 + timedelta(hours=2)


class FlakyRemoteStore(InMemoryRemoteStore):
    """Remote whose first `failures` upserts raise."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def upsert(self, document: RemoteDocument) -> bool:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StorageError("network unreachable")
        return await super().upsert(document)


class RejectingRemoteStore(InMemoryRemoteStore):
    """Remote that always refuses one record, e.g. a payload over the cell limit."""

    def __init__(self, rejected_title: str):
        super().__init__()
        self.rejected_title = rejected_title
        self.rejections = 0

    async def upsert(self, document: RemoteDocument) -> bool:
        if document.payload.get("title") == self.rejected_title:
            self.rejections += 1
            raise StorageError("payload too large")
        return await super().upsert(document)


def make_bridge(store, remote, user_id="alice", settings=None, audit_logger=None):
    return ReplicationBridge(
        store,
        remote,
        StaticAuthProvider(user_id),
        settings=settings or ReplicationSettings(
            retry_min_wait_seconds=0,
            retry_max_wait_seconds=0,
        ),
        audit_logger=audit_logger,
    )


def remote_trip(updated_at, account_id="alice", **overrides) -> RemoteDocument:
    fields = dict(id="trip-1", user_id=account_id, updated_at=updated_at)
    fields.update(overrides)
    return RemoteDocument.from_record(make_trip(**fields), account_id)


class TestPush:
    """Tests for mirroring local writes."""

    @pytest.mark.asyncio
    async def test_flush_pushes_local_write(self, store, remote):
        """Test that a local put lands in the remote store."""
        bridge = make_bridge(store, remote)
        record_id = store.put(make_trip(user_id="alice"))
        assert bridge.pending_count == 1

        await bridge.flush()

        assert bridge.pending_count == 0
        document = await remote.get("TravelPlan", record_id)
        assert document.account_id == "alice"
        assert document.payload["title"] == "Kyoto"

    @pytest.mark.asyncio
    async def test_changes_for_one_record_coalesce(self, store, remote):
        """Test that only the latest queued change per record is pushed."""
        bridge = make_bridge(store, remote)
        record_id = store.put(make_trip(user_id="alice", updated_at=T1))
        store.put(make_trip(id=record_id, user_id="alice", title="Nara", updated_at=T2))
        assert bridge.pending_count == 1

        await bridge.flush()
        assert (await remote.get("TravelPlan", record_id)).payload["title"] == "Nara"

    @pytest.mark.asyncio
    async def test_shared_trip_filed_under_owner(self, store, remote):
        """Test that a member's edit is mirrored into the owner's account."""
        bridge = make_bridge(store, remote, user_id="bob")
        record_id = store.put(make_trip(user_id="alice", owner_id="alice", shared_with=["bob"]))
        await bridge.flush()
        assert (await remote.get("TravelPlan", record_id)).account_id == "alice"

    @pytest.mark.asyncio
    async def test_delete_pushes_deletion(self, store, remote):
        """Test that deletes are mirrored with their last payload."""
        bridge = make_bridge(store, remote)
        record_id = store.put(make_trip(user_id="alice", updated_at=T1))
        await bridge.flush()
        store.delete(TravelPlan, record_id, deleted_at=T2)
        await bridge.flush()

        document = await remote.get("TravelPlan", record_id)
        assert document.deleted
        assert document.updated_at == T2
        assert document.payload["title"] == "Kyoto"

    @pytest.mark.asyncio
    async def test_remote_origin_writes_not_queued(self, store, remote):
        """Test that applying remote changes does not echo them back."""
        bridge = make_bridge(store, remote)
        store.put(make_trip(user_id="alice"), origin=ChangeOrigin.REMOTE)
        assert bridge.pending_count == 0

    @pytest.mark.asyncio
    async def test_newer_remote_copy_not_overwritten(self, store, remote):
        """Test last-writer-wins on push."""
        await remote.upsert(remote_trip(T3, title="Remote edit"))
        bridge = make_bridge(store, remote)
        store.put(make_trip(id="trip-1", user_id="alice", updated_at=T2))

        await bridge.flush()

        assert (await remote.get("TravelPlan", "trip-1")).payload["title"] == "Remote edit"

    @pytest.mark.asyncio
    async def test_failed_push_is_retried(self, store):
        """Test that transient remote failures are retried on later passes until the push lands."""
        remote = FlakyRemoteStore(failures=2)
        audit_logger = AuditLogger()
        bridge = make_bridge(store, remote, audit_logger=audit_logger)
        record_id = store.put(make_trip(user_id="alice"))

        assert await bridge.flush() == 1
        assert await bridge.flush() == 1
        assert await bridge.flush() == 0

        assert remote.attempts == 3
        assert await remote.get("TravelPlan", record_id) is not None
        failures = [e for e in audit_logger.events if e.event_type == AuditEventType.REPLICATION_FAILED]
        assert [e.details["attempt"] for e in failures] == [1, 2]

    @pytest.mark.asyncio
    async def test_bounded_retries_give_up_without_raising(self, store):
        """Test that a configured attempt limit ends in an audited give-up."""
        remote = FlakyRemoteStore(failures=100)
        audit_logger = AuditLogger()
        settings = ReplicationSettings(
            retry_min_wait_seconds=0,
            retry_max_wait_seconds=0,
            max_attempts=2,
        )
        bridge = make_bridge(store, remote, settings=settings, audit_logger=audit_logger)
        store.put(make_trip(user_id="alice"))

        await bridge.flush()
        await bridge.flush()

        assert remote.attempts == 2
        assert bridge.pending_count == 0
        assert any(e.event_type == AuditEventType.SYSTEM_ERROR for e in audit_logger.events)

    @pytest.mark.asyncio
    async def test_local_write_never_waits_for_remote(self, store):
        """Test that local writes commit while the remote is down."""
        remote = FlakyRemoteStore(failures=100)
        make_bridge(store, remote)
        record_id = store.put(make_trip(user_id="alice"))
        assert store.get(TravelPlan, record_id) is not None

    @pytest.mark.asyncio
    async def test_failing_record_does_not_block_others(self, store):
        """Test that a record the remote keeps refusing does not hold up the queue."""
        remote = RejectingRemoteStore(rejected_title="Poison")
        bridge = make_bridge(store, remote)
        poison_id = store.put(make_trip(user_id="alice", title="Poison"))
        healthy_id = store.put(make_trip(user_id="alice", title="Healthy"))

        remaining = await asyncio.wait_for(bridge.flush(), timeout=1.0)

        assert remaining == 1
        assert [d.record_id for d in remote.documents] == [healthy_id]
        assert await remote.get("TravelPlan", poison_id) is None
        assert remote.rejections == 1

    @pytest.mark.asyncio
    async def test_failed_record_waits_for_its_backoff(self, store):
        """Test that a failed record is not retried before its next try is due."""
        remote = FlakyRemoteStore(failures=1)
        bridge = make_bridge(store, remote, settings=ReplicationSettings(
            retry_min_wait_seconds=60,
            retry_max_wait_seconds=60,
        ))
        store.put(make_trip(user_id="alice"))

        assert await bridge.flush() == 1
        assert await bridge.flush() == 1
        assert remote.attempts == 1

    @pytest.mark.asyncio
    async def test_new_edit_of_failing_record_keeps_latest(self, store):
        """Test that an edit made while a record backs off replaces the failed change."""
        remote = FlakyRemoteStore(failures=1)
        bridge = make_bridge(store, remote)
        record_id = store.put(make_trip(user_id="alice", updated_at=T1))
        await bridge.flush()
        store.put(make_trip(id=record_id, user_id="alice", title="Nara", updated_at=T2))

        assert await bridge.flush() == 0
        assert (await remote.get("TravelPlan", record_id)).payload["title"] == "Nara"


class TestPull:
    """Tests for applying remote writes."""

    @pytest.mark.asyncio
    async def test_pull_applies_newer_document(self, store, remote):
        """Test that a remote record reaches the local store."""
        await remote.upsert(remote_trip(T2))
        bridge = make_bridge(store, remote)

        assert await bridge.pull() == 1
        assert store.get(TravelPlan, "trip-1").updated_at == T2
        assert bridge.pending_count == 0

    @pytest.mark.asyncio
    async def test_pull_uses_cursor(self, store, remote):
        """Test that documents already pulled are not fetched again."""
        await remote.upsert(remote_trip(T2))
        bridge = make_bridge(store, remote)
        await bridge.pull()
        assert await bridge.pull() == 0

    @pytest.mark.asyncio
    async def test_pull_skips_older_document(self, store, remote):
        """Test that a stale remote copy does not replace a newer local one."""
        store.put(make_trip(id="trip-1", user_id="alice", title="Local", updated_at=T3))
        await remote.upsert(remote_trip(T1, title="Stale"))
        bridge = make_bridge(store, remote)

        assert await bridge.pull() == 0
        assert store.get(TravelPlan, "trip-1").title == "Local"

    @pytest.mark.asyncio
    async def test_pull_supersedes_queued_local_change(self, store, remote):
        """Test that a newer remote copy drops the older queued push."""
        bridge = make_bridge(store, remote)
        store.put(make_trip(id="trip-1", user_id="alice", title="Local", updated_at=T1))
        await remote.upsert(remote_trip(T2, title="Remote"))

        await bridge.pull()

        assert bridge.pending_count == 0
        assert store.get(TravelPlan, "trip-1").title == "Remote"

    @pytest.mark.asyncio
    async def test_pull_applies_deletion(self, store, remote):
        """Test that remote deletes remove the local record and leave a tombstone."""
        local = make_trip(id="trip-1", user_id="alice", updated_at=T1)
        store.put(local, origin=ChangeOrigin.REMOTE)
        await remote.upsert(RemoteDocument.deletion(local, "alice", T2))
        bridge = make_bridge(store, remote)

        assert await bridge.pull() == 1
        assert store.get(TravelPlan, "trip-1") is None
        assert store.tombstone(TravelPlan, "trip-1") == T2

    @pytest.mark.asyncio
    async def test_tombstone_blocks_older_resurrection(self, store, remote):
        """Test that a document older than a local delete is ignored."""
        store.put(make_trip(id="trip-1", user_id="alice", updated_at=T1))
        store.delete(TravelPlan, "trip-1", deleted_at=T3)
        await remote.upsert(remote_trip(T2))
        bridge = make_bridge(store, remote)

        assert await bridge.pull() == 0
        assert store.get(TravelPlan, "trip-1") is None

    @pytest.mark.asyncio
    async def test_member_pulls_shared_trip(self, store, remote):
        """Test that documents shared with an account are pulled into it."""
        await remote.upsert(remote_trip(T2, owner_id="alice", is_shared=True, shared_with=["bob"]))
        bridge = make_bridge(store, remote, user_id="bob")
        assert await bridge.pull() == 1

    @pytest.mark.asyncio
    async def test_pull_without_user_does_nothing(self, store, remote):
        """Test that a signed-out device does not pull."""
        await remote.upsert(remote_trip(T2))
        bridge = make_bridge(store, remote, user_id=None)
        assert await bridge.pull() == 0

    @pytest.mark.asyncio
    async def test_fetch_shared(self, store, remote):
        """Test finding a shared plan that has not been pulled yet."""
        await remote.upsert(remote_trip(T2, is_shared=True, share_code="TRAVEL-ABCD1234"))
        bridge = make_bridge(store, remote, user_id="bob")

        plan = await bridge.fetch_shared("TRAVEL-ABCD1234")

        assert plan.id == "trip-1"
        assert store.find_by_share_code("TRAVEL-ABCD1234") is not None
        assert await bridge.fetch_shared("TRAVEL-NOPE0000") is None


class TestTwoDevices:
    """End-to-end replication between two local stores."""

    @pytest.mark.asyncio
    async def test_write_on_one_device_reaches_other(self, remote):
        """Test push on one device and pull on another."""
        phone = LocalEntityStore()
        tablet = LocalEntityStore()
        phone_bridge = make_bridge(phone, remote)
        tablet_bridge = make_bridge(tablet, remote)

        record_id = phone.put(make_trip(user_id="alice"))
        await phone_bridge.flush()
        await tablet_bridge.pull()

        assert tablet.get(TravelPlan, record_id).title == "Kyoto"
        assert tablet_bridge.pending_count == 0
        phone.close()
        tablet.close()

    @pytest.mark.asyncio
    async def test_offline_edit_reaches_device_that_pulled_later_writes(self, remote):
        """Test that an older offline write is still pulled once it reaches the remote."""
        laptop = LocalEntityStore()
        phone = LocalEntityStore()
        tablet = LocalEntityStore()
        laptop_bridge = make_bridge(laptop, remote)
        phone_bridge = make_bridge(phone, remote)
        tablet_bridge = make_bridge(tablet, remote)

        # Laptop edits offline at T1; phone edits at T3 and syncs first
        offline_id = laptop.put(make_trip(user_id="alice", title="Offline", updated_at=T1))
        online_id = phone.put(make_trip(user_id="alice", title="Online", updated_at=T3))
        await phone_bridge.flush()
        assert await tablet_bridge.pull() == 1

        await laptop_bridge.flush()
        assert len(remote.documents) == 2
        assert await tablet_bridge.pull() == 1

        assert tablet.get(TravelPlan, offline_id).title == "Offline"
        assert tablet.get(TravelPlan, online_id).title == "Online"
        for store in (laptop, phone, tablet):
            store.close()

    @pytest.mark.asyncio
    async def test_background_loops(self, store, remote):
        """Test that a started bridge pushes without an explicit flush."""
        bridge = make_bridge(store, remote, settings=ReplicationSettings(
            pull_interval_seconds=0.01,
            retry_min_wait_seconds=0,
            retry_max_wait_seconds=0,
        ))
        await bridge.start()
        assert bridge.is_running
        record_id = store.put(make_trip(user_id="alice"))

        for _ in range(100):
            if await remote.get("TravelPlan", record_id) is not None:
                break
            await asyncio.sleep(0.01)

        await bridge.stop()
        assert not bridge.is_running
        assert await remote.get("TravelPlan", record_id) is not None

    @pytest.mark.asyncio
    async def test_background_loop_retries_failed_push(self, store):
        """Test that a started bridge retries a failed push once its backoff expires."""
        remote = FlakyRemoteStore(failures=1)
        bridge = make_bridge(store, remote, settings=ReplicationSettings(
            pull_interval_seconds=10,
            retry_min_wait_seconds=0.01,
            retry_max_wait_seconds=0.01,
        ))
        await bridge.start()
        record_id = store.put(make_trip(user_id="alice"))

        for _ in range(100):
            if await remote.get("TravelPlan", record_id) is not None:
                break
            await asyncio.sleep(0.01)

        await bridge.stop()
        assert remote.attempts == 2
        assert bridge.pending_count == 0


# =============================================================================
# GOOGLE SHEETS MIRROR
# =============================================================================

class FakeWorksheet:
    """Enough of gspread.Worksheet for the records sheet."""

    def __init__(self, header):
        self.rows = [list(header)]
        self.reads = 0

    def get_all_values(self):
        self.reads += 1
        return [list(row) for row in self.rows]

    def append_row(self, values, value_input_option=None):
        self.rows.append(list(values))

    def update(self, range_name, values, value_input_option=None):
        row_number = int(range_name.split(":")[0][1:])
        self.rows[row_number - 1] = list(values[0])


class FakeSheetsClient:
    def __init__(self, sheet=None):
        self.sheet = sheet or FakeWorksheet(RECORD_COLUMNS)

    def get_records_sheet(self):
        return self.sheet


class BrokenSheetsClient:
    def get_records_sheet(self):
        raise RuntimeError("quota exceeded")


class TestGoogleSheetsRemoteStore:
    """Tests for the Sheets-backed remote mirror."""

    @pytest.mark.asyncio
    async def test_upsert_appends_then_replaces(self):
        """Test one row per record."""
        client = FakeSheetsClient()
        sheets = GoogleSheetsRemoteStore(client)

        await sheets.upsert(remote_trip(T1))
        await sheets.upsert(remote_trip(T2, title="Osaka"))

        assert len(client.sheet.rows) == 2
        document = await sheets.get("TravelPlan", "trip-1")
        assert document.updated_at == T2
        assert document.payload["title"] == "Osaka"

    @pytest.mark.asyncio
    async def test_fetch_changes_filters_by_account_and_arrival(self):
        """Test account scoping and the arrival-sequence cursor."""
        sheets = GoogleSheetsRemoteStore(FakeSheetsClient())
        await sheets.upsert(remote_trip(T2, id="a"))
        await sheets.upsert(remote_trip(T1, id="b"))
        await sheets.upsert(remote_trip(T3, id="c", account_id="carol"))

        changes = await sheets.fetch_changes("alice")
        assert [d.record_id for d in changes] == ["a", "b"]
        assert [d.sequence for d in changes] == [1, 2]
        assert [d.record_id for d in await sheets.fetch_changes("alice", since=1)] == ["b"]

    @pytest.mark.asyncio
    async def test_rewritten_row_gets_next_sequence(self):
        """Test that replacing a row moves it to the end of the arrival order."""
        sheets = GoogleSheetsRemoteStore(FakeSheetsClient())
        await sheets.upsert(remote_trip(T1, id="a"))
        await sheets.upsert(remote_trip(T1, id="b"))
        await sheets.upsert(remote_trip(T2, id="a", title="Osaka"))

        assert [d.record_id for d in await sheets.fetch_changes("alice", since=2)] == ["a"]

    @pytest.mark.asyncio
    async def test_upsert_keeps_newer_row_with_one_read(self):
        """Test the last-writer-wins check and that each write reads the sheet once."""
        client = FakeSheetsClient()
        sheets = GoogleSheetsRemoteStore(client)

        assert await sheets.upsert(remote_trip(T3, title="Newer")) is True
        assert await sheets.upsert(remote_trip(T1, title="Older")) is False

        assert client.sheet.reads == 2
        assert json.loads(client.sheet.rows[1][6])["title"] == "Newer"

    @pytest.mark.asyncio
    async def test_find_by_share_code_ignores_deleted(self):
        """Test share code lookup."""
        sheets = GoogleSheetsRemoteStore(FakeSheetsClient())
        live = make_trip(id="live", user_id="alice", share_code="TRAVEL-LIVE0001", updated_at=T1)
        gone = make_trip(id="gone", user_id="alice", share_code="TRAVEL-GONE0001", updated_at=T1)
        await sheets.upsert(RemoteDocument.from_record(live, "alice"))
        await sheets.upsert(RemoteDocument.deletion(gone, "alice", T2))

        assert (await sheets.find_by_share_code("TRAVEL-LIVE0001")).record_id == "live"
        assert await sheets.find_by_share_code("TRAVEL-GONE0001") is None

    @pytest.mark.asyncio
    async def test_malformed_rows_skipped(self):
        """Test that a corrupt row does not break reads."""
        client = FakeSheetsClient()
        sheets = GoogleSheetsRemoteStore(client)
        await sheets.upsert(remote_trip(T1))
        client.sheet.rows.append(["TravelPlan", "bad", "alice", "not-a-date", "FALSE", "", "{}"])
        client.sheet.rows.append(["TravelPlan", "bad-json", "alice", T1.isoformat(), "FALSE", "", "{oops"])
        client.sheet.rows.append([])

        assert [d.record_id for d in await sheets.fetch_changes("alice")] == ["trip-1"]

    @pytest.mark.asyncio
    async def test_payload_stored_as_json(self):
        """Test the payload column format."""
        client = FakeSheetsClient()
        await GoogleSheetsRemoteStore(client).upsert(remote_trip(T1))
        assert json.loads(client.sheet.rows[1][6])["destination"] == "Kyoto, Japan"

    @pytest.mark.asyncio
    async def test_sheet_errors_become_storage_errors(self):
        """Test error wrapping."""
        sheets = GoogleSheetsRemoteStore(BrokenSheetsClient())
        with pytest.raises(StorageError):
            await sheets.upsert(remote_trip(T1))
        with pytest.raises(StorageError):
            await sheets.fetch_changes("alice")

    @pytest.mark.asyncio
    async def test_bridge_over_sheets(self, store):
        """Test that the bridge works against the Sheets mirror."""
        sheets = GoogleSheetsRemoteStore(FakeSheetsClient())
        bridge = make_bridge(store, sheets)
        record_id = store.put(make_trip(user_id="alice"))
        await bridge.flush()
        assert (await sheets.get("TravelPlan", record_id)).account_id == "alice"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
