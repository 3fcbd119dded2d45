"""Tests for the SQLite entity store."""

import pytest
from datetime import datetime, timedelta, timezone

from travory.models.records import Plan, TravelPlan, VisitedPlace
from travory.services.storage import (
    ChangeOp,
    ChangeOrigin,
    LocalEntityStore,
    RecordValidationError,
)

from conftest import make_place, make_plan, make_trip


class TestPutAndGet:
    """Tests for writes and reads."""

    def test_put_assigns_id(self, store):
        """Test that the store assigns an id to new records."""
        record_id = store.put(make_trip())
        assert record_id
        assert store.get(TravelPlan, record_id).title == "Kyoto"

    def test_ids_are_unique(self, store):
        """Test that every new record gets its own id."""
        ids = {store.put(make_trip()) for _ in range(20)}
        assert len(ids) == 20

    def test_get_by_type_name(self, store):
        """Test that record types can be named by string."""
        record_id = store.put(make_plan())
        assert isinstance(store.get("Plan", record_id), Plan)

    def test_get_unknown_id(self, store):
        """Test that unknown ids return None."""
        assert store.get(TravelPlan, "missing") is None

    def test_put_existing_id_replaces_whole_record(self, store):
        """Test that put performs a full replace."""
        record_id = store.put(make_trip(card_color="#112233"))
        replacement = make_trip(id=record_id, title="Osaka")
        store.put(replacement)
        stored = store.get(TravelPlan, record_id)
        assert stored.title == "Osaka"
        assert stored.card_color is None

    def test_put_normalises_end_date(self, store):
        """Test that copies bypassing validation are normalised on write."""
        plan = make_trip().model_copy(update={"end_date": datetime(2024, 1, 1)})
        stored = store.get(TravelPlan, store.put(plan))
        assert stored.end_date == stored.start_date

    def test_put_rejects_malformed_record(self, store):
        """Test that invalid copies are rejected with RecordValidationError."""
        plan = make_trip().model_copy(update={"title": ""})
        with pytest.raises(RecordValidationError) as exc:
            store.put(plan)
        assert exc.value.errors

    def test_database_file_persists(self, tmp_path):
        """Test that records survive reopening the database."""
        path = str(tmp_path / "travory.db")
        first = LocalEntityStore(path)
        record_id = first.put(make_place())
        first.close()

        second = LocalEntityStore(path)
        assert isinstance(second.get(VisitedPlace, record_id), VisitedPlace)
        second.close()


class TestQuery:
    """Tests for predicate queries."""

    def test_query_in_insertion_order(self, store):
        """Test the default ordering."""
        for title in ("A", "B", "C"):
            store.put(make_trip(title=title))
        assert [p.title for p in store.query(TravelPlan)] == ["A", "B", "C"]

    def test_replace_keeps_insertion_position(self, store):
        """Test that replacing a record does not move it to the end."""
        first = store.put(make_trip(title="A"))
        store.put(make_trip(title="B"))
        store.put(make_trip(id=first, title="A2"))
        assert [p.title for p in store.query(TravelPlan)] == ["A2", "B"]

    def test_query_with_predicate_and_sort(self, store):
        """Test filtering and sorting."""
        store.put(make_trip(title="A", user_id="alice"))
        store.put(make_trip(title="B", user_id="bob"))
        store.put(make_trip(title="C", user_id="alice"))
        result = store.query(
            TravelPlan,
            predicate=lambda p: p.user_id == "alice",
            sort=lambda records: sorted(records, key=lambda p: p.title, reverse=True),
        )
        assert [p.title for p in result] == ["C", "A"]

    def test_query_is_scoped_by_type(self, store):
        """Test that queries only return one record type."""
        store.put(make_trip())
        store.put(make_plan())
        assert len(store.query(Plan)) == 1


class TestDeleteAndTombstones:
    """Tests for deletes."""

    def test_delete_existing(self, store):
        """Test deleting a record."""
        record_id = store.put(make_trip())
        assert store.delete(TravelPlan, record_id) is True
        assert store.get(TravelPlan, record_id) is None

    def test_delete_unknown_returns_false(self, store):
        """Test deleting an unknown id."""
        assert store.delete(TravelPlan, "missing") is False

    def test_delete_leaves_tombstone(self, store):
        """Test that deletes are remembered with their time."""
        record_id = store.put(make_trip())
        when = datetime(2024, 7, 1, tzinfo=timezone.utc)
        store.delete(TravelPlan, record_id, deleted_at=when)
        assert store.tombstone(TravelPlan, record_id) == when

    def test_put_clears_tombstone(self, store):
        """Test that re-creating a record removes its tombstone."""
        record_id = store.put(make_trip())
        store.delete(TravelPlan, record_id)
        store.put(make_trip(id=record_id))
        assert store.tombstone(TravelPlan, record_id) is None


class TestListeners:
    """Tests for change notification."""

    def test_listener_sees_put_and_delete(self, store):
        """Test that listeners receive every committed change."""
        changes = []
        store.add_listener(changes.append)
        record_id = store.put(make_trip())
        store.put(make_trip(id=record_id, title="Nara"))
        store.delete(TravelPlan, record_id)

        assert [c.op for c in changes] == [ChangeOp.PUT, ChangeOp.PUT, ChangeOp.DELETE]
        assert changes[0].before is None
        assert changes[1].before.title == "Kyoto"
        assert changes[1].after.title == "Nara"
        assert changes[2].after is None

    def test_origin_is_reported(self, store):
        """Test that remote-origin writes are labelled as such."""
        changes = []
        store.add_listener(changes.append)
        store.put(make_trip(), origin=ChangeOrigin.REMOTE)
        assert changes[0].origin == ChangeOrigin.REMOTE

    def test_removed_listener_not_called(self, store):
        """Test listener removal."""
        changes = []
        remove = store.add_listener(changes.append)
        remove()
        store.put(make_trip())
        assert changes == []

    def test_failing_listener_does_not_break_write(self, store):
        """Test that a raising listener leaves the write committed."""
        def broken(change):
            raise RuntimeError("boom")

        seen = []
        store.add_listener(broken)
        store.add_listener(seen.append)
        record_id = store.put(make_trip())
        assert store.get(TravelPlan, record_id) is not None
        assert len(seen) == 1


class TestLookups:
    """Tests for share code and image lookups."""

    def test_find_by_share_code(self, store):
        """Test finding a plan by its share code."""
        record_id = store.put(make_trip(share_code="TRAVEL-ABCD1234", is_shared=True))
        store.put(make_trip())
        assert store.find_by_share_code("TRAVEL-ABCD1234").id == record_id
        assert store.find_by_share_code("TRAVEL-NOPE0000") is None

    def test_all_image_refs(self, store):
        """Test collecting referenced image names across record types."""
        store.put(make_trip(local_image_ref="travelPlan_1.jpg"))
        store.put(make_plan(local_image_ref="plan_1.jpg"))
        store.put(make_place(photo_ref="place_1.jpg"))
        store.put(make_place())
        assert store.all_image_refs() == {"travelPlan_1.jpg", "plan_1.jpg", "place_1.jpg"}

    def test_updated_at_round_trips(self, store):
        """Test that timestamps survive storage unchanged."""
        stamp = datetime(2024, 7, 1, 8, 30, tzinfo=timezone.utc) + timedelta(microseconds=5)
        record_id = store.put(make_trip(updated_at=stamp))
        assert store.get(TravelPlan, record_id).updated_at == stamp


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
