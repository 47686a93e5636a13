#!/usr/bin/env python3
"""
Tests for the points ledger: point events, snapshots and totals, and the
MongoDB-backed ledger against mocked Motor collections.
"""
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from konfi_badges.core.points_ledger import (
    LedgerSnapshot,
    PointEvent,
    PointsLedger,
    Totals,
    to_date,
    to_storage_datetime,
)
from konfi_badges.exceptions import DBError
from tests.fakes import AsyncCursor, activity, bonus, event_points, mock_collection, mock_db


@pytest.fixture
def collection():
    return mock_collection()


@pytest.fixture
def points_ledger(collection):
    return PointsLedger(shared_db_client=MagicMock(), shared_db=mock_db(point_events=collection))


def stored(event: PointEvent):
    doc = event.to_document()
    doc["_id"] = "oid"
    return doc


# ============================================================================
# POINT EVENTS AND SNAPSHOTS
# ============================================================================

class TestPointEvent:

    @pytest.mark.unit
    def test_rejects_unknown_source_and_category(self):
        with pytest.raises(ValueError):
            PointEvent(member_id=1, points=1, source="gift", source_ref_id=1, occurred_at=date(2024, 1, 1))
        with pytest.raises(ValueError):
            PointEvent(member_id=1, points=1, source="activity", source_ref_id=1,
                       occurred_at=date(2024, 1, 1), category="sport")

    @pytest.mark.unit
    def test_bonus_never_references_activity(self):
        with pytest.raises(ValueError):
            PointEvent(member_id=1, points=1, source="bonus", source_ref_id=1,
                       occurred_at=date(2024, 1, 1), activity_id=3)

    @pytest.mark.unit
    def test_document_round_trip_stores_dates_as_utc_midnight(self):
        event = activity(1, 42, date(2024, 1, 5), activity_categories=["jugend"])

        doc = event.to_document()

        assert doc["occurred_at"] == datetime(2024, 1, 5, tzinfo=timezone.utc)
        assert PointEvent.from_document(doc) == event

    @pytest.mark.unit
    def test_participation_time_is_dropped(self):
        event = PointEvent(member_id=1, points=1, source="activity", source_ref_id=1,
                           occurred_at=datetime(2024, 1, 5, 18, 30, tzinfo=timezone.utc), activity_id=3)

        assert event.occurred_at == date(2024, 1, 5)
        assert type(event.occurred_at) is date

    @pytest.mark.unit
    def test_date_helpers(self):
        assert to_date("2024-02-03T10:00:00") == date(2024, 2, 3)
        assert to_date(datetime(2024, 2, 3, 23, 0)) == date(2024, 2, 3)
        assert to_storage_datetime(datetime(2024, 2, 3, 8, 0)).tzinfo is timezone.utc
        with pytest.raises(ValueError):
            to_date(20240203)


class TestSnapshot:

    @pytest.mark.unit
    def test_events_ordered_by_participation_date(self):
        later = activity(1, 1, date(2024, 1, 9))
        earlier = activity(1, 2, date(2024, 1, 2))

        snap = LedgerSnapshot.of(1, [later, earlier])

        assert snap.events == (earlier, later)

    @pytest.mark.unit
    def test_totals(self):
        snap = LedgerSnapshot.of(1, [
            activity(1, 1, date(2024, 1, 1), points=2, category="gottesdienst"),
            activity(1, 2, date(2024, 1, 2), points=3, category="gemeinde"),
            bonus(1, 4, category="gemeinde"),
            event_points(1, 9, 1),
        ])

        totals = snap.totals()

        assert totals == Totals(gottesdienst=2, gemeinde=3, bonus=4)
        assert totals.total_points == 9

    @pytest.mark.unit
    def test_activity_reads(self):
        snap = LedgerSnapshot.of(1, [
            activity(1, 5, date(2024, 1, 1)),
            activity(1, 5, date(2024, 1, 1), ref="second"),
            activity(1, 6, date(2024, 1, 3)),
            bonus(1, 2, occurred_at=date(2024, 1, 2)),
        ])

        assert snap.distinct_activity_ids() == {5, 6}
        assert snap.activity_count() == 3
        assert snap.activity_count(5) == 2
        assert snap.has_activity(6)
        assert not snap.has_activity(7)
        assert snap.activity_dates() == [date(2024, 1, 1), date(2024, 1, 3)]


# ============================================================================
# MONGODB LEDGER
# ============================================================================

class TestPointsLedger:

    @pytest.mark.unit
    @pytest.mark.mocked
    @pytest.mark.asyncio
    async def test_record_event_inserts_document(self, points_ledger, collection):
        event = activity(1, 42, date(2024, 1, 5), ref="approval-7")

        result = await points_ledger.record_event(event)

        assert result == event
        doc = collection.insert_one.await_args.args[0]
        assert doc["source"] == "activity"
        assert doc["source_ref_id"] == "approval-7"
        assert doc["occurred_at"] == datetime(2024, 1, 5, tzinfo=timezone.utc)

    @pytest.mark.unit
    @pytest.mark.mocked
    @pytest.mark.asyncio
    async def test_record_event_generates_missing_reference(self, points_ledger, collection):
        event = PointEvent(member_id=1, points=3, source="bonus", source_ref_id=None, occurred_at=date(2024, 1, 5))

        result = await points_ledger.record_event(event)

        assert result.source_ref_id
        assert collection.insert_one.await_args.args[0]["source_ref_id"] == result.source_ref_id

    @pytest.mark.unit
    @pytest.mark.mocked
    @pytest.mark.asyncio
    async def test_duplicate_event_returns_stored_one(self, points_ledger, collection):
        original = activity(1, 42, date(2024, 1, 5), points=2, ref="approval-7")
        collection.insert_one.side_effect = DuplicateKeyError("duplicate key")
        collection.find_one.return_value = stored(original)

        result = await points_ledger.record_event(activity(1, 42, date(2024, 1, 5), points=9, ref="approval-7"))

        assert result.points == 2
        collection.find_one.assert_awaited_once_with({"source": "activity", "source_ref_id": "approval-7"})

    @pytest.mark.unit
    @pytest.mark.mocked
    @pytest.mark.asyncio
    async def test_storage_failure_becomes_db_error(self, points_ledger, collection):
        collection.insert_one.side_effect = ServerSelectionTimeoutError("no servers")

        with pytest.raises(DBError) as exc_info:
            await points_ledger.record_event(activity(1, 42, date(2024, 1, 5)))

        assert exc_info.value.status == 503
        assert exc_info.value.collection == "point_events"

    @pytest.mark.unit
    @pytest.mark.mocked
    @pytest.mark.asyncio
    async def test_delete_event(self, points_ledger, collection):
        event = activity(3, 42, date(2024, 1, 5), ref="approval-7")
        collection.find_one_and_delete.return_value = stored(event)

        removed = await points_ledger.delete_event("activity", "approval-7")

        assert removed == event
        collection.find_one_and_delete.return_value = None
        assert await points_ledger.delete_event("activity", "approval-7") is None

    @pytest.mark.unit
    @pytest.mark.mocked
    @pytest.mark.asyncio
    async def test_get_snapshot_reads_sorted_events(self, points_ledger, collection):
        events = [activity(1, 1, date(2024, 1, 1)), activity(1, 2, date(2024, 1, 2))]
        cursor = AsyncCursor([stored(e) for e in events])
        collection.find.return_value = cursor

        snap = await points_ledger.get_snapshot(1)

        assert snap.events == tuple(events)
        collection.find.assert_called_once_with({"member_id": 1})
        assert cursor.sort_args == ([("occurred_at", 1), ("created_at", 1)],)

    @pytest.mark.unit
    @pytest.mark.mocked
    @pytest.mark.asyncio
    async def test_get_totals_from_aggregation(self, points_ledger, collection):
        collection.aggregate.return_value = AsyncCursor([
            {"_id": {"source": "activity", "category": "gottesdienst"}, "points": 4},
            {"_id": {"source": "event", "category": "gemeinde"}, "points": 3},
            {"_id": {"source": "bonus", "category": "gemeinde"}, "points": 2},
            {"_id": {"source": "event"}, "points": 1},
        ])

        totals = await points_ledger.get_totals(1)

        assert totals.to_dict() == {"gottesdienst": 4, "gemeinde": 3, "bonus": 2, "total_points": 9}

    @pytest.mark.unit
    @pytest.mark.mocked
    @pytest.mark.asyncio
    async def test_distinct_reads(self, points_ledger, collection):
        collection.distinct.return_value = [5, 6]
        collection.count_documents.return_value = 2

        assert await points_ledger.get_distinct_activity_ids(1) == {5, 6}
        assert await points_ledger.get_activity_count(1, 5) == 2
        assert await points_ledger.list_member_ids() == [5, 6]

        filter_ = collection.distinct.await_args_list[0].args[1]
        assert filter_["source"] == "activity"

    @pytest.mark.unit
    @pytest.mark.mocked
    @pytest.mark.asyncio
    async def test_ensure_indexes_creates_unique_source_reference(self, points_ledger, collection):
        await points_ledger.ensure_indexes()

        first = collection.create_index.await_args_list[0]
        assert first.args[0] == [("source", 1), ("source_ref_id", 1)]
        assert first.kwargs == {"unique": True}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shared_connection_is_never_closed(self, collection):
        client = MagicMock()
        points_ledger = PointsLedger(shared_db_client=client, shared_db=mock_db(point_events=collection))

        async with points_ledger:
            pass

        client.close.assert_not_called()
