#!/usr/bin/env python3
"""
Tests for the award reconciler: idempotence, at-most-one award under concurrent
reconciliation, re-evaluation after criteria edits and per-badge isolation.
"""
import asyncio
from datetime import date, datetime, timezone

import pytest

from konfi_badges.core.award_reconciler import AwardReconciler
from konfi_badges.core.criteria import CriteriaDefinition
from konfi_badges.exceptions import DBError
from tests.fakes import InMemoryAwardStore, activity, bonus

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def reconciler(ledger, catalog, award_store):
    return AwardReconciler(ledger, catalog, award_store)


def define(catalog, badge_id, kind, threshold, extra=None, **metadata):
    catalog.put(CriteriaDefinition.build(badge_id, kind, threshold, extra), **metadata)


class TestReconcile:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_awards_newly_eligible_badges(self, reconciler, ledger, catalog, award_store):
        define(catalog, 1, "activity_count", 2)
        define(catalog, 2, "specific_activity", 1, {"activity_id": 42})
        define(catalog, 3, "total_points", 100)
        ledger.events += [activity(7, 42, date(2024, 3, 1)), activity(7, 5, date(2024, 3, 2))]

        awarded = await reconciler.reconcile(7, NOW)

        assert sorted(b.badge_id for b in awarded) == [1, 2]
        assert all(b.earned_at == NOW and b.member_id == 7 for b in awarded)
        assert set(award_store.awards) == {(7, 1), (7, 2)}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_reconcile_is_empty(self, reconciler, ledger, catalog):
        define(catalog, 1, "total_points", 1)
        ledger.events.append(bonus(7, 3))

        first = await reconciler.reconcile(7, NOW)
        second = await reconciler.reconcile(7, NOW)

        assert len(first) == 1
        assert second == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_already_held_badges_are_not_reevaluated(self, reconciler, ledger, catalog, award_store):
        define(catalog, 1, "total_points", 1)
        ledger.events.append(bonus(7, 3))
        await reconciler.reconcile(7, NOW)
        reads_before = ledger.snapshot_reads

        await reconciler.reconcile(7, NOW)

        assert ledger.snapshot_reads == reads_before
        assert award_store.insert_attempts == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_badges_are_skipped(self, reconciler, ledger, catalog):
        define(catalog, 1, "total_points", 1, is_active=False)
        define(catalog, 2, "total_points", 1, is_hidden=True)
        ledger.events.append(bonus(7, 3))

        awarded = await reconciler.reconcile(7, NOW)

        assert [b.badge_id for b in awarded] == [2]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_awards_survive_deleted_events(self, reconciler, ledger, catalog, award_store):
        define(catalog, 1, "total_points", 3)
        event = bonus(7, 3, ref="bonus-1")
        ledger.events.append(event)
        await reconciler.reconcile(7, NOW)

        await ledger.delete_event("bonus", "bonus-1")
        awarded = await reconciler.reconcile(7, NOW)

        assert awarded == []
        assert (7, 1) in award_store.awards

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lowered_threshold_awards_on_next_reconcile(self, reconciler, ledger, catalog):
        """Criteria edits alone, without a ledger mutation, change eligibility"""
        define(catalog, 1, "total_points", 10)
        ledger.events.append(bonus(7, 6))
        assert await reconciler.reconcile(7, NOW) == []

        await catalog.upsert_criteria_definition(1, "total_points", 5)
        awarded = await reconciler.reconcile(7, NOW)

        assert [b.badge_id for b in awarded] == [1]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_definition_does_not_block_others(self, reconciler, ledger, catalog, caplog):
        catalog.put_raw({"badge_id": 1, "criteria_type": "specific_activity", "criteria_value": 1,
                         "criteria_extra": "{not json"})
        catalog.put_raw({"badge_id": 2, "criteria_type": "from_the_future", "criteria_value": 1})
        define(catalog, 3, "activity_count", 1)
        ledger.events.append(activity(7, 42, date(2024, 3, 1)))

        with caplog.at_level("WARNING"):
            awarded = await reconciler.reconcile(7, NOW)

        assert [b.badge_id for b in awarded] == [3]
        assert "Badge 1" in caplog.text
        assert "Badge 2" in caplog.text

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, reconciler, ledger, catalog, award_store):
        define(catalog, 1, "total_points", 1)
        ledger.events.append(bonus(7, 3))

        async def unavailable(*args, **kwargs):
            raise DBError(503, "Award insert failed", "konfi_badges", "no servers")

        award_store.insert_award = unavailable

        with pytest.raises(DBError):
            await reconciler.reconcile(7, NOW)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_members_are_independent(self, reconciler, ledger, catalog, award_store):
        define(catalog, 1, "total_points", 2)
        ledger.events += [bonus(7, 3), bonus(8, 1)]

        assert len(await reconciler.reconcile(7, NOW)) == 1
        assert await reconciler.reconcile(8, NOW) == []
        assert set(award_store.awards) == {(7, 1)}


class TestConcurrentReconcile:

    @pytest.mark.unit
    @pytest.mark.concurrency
    @pytest.mark.asyncio
    async def test_at_most_one_award_per_badge(self, reconciler, ledger, catalog, award_store):
        for badge_id in range(1, 6):
            define(catalog, badge_id, "activity_count", badge_id)
        ledger.events += [activity(7, i, date(2024, 3, i)) for i in range(1, 6)]

        results = await asyncio.gather(*(reconciler.reconcile(7, NOW) for _ in range(10)))

        assert len(award_store.awards) == 5
        credited = [b.badge_id for result in results for b in result]
        # Every badge is credited to exactly one of the racing calls
        assert sorted(credited) == [1, 2, 3, 4, 5]
        assert award_store.insert_attempts > 5


class FlakyAwardStore(InMemoryAwardStore):
    """Fails the n-th award insert once, after the earlier ones committed"""

    def __init__(self, fail_on_attempt: int):
        super().__init__()
        self.fail_on_attempt = fail_on_attempt

    async def insert_award(self, member_id, badge_id, earned_at=None) -> bool:
        if self.insert_attempts + 1 == self.fail_on_attempt:
            self.insert_attempts += 1
            raise DBError(503, "Award insert failed", "konfi_badges", "connection reset")
        return await super().insert_award(member_id, badge_id, earned_at)


class TestInterruptedReconcile:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_awards_before_a_storage_failure_stay_reported(self, ledger, catalog):
        award_store = FlakyAwardStore(fail_on_attempt=2)
        reconciler = AwardReconciler(ledger, catalog, award_store)
        define(catalog, 1, "bonus_points", 1)
        define(catalog, 2, "bonus_points", 2)
        ledger.events.append(bonus(7, 3))

        with pytest.raises(DBError):
            await reconciler.reconcile(7, NOW)

        assert set(award_store.awards) == {(7, 1)}
        assert [b.badge_id for b in await reconciler.get_newly_awarded(7)] == [1]

        retried = await reconciler.reconcile(7, NOW)

        assert [b.badge_id for b in retried] == [2]
        assert [b.badge_id for b in await reconciler.get_newly_awarded(7)] == [1, 2]

        await reconciler.reconcile(7, NOW)
        assert await reconciler.get_newly_awarded(7) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_before_any_award_keeps_previous_record(self, ledger, catalog):
        award_store = FlakyAwardStore(fail_on_attempt=2)
        reconciler = AwardReconciler(ledger, catalog, award_store)
        define(catalog, 1, "bonus_points", 1)
        ledger.events.append(bonus(7, 3))
        await reconciler.reconcile(7, NOW)

        define(catalog, 2, "bonus_points", 2)
        with pytest.raises(DBError):
            await reconciler.reconcile(7, NOW)

        assert [b.badge_id for b in await reconciler.get_newly_awarded(7)] == [1]


class TestReads:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_badge_progress(self, reconciler, ledger, catalog):
        define(catalog, 1, "total_points", 4)
        define(catalog, 2, "total_points", 1)
        ledger.events.append(bonus(7, 2))
        await reconciler.reconcile(7, NOW)

        progress = {p.badge_id: p for p in await reconciler.get_badge_progress(7, NOW)}

        assert progress[1].eligible is False
        assert progress[1].progress == pytest.approx(0.5)
        assert progress[1].earned is False
        assert progress[2].earned is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_earned_badges_joined_with_metadata(self, reconciler, ledger, catalog):
        define(catalog, 1, "total_points", 1, name="Starter", icon="star")
        ledger.events.append(bonus(7, 2))
        await reconciler.reconcile(7, NOW)

        earned = await reconciler.get_earned_badges(7)

        assert earned[0]["badge_id"] == 1
        assert earned[0]["name"] == "Starter"
        assert earned[0]["icon"] == "star"
        assert earned[0]["earned_at"] == NOW
        assert await reconciler.get_earned_badges(8) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_newly_awarded_reflects_latest_reconcile(self, reconciler, ledger, catalog):
        define(catalog, 1, "total_points", 1)
        ledger.events.append(bonus(7, 2))

        assert await reconciler.get_newly_awarded(7) == []
        await reconciler.reconcile(7, NOW)
        assert [b.badge_id for b in await reconciler.get_newly_awarded(7)] == [1]

        await reconciler.reconcile(7, NOW)
        assert await reconciler.get_newly_awarded(7) == []
