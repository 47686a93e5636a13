#!/usr/bin/env python3
"""
Award Reconciler

Brings a member's awards in line with their ledger: every active badge the
member is eligible for but does not hold yet is awarded. Safe to run any number
of times and concurrently for the same member; the award store's unique index
decides which call gets the credit.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from konfi_badges.core.eligibility_evaluator import EligibilityEvaluator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NewlyAwardedBadge:
    """A badge this specific reconcile call persisted"""
    member_id: Any
    badge_id: Any
    earned_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NewlyAwardedBadge":
        return cls(member_id=data["member_id"], badge_id=data["badge_id"], earned_at=data.get("earned_at"))


@dataclass(frozen=True)
class BadgeProgress:
    badge_id: Any
    eligible: bool
    progress: float
    earned: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AwardReconciler:
    """
    Reconciles awards for one member at a time.

    Args:
        ledger: Points ledger (``get_snapshot``)
        catalog: Criteria catalog (``list_active_criteria``, ``get_badges``)
        award_store: Award store (``get_awards``, ``insert_award``, reconciliation records)
        evaluator: Eligibility evaluator, a fresh one by default
    """

    def __init__(self, ledger, catalog, award_store, evaluator: EligibilityEvaluator = None):
        self.ledger = ledger
        self.catalog = catalog
        self.award_store = award_store
        self.evaluator = evaluator or EligibilityEvaluator()

    async def reconcile(self, member_id: Any, now: datetime = None) -> List[NewlyAwardedBadge]:
        """
        Award every active badge the member newly qualifies for.

        Storage failures (DBError) propagate; a badge whose evaluation fails is
        skipped without affecting the others.

        Returns:
            The badges this call persisted; empty when nothing changed
        """
        now = now or datetime.now(timezone.utc)

        awards = await self.award_store.get_awards(member_id)
        held = {award.badge_id for award in awards}
        definitions = await self.catalog.list_active_criteria()
        pending = [d for d in definitions if d.badge_id not in held]

        newly_awarded: List[NewlyAwardedBadge] = []
        try:
            if pending:
                snapshot = await self.ledger.get_snapshot(member_id)

                for definition in pending:
                    try:
                        result = self.evaluator.evaluate(snapshot, definition, now)
                    except Exception as e:
                        logger.error(f"❌ Error evaluating badge {definition.badge_id} for member {member_id}: {e}")
                        continue

                    if not result.eligible:
                        continue

                    if await self.award_store.insert_award(member_id, definition.badge_id, now):
                        logger.info(f"🏆 Awarded badge {definition.badge_id} to member {member_id}")
                        newly_awarded.append(NewlyAwardedBadge(member_id, definition.badge_id, now))
        except Exception:
            # Awards already persisted stay reported until a later call completes
            if newly_awarded:
                logger.warning(
                    f"⚠️  Reconcile of member {member_id} interrupted after "
                    f"{len(newly_awarded)} new awards; keeping them for the next pass"
                )
                await self.award_store.record_reconciliation(
                    member_id, [badge.to_dict() for badge in newly_awarded], now, complete=False
                )
            raise

        await self.award_store.record_reconciliation(
            member_id, [badge.to_dict() for badge in newly_awarded], now
        )
        logger.debug(
            f"🔄 Reconciled member {member_id}: {len(pending)} badges evaluated, "
            f"{len(newly_awarded)} newly awarded"
        )
        return newly_awarded

    async def get_badge_progress(self, member_id: Any, now: datetime = None) -> List[BadgeProgress]:
        """Eligibility and progress of every active badge, for "almost earned" displays."""
        definitions = await self.catalog.list_active_criteria()
        held = {award.badge_id for award in await self.award_store.get_awards(member_id)}
        snapshot = await self.ledger.get_snapshot(member_id)

        progress = []
        for definition in definitions:
            result = self.evaluator.evaluate(snapshot, definition, now)
            progress.append(BadgeProgress(
                badge_id=definition.badge_id,
                eligible=result.eligible,
                progress=result.progress,
                earned=definition.badge_id in held,
                error=result.error,
            ))
        return progress

    async def get_earned_badges(self, member_id: Any) -> List[Dict[str, Any]]:
        """Awards of a member joined with badge display metadata, newest first."""
        awards = await self.award_store.get_awards(member_id)
        if not awards:
            return []

        badges = await self.catalog.get_badges(award.badge_id for award in awards)
        earned = []
        for award in awards:
            badge = badges.get(award.badge_id, {})
            earned.append({
                "badge_id": award.badge_id,
                "earned_at": award.earned_at,
                "name": badge.get("name"),
                "icon": badge.get("icon"),
                "description": badge.get("description"),
                "criteria_type": badge.get("criteria_type"),
                "criteria_value": badge.get("criteria_value"),
                "is_hidden": badge.get("is_hidden", False),
            })
        return earned

    async def get_newly_awarded(self, member_id: Any) -> List[NewlyAwardedBadge]:
        """What the member's most recent reconcile call awarded."""
        record = await self.award_store.get_newly_awarded(member_id)
        if not record:
            return []
        return [NewlyAwardedBadge.from_dict(item) for item in record.get("awarded", [])]
