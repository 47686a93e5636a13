#!/usr/bin/env python3
"""
Badge Engine

Wires the points ledger, criteria catalog, eligibility evaluator, award store,
reconciler, trigger and sweep onto one MongoDB connection, and exposes the
operations the surrounding application calls: ledger and catalog mutations in,
badge reads out.
"""

import logging
import traceback
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient

from konfi_badges.config import EngineConfig
from konfi_badges.core.award_reconciler import AwardReconciler, BadgeProgress, NewlyAwardedBadge
from konfi_badges.core.award_store import AwardStore
from konfi_badges.core.criteria import CriteriaDefinition, list_criteria_types
from konfi_badges.core.criteria_catalog import CriteriaCatalog
from konfi_badges.core.eligibility_evaluator import EligibilityEvaluator
from konfi_badges.core.points_ledger import (
    SOURCE_ACTIVITY,
    SOURCE_BONUS,
    SOURCE_EVENT,
    PointEvent,
    PointsLedger,
)
from konfi_badges.nightly.sweep import ReconciliationSweep
from konfi_badges.trigger.reconciliation_trigger import ReconciliationTrigger

logger = logging.getLogger(__name__)


class BadgeEngine:
    """
    Badge eligibility engine for one Konfi database.

    The engine either owns its MongoDB connection (opened by ``connect_to_db``
    or ``async with``) or borrows a shared client/database. Components can be
    injected individually; missing ones are built on the engine's connection.
    """

    def __init__(self, config: EngineConfig = None,
                 shared_db_client: Optional[AsyncIOMotorClient] = None, shared_db=None,
                 ledger=None, catalog=None, award_store=None,
                 evaluator: EligibilityEvaluator = None):
        self.config = config or EngineConfig.from_env()

        if shared_db_client is not None and shared_db is not None:
            self.client = shared_db_client
            self.db = shared_db
            self._owns_connection = False
            logger.debug("✅ Badge engine using shared MongoDB connection")
        else:
            self.client = None
            self.db = None
            self._owns_connection = True

        self._injected = {"ledger": ledger, "catalog": catalog, "award_store": award_store}
        self.ledger = ledger
        self.catalog = catalog
        self.award_store = award_store
        self.evaluator = evaluator or EligibilityEvaluator()

        self.reconciler: Optional[AwardReconciler] = None
        self.trigger: Optional[ReconciliationTrigger] = None
        self.sweeper: Optional[ReconciliationSweep] = None

        if self.db is not None or self._fully_injected:
            self._wire_components()

    @property
    def _fully_injected(self) -> bool:
        return None not in (self.ledger, self.catalog, self.award_store)

    def _wire_components(self):
        shared = {"shared_db_client": self.client, "shared_db": self.db}

        if self.ledger is None:
            self.ledger = PointsLedger(collection_name=self.config.events_collection, **shared)
        if self.catalog is None:
            self.catalog = CriteriaCatalog(collection_name=self.config.badges_collection, **shared)
        if self.award_store is None:
            self.award_store = AwardStore(
                collection_name=self.config.awards_collection,
                reconciliations_collection_name=self.config.reconciliations_collection,
                **shared,
            )

        self.reconciler = AwardReconciler(self.ledger, self.catalog, self.award_store, self.evaluator)
        self.trigger = ReconciliationTrigger(
            self.reconciler,
            self.ledger.list_member_ids,
            mode=self.config.reconcile_mode,
            workers=self.config.reconcile_workers,
            timeout=self.config.reconcile_timeout,
            max_retries=self.config.reconcile_max_retries,
        )
        self.sweeper = ReconciliationSweep(
            self.reconciler,
            self.ledger.list_member_ids,
            batch_size=self.config.sweep_batch_size,
            max_concurrent=self.config.sweep_max_concurrent,
        )

    def _require_components(self):
        if self.reconciler is None:
            raise RuntimeError("Badge engine is not connected; call connect_to_db() first")

    ############################################################################
                # Methods for connecting and disconnecting from MongoDB
    ############################################################################

    async def connect_to_db(self):
        """Open the MongoDB connection (if owned), wire components and start the trigger."""
        if self.reconciler is None:
            try:
                logger.info("🔌 Connecting to MongoDB...")
                self.client = AsyncIOMotorClient(
                    self.config.mongo_uri,
                    maxPoolSize=10,
                    minPoolSize=1,
                    maxIdleTimeMS=30000,
                    serverSelectionTimeoutMS=5000,
                )
                self.db = self.client[self.config.mongo_db_name]
                await self.db.command("ping")
                logger.info("✅ Connected to MongoDB")
            except Exception as e:
                logger.error(f"❌ Error connecting to database: {e}")
                raise
            self._wire_components()

        await self.trigger.start()

    async def disconnect_from_db(self, drain: bool = True):
        """Stop the trigger and close the connection if the engine owns it."""
        if self.trigger is not None:
            await self.trigger.stop(drain=drain)

        if self._owns_connection and self.client is not None:
            self.client.close()
            self.client = None
            self.db = None
            # Components built on the closed client are rebuilt on reconnect
            for name, component in self._injected.items():
                setattr(self, name, component)
            self.reconciler = None
            logger.info("🔌 Badge engine disconnected from MongoDB")

    async def __aenter__(self):
        await self.connect_to_db()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            logger.warning("⚠️  Exception caught in badge engine async context manager:")
            logger.warning(f"  Type: {exc_type.__name__}")
            logger.warning(f"  Message: {exc_val}")
            logger.debug("🔍 Traceback:\n" + "".join(traceback.format_exception(exc_type, exc_val, exc_tb)))
        await self.disconnect_from_db(drain=exc_type is None)

    async def ensure_indexes(self):
        """Create the unique and lookup indexes every collection relies on."""
        self._require_components()
        await self.ledger.ensure_indexes()
        await self.catalog.ensure_indexes()
        await self.award_store.ensure_indexes()
        logger.info("✅ Indexes ensured")

    ############################################################################
                            # Ledger mutations (inbound)
    ############################################################################

    async def _record(self, event: PointEvent) -> PointEvent:
        self._require_components()
        stored = await self.ledger.record_event(event)
        # The event has committed; reconciliation is best-effort from here on
        await self.trigger.on_ledger_mutation(stored.member_id)
        return stored

    async def record_activity_approval(self, member_id: Any, activity_id: Any, points: int,
                                       category: Optional[str], occurred_at: date,
                                       approval_id: Any = None,
                                       activity_categories: Iterable[str] = ()) -> PointEvent:
        """
        Record the points of an approved activity.

        Args:
            member_id: Konfi id
            activity_id: The completed activity
            points: Points granted
            category: "gottesdienst", "gemeinde" or None
            occurred_at: Participation date
            approval_id: Id of the approved request; re-recording it is a no-op
            activity_categories: Category tags of the activity

        Returns:
            The stored point event
        """
        return await self._record(PointEvent(
            member_id=member_id,
            points=points,
            source=SOURCE_ACTIVITY,
            source_ref_id=approval_id,
            occurred_at=occurred_at,
            category=category,
            activity_id=activity_id,
            activity_categories=tuple(activity_categories),
        ))

    async def record_bonus_points(self, member_id: Any, points: int, category: Optional[str],
                                  occurred_at: date, bonus_id: Any = None) -> PointEvent:
        return await self._record(PointEvent(
            member_id=member_id,
            points=points,
            source=SOURCE_BONUS,
            source_ref_id=bonus_id,
            occurred_at=occurred_at,
            category=category,
        ))

    async def record_event_points(self, member_id: Any, event_id: Any, points: int,
                                  category: Optional[str], occurred_at: date) -> PointEvent:
        """Record event attendance. The ledger reference is ``"<event_id>:<member_id>"``."""
        return await self._record(PointEvent(
            member_id=member_id,
            points=points,
            source=SOURCE_EVENT,
            source_ref_id=f"{event_id}:{member_id}",
            occurred_at=occurred_at,
            category=category,
        ))

    async def delete_point_event(self, source_type: str, source_ref_id: Any) -> Optional[PointEvent]:
        """
        Remove the point event of a deleted record. Awards the member already
        holds are kept; only future eligibility changes.
        """
        self._require_components()
        removed = await self.ledger.delete_event(source_type, source_ref_id)
        if removed is not None:
            await self.trigger.on_ledger_mutation(removed.member_id)
        return removed

    ############################################################################
                            # Catalog mutations (inbound)
    ############################################################################

    async def upsert_criteria_definition(self, badge_id: Any, kind: str, threshold: int,
                                         extra: Dict[str, Any] = None, **metadata) -> CriteriaDefinition:
        """Create or change a badge's criteria and re-evaluate every known member."""
        self._require_components()
        definition = await self.catalog.upsert_criteria_definition(
            badge_id, kind, threshold, extra, **metadata
        )
        await self.trigger.on_catalog_change()
        return definition

    def list_criteria_types(self) -> Dict[str, Dict[str, Any]]:
        return list_criteria_types()

    ############################################################################
                            # Badge reads (outbound)
    ############################################################################

    async def get_earned_badges(self, member_id: Any) -> List[Dict[str, Any]]:
        self._require_components()
        return await self.reconciler.get_earned_badges(member_id)

    async def get_badge_progress(self, member_id: Any) -> List[BadgeProgress]:
        self._require_components()
        return await self.reconciler.get_badge_progress(member_id)

    async def get_newly_awarded(self, member_id: Any) -> List[NewlyAwardedBadge]:
        self._require_components()
        return await self.reconciler.get_newly_awarded(member_id)

    async def get_badge_stats(self, member_id: Any) -> Dict[str, int]:
        """Number of configured badges and how many of them the member holds."""
        self._require_components()
        return {
            "total_badges": await self.catalog.count_badges(active_only=False),
            "earned_badges": await self.award_store.count_awards(member_id),
        }

    ############################################################################
                            # Reconciliation
    ############################################################################

    async def reconcile(self, member_id: Any) -> List[NewlyAwardedBadge]:
        self._require_components()
        return await self.reconciler.reconcile(member_id)

    async def sweep(self, max_members: int = None, progress_callback=None) -> Dict[str, Any]:
        self._require_components()
        return await self.sweeper.run(max_members=max_members, progress_callback=progress_callback)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger.get_stats() if self.trigger else {},
            "sweep": dict(self.sweeper.stats) if self.sweeper else {},
        }
