#!/usr/bin/env python3
"""
Points Ledger

Append-only record of every point contribution a member received: approved
activities, administrator bonus points and event attendance. The ledger is the
only driver of badge eligibility; all reads reflect the latest committed state.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from konfi_badges.core.mongo_component import MongoComponent
from konfi_badges.exceptions import DBError

logger = logging.getLogger(__name__)

CATEGORY_GOTTESDIENST = "gottesdienst"
CATEGORY_GEMEINDE = "gemeinde"
CATEGORIES = (CATEGORY_GOTTESDIENST, CATEGORY_GEMEINDE)

SOURCE_ACTIVITY = "activity"
SOURCE_BONUS = "bonus"
SOURCE_EVENT = "event"
SOURCES = (SOURCE_ACTIVITY, SOURCE_BONUS, SOURCE_EVENT)


def to_storage_datetime(value: date) -> datetime:
    """BSON has no date type; participation dates are stored as UTC midnight."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise ValueError(f"Cannot interpret {value!r} as a date")


@dataclass(frozen=True)
class PointEvent:
    """One immutable contribution to a member's point totals"""
    member_id: Any
    points: int
    source: str
    source_ref_id: Any
    occurred_at: date
    category: Optional[str] = None
    activity_id: Any = None
    activity_categories: Tuple[str, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.source not in SOURCES:
            raise ValueError(f"Unknown point source {self.source!r}")
        if self.category is not None and self.category not in CATEGORIES:
            raise ValueError(f"Unknown point category {self.category!r}")
        if self.source == SOURCE_BONUS and self.activity_id is not None:
            raise ValueError("Bonus points never reference an activity")
        # Streaks and time windows step in whole days
        object.__setattr__(self, "occurred_at", to_date(self.occurred_at))

    @property
    def is_activity(self) -> bool:
        return self.source == SOURCE_ACTIVITY

    def to_document(self) -> Dict[str, Any]:
        return {
            "member_id": self.member_id,
            "points": self.points,
            "source": self.source,
            "source_ref_id": self.source_ref_id,
            "occurred_at": to_storage_datetime(self.occurred_at),
            "category": self.category,
            "activity_id": self.activity_id,
            "activity_categories": list(self.activity_categories),
            "created_at": self.created_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PointEvent":
        return cls(
            member_id=doc["member_id"],
            points=int(doc.get("points", 0)),
            source=doc["source"],
            source_ref_id=doc.get("source_ref_id"),
            occurred_at=to_date(doc["occurred_at"]),
            category=doc.get("category"),
            activity_id=doc.get("activity_id"),
            activity_categories=tuple(doc.get("activity_categories") or ()),
            created_at=to_storage_datetime(doc.get("created_at") or datetime.now(timezone.utc)),
        )


@dataclass
class Totals:
    """Point totals of one member"""
    gottesdienst: int = 0
    gemeinde: int = 0
    bonus: int = 0

    @property
    def total_points(self) -> int:
        return self.gottesdienst + self.gemeinde + self.bonus

    def add(self, source: str, category: Optional[str], points: int):
        if source == SOURCE_BONUS:
            self.bonus += points
        elif category == CATEGORY_GOTTESDIENST:
            self.gottesdienst += points
        elif category == CATEGORY_GEMEINDE:
            self.gemeinde += points

    @classmethod
    def from_events(cls, events: Iterable[PointEvent]) -> "Totals":
        totals = cls()
        for event in events:
            totals.add(event.source, event.category, event.points)
        return totals

    def to_dict(self) -> Dict[str, int]:
        return {
            "gottesdienst": self.gottesdienst,
            "gemeinde": self.gemeinde,
            "bonus": self.bonus,
            "total_points": self.total_points,
        }


@dataclass(frozen=True)
class LedgerSnapshot:
    """All point events of one member at one moment, ordered by participation date"""
    member_id: Any
    events: Tuple[PointEvent, ...] = ()

    @classmethod
    def of(cls, member_id: Any, events: Iterable[PointEvent]) -> "LedgerSnapshot":
        ordered = sorted(events, key=lambda e: (e.occurred_at, e.created_at))
        return cls(member_id=member_id, events=tuple(ordered))

    def totals(self) -> Totals:
        return Totals.from_events(self.events)

    def activity_events(self) -> List[PointEvent]:
        return [e for e in self.events if e.is_activity]

    def distinct_activity_ids(self) -> Set[Any]:
        return {e.activity_id for e in self.activity_events() if e.activity_id is not None}

    def activity_count(self, activity_id: Any = None) -> int:
        if activity_id is None:
            return len(self.activity_events())
        return sum(1 for e in self.events if e.activity_id == activity_id)

    def has_activity(self, activity_id: Any) -> bool:
        return any(e.activity_id == activity_id for e in self.events)

    def activity_dates(self) -> List[date]:
        return sorted({e.occurred_at for e in self.activity_events()})


class PointsLedger(MongoComponent):
    """
    MongoDB-backed points ledger. Events are unique on (source, source_ref_id),
    so recording the same approval, bonus entry or event attendance twice
    stores it once.
    """

    component_name = "Points Ledger"

    def __init__(self, mongo_uri: str = None, db_name: str = None,
                 shared_db_client: Optional[AsyncIOMotorClient] = None, shared_db=None,
                 collection_name: str = "point_events"):
        super().__init__(mongo_uri, db_name, shared_db_client, shared_db)
        self.collection_name = collection_name

    @property
    def collection(self):
        return self.db[self.collection_name]

    def _storage_error(self, action: str, error: Exception) -> DBError:
        return DBError(
            status=503,
            reason=f"Ledger {action} failed",
            collection=self.collection_name,
            message=str(error),
        )

    async def ensure_indexes(self):
        """Create the uniqueness and lookup indexes of the ledger collection."""
        try:
            await self.collection.create_index(
                [("source", 1), ("source_ref_id", 1)], unique=True
            )
            await self.collection.create_index([("member_id", 1), ("occurred_at", 1)])
            await self.collection.create_index([("member_id", 1), ("activity_id", 1)])
        except PyMongoError as e:
            raise self._storage_error("index creation", e)

    ############################################################################
                            # Mutations
    ############################################################################

    async def record_event(self, event: PointEvent) -> PointEvent:
        """
        Append a point event to the ledger.

        Returns the stored event; when an event with the same source and
        source_ref_id already exists, that stored event is returned instead.
        """
        if event.source_ref_id is None:
            event = replace(event, source_ref_id=uuid.uuid4().hex)

        try:
            await self.collection.insert_one(event.to_document())
            logger.info(f"📝 Recorded {event.points} {event.source} points for member {event.member_id}")
            return event
        except DuplicateKeyError:
            existing = await self.collection.find_one(
                {"source": event.source, "source_ref_id": event.source_ref_id}
            )
            logger.debug(f"ℹ️  {event.source}:{event.source_ref_id} already recorded")
            return PointEvent.from_document(existing) if existing else event
        except PyMongoError as e:
            raise self._storage_error("insert", e)

    async def delete_event(self, source: str, source_ref_id: Any) -> Optional[PointEvent]:
        """Remove the event of an underlying record that was deleted. Returns the removed event."""
        try:
            doc = await self.collection.find_one_and_delete(
                {"source": source, "source_ref_id": source_ref_id}
            )
        except PyMongoError as e:
            raise self._storage_error("delete", e)

        if not doc:
            logger.warning(f"⚠️  No point event found for {source}:{source_ref_id}")
            return None

        logger.info(f"🗑️  Removed {source}:{source_ref_id} from member {doc['member_id']}")
        return PointEvent.from_document(doc)

    ############################################################################
                            # Reads
    ############################################################################

    async def get_events(self, member_id: Any) -> List[PointEvent]:
        """All point events of a member ordered by participation date."""
        try:
            cursor = self.collection.find({"member_id": member_id}).sort(
                [("occurred_at", 1), ("created_at", 1)]
            )
            docs = await cursor.to_list(length=None)
        except PyMongoError as e:
            raise self._storage_error("read", e)
        return [PointEvent.from_document(doc) for doc in docs]

    async def get_snapshot(self, member_id: Any) -> LedgerSnapshot:
        return LedgerSnapshot.of(member_id, await self.get_events(member_id))

    async def get_totals(self, member_id: Any) -> Totals:
        pipeline = [
            {"$match": {"member_id": member_id}},
            {"$group": {
                "_id": {"source": "$source", "category": "$category"},
                "points": {"$sum": "$points"},
            }},
        ]
        totals = Totals()
        try:
            async for group in self.collection.aggregate(pipeline):
                key = group["_id"]
                totals.add(key.get("source"), key.get("category"), int(group["points"]))
        except PyMongoError as e:
            raise self._storage_error("aggregation", e)
        return totals

    async def get_distinct_activity_ids(self, member_id: Any) -> Set[Any]:
        """Distinct activity ids among the member's activity-sourced events."""
        try:
            ids = await self.collection.distinct(
                "activity_id",
                {"member_id": member_id, "source": SOURCE_ACTIVITY, "activity_id": {"$ne": None}},
            )
        except PyMongoError as e:
            raise self._storage_error("read", e)
        return set(ids)

    async def get_activity_count(self, member_id: Any, activity_id: Any) -> int:
        try:
            return await self.collection.count_documents(
                {"member_id": member_id, "activity_id": activity_id}
            )
        except PyMongoError as e:
            raise self._storage_error("count", e)

    async def list_member_ids(self) -> List[Any]:
        """Every member that has at least one point event."""
        try:
            return list(await self.collection.distinct("member_id"))
        except PyMongoError as e:
            raise self._storage_error("read", e)
