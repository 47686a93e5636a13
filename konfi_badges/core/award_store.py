#!/usr/bin/env python3
"""
Award Store

Durable record of earned badges (``konfi_badges`` collection) plus the result
of each member's most recent reconciliation. Awards are unique on
(member_id, badge_id); the unique index is the only coordination between
concurrent reconciliations, in this process or any other.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from konfi_badges.core.mongo_component import MongoComponent
from konfi_badges.exceptions import DBError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Award:
    member_id: Any
    badge_id: Any
    earned_at: datetime

    def to_document(self) -> Dict[str, Any]:
        return {"member_id": self.member_id, "badge_id": self.badge_id, "earned_at": self.earned_at}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Award":
        return cls(member_id=doc["member_id"], badge_id=doc["badge_id"], earned_at=doc.get("earned_at"))


class AwardStore(MongoComponent):
    """MongoDB-backed award table with insert-or-ignore semantics."""

    component_name = "Award Store"

    def __init__(self, mongo_uri: str = None, db_name: str = None,
                 shared_db_client: Optional[AsyncIOMotorClient] = None, shared_db=None,
                 collection_name: str = "konfi_badges",
                 reconciliations_collection_name: str = "badge_reconciliations"):
        super().__init__(mongo_uri, db_name, shared_db_client, shared_db)
        self.collection_name = collection_name
        self.reconciliations_collection_name = reconciliations_collection_name

    @property
    def collection(self):
        return self.db[self.collection_name]

    @property
    def reconciliations(self):
        return self.db[self.reconciliations_collection_name]

    def _storage_error(self, action: str, error: Exception, collection: str = None) -> DBError:
        return DBError(
            status=503,
            reason=f"Award {action} failed",
            collection=collection or self.collection_name,
            message=str(error),
        )

    async def ensure_indexes(self):
        try:
            await self.collection.create_index([("member_id", 1), ("badge_id", 1)], unique=True)
            await self.reconciliations.create_index("member_id", unique=True)
        except PyMongoError as e:
            raise self._storage_error("index creation", e)

    ############################################################################
                            # Awards
    ############################################################################

    async def get_awards(self, member_id: Any) -> List[Award]:
        """All awards of a member, newest first."""
        try:
            docs = await self.collection.find({"member_id": member_id}).sort(
                "earned_at", DESCENDING
            ).to_list(None)
        except PyMongoError as e:
            raise self._storage_error("read", e)
        return [Award.from_document(doc) for doc in docs]

    async def insert_award(self, member_id: Any, badge_id: Any, earned_at: datetime = None) -> bool:
        """
        Persist an award unless it already exists.

        Returns:
            True if this call created the award, False if it was already there
        """
        award = Award(member_id, badge_id, earned_at or datetime.now(timezone.utc))
        try:
            await self.collection.insert_one(award.to_document())
            return True
        except DuplicateKeyError:
            # A concurrent reconciliation got there first
            logger.debug(f"ℹ️  Badge {badge_id} already awarded to member {member_id}")
            return False
        except PyMongoError as e:
            raise self._storage_error("insert", e)

    async def count_awards(self, member_id: Any) -> int:
        try:
            return await self.collection.count_documents({"member_id": member_id})
        except PyMongoError as e:
            raise self._storage_error("count", e)

    ############################################################################
                            # Reconciliation records
    ############################################################################

    async def record_reconciliation(self, member_id: Any, awarded: List[Dict[str, Any]],
                                    reconciled_at: datetime = None, complete: bool = True):
        """
        Store the badges the latest reconcile call created for a member.

        A record written with ``complete=False`` comes from a call that failed
        after persisting some awards; the next record appends to it instead of
        replacing it, so those awards are still reported.
        """
        carried = {"$cond": [
            {"$eq": ["$complete", False]},
            {"$concatArrays": [{"$ifNull": ["$awarded", []]}, {"$literal": awarded}]},
            {"$literal": awarded},
        ]}
        try:
            await self.reconciliations.update_one(
                {"member_id": member_id},
                [{"$set": {
                    "member_id": member_id,
                    "awarded": carried,
                    "complete": complete,
                    "reconciled_at": reconciled_at or datetime.now(timezone.utc),
                }}],
                upsert=True,
            )
        except PyMongoError as e:
            raise self._storage_error("reconciliation write", e, self.reconciliations_collection_name)

    async def get_newly_awarded(self, member_id: Any) -> Optional[Dict[str, Any]]:
        """The latest reconciliation record of a member, or None if never reconciled."""
        try:
            doc = await self.reconciliations.find_one({"member_id": member_id}, {"_id": 0})
        except PyMongoError as e:
            raise self._storage_error("reconciliation read", e, self.reconciliations_collection_name)
        return doc
