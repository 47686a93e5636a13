#!/usr/bin/env python3
"""
Criteria Catalog

The configured badges (``custom_badges`` collection): display metadata plus the
criteria each badge is awarded for. Only active badges are ever evaluated;
``is_hidden`` is a display concern and does not affect eligibility.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from konfi_badges.core.criteria import CriteriaDefinition, list_criteria_types
from konfi_badges.core.mongo_component import MongoComponent
from konfi_badges.exceptions import DBError

logger = logging.getLogger(__name__)

BADGE_METADATA_FIELDS = ("name", "icon", "description", "is_active", "is_hidden", "created_by")


class CriteriaCatalog(MongoComponent):
    """MongoDB-backed catalog of badge criteria definitions."""

    component_name = "Criteria Catalog"

    def __init__(self, mongo_uri: str = None, db_name: str = None,
                 shared_db_client: Optional[AsyncIOMotorClient] = None, shared_db=None,
                 collection_name: str = "custom_badges"):
        super().__init__(mongo_uri, db_name, shared_db_client, shared_db)
        self.collection_name = collection_name

    @property
    def collection(self):
        return self.db[self.collection_name]

    def _storage_error(self, action: str, error: Exception) -> DBError:
        return DBError(
            status=503,
            reason=f"Catalog {action} failed",
            collection=self.collection_name,
            message=str(error),
        )

    async def ensure_indexes(self):
        try:
            await self.collection.create_index("badge_id", unique=True)
            await self.collection.create_index("is_active")
        except PyMongoError as e:
            raise self._storage_error("index creation", e)

    ############################################################################
                            # Reads
    ############################################################################

    async def list_active_criteria(self) -> List[CriteriaDefinition]:
        """
        All active badges' criteria. Definitions with a broken configuration are
        returned too, flagged through ``config_error``, so callers can report them.
        """
        try:
            docs = await self.collection.find({"is_active": True}).sort("badge_id", 1).to_list(None)
        except PyMongoError as e:
            raise self._storage_error("read", e)
        return [CriteriaDefinition.from_document(doc) for doc in docs]

    async def get_criteria(self, badge_id: Any) -> Optional[CriteriaDefinition]:
        try:
            doc = await self.collection.find_one({"badge_id": badge_id})
        except PyMongoError as e:
            raise self._storage_error("read", e)
        if not doc:
            return None
        return CriteriaDefinition.from_document(doc)

    async def get_badges(self, badge_ids: Iterable[Any] = None) -> Dict[Any, Dict[str, Any]]:
        """Badge documents keyed by badge_id, for joining display metadata."""
        query = {} if badge_ids is None else {"badge_id": {"$in": list(badge_ids)}}
        try:
            docs = await self.collection.find(query).to_list(None)
        except PyMongoError as e:
            raise self._storage_error("read", e)
        return {doc["badge_id"]: doc for doc in docs}

    async def count_badges(self, active_only: bool = True) -> int:
        query = {"is_active": True} if active_only else {}
        try:
            return await self.collection.count_documents(query)
        except PyMongoError as e:
            raise self._storage_error("count", e)

    def list_criteria_types(self) -> Dict[str, Dict[str, Any]]:
        return list_criteria_types()

    ############################################################################
                            # Mutations
    ############################################################################

    async def upsert_criteria_definition(self, badge_id: Any, kind: str, threshold: int,
                                         extra: Dict[str, Any] = None, **metadata) -> CriteriaDefinition:
        """
        Create or replace a badge's criteria. The definition is validated before
        anything is written; an invalid one raises CriteriaConfigError.

        Args:
            badge_id: Badge identifier
            kind: One of the twelve criteria kinds
            threshold: Numeric threshold the kind compares against
            extra: Kind-specific parameters
            **metadata: Optional display fields (name, icon, description, is_active, is_hidden)

        Returns:
            The stored, validated definition
        """
        definition = CriteriaDefinition.build(badge_id, kind, threshold, extra)
        now = datetime.now(timezone.utc)

        update = {
            "criteria_type": definition.kind,
            "criteria_value": definition.threshold,
            "criteria_extra": definition.extra_to_document(),
            "updated_at": now,
        }
        for key in BADGE_METADATA_FIELDS:
            if key in metadata:
                update[key] = metadata[key]

        try:
            doc = await self.collection.find_one_and_update(
                {"badge_id": badge_id},
                {
                    "$set": update,
                    "$setOnInsert": {
                        "badge_id": badge_id,
                        "created_at": now,
                        **{k: v for k, v in (("is_active", True), ("is_hidden", False)) if k not in update},
                    },
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise self._storage_error("upsert", e)

        logger.info(f"🏷️  Saved criteria for badge {badge_id}: {definition.kind} >= {definition.threshold}")
        return CriteriaDefinition.from_document(doc) if doc else definition
