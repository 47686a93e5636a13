"""Shared MongoDB connection lifecycle for the engine components"""

import logging
import traceback
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient

logger = logging.getLogger(__name__)


class MongoComponent:
    """
    Base class for components backed by MongoDB.

    A component either borrows a shared Motor client/database (and never closes
    it) or owns its own connection, opened by ``connect_to_db`` or by entering
    the component as an async context manager.
    """

    component_name = "Component"

    def __init__(self, mongo_uri: str = None, db_name: str = None,
                 shared_db_client: Optional[AsyncIOMotorClient] = None, shared_db=None):
        self.mongo_uri = mongo_uri
        self.db_name = db_name
        # Use shared connection if provided, otherwise create own
        if shared_db_client is not None and shared_db is not None:
            self.client = shared_db_client
            self.db = shared_db
            self._owns_connection = False
            logger.debug(f"✅ {self.component_name} using shared MongoDB connection")
        else:
            self.client = None
            self.db = None
            self._owns_connection = True

    ############################################################################
                # Methods for connecting and disconnecting from MongoDB
    ############################################################################

    async def connect_to_db(self):
        """Establish connection to MongoDB using Motor (only if not using shared connection)."""
        if not self._owns_connection or self.client is not None:
            return

        try:
            self.client = AsyncIOMotorClient(self.mongo_uri)
            self.db = self.client[self.db_name]
            logger.info(f"✅ {self.component_name} connected to MongoDB")
        except Exception as e:
            logger.error(f"❌ Error connecting to database: {e}")
            raise

    def disconnect_from_db(self):
        """Close MongoDB connection (only if we own the connection)."""
        if not self._owns_connection:
            return

        if self.client:
            self.client.close()
            self.client = None
            self.db = None
            logger.info(f"🔌 {self.component_name} disconnected from MongoDB")

    ############################################################################
                    # Context manager for async operations
    ############################################################################

    async def __aenter__(self):
        if self._owns_connection:
            await self.connect_to_db()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            logger.warning(f"⚠️  Exception caught in {self.component_name} async context manager:")
            logger.warning(f"  Type: {exc_type.__name__}")
            logger.warning(f"  Message: {exc_val}")
            tb_lines = traceback.format_exception(exc_type, exc_val, exc_tb)
            logger.debug("🔍 Traceback:\n" + "".join(tb_lines))

        if self._owns_connection:
            self.disconnect_from_db()
