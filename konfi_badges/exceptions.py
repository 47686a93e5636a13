import logging

logger = logging.getLogger(__name__)


class CriteriaConfigError(Exception):
    def __init__(self, badge_id, kind: str, reason: str):
        self.badge_id = badge_id
        self.kind = kind
        self.reason = reason
        super().__init__(f"Badge {badge_id} ({kind}): {reason}")

    def log_config_error(self):
        logger.warning("⚠️  Badge criteria misconfigured:")
        logger.warning(f"  ➤ Badge  : {self.badge_id}")
        logger.warning(f"  ➤ Kind   : {self.kind}")
        logger.warning(f"  ➤ Reason : {self.reason}")


class DBError(Exception):
    def __init__(self, status: int, reason: str, collection: str, message: str):
        super().__init__(message)
        self.message = message
        self.status = status
        self.reason = reason
        self.collection = collection

    def log_db_error(self):
        logger.error("❌ Database Request Failed:")
        logger.error(f"  ➤ Error  : {self.message}")
        logger.error(f"  ➤ Status : {self.status}")
        logger.error(f"  ➤ Reason : {self.reason}")
        logger.error(f"  ➤ Collection : {self.collection}")
