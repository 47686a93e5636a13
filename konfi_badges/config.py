"""
Engine configuration loaded from environment variables (.env supported).
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

RECONCILE_MODES = ("background", "inline")


@dataclass
class EngineConfig:
    """Configuration for the badge engine, its trigger and the nightly sweep"""
    # MongoDB configuration
    mongo_uri: str = None
    mongo_db_name: str = "konfi"
    events_collection: str = "point_events"
    badges_collection: str = "custom_badges"
    awards_collection: str = "konfi_badges"
    reconciliations_collection: str = "badge_reconciliations"

    # Trigger configuration
    reconcile_mode: str = "background"
    reconcile_workers: int = 4
    reconcile_timeout: float = 30.0
    reconcile_max_retries: int = 2

    # Sweep configuration
    sweep_batch_size: int = 50
    sweep_max_concurrent: int = 5
    nightly_sweep_time: str = "02:00"

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build the configuration from environment variables"""
        config = cls(
            mongo_uri=os.getenv("MONGO_URI"),
            mongo_db_name=os.getenv("MONGO_DB_NAME", "konfi"),
            events_collection=os.getenv("EVENTS_COLLECTION", "point_events"),
            badges_collection=os.getenv("BADGES_COLLECTION", "custom_badges"),
            awards_collection=os.getenv("AWARDS_COLLECTION", "konfi_badges"),
            reconciliations_collection=os.getenv("RECONCILIATIONS_COLLECTION", "badge_reconciliations"),
            reconcile_mode=os.getenv("RECONCILE_MODE", "background").lower(),
            reconcile_workers=int(os.getenv("RECONCILE_WORKERS", "4")),
            reconcile_timeout=float(os.getenv("RECONCILE_TIMEOUT", "30")),
            reconcile_max_retries=int(os.getenv("RECONCILE_MAX_RETRIES", "2")),
            sweep_batch_size=int(os.getenv("SWEEP_BATCH_SIZE", "50")),
            sweep_max_concurrent=int(os.getenv("SWEEP_MAX_CONCURRENT", "5")),
            nightly_sweep_time=os.getenv("NIGHTLY_SWEEP_TIME", "02:00"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
        config.validate()
        return config

    def validate(self):
        if not self.mongo_uri:
            raise ValueError("Missing required environment variable: MONGO_URI")
        if self.reconcile_mode not in RECONCILE_MODES:
            raise ValueError(
                f"RECONCILE_MODE must be one of {', '.join(RECONCILE_MODES)}, got {self.reconcile_mode!r}"
            )
        if self.reconcile_workers < 1:
            raise ValueError("RECONCILE_WORKERS must be at least 1")
        if self.sweep_max_concurrent < 1:
            raise ValueError("SWEEP_MAX_CONCURRENT must be at least 1")
