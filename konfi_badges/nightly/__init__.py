from .sweep import ReconciliationSweep, NightlyScheduler

__all__ = ["ReconciliationSweep", "NightlyScheduler"]
