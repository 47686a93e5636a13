from .reconciliation_trigger import ReconciliationTrigger

__all__ = ["ReconciliationTrigger"]
