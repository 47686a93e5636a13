from .points_ledger import PointsLedger, PointEvent, LedgerSnapshot, Totals
from .criteria import CriteriaDefinition, CriteriaKind, CRITERIA_TYPES
from .criteria_catalog import CriteriaCatalog
from .eligibility_evaluator import EligibilityEvaluator, EvaluationResult
from .award_store import AwardStore, Award
from .award_reconciler import AwardReconciler, NewlyAwardedBadge, BadgeProgress

__all__ = [
    "PointsLedger", "PointEvent", "LedgerSnapshot", "Totals",
    "CriteriaDefinition", "CriteriaKind", "CRITERIA_TYPES", "CriteriaCatalog",
    "EligibilityEvaluator", "EvaluationResult",
    "AwardStore", "Award",
    "AwardReconciler", "NewlyAwardedBadge", "BadgeProgress",
]
