#!/usr/bin/env python3
"""
Eligibility Evaluator

Decides whether a member's ledger snapshot satisfies one badge's criteria and
how close the member is. Evaluation is a pure function of the snapshot, the
definition and the evaluation time: no storage access, no shared state, safe to
call repeatedly and concurrently.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, Optional

from konfi_badges.core.criteria import (
    ActivityExtra,
    ActivityListExtra,
    CategoryExtra,
    CriteriaDefinition,
    CriteriaKind,
    TimeWindowExtra,
)
from konfi_badges.core.points_ledger import LedgerSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationResult:
    eligible: bool
    progress: float
    error: Optional[str] = None

    def __iter__(self):
        return iter((self.eligible, self.progress))


INELIGIBLE = EvaluationResult(False, 0.0)


def ratio(value: float, threshold: float) -> float:
    """Progress towards a threshold, clamped to [0, 1]. A threshold <= 0 is always met."""
    if threshold <= 0:
        return 1.0
    return max(0.0, min(value / threshold, 1.0))


def threshold_result(value: float, threshold: int) -> EvaluationResult:
    return EvaluationResult(value >= threshold, ratio(value, threshold))


def longest_daily_streak(days: Iterable[date]) -> int:
    """Length of the longest run of consecutive calendar days in ``days``."""
    ordered = sorted(set(days))
    longest = 0
    run = 0
    previous = None
    for day in ordered:
        if previous is not None and day - previous == timedelta(days=1):
            run += 1
        else:
            run = 1
        longest = max(longest, run)
        previous = day
    return longest


class EligibilityEvaluator:
    """
    One evaluation strategy per criteria kind. Unknown kinds and broken
    configurations evaluate to ineligible with a warning; they never raise.
    """

    def __init__(self):
        self._strategies: Dict[CriteriaKind, Callable[[LedgerSnapshot, CriteriaDefinition, date], EvaluationResult]] = {
            CriteriaKind.TOTAL_POINTS: self._total_points,
            CriteriaKind.GOTTESDIENST_POINTS: self._gottesdienst_points,
            CriteriaKind.GEMEINDE_POINTS: self._gemeinde_points,
            CriteriaKind.BONUS_POINTS: self._bonus_points,
            CriteriaKind.SPECIFIC_ACTIVITY: self._specific_activity,
            CriteriaKind.ACTIVITY_COUNT: self._activity_count,
            CriteriaKind.UNIQUE_ACTIVITIES: self._unique_activities,
            CriteriaKind.BOTH_CATEGORIES: self._both_categories,
            CriteriaKind.ACTIVITY_COMBINATION: self._activity_combination,
            CriteriaKind.CATEGORY_ACTIVITIES: self._category_activities,
            CriteriaKind.TIME_BASED: self._time_based,
            CriteriaKind.STREAK: self._streak,
        }

    def evaluate(self, snapshot: LedgerSnapshot, criteria: CriteriaDefinition,
                 now: datetime = None) -> EvaluationResult:
        """
        Evaluate one badge's criteria against a member's ledger snapshot.

        Args:
            snapshot: The member's point events
            criteria: The badge's criteria definition
            now: Evaluation time for window-based kinds (defaults to current UTC time)

        Returns:
            EvaluationResult with eligibility and progress in [0, 1]
        """
        if not criteria.is_valid:
            return self._misconfigured(criteria, criteria.config_error)

        kind = criteria.criteria_kind
        strategy = self._strategies.get(kind)
        if strategy is None:
            return self._misconfigured(criteria, "unknown criteria kind")

        if now is None:
            now = datetime.now(timezone.utc)
        today = now.date() if isinstance(now, datetime) else now

        try:
            return strategy(snapshot, criteria, today)
        except (TypeError, ValueError, AttributeError) as e:
            # extra did not match the variant the kind expects
            return self._misconfigured(criteria, str(e))

    def _misconfigured(self, criteria: CriteriaDefinition, reason: str) -> EvaluationResult:
        logger.warning(f"⚠️  Badge {criteria.badge_id} ({criteria.kind}) is misconfigured: {reason}")
        return EvaluationResult(False, 0.0, error=reason)

    @staticmethod
    def _expect(criteria: CriteriaDefinition, variant):
        if not isinstance(criteria.extra, variant):
            raise TypeError(f"extra must be {variant.__name__}, got {type(criteria.extra).__name__}")
        return criteria.extra

    ############################################################################
                            # Point-based kinds
    ############################################################################

    def _total_points(self, snapshot, criteria, today):
        return threshold_result(snapshot.totals().total_points, criteria.threshold)

    def _gottesdienst_points(self, snapshot, criteria, today):
        return threshold_result(snapshot.totals().gottesdienst, criteria.threshold)

    def _gemeinde_points(self, snapshot, criteria, today):
        return threshold_result(snapshot.totals().gemeinde, criteria.threshold)

    def _bonus_points(self, snapshot, criteria, today):
        return threshold_result(snapshot.totals().bonus, criteria.threshold)

    def _both_categories(self, snapshot, criteria, today):
        # One threshold applies to both categories
        totals = snapshot.totals()
        eligible = totals.gottesdienst >= criteria.threshold and totals.gemeinde >= criteria.threshold
        progress = min(ratio(totals.gottesdienst, criteria.threshold),
                       ratio(totals.gemeinde, criteria.threshold))
        return EvaluationResult(eligible, progress)

    ############################################################################
                            # Activity-based kinds
    ############################################################################

    def _specific_activity(self, snapshot, criteria, today):
        extra = self._expect(criteria, ActivityExtra)
        if snapshot.has_activity(extra.activity_id):
            return EvaluationResult(True, 1.0)
        return INELIGIBLE

    def _activity_count(self, snapshot, criteria, today):
        return threshold_result(snapshot.activity_count(), criteria.threshold)

    def _unique_activities(self, snapshot, criteria, today):
        return threshold_result(len(snapshot.distinct_activity_ids()), criteria.threshold)

    def _activity_combination(self, snapshot, criteria, today):
        extra = self._expect(criteria, ActivityListExtra)
        satisfied = sum(1 for activity_id in extra.activity_ids if snapshot.has_activity(activity_id))
        required = len(extra.activity_ids)
        return EvaluationResult(satisfied == required, satisfied / required)

    def _category_activities(self, snapshot, criteria, today):
        extra = self._expect(criteria, CategoryExtra)
        category = extra.required_category
        activity_ids = {
            event.activity_id
            for event in snapshot.activity_events()
            if event.activity_id is not None
            and (event.category == category or category in event.activity_categories)
        }
        return threshold_result(len(activity_ids), criteria.threshold)

    ############################################################################
                            # Time-based kinds
    ############################################################################

    def _time_based(self, snapshot, criteria, today):
        extra = self._expect(criteria, TimeWindowExtra)
        window_start = today - timedelta(days=extra.days)
        in_window = sum(
            1 for event in snapshot.activity_events()
            if window_start < event.occurred_at <= today
        )
        return threshold_result(in_window, criteria.threshold)

    def _streak(self, snapshot, criteria, today):
        return threshold_result(longest_daily_streak(snapshot.activity_dates()), criteria.threshold)
