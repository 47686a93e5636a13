"""
Badge criteria definitions.

Each badge carries one criteria kind, an integer threshold and a kind-specific
``extra`` payload. The payload is parsed into a typed variant once, when the
definition is loaded, so the evaluator never sees raw JSON.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from konfi_badges.exceptions import CriteriaConfigError


class CriteriaKind(Enum):
    TOTAL_POINTS = "total_points"
    GOTTESDIENST_POINTS = "gottesdienst_points"
    GEMEINDE_POINTS = "gemeinde_points"
    BONUS_POINTS = "bonus_points"
    SPECIFIC_ACTIVITY = "specific_activity"
    ACTIVITY_COUNT = "activity_count"
    UNIQUE_ACTIVITIES = "unique_activities"
    BOTH_CATEGORIES = "both_categories"
    ACTIVITY_COMBINATION = "activity_combination"
    CATEGORY_ACTIVITIES = "category_activities"
    TIME_BASED = "time_based"
    STREAK = "streak"


@dataclass(frozen=True)
class NoExtra:
    pass


@dataclass(frozen=True)
class ActivityExtra:
    activity_id: Any


@dataclass(frozen=True)
class ActivityListExtra:
    activity_ids: Tuple[Any, ...]


@dataclass(frozen=True)
class CategoryExtra:
    required_category: str


@dataclass(frozen=True)
class TimeWindowExtra:
    days: int


CriteriaExtra = Union[NoExtra, ActivityExtra, ActivityListExtra, CategoryExtra, TimeWindowExtra]


def _as_mapping(raw: Any) -> Dict[str, Any]:
    # Stored payloads may still be JSON text (criteria_extra column)
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, dict):
        raise ValueError(f"expected an object, got {type(raw).__name__}")
    return raw


def _parse_activity(raw: Dict[str, Any]) -> ActivityExtra:
    if raw.get("activity_id") is None:
        raise ValueError("extra.activity_id is required")
    return ActivityExtra(activity_id=raw["activity_id"])


def _parse_activity_list(raw: Dict[str, Any]) -> ActivityListExtra:
    ids = raw.get("activity_ids")
    if not isinstance(ids, (list, tuple)) or not ids:
        raise ValueError("extra.activity_ids must be a non-empty list")
    if any(activity_id is None for activity_id in ids):
        raise ValueError("extra.activity_ids must not contain nulls")
    # Duplicates would inflate the denominator of the progress fraction
    return ActivityListExtra(activity_ids=tuple(dict.fromkeys(ids)))


def _parse_category(raw: Dict[str, Any]) -> CategoryExtra:
    category = raw.get("required_category")
    if not isinstance(category, str) or not category.strip():
        raise ValueError("extra.required_category must be a non-empty string")
    return CategoryExtra(required_category=category.strip())


def _parse_time_window(raw: Dict[str, Any]) -> TimeWindowExtra:
    days = raw.get("days")
    if isinstance(days, bool):
        raise ValueError("extra.days must be a positive integer")
    try:
        days = int(days)
    except (TypeError, ValueError):
        raise ValueError("extra.days must be a positive integer")
    if days <= 0:
        raise ValueError("extra.days must be a positive integer")
    return TimeWindowExtra(days=days)


EXTRA_PARSERS = {
    CriteriaKind.SPECIFIC_ACTIVITY: _parse_activity,
    CriteriaKind.ACTIVITY_COMBINATION: _parse_activity_list,
    CriteriaKind.CATEGORY_ACTIVITIES: _parse_category,
    CriteriaKind.TIME_BASED: _parse_time_window,
}


def parse_extra(badge_id: Any, kind: CriteriaKind, raw: Any) -> CriteriaExtra:
    """Validate ``raw`` against the schema ``kind`` requires. Raises CriteriaConfigError."""
    parser = EXTRA_PARSERS.get(kind)
    if parser is None:
        return NoExtra()
    try:
        return parser(_as_mapping(raw))
    except (ValueError, TypeError) as e:
        raise CriteriaConfigError(badge_id, kind.value, str(e))


def parse_kind(badge_id: Any, raw_kind: Any) -> CriteriaKind:
    try:
        return CriteriaKind(raw_kind)
    except ValueError:
        raise CriteriaConfigError(badge_id, str(raw_kind), "unknown criteria kind")


@dataclass(frozen=True)
class CriteriaDefinition:
    """
    A badge's eligibility rule.

    ``kind`` is kept as the stored string so definitions written by a newer
    catalog still load. When the kind is unknown or ``extra`` is malformed,
    ``config_error`` explains why and the badge is never awarded.
    """
    badge_id: Any
    kind: str
    threshold: int
    extra: Optional[CriteriaExtra] = None
    config_error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.config_error is None

    @property
    def criteria_kind(self) -> Optional[CriteriaKind]:
        try:
            return CriteriaKind(self.kind)
        except ValueError:
            return None

    @classmethod
    def build(cls, badge_id: Any, kind: Any, threshold: Any, extra: Any = None) -> "CriteriaDefinition":
        """Strict constructor for the catalog write path. Raises CriteriaConfigError."""
        criteria_kind = parse_kind(badge_id, kind)
        try:
            threshold = int(threshold)
        except (TypeError, ValueError):
            raise CriteriaConfigError(badge_id, criteria_kind.value, "threshold must be an integer")
        return cls(
            badge_id=badge_id,
            kind=criteria_kind.value,
            threshold=threshold,
            extra=parse_extra(badge_id, criteria_kind, extra),
        )

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "CriteriaDefinition":
        """Lenient constructor for stored badges: never raises for bad criteria."""
        badge_id = doc.get("badge_id")
        kind = doc.get("criteria_type")
        try:
            return cls.build(badge_id, kind, doc.get("criteria_value"), doc.get("criteria_extra"))
        except CriteriaConfigError as e:
            try:
                threshold = int(doc.get("criteria_value"))
            except (TypeError, ValueError):
                threshold = 0
            return cls(badge_id=badge_id, kind=str(kind), threshold=threshold, config_error=e.reason)

    def extra_to_document(self) -> Optional[Dict[str, Any]]:
        if self.extra is None or isinstance(self.extra, NoExtra):
            return None
        if isinstance(self.extra, ActivityListExtra):
            return {"activity_ids": list(self.extra.activity_ids)}
        return dict(self.extra.__dict__)


# Labels and help texts shown to administrators when configuring a badge
CRITERIA_TYPES = {
    CriteriaKind.TOTAL_POINTS: {
        "label": "🎯 Gesamtpunkte",
        "description": "Mindestanzahl aller Punkte",
        "help": "Badge wird vergeben, wenn die Summe aus Gottesdienst-, Gemeinde- und Bonuspunkten erreicht wird. Beispiel: Wert 20 = mindestens 20 Punkte insgesamt.",
    },
    CriteriaKind.GOTTESDIENST_POINTS: {
        "label": "📖 Gottesdienst-Punkte",
        "description": "Mindestanzahl gottesdienstlicher Punkte",
        "help": "Badge wird vergeben, wenn die angegebene Anzahl gottesdienstlicher Punkte erreicht wird. Beispiel: Wert 10 = mindestens 10 Gottesdienst-Punkte.",
    },
    CriteriaKind.GEMEINDE_POINTS: {
        "label": "🤝 Gemeinde-Punkte",
        "description": "Mindestanzahl gemeindlicher Punkte",
        "help": "Badge wird vergeben, wenn die angegebene Anzahl gemeindlicher Punkte erreicht wird. Beispiel: Wert 15 = mindestens 15 Gemeinde-Punkte.",
    },
    CriteriaKind.BOTH_CATEGORIES: {
        "label": "⚖️ Beide Kategorien",
        "description": "Mindestpunkte in beiden Bereichen",
        "help": "Badge wird vergeben, wenn sowohl bei Gottesdienst- als auch bei Gemeindepunkten der Mindestwert erreicht wird. Beispiel: Wert 5 = mindestens 5 Gottesdienst-Punkte UND 5 Gemeinde-Punkte.",
    },
    CriteriaKind.ACTIVITY_COUNT: {
        "label": "📊 Aktivitäten-Anzahl",
        "description": "Gesamtanzahl aller Aktivitäten",
        "help": "Badge wird vergeben, wenn die angegebene Anzahl von Aktivitäten absolviert wurde (egal welche). Beispiel: Wert 5 = mindestens 5 Aktivitäten.",
    },
    CriteriaKind.UNIQUE_ACTIVITIES: {
        "label": "🌟 Verschiedene Aktivitäten",
        "description": "Anzahl unterschiedlicher Aktivitäten",
        "help": "Mehrfache Teilnahme an derselben Aktivität zählt nur einmal. Beispiel: Wert 3 = 3 verschiedene Aktivitäten.",
    },
    CriteriaKind.SPECIFIC_ACTIVITY: {
        "label": "🎯 Spezifische Aktivität",
        "description": "Bestimmte Aktivität absolviert",
        "help": "Badge wird vergeben, sobald die ausgewählte Aktivität mindestens einmal absolviert wurde.",
        "extra": ["activity_id"],
    },
    CriteriaKind.CATEGORY_ACTIVITIES: {
        "label": "🏷️ Kategorie-Aktivitäten",
        "description": "Aktivitäten aus bestimmter Kategorie",
        "help": "Badge wird vergeben, wenn die angegebene Anzahl verschiedener Aktivitäten aus einer bestimmten Kategorie absolviert wurde. Beispiel: Wert 3 + Kategorie 'sonntagsgottesdienst'.",
        "extra": ["required_category"],
    },
    CriteriaKind.ACTIVITY_COMBINATION: {
        "label": "🎭 Aktivitäts-Kombination",
        "description": "Spezifische Kombination von Aktivitäten",
        "help": "Badge wird vergeben, wenn alle ausgewählten Aktivitäten mindestens einmal absolviert wurden.",
        "extra": ["activity_ids"],
    },
    CriteriaKind.TIME_BASED: {
        "label": "⏰ Zeitbasiert",
        "description": "Aktivitäten in einem Zeitraum",
        "help": "Badge wird vergeben, wenn die angegebene Anzahl von Aktivitäten innerhalb der letzten Tage absolviert wurde. Beispiel: Wert 3 + 7 Tage = 3 Aktivitäten in einer Woche.",
        "extra": ["days"],
    },
    CriteriaKind.STREAK: {
        "label": "🔥 Serie",
        "description": "Aufeinanderfolgende Aktivitätstage",
        "help": "Badge wird vergeben, wenn an der angegebenen Anzahl aufeinanderfolgender Tage jeweils mindestens eine Aktivität absolviert wurde.",
    },
    CriteriaKind.BONUS_POINTS: {
        "label": "💰 Bonuspunkte",
        "description": "Summe erhaltener Bonuspunkte",
        "help": "Badge wird vergeben, wenn die Summe der vergebenen Bonuspunkte den Wert erreicht.",
    },
}


def list_criteria_types() -> Dict[str, Dict[str, Any]]:
    """Label, description and help text per criteria kind, keyed by kind name."""
    return {kind.value: dict(info) for kind, info in CRITERIA_TYPES.items()}
