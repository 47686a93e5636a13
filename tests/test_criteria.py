#!/usr/bin/env python3
"""
Tests for criteria definitions: parsing of the kind-specific extra payload,
strict construction on the write path and lenient loading of stored badges.
"""
import pytest

from konfi_badges.core.criteria import (
    CRITERIA_TYPES,
    ActivityExtra,
    ActivityListExtra,
    CategoryExtra,
    CriteriaDefinition,
    CriteriaKind,
    NoExtra,
    TimeWindowExtra,
    list_criteria_types,
)
from konfi_badges.exceptions import CriteriaConfigError


class TestBuild:

    @pytest.mark.unit
    def test_kinds_without_extra_ignore_payload(self):
        definition = CriteriaDefinition.build(1, "total_points", 10, {"unused": True})

        assert definition.extra == NoExtra()
        assert definition.extra_to_document() is None

    @pytest.mark.unit
    @pytest.mark.parametrize("kind,extra,expected", [
        ("specific_activity", {"activity_id": 42}, ActivityExtra(42)),
        ("activity_combination", {"activity_ids": [1, 2, 2, 3]}, ActivityListExtra((1, 2, 3))),
        ("category_activities", {"required_category": " jugend "}, CategoryExtra("jugend")),
        ("time_based", {"days": "7"}, TimeWindowExtra(7)),
    ])
    def test_extra_variants(self, kind, extra, expected):
        assert CriteriaDefinition.build(1, kind, 1, extra).extra == expected

    @pytest.mark.unit
    def test_extra_accepts_json_text(self):
        definition = CriteriaDefinition.build(1, "activity_combination", 0, '{"activity_ids": [4, 5]}')

        assert definition.extra == ActivityListExtra((4, 5))
        assert definition.extra_to_document() == {"activity_ids": [4, 5]}

    @pytest.mark.unit
    @pytest.mark.parametrize("kind,extra", [
        ("specific_activity", None),
        ("specific_activity", {}),
        ("activity_combination", {"activity_ids": []}),
        ("activity_combination", {"activity_ids": "1,2"}),
        ("category_activities", {"required_category": ""}),
        ("time_based", {"days": 0}),
        ("time_based", {"days": True}),
        ("time_based", {"days": "a week"}),
        ("time_based", "not json"),
        ("time_based", "[7]"),
    ])
    def test_invalid_extra_is_rejected(self, kind, extra):
        with pytest.raises(CriteriaConfigError) as exc_info:
            CriteriaDefinition.build(5, kind, 1, extra)

        assert exc_info.value.badge_id == 5
        assert exc_info.value.kind == kind

    @pytest.mark.unit
    def test_unknown_kind_is_rejected(self):
        with pytest.raises(CriteriaConfigError, match="unknown criteria kind"):
            CriteriaDefinition.build(5, "moon_phase", 1)

    @pytest.mark.unit
    def test_non_numeric_threshold_is_rejected(self):
        with pytest.raises(CriteriaConfigError, match="threshold"):
            CriteriaDefinition.build(5, "total_points", "many")


class TestFromDocument:

    @pytest.mark.unit
    def test_valid_document(self):
        definition = CriteriaDefinition.from_document({
            "badge_id": 3,
            "criteria_type": "time_based",
            "criteria_value": 3,
            "criteria_extra": '{"days": 7}',
        })

        assert definition.is_valid
        assert definition.criteria_kind is CriteriaKind.TIME_BASED
        assert definition.extra == TimeWindowExtra(7)

    @pytest.mark.unit
    def test_broken_document_loads_with_config_error(self):
        definition = CriteriaDefinition.from_document({
            "badge_id": 3,
            "criteria_type": "category_activities",
            "criteria_value": "2",
            "criteria_extra": "{broken",
        })

        assert not definition.is_valid
        assert definition.threshold == 2
        assert definition.kind == "category_activities"

    @pytest.mark.unit
    def test_unknown_kind_keeps_stored_name(self):
        definition = CriteriaDefinition.from_document({"badge_id": 3, "criteria_type": "future_kind"})

        assert definition.kind == "future_kind"
        assert definition.criteria_kind is None
        assert definition.threshold == 0
        assert not definition.is_valid


class TestCriteriaTypes:

    @pytest.mark.unit
    def test_every_kind_is_described(self):
        assert set(CRITERIA_TYPES) == set(CriteriaKind)

    @pytest.mark.unit
    def test_listing_is_keyed_by_kind_name(self):
        types = list_criteria_types()

        assert types["time_based"]["extra"] == ["days"]
        assert "label" in types["streak"]
        assert len(types) == 12
