"""Unit tests for schema_engine.propagation.compat."""

from __future__ import annotations

import pytest
from schema_engine.models.attribute import AttributeType
from schema_engine.models.impact import AttributeReference, ReferenceLocation, ReferencePosition
from schema_engine.propagation.compat import is_representable, retype_violation


def _ref(operator: str, literal: object = None, *, has_literal: bool = True, value_side: bool = False):
    return AttributeReference(
        rule_id=1,
        location=ReferenceLocation.CONDITION,
        path=(0,),
        position=ReferencePosition.VALUE if value_side else ReferencePosition.SUBJECT,
        field_path="quantity",
        detail=f"quantity {operator} {literal!r}",
        operator=operator,
        literal=literal,
        has_literal=has_literal,
    )


# ---------------------------------------------------------------------------
# is_representable
# ---------------------------------------------------------------------------


class TestIsRepresentable:
    @pytest.mark.parametrize(
        ("value", "kind", "expected"),
        [
            (5, AttributeType.INTEGER, True),
            (5.0, AttributeType.INTEGER, False),
            (True, AttributeType.INTEGER, False),
            (5, AttributeType.NUMBER, True),
            (2.5, AttributeType.NUMBER, True),
            (True, AttributeType.NUMBER, False),
            ("5", AttributeType.STRING, True),
            (5, AttributeType.STRING, False),
            (False, AttributeType.BOOLEAN, True),
            ([1], AttributeType.ARRAY, True),
            ({"a": 1}, AttributeType.OBJECT, True),
            (None, AttributeType.BOOLEAN, True),
        ],
    )
    def test_matrix(self, value, kind, expected):
        assert is_representable(value, kind) is expected


# ---------------------------------------------------------------------------
# retype_violation
# ---------------------------------------------------------------------------


class TestRetypeViolation:
    def test_numeric_literal_cannot_become_string(self):
        reason = retype_violation(_ref("greaterThan", 5), AttributeType.STRING)
        assert reason is not None
        assert "not representable as string" in reason

    def test_integer_to_number_is_safe(self):
        assert retype_violation(_ref("greaterThan", 5), AttributeType.NUMBER) is None

    def test_ordering_operator_on_boolean(self):
        reason = retype_violation(_ref("greaterThan", 5), AttributeType.BOOLEAN)
        assert reason is not None
        assert "not defined for boolean" in reason

    def test_string_operator_needs_string(self):
        reason = retype_violation(_ref("startsWith", "A"), AttributeType.INTEGER)
        assert reason is not None

    def test_contains_allows_array(self):
        assert retype_violation(_ref("contains", 3), AttributeType.ARRAY) is None

    def test_membership_checks_each_item(self):
        assert retype_violation(_ref("memberOf", [1, 2]), AttributeType.NUMBER) is None
        reason = retype_violation(_ref("memberOf", [1, "x"]), AttributeType.INTEGER)
        assert reason is not None
        assert "'x'" in reason

    def test_membership_requires_list(self):
        assert "not a list" in (retype_violation(_ref("memberOf", 3), AttributeType.INTEGER) or "")

    def test_null_literal_always_representable(self):
        assert retype_violation(_ref("equals", None), AttributeType.BOOLEAN) is None

    def test_field_comparison_skips_literal_check(self):
        ref = _ref("equals", None, has_literal=False, value_side=True)
        assert retype_violation(ref, AttributeType.OBJECT) is None

    def test_field_comparison_against_other_kind_is_unsafe(self):
        ref = _ref("equals", None, has_literal=False, value_side=True).model_copy(update={"counterpart_path": "total"})
        reason = retype_violation(ref, AttributeType.STRING, counterpart_type=AttributeType.NUMBER)
        assert "total" in (reason or "")

    def test_field_comparison_between_numeric_kinds_is_safe(self):
        ref = _ref("lessThan", None, has_literal=False, value_side=True)
        assert retype_violation(ref, AttributeType.NUMBER, counterpart_type=AttributeType.INTEGER) is None

    def test_containment_against_other_kind_is_safe(self):
        ref = _ref("contains", None, has_literal=False, value_side=True)
        assert retype_violation(ref, AttributeType.STRING, counterpart_type=AttributeType.ARRAY) is None

    def test_null_check_is_safe_for_any_kind(self):
        ref = _ref("isNull", None, has_literal=False)
        for kind in AttributeType:
            assert retype_violation(ref, kind) is None
