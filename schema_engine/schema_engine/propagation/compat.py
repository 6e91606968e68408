"""Type compatibility rules for retype propagation.

Decides whether a reference can keep its meaning after the referenced
attribute changes kind.  Anything not explicitly allowed is treated as
unsafe (conservative), so the rule is surfaced for manual review instead
of being silently coerced.
"""

from __future__ import annotations

from typing import Any

from schema_engine.models.attribute import AttributeType
from schema_engine.models.impact import AttributeReference, ReferencePosition
from schema_engine.models.rule import ConditionOperator

_ORDERED_KINDS: frozenset[AttributeType] = frozenset(
    {AttributeType.NUMBER, AttributeType.INTEGER, AttributeType.STRING}
)

# Operators that only make sense on a given set of attribute kinds.
# Operators absent from this table (equality, null checks) apply to any kind.
_OPERATOR_KINDS: dict[str, frozenset[AttributeType]] = {
    ConditionOperator.GREATER_THAN.value: _ORDERED_KINDS,
    ConditionOperator.GREATER_THAN_OR_EQUALS.value: _ORDERED_KINDS,
    ConditionOperator.LESS_THAN.value: _ORDERED_KINDS,
    ConditionOperator.LESS_THAN_OR_EQUALS.value: _ORDERED_KINDS,
    ConditionOperator.CONTAINS.value: frozenset({AttributeType.STRING, AttributeType.ARRAY}),
    ConditionOperator.NOT_CONTAINS.value: frozenset({AttributeType.STRING, AttributeType.ARRAY}),
    ConditionOperator.STARTS_WITH.value: frozenset({AttributeType.STRING}),
    ConditionOperator.ENDS_WITH.value: frozenset({AttributeType.STRING}),
    ConditionOperator.MATCHES.value: frozenset({AttributeType.STRING}),
    # Dates travel as ISO strings.
    ConditionOperator.BEFORE.value: frozenset({AttributeType.STRING}),
    ConditionOperator.AFTER.value: frozenset({AttributeType.STRING}),
}

_NUMERIC_KINDS: frozenset[AttributeType] = frozenset({AttributeType.NUMBER, AttributeType.INTEGER})

_MEMBERSHIP_OPERATORS: frozenset[str] = frozenset(
    {ConditionOperator.MEMBER_OF.value, ConditionOperator.NOT_MEMBER_OF.value}
)

# Operators whose literal is a fragment of the attribute rather than a value of it.
_FRAGMENT_OPERATORS: frozenset[str] = frozenset(
    {
        ConditionOperator.CONTAINS.value,
        ConditionOperator.NOT_CONTAINS.value,
        ConditionOperator.STARTS_WITH.value,
        ConditionOperator.ENDS_WITH.value,
        ConditionOperator.MATCHES.value,
    }
)


def is_representable(value: Any, kind: AttributeType) -> bool:
    """True when the literal *value* is a valid value of *kind* as-is.

    ``None`` is representable in every kind.  ``bool`` is never accepted as
    a number, and floats are not accepted as integers even when integral.
    """
    if value is None:
        return True
    if kind == AttributeType.STRING:
        return isinstance(value, str)
    if kind == AttributeType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if kind == AttributeType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind == AttributeType.BOOLEAN:
        return isinstance(value, bool)
    if kind == AttributeType.ARRAY:
        return isinstance(value, list)
    if kind == AttributeType.OBJECT:
        return isinstance(value, dict)
    return False


def kinds_comparable(left: AttributeType, right: AttributeType) -> bool:
    """True when values of the two kinds can be compared directly."""
    return left == right or (left in _NUMERIC_KINDS and right in _NUMERIC_KINDS)


def retype_violation(
    ref: AttributeReference,
    new_type: AttributeType,
    counterpart_type: AttributeType | None = None,
) -> str | None:
    """Explain why *ref* cannot follow a retype to *new_type*, or ``None`` if it can.

    *counterpart_type* is the kind of the attribute on the other side of a
    field-to-field comparison, when it is known.
    """
    operator = ref.operator or ""

    # Operator / kind compatibility applies to both sides of a comparison.
    allowed = _OPERATOR_KINDS.get(operator)
    if allowed is not None and new_type not in allowed:
        return f"operator '{operator}' in '{ref.detail}' is not defined for {new_type.value} values"

    if (
        counterpart_type is not None
        and operator not in _MEMBERSHIP_OPERATORS
        and operator not in _FRAGMENT_OPERATORS
        and not kinds_comparable(new_type, counterpart_type)
    ):
        return (
            f"'{ref.detail}' would compare {new_type.value} with '{ref.counterpart_path}' "
            f"of type {counterpart_type.value}"
        )

    if ref.position == ReferencePosition.VALUE or not ref.has_literal:
        return None

    literal = ref.literal
    if operator in _MEMBERSHIP_OPERATORS:
        if not isinstance(literal, list):
            return f"membership literal in '{ref.detail}' is not a list"
        bad = [item for item in literal if not is_representable(item, new_type)]
        if bad:
            return f"literal(s) {bad!r} in '{ref.detail}' are not representable as {new_type.value}"
        return None

    if operator in _FRAGMENT_OPERATORS:
        if new_type == AttributeType.ARRAY:
            # Element containment: any scalar literal is acceptable.
            return None
        if not isinstance(literal, str):
            return f"literal {literal!r} in '{ref.detail}' is not a string"
        return None

    if not is_representable(literal, new_type):
        return f"literal {literal!r} in '{ref.detail}' is not representable as {new_type.value}"
    return None
