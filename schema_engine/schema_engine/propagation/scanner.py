"""Reference scanner -- finds every reference to one attribute inside a rule.

The scanner is a pure function of its inputs.  It walks the condition tree
(when the schema is one of the rule's input bindings) and the action tree
(when it is one of the output bindings) in left-to-right depth-first order
and records each leaf whose attribute path is rooted at the analysed
attribute.  That order is preserved in the output and later reused as the
rewrite application order.

Matching is exact on the *root segment* of a dotted path: ``order`` matches
``order`` and ``order.lines[0].sku`` but never ``orderId``.  A leading
segment equal to the schema's own name (``Order.total``) is treated as a
type qualifier and skipped.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from schema_engine.models.impact import (
    AttributeReference,
    ReferenceLocation,
    ReferencePosition,
)
from schema_engine.models.rule import (
    ActionType,
    Assignment,
    Comparison,
    ConditionOperator,
    Group,
    Rule,
    walk,
)

logger = logging.getLogger(__name__)

_DEFAULT_MAX_DEPTH: int = 64

# Display symbols for the detail string.  Operators without an entry are
# rendered by name.
_OPERATOR_SYMBOLS: dict[ConditionOperator, str] = {
    ConditionOperator.EQUALS: "==",
    ConditionOperator.NOT_EQUALS: "!=",
    ConditionOperator.GREATER_THAN: ">",
    ConditionOperator.GREATER_THAN_OR_EQUALS: ">=",
    ConditionOperator.LESS_THAN: "<",
    ConditionOperator.LESS_THAN_OR_EQUALS: "<=",
}

_VALUELESS_OPERATORS: frozenset[ConditionOperator] = frozenset(
    {ConditionOperator.IS_NULL, ConditionOperator.IS_NOT_NULL}
)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def _segment_name(segment: str) -> str:
    """Strip an index suffix: ``lines[0]`` -> ``lines``."""
    return segment.split("[", 1)[0]


def root_segment_index(field_path: str, schema_name: str | None) -> int:
    """Index of the segment that names the top-level attribute.

    ``0`` for plain paths, ``1`` when the path is qualified with the
    schema's own name.
    """
    segments = field_path.split(".")
    if schema_name and len(segments) > 1 and segments[0] == schema_name:
        return 1
    return 0


def root_attribute(field_path: str, schema_name: str | None = None) -> str:
    """Name of the top-level attribute *field_path* is rooted at."""
    segments = field_path.split(".")
    return _segment_name(segments[root_segment_index(field_path, schema_name)])


def references_attribute(field_path: str | None, attribute_name: str, schema_name: str | None = None) -> bool:
    """True when *field_path* is rooted at *attribute_name*."""
    if not field_path:
        return False
    segments = field_path.split(".")
    index = root_segment_index(field_path, schema_name)
    return _segment_name(segments[index]) == attribute_name


def replace_root(field_path: str, attribute_name: str, new_name: str, schema_name: str | None = None) -> str:
    """Return *field_path* with its root attribute renamed.

    Qualifiers, nested segments, and index suffixes are preserved.
    """
    segments = field_path.split(".")
    index = root_segment_index(field_path, schema_name)
    segment = segments[index]
    if _segment_name(segment) != attribute_name:
        raise ValueError(f"Path '{field_path}' is not rooted at '{attribute_name}'.")
    segments[index] = new_name + segment[len(attribute_name) :]
    return ".".join(segments)


# ---------------------------------------------------------------------------
# Detail rendering
# ---------------------------------------------------------------------------


def _render_value(value: Any, value_is_field: bool) -> str:
    if value_is_field:
        return str(value)
    if isinstance(value, str):
        return json.dumps(value)
    if isinstance(value, bool) or value is None:
        return json.dumps(value)
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, sort_keys=True, default=str)


def render_comparison(node: Comparison) -> str:
    """Human-readable clause, e.g. ``orderTotal > 100``."""
    if node.operator == ConditionOperator.IS_NULL:
        return f"{node.field} is null"
    if node.operator == ConditionOperator.IS_NOT_NULL:
        return f"{node.field} is not null"
    symbol = _OPERATOR_SYMBOLS.get(node.operator, node.operator.value)
    return f"{node.field} {symbol} {_render_value(node.value, node.value_is_field)}"


def render_assignment(node: Assignment) -> str:
    """Human-readable action, e.g. ``MODIFY discount = 0.1``."""
    target = node.target_field or ""
    if node.action_type == ActionType.MODIFY:
        return f"MODIFY {target} = {_render_value(node.value, node.value_is_field)}"
    return f"{node.action_type.value} {target}".rstrip()


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------


class ReferenceScanner:
    """Extract :class:`AttributeReference` entries from a rule.

    Parameters
    ----------
    max_depth:
        Maximum nesting depth accepted.  Raises ``ValueError`` beyond it;
        rule trees are acyclic, so hitting the bound means malformed input.
    """

    def __init__(self, *, max_depth: int = _DEFAULT_MAX_DEPTH) -> None:
        self._max_depth = max_depth

    def scan(
        self,
        rule: Rule,
        schema_id: int,
        attribute_name: str,
        schema_name: str | None = None,
    ) -> list[AttributeReference]:
        """Return every reference to *attribute_name* of *schema_id* in *rule*.

        A rule not bound to the schema yields an empty list.
        """
        refs: list[AttributeReference] = []
        if schema_id in rule.input_schema_ids:
            refs.extend(
                self._scan_tree(
                    rule.id,
                    rule.definition.conditions,
                    ReferenceLocation.CONDITION,
                    attribute_name,
                    schema_name,
                )
            )
        if schema_id in rule.output_schema_ids:
            refs.extend(
                self._scan_tree(
                    rule.id,
                    rule.definition.actions,
                    ReferenceLocation.ACTION,
                    attribute_name,
                    schema_name,
                )
            )
        return refs

    def _scan_tree(
        self,
        rule_id: int,
        root: Group,
        location: ReferenceLocation,
        attribute_name: str,
        schema_name: str | None,
    ) -> list[AttributeReference]:
        refs: list[AttributeReference] = []
        for path, node in walk(root):
            if len(path) > self._max_depth:
                raise ValueError(
                    f"Rule {rule_id} exceeds max_depth={self._max_depth} in its "
                    f"{location.value} tree at path {path!r}."
                )
            if isinstance(node, Comparison):
                refs.extend(self._match_comparison(rule_id, path, node, attribute_name, schema_name))
            elif isinstance(node, Assignment):
                refs.extend(self._match_assignment(rule_id, path, node, attribute_name, schema_name))
        return refs

    @staticmethod
    def _match_comparison(
        rule_id: int,
        path: tuple[int, ...],
        node: Comparison,
        attribute_name: str,
        schema_name: str | None,
    ) -> list[AttributeReference]:
        refs: list[AttributeReference] = []
        detail = render_comparison(node)
        if references_attribute(node.field, attribute_name, schema_name):
            has_literal = not node.value_is_field and node.operator not in _VALUELESS_OPERATORS
            refs.append(
                AttributeReference(
                    rule_id=rule_id,
                    location=ReferenceLocation.CONDITION,
                    path=path,
                    position=ReferencePosition.SUBJECT,
                    field_path=node.field,
                    detail=detail,
                    operator=node.operator.value,
                    literal=node.value if has_literal else None,
                    has_literal=has_literal,
                    counterpart_path=node.value if node.value_is_field and isinstance(node.value, str) else None,
                )
            )
        if (
            node.value_is_field
            and isinstance(node.value, str)
            and references_attribute(node.value, attribute_name, schema_name)
        ):
            refs.append(
                AttributeReference(
                    rule_id=rule_id,
                    location=ReferenceLocation.CONDITION,
                    path=path,
                    position=ReferencePosition.VALUE,
                    field_path=node.value,
                    detail=detail,
                    operator=node.operator.value,
                    counterpart_path=node.field,
                )
            )
        return refs

    @staticmethod
    def _match_assignment(
        rule_id: int,
        path: tuple[int, ...],
        node: Assignment,
        attribute_name: str,
        schema_name: str | None,
    ) -> list[AttributeReference]:
        refs: list[AttributeReference] = []
        detail = render_assignment(node)
        if references_attribute(node.target_field, attribute_name, schema_name):
            has_literal = node.action_type == ActionType.MODIFY and not node.value_is_field
            refs.append(
                AttributeReference(
                    rule_id=rule_id,
                    location=ReferenceLocation.ACTION,
                    path=path,
                    position=ReferencePosition.SUBJECT,
                    field_path=node.target_field or "",
                    detail=detail,
                    operator=node.action_type.value,
                    literal=node.value if has_literal else None,
                    has_literal=has_literal,
                )
            )
        if (
            node.value_is_field
            and isinstance(node.value, str)
            and references_attribute(node.value, attribute_name, schema_name)
        ):
            refs.append(
                AttributeReference(
                    rule_id=rule_id,
                    location=ReferenceLocation.ACTION,
                    path=path,
                    position=ReferencePosition.VALUE,
                    field_path=node.value,
                    detail=detail,
                    operator=node.action_type.value,
                )
            )
        return refs
