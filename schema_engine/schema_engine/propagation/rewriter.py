"""Pure rewrites of a rule definition for rename, retype, and delete.

Each function takes the definition as currently stored plus the references
recorded by the scanner, and returns a *new* definition -- the input is
never mutated.  References are applied in scanner order.
"""

from __future__ import annotations

import logging

from schema_engine.errors import StalePlanError, UnsafeRewriteError
from schema_engine.models.attribute import AttributeType
from schema_engine.models.change import RewriteInstruction, RewriteKind
from schema_engine.models.impact import AttributeReference, ReferenceLocation, ReferencePosition
from schema_engine.models.rule import (
    Assignment,
    Comparison,
    Group,
    NodePath,
    RuleDefinition,
    count_leaves,
    node_at,
)
from schema_engine.propagation.compat import retype_violation
from schema_engine.propagation.scanner import replace_root

logger = logging.getLogger(__name__)


def _tree(definition: RuleDefinition, location: ReferenceLocation) -> Group:
    return definition.conditions if location == ReferenceLocation.CONDITION else definition.actions


def _leaf(definition: RuleDefinition, ref: AttributeReference) -> Comparison | Assignment:
    """Resolve the leaf a reference points at, checking it still matches."""
    try:
        node = node_at(_tree(definition, ref.location), ref.path)
    except LookupError as exc:
        raise StalePlanError(f"{ref.location.value} at path {list(ref.path)} no longer exists") from exc
    if isinstance(node, Group):
        raise StalePlanError(f"{ref.location.value} at path {list(ref.path)} is now a group")

    if ref.position == ReferencePosition.VALUE:
        current = node.value if node.value_is_field else None
    elif isinstance(node, Comparison):
        current = node.field
    else:
        current = node.target_field
    if current != ref.field_path:
        raise StalePlanError(
            f"expected '{ref.field_path}' at {ref.location.value} path {list(ref.path)}, found '{current}'"
        )
    return node


def rename_references(
    definition: RuleDefinition,
    refs: list[AttributeReference],
    attribute_name: str,
    new_name: str,
    schema_name: str | None = None,
) -> RuleDefinition:
    """Replace the root identifier of every referenced path with *new_name*."""
    result = definition.model_copy(deep=True)
    for ref in refs:
        node = _leaf(result, ref)
        renamed = replace_root(ref.field_path, attribute_name, new_name, schema_name)
        if ref.position == ReferencePosition.VALUE:
            node.value = renamed
        elif isinstance(node, Comparison):
            node.field = renamed
        else:
            node.target_field = renamed
    return result


def retype_references(
    definition: RuleDefinition,
    refs: list[AttributeReference],
    new_type: AttributeType,
) -> RuleDefinition:
    """Record *new_type* as the value kind of every referencing leaf.

    Raises :class:`UnsafeRewriteError` on the first reference whose literal
    or operator would need reinterpretation under the new kind.
    """
    result = definition.model_copy(deep=True)
    for ref in refs:
        node = _leaf(result, ref)
        violation = retype_violation(ref, new_type)
        if violation is not None:
            raise UnsafeRewriteError(violation)
        if ref.position == ReferencePosition.SUBJECT:
            node.value_type = new_type
    return result


def _prune(root: Group, path: NodePath) -> None:
    """Remove the node at *path*, then any ancestor group left empty.

    The root group itself is never removed.
    """
    parent = node_at(root, path[:-1])
    assert isinstance(parent, Group)  # noqa: S101
    del parent.children[path[-1]]
    current = path[:-1]
    while current:
        group = node_at(root, current)
        if isinstance(group, Group) and not group.children:
            parent = node_at(root, current[:-1])
            assert isinstance(parent, Group)  # noqa: S101
            del parent.children[current[-1]]
            current = current[:-1]
        else:
            break


def remove_references(definition: RuleDefinition, refs: list[AttributeReference]) -> RuleDefinition:
    """Remove every referencing leaf, collapsing groups that become empty.

    Raises :class:`UnsafeRewriteError` when the removal would leave the
    rule without any conditions (or without any actions) that it had
    before.  Deleting a whole rule is never done implicitly.
    """
    result = definition.model_copy(deep=True)
    for ref in refs:
        _leaf(result, ref)

    for location in (ReferenceLocation.CONDITION, ReferenceLocation.ACTION):
        root = _tree(result, location)
        # A leaf may carry both a subject and a value reference.
        paths = sorted({ref.path for ref in refs if ref.location == location}, reverse=True)
        if not paths:
            continue
        before = count_leaves(root)
        # Reverse lexicographic order keeps the remaining (smaller) paths valid.
        for path in paths:
            if not path:
                raise StalePlanError(f"{location.value} root is not a leaf")
            _prune(root, path)
        if before > 0 and count_leaves(root) == 0:
            raise UnsafeRewriteError(
                f"removing {len(paths)} {location.value}(s) would leave the rule with no {location.value}s"
            )
    return result


def apply_instruction(
    definition: RuleDefinition,
    refs: list[AttributeReference],
    instruction: RewriteInstruction,
    schema_name: str | None = None,
) -> RuleDefinition:
    """Dispatch *instruction* to the matching rewrite."""
    if instruction.kind == RewriteKind.REPLACE_IDENTIFIER:
        if not instruction.new_name:
            raise ValueError("REPLACE_IDENTIFIER requires new_name")
        return rename_references(definition, refs, instruction.attribute_name, instruction.new_name, schema_name)
    if instruction.kind == RewriteKind.UPDATE_VALUE_KIND:
        if instruction.new_type is None:
            raise ValueError("UPDATE_VALUE_KIND requires new_type")
        return retype_references(definition, refs, instruction.new_type)
    if instruction.kind == RewriteKind.REMOVE_CLAUSE:
        return remove_references(definition, refs)
    raise ValueError(f"Unsupported rewrite kind: {instruction.kind}")
