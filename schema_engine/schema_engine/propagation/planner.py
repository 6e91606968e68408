"""Translate a change request and its impact into per-rule rewrite ops.

Planning is pure: no store is consulted.  When the rules seen during
analysis are supplied, every op is dry-run against them so that unsafe
rewrites (literal no longer representable, rule-emptying delete) are
flagged before any write, and rules the rewrite would leave unchanged are
dropped from the plan.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from schema_engine.errors import UnsafeRewriteError
from schema_engine.models.attribute import AttributeType, Schema
from schema_engine.models.change import (
    ChangePlan,
    ChangeRequest,
    ChangeType,
    RewriteInstruction,
    RewriteKind,
    RuleRewriteOp,
)
from schema_engine.models.impact import AttributeImpact, AttributeReference
from schema_engine.models.rule import Rule
from schema_engine.propagation.compat import retype_violation
from schema_engine.propagation.rewriter import apply_instruction
from schema_engine.propagation.scanner import root_attribute

logger = logging.getLogger(__name__)

_REWRITE_KINDS: dict[ChangeType, RewriteKind] = {
    ChangeType.RENAME: RewriteKind.REPLACE_IDENTIFIER,
    ChangeType.RETYPE: RewriteKind.UPDATE_VALUE_KIND,
    ChangeType.DELETE: RewriteKind.REMOVE_CLAUSE,
}


def build_instruction(request: ChangeRequest) -> RewriteInstruction:
    """The rewrite every reference of every rule receives for *request*."""
    return RewriteInstruction(
        kind=_REWRITE_KINDS[request.change_type],
        attribute_name=request.old_name,
        new_name=request.new_name if request.change_type == ChangeType.RENAME else None,
        new_type=request.new_type if request.change_type == ChangeType.RETYPE else None,
    )


def counterpart_type(usage: AttributeReference, schema: Schema | None, attribute_name: str) -> AttributeType | None:
    """Kind of the attribute on the other side of a field-to-field comparison.

    ``None`` when there is no such top-level attribute in *schema*, when the
    path reaches into a nested value, or when both sides are the attribute
    being changed.
    """
    if usage.counterpart_path is None or schema is None:
        return None
    name = root_attribute(usage.counterpart_path, schema.name)
    if usage.counterpart_path not in (name, f"{schema.name}.{name}"):
        return None
    if name == attribute_name:
        return None
    other = schema.get_attribute(name)
    return other.type if other is not None else None


class ChangePlanner:
    """Build a :class:`ChangePlan` from a request and its impact."""

    def plan(
        self,
        request: ChangeRequest,
        impact: AttributeImpact,
        *,
        schema: Schema | None = None,
        rules: Iterable[Rule] | None = None,
    ) -> ChangePlan:
        """Produce one op per affected rule, in impact order.

        Parameters
        ----------
        request:
            The change being planned.  ``confirm_propagation=False`` yields
            a preview plan that the executor refuses to run.
        impact:
            Analysis of ``request.old_name`` on the target schema.
        schema:
            The schema as read at planning time.  Its copy of the attribute
            becomes the expected prior state of the schema commit.
        rules:
            The rules the impact was computed from, for the dry-run.
        """
        if impact.attribute_name != request.old_name:
            raise ValueError(
                f"Impact was computed for '{impact.attribute_name}', "
                f"but the request changes '{request.old_name}'."
            )

        instruction = build_instruction(request)
        by_id = {rule.id: rule for rule in rules} if rules is not None else {}

        ops: list[RuleRewriteOp] = []
        for affected in impact.affected_rules:
            op = RuleRewriteOp(
                rule_id=affected.rule_id,
                rule_name=affected.rule_name,
                rule_version=affected.rule_version,
                usages=list(affected.usages),
                instruction=instruction,
            )

            if request.change_type == ChangeType.RETYPE and request.new_type is not None:
                for usage in affected.usages:
                    reason = retype_violation(
                        usage,
                        request.new_type,
                        counterpart_type(usage, schema, request.old_name),
                    )
                    if reason is not None:
                        op.unsafe_reason = reason
                        break

            rule = by_id.get(affected.rule_id)
            if op.unsafe_reason is None and rule is not None:
                try:
                    rewritten = apply_instruction(rule.definition, op.usages, instruction, impact.schema_name)
                except UnsafeRewriteError as exc:
                    op.unsafe_reason = str(exc)
                else:
                    if rewritten == rule.definition:
                        logger.debug("Rule %d already reflects the change; skipping", rule.id)
                        continue

            if op.unsafe_reason is not None:
                logger.info("Rule %d (%s) needs manual review: %s", op.rule_id, op.rule_name, op.unsafe_reason)
            ops.append(op)

        return ChangePlan(
            schema_id=impact.schema_id,
            schema_name=impact.schema_name,
            request=request,
            attribute=schema.get_attribute(request.old_name) if schema is not None else None,
            ops=ops,
            preview=not request.confirm_propagation,
        )
