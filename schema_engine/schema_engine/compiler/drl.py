"""Transpile rule definitions into Drools Rule Language (DRL) text.

The generated rule matches a single ``DynamicFact`` whose ``factType`` is the
rule's primary input schema.  Condition leaves become constraints on that
fact; the root condition group's children are comma-separated (implicit
AND) and nested groups render as parenthesised ``&&`` / ``||`` expressions.
Action leaves become statements in the ``then`` block, in tree order.

Output is deterministic: the same rule always yields byte-identical text,
so the content hash of the derived representation is stable.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from schema_engine.errors import CompileError
from schema_engine.models.rule import (
    ActionType,
    Assignment,
    Comparison,
    ConditionOperator,
    DerivedRepresentation,
    Group,
    GroupOperator,
    Rule,
    walk,
)
from schema_engine.propagation.scanner import root_segment_index

logger = logging.getLogger(__name__)

_DEFAULT_PACKAGE = "com.rules.generated"

_INDENT_RULE = "    "
_INDENT_BODY = "        "
_INDENT_CONSTRAINT = "            "

# Operators rendered as a plain binary operator between accessor and value.
_BINARY_OPERATORS: dict[ConditionOperator, str] = {
    ConditionOperator.EQUALS: "==",
    ConditionOperator.NOT_EQUALS: "!=",
    ConditionOperator.GREATER_THAN: ">",
    ConditionOperator.GREATER_THAN_OR_EQUALS: ">=",
    ConditionOperator.LESS_THAN: "<",
    ConditionOperator.LESS_THAN_OR_EQUALS: "<=",
    ConditionOperator.CONTAINS: "contains",
    ConditionOperator.NOT_CONTAINS: "not contains",
    ConditionOperator.BEFORE: "before",
    ConditionOperator.AFTER: "after",
}

_STRING_METHODS: dict[ConditionOperator, str] = {
    ConditionOperator.STARTS_WITH: "startsWith",
    ConditionOperator.ENDS_WITH: "endsWith",
    ConditionOperator.MATCHES: "matches",
}

_VALUE_TYPE_CLASSES: dict[str, str] = {
    "integer": "Integer",
    "number": "Double",
    "boolean": "Boolean",
    "string": "String",
}


# ---------------------------------------------------------------------------
# Value formatting
# ---------------------------------------------------------------------------


def escape_string(value: str | None) -> str:
    """Escape *value* for use inside a DRL double-quoted string."""
    if value is None:
        return ""
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def format_value(value: Any) -> str:
    """Render a literal as a DRL expression."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return f'"{escape_string(value)}"'
    # Structured literals travel as their JSON text.
    return f'"{escape_string(json.dumps(value, sort_keys=True, default=str))}"'


def _literal_class(value: Any) -> str | None:
    """Java boxed type used to read the attribute compared against *value*."""
    if isinstance(value, bool):
        return "Boolean"
    if isinstance(value, int):
        return "Integer"
    if isinstance(value, float):
        return "Double"
    if isinstance(value, str):
        return "String"
    return None


def compute_content_hash(text: str) -> str:
    """SHA-256 hex digest of the derived text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Compiler
# ---------------------------------------------------------------------------


class RuleCompiler:
    """Regenerate a rule's derived DRL representation.

    Parameters
    ----------
    package_name:
        DRL package stamped at the top of every generated rule.
    """

    def __init__(self, *, package_name: str = _DEFAULT_PACKAGE) -> None:
        self._package_name = package_name

    def regenerate_derived(self, rule: Rule) -> DerivedRepresentation:
        """Compile *rule* and hash the result.

        Raises
        ------
        CompileError
            If an action is missing a field its type requires.
        """
        text = self.transpile(rule)
        return DerivedRepresentation(text=text, content_hash=compute_content_hash(text))

    def transpile(self, rule: Rule) -> str:
        """Render *rule* as a complete DRL compilation unit."""
        logger.debug("Transpiling rule %d (%s) for fact type %s", rule.id, rule.name, rule.fact_type)
        lines: list[str] = [
            f"package {self._package_name};",
            "",
            "import java.util.*;",
            "import java.time.*;",
            "import com.ruleengine.drools.DynamicFact;",
            "import com.ruleengine.drools.ActionContext;",
            "",
            "global ActionContext actionContext;",
            "",
            f'rule "{escape_string(rule.name)}"',
        ]
        lines.extend(self._attributes(rule))
        lines.append(f"{_INDENT_RULE}when")
        lines.extend(self._lhs(rule))
        lines.append(f"{_INDENT_RULE}then")
        lines.extend(self._rhs(rule))
        lines.append("end")
        return "\n".join(lines) + "\n"

    # ------------------------------------------------------------------
    # Rule attributes
    # ------------------------------------------------------------------

    @staticmethod
    def _attributes(rule: Rule) -> list[str]:
        attrs: list[str] = []
        if rule.priority != 0:
            attrs.append(f"salience {rule.priority}")
        if not rule.enabled:
            attrs.append("enabled false")
        has_modify = any(
            isinstance(node, Assignment) and node.action_type == ActionType.MODIFY
            for _, node in walk(rule.definition.actions)
        )
        if has_modify:
            # Modifying the matched fact would otherwise re-fire this rule.
            attrs.append("no-loop true")
        if rule.activation_group:
            attrs.append(f'activation-group "{escape_string(rule.activation_group)}"')
        if rule.lock_on_active:
            attrs.append("lock-on-active true")
        if rule.date_effective:
            attrs.append(f'date-effective "{escape_string(rule.date_effective)}"')
        if rule.date_expires:
            attrs.append(f'date-expires "{escape_string(rule.date_expires)}"')
        return [f"{_INDENT_RULE}{attr}" for attr in attrs]

    # ------------------------------------------------------------------
    # Left-hand side
    # ------------------------------------------------------------------

    def _lhs(self, rule: Rule) -> list[str]:
        constraints: list[str] = []
        if rule.fact_type:
            constraints.append(f'factType == "{escape_string(rule.fact_type)}"')

        root = rule.definition.conditions
        if root.operator == GroupOperator.ALL:
            for child in root.children:
                constraints.extend(self._constraints(child, rule.fact_type))
        else:
            grouped = self._group_expression(root, rule.fact_type)
            if grouped:
                constraints.append(grouped)

        if not constraints:
            return [f"{_INDENT_BODY}$fact : DynamicFact()"]
        body = f",\n{_INDENT_CONSTRAINT}".join(constraints)
        return [
            f"{_INDENT_BODY}$fact : DynamicFact(",
            f"{_INDENT_CONSTRAINT}{body}",
            f"{_INDENT_BODY})",
        ]

    def _constraints(self, node: Comparison | Assignment | Group, fact_type: str | None) -> list[str]:
        """Constraints for one root-level child, comma-separated in the pattern."""
        if isinstance(node, Group):
            grouped = self._group_expression(node, fact_type)
            return [grouped] if grouped else []
        if isinstance(node, Comparison):
            return self._comparison(node, fact_type)
        raise CompileError(f"Action found in condition tree: {node.action_type.value}")

    def _group_expression(self, group: Group, fact_type: str | None) -> str | None:
        joiner = " && " if group.operator == GroupOperator.ALL else " || "
        parts: list[str] = []
        for child in group.children:
            if isinstance(child, Group):
                nested = self._group_expression(child, fact_type)
                if nested:
                    parts.append(nested)
            elif isinstance(child, Comparison):
                clause = self._comparison(child, fact_type)
                parts.append(clause[0] if len(clause) == 1 else "(" + " && ".join(clause) + ")")
            else:
                raise CompileError(f"Action found in condition tree: {child.action_type.value}")
        if not parts:
            return None
        return "(" + joiner.join(parts) + ")"

    @staticmethod
    def _sanitize(path: str, fact_type: str | None) -> str:
        """Drop a leading fact type qualifier: ``Order.total`` -> ``total``."""
        if root_segment_index(path, fact_type) == 1:
            return path.split(".", 1)[1]
        return path

    def _comparison(self, node: Comparison, fact_type: str | None) -> list[str]:
        """Null-safe constraint parts for one comparison (AND-ed together)."""
        path = self._sanitize(node.field, fact_type)
        op = node.operator

        if op in (ConditionOperator.IS_NULL, ConditionOperator.IS_NOT_NULL):
            getter = "get" if "." not in path and "[" not in path else "getValue"
            symbol = "==" if op == ConditionOperator.IS_NULL else "!="
            return [f'{getter}("{path}") {symbol} null']

        if node.value_is_field:
            if not isinstance(node.value, str) or not node.value:
                raise CompileError(f"Field comparison on '{node.field}' has no field path")
            value_expr = f'getValue("{self._sanitize(node.value, fact_type)}")'
            value_class = _VALUE_TYPE_CLASSES.get(node.value_type.value) if node.value_type else None
        else:
            value_expr = format_value(node.value)
            value_class = _literal_class(node.value)

        if op in _STRING_METHODS:
            accessor = f'getValue("{path}", String.class)'
            return [f"{accessor} != null", f"{accessor}.{_STRING_METHODS[op]}({value_expr})"]

        if op in (ConditionOperator.MEMBER_OF, ConditionOperator.NOT_MEMBER_OF):
            if node.value_is_field:
                in_expr = value_expr
            elif isinstance(node.value, list):
                in_expr = "(" + ", ".join(format_value(item) for item in node.value) + ")"
            else:
                raise CompileError(f"'{op.value}' on '{node.field}' requires a list of values")
            keyword = "in" if op == ConditionOperator.MEMBER_OF else "not in"
            return [f'getValue("{path}") != null', f'getValue("{path}") {keyword} {in_expr}']

        symbol = _BINARY_OPERATORS.get(op)
        if symbol is None:
            raise CompileError(f"Unsupported operator '{op.value}' on '{node.field}'")

        if op == ConditionOperator.CONTAINS and value_class == "String":
            accessor = f'getValue("{path}", String.class)'
            return [f"{accessor} != null", f"{accessor}.contains({value_expr})"]

        if value_class is not None:
            accessor = f'getValue("{path}", {value_class}.class)'
            return [f"{accessor} != null", f"{accessor} {symbol} {value_expr}"]

        # Untyped: null and structured literals.
        accessor = f'getValue("{path}")'
        if value_expr == "null" and op == ConditionOperator.EQUALS:
            return [f"{accessor} == null"]
        if value_expr == "null" and op == ConditionOperator.NOT_EQUALS:
            return [f"{accessor} != null"]
        if op == ConditionOperator.EQUALS:
            return [f"{accessor} != null", f"{accessor}.equals({value_expr})"]
        if op == ConditionOperator.NOT_EQUALS:
            return [f"{accessor} != null", f"!{accessor}.equals({value_expr})"]
        return [f"{accessor} != null", f"{accessor} {symbol} {value_expr}"]

    # ------------------------------------------------------------------
    # Right-hand side
    # ------------------------------------------------------------------

    def _rhs(self, rule: Rule) -> list[str]:
        lines: list[str] = []
        for _, node in walk(rule.definition.actions):
            if isinstance(node, Assignment):
                lines.extend(self._action(node, rule.fact_type))
            elif isinstance(node, Comparison):
                raise CompileError(f"Comparison found in action tree on '{node.field}'")
        if not lines:
            return [f"{_INDENT_BODY}// No actions defined"]
        return lines

    def _action(self, node: Assignment, fact_type: str | None) -> list[str]:
        action = node.action_type
        if action == ActionType.MODIFY:
            if not node.target_field:
                raise CompileError("MODIFY action has no target field")
            path = self._sanitize(node.target_field, fact_type)
            if node.value_is_field and isinstance(node.value, str):
                value_expr = f'$fact.getValue("{self._sanitize(node.value, fact_type)}")'
            else:
                value_expr = format_value(node.value)
            return [f'{_INDENT_BODY}modify($fact) {{ setValue("{path}", {value_expr}) }};']

        if action == ActionType.INSERT:
            if not node.fact_type:
                raise CompileError("INSERT action has no fact type")
            lines = [f'{_INDENT_BODY}DynamicFact newFact = new DynamicFact("{escape_string(node.fact_type)}");']
            for key, value in node.fact_data.items():
                lines.append(f'{_INDENT_BODY}newFact.setValue("{escape_string(key)}", {format_value(value)});')
            lines.append(f"{_INDENT_BODY}insert(newFact);")
            return lines

        if action == ActionType.RETRACT:
            return [f"{_INDENT_BODY}retract($fact);"]

        if action == ActionType.LOG:
            return [f'{_INDENT_BODY}actionContext.log("{escape_string(node.log_message)}", $fact);']

        if action == ActionType.WEBHOOK:
            if not node.webhook_url:
                raise CompileError("WEBHOOK action has no URL")
            if node.webhook_headers:
                pairs = ", ".join(
                    f'"{escape_string(key)}", "{escape_string(value)}"' for key, value in node.webhook_headers.items()
                )
                headers = f"java.util.Map.of({pairs})"
            else:
                headers = "java.util.Collections.emptyMap()"
            return [
                f"{_INDENT_BODY}actionContext.executeWebhook(",
                f'{_INDENT_CONSTRAINT}"{escape_string(node.webhook_url)}",',
                f'{_INDENT_CONSTRAINT}"{escape_string(node.webhook_method or "POST")}",',
                f"{_INDENT_CONSTRAINT}$fact,",
                f"{_INDENT_CONSTRAINT}{headers}",
                f"{_INDENT_BODY});",
            ]

        raise CompileError(f"Unsupported action type '{action.value}'")
