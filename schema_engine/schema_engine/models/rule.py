"""Rule logical definitions as a tagged-variant recursive tree.

A rule's *conditions* and *actions* are each rooted in a :class:`Group`.
Every node carries a ``kind`` discriminator:

* ``comparison`` -- a condition leaf (``field operator value``).
* ``assignment`` -- an action leaf (MODIFY / INSERT / RETRACT / LOG / WEBHOOK).
* ``group``      -- an AND (``all``) / OR (``any``) group of child nodes.

Positions inside a tree are addressed by a *node path*: the tuple of child
indices walked from the root group.  The root itself has path ``()``.
"""

from __future__ import annotations

from collections.abc import Iterator
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, model_validator

from schema_engine.models.attribute import AttributeType

NodePath = tuple[int, ...]


class ConditionOperator(str, Enum):
    """Comparison operators available to condition leaves."""

    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_OR_EQUALS = "greaterThanOrEquals"
    LESS_THAN = "lessThan"
    LESS_THAN_OR_EQUALS = "lessThanOrEquals"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    MATCHES = "matches"
    MEMBER_OF = "memberOf"
    NOT_MEMBER_OF = "notMemberOf"
    IS_NULL = "isNull"
    IS_NOT_NULL = "isNotNull"
    BEFORE = "before"
    AFTER = "after"


class ActionType(str, Enum):
    """What an action does when a rule fires."""

    MODIFY = "MODIFY"  # Set a field on the matched fact
    INSERT = "INSERT"  # Insert a new fact
    RETRACT = "RETRACT"  # Remove the matched fact
    LOG = "LOG"  # Write an audit log entry
    WEBHOOK = "WEBHOOK"  # Call an external endpoint


class GroupOperator(str, Enum):
    """How the children of a group combine."""

    ALL = "all"
    ANY = "any"


class Comparison(BaseModel):
    """Condition leaf: ``field operator value``."""

    kind: Literal["comparison"] = "comparison"
    field: str = Field(..., min_length=1, description="Dotted attribute path on the input fact.")
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None
    value_is_field: bool = Field(
        default=False,
        description="When true, ``value`` is another attribute path rather than a literal.",
    )
    value_type: AttributeType | None = Field(
        default=None,
        description="Declared kind of the referenced attribute at authoring time.",
    )


class Assignment(BaseModel):
    """Action leaf."""

    kind: Literal["assignment"] = "assignment"
    action_type: ActionType = ActionType.MODIFY
    target_field: str | None = Field(default=None, description="Dotted attribute path on the output fact.")
    value: Any = None
    value_is_field: bool = False
    value_type: AttributeType | None = None
    fact_type: str | None = None
    fact_data: dict[str, Any] = Field(default_factory=dict)
    log_message: str | None = None
    webhook_url: str | None = None
    webhook_method: str = "POST"
    webhook_headers: dict[str, str] = Field(default_factory=dict)


class Group(BaseModel):
    """A logical group of child nodes."""

    kind: Literal["group"] = "group"
    operator: GroupOperator = GroupOperator.ALL
    children: list[RuleNode] = Field(default_factory=list)


RuleNode = Annotated[Union[Comparison, Assignment, Group], Field(discriminator="kind")]

Group.model_rebuild()


def walk(root: Group) -> Iterator[tuple[NodePath, Comparison | Assignment | Group]]:
    """Yield ``(path, node)`` pairs in left-to-right depth-first pre-order.

    Uses an explicit stack so deep trees cannot exhaust the interpreter's
    recursion limit.  The root group itself is yielded first with path ``()``.
    """
    stack: list[tuple[NodePath, Comparison | Assignment | Group]] = [((), root)]
    while stack:
        path, node = stack.pop()
        yield path, node
        if isinstance(node, Group):
            # Reverse push so the leftmost child is visited first.
            for index in range(len(node.children) - 1, -1, -1):
                stack.append((path + (index,), node.children[index]))


def node_at(root: Group, path: NodePath) -> Comparison | Assignment | Group:
    """Return the node addressed by *path*, raising ``LookupError`` if absent."""
    node: Comparison | Assignment | Group = root
    for index in path:
        if not isinstance(node, Group) or index >= len(node.children):
            raise LookupError(f"No node at path {path!r}")
        node = node.children[index]
    return node


def count_leaves(root: Group) -> int:
    """Number of non-group nodes under *root*."""
    return sum(1 for _, node in walk(root) if not isinstance(node, Group))


class RuleDefinition(BaseModel):
    """The logical form of a rule: a condition tree and an action tree."""

    conditions: Group = Field(default_factory=Group)
    actions: Group = Field(default_factory=Group)

    @model_validator(mode="after")
    def validate_leaf_placement(self) -> RuleDefinition:
        """Comparisons belong under conditions, assignments under actions."""
        for path, node in walk(self.conditions):
            if isinstance(node, Assignment):
                raise ValueError(f"Assignment found in condition tree at path {path!r}.")
        for path, node in walk(self.actions):
            if isinstance(node, Comparison):
                raise ValueError(f"Comparison found in action tree at path {path!r}.")
        return self


class DerivedRepresentation(BaseModel):
    """Compiled, executable rule text.  A cache, never a source of truth."""

    text: str = Field(..., description="Generated rule-language source.")
    content_hash: str = Field(..., description="SHA-256 digest of ``text``.")


class Rule(BaseModel):
    """A rule bound to input and output schemas.

    ``version`` increases on every persist and is the optimistic
    concurrency token checked by the rule store.
    """

    id: int
    name: str = Field(..., min_length=1)
    description: str | None = None
    project_id: int | None = None
    project_name: str | None = None
    template_id: int | None = None
    input_schema_ids: list[int] = Field(default_factory=list)
    output_schema_ids: list[int] = Field(default_factory=list)
    fact_type: str | None = Field(
        default=None,
        description="Name of the primary input schema; the fact type matched by the compiled rule.",
    )
    priority: int = 0
    enabled: bool = True
    category: str | None = None
    activation_group: str | None = None
    lock_on_active: bool = False
    date_effective: str | None = None
    date_expires: str | None = None
    definition: RuleDefinition = Field(default_factory=RuleDefinition)
    derived: DerivedRepresentation | None = None
    version: int = Field(default=1, ge=1)

    def is_bound_to(self, schema_id: int) -> bool:
        return schema_id in self.input_schema_ids or schema_id in self.output_schema_ids
