"""Read models produced by impact analysis.

None of these are persisted.  They are computed fresh per request because
rules can change between analysis and apply.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from schema_engine.models.rule import NodePath


class ReferenceLocation(str, Enum):
    """Which tree of a rule a reference was found in."""

    CONDITION = "condition"
    ACTION = "action"


class ReferencePosition(str, Enum):
    """Which side of a leaf holds the reference."""

    SUBJECT = "subject"  # Comparison.field / Assignment.target_field
    VALUE = "value"  # value_is_field=True: the value is an attribute path


class RiskLevel(str, Enum):
    """Coarse severity of a proposed change's blast radius."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)


_RISK_ORDER: list[RiskLevel] = [RiskLevel.NONE, RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH]


class AttributeReference(BaseModel):
    """One place in a rule that references the analysed attribute."""

    rule_id: int
    location: ReferenceLocation
    path: NodePath = Field(..., description="Child indices from the tree root to the matched leaf.")
    position: ReferencePosition = ReferencePosition.SUBJECT
    field_path: str = Field(..., description="The dotted attribute path as written in the rule.")
    detail: str = Field(..., description="Human-readable rendering of the clause.")
    operator: str | None = Field(default=None, description="Comparison operator or action type.")
    literal: Any = Field(default=None, description="Literal compared against / assigned, if any.")
    has_literal: bool = Field(
        default=False,
        description="False when the other side is a field reference or the operator takes no value.",
    )
    counterpart_path: str | None = Field(
        default=None,
        description="Attribute path on the other side of a field-to-field comparison.",
    )

    def key(self) -> tuple[str, NodePath, str, str]:
        """Identity used to detect plan staleness."""
        return (self.location.value, self.path, self.position.value, self.field_path)


class AffectedRule(BaseModel):
    """A rule with at least one reference to the analysed attribute."""

    rule_id: int
    rule_name: str
    project_id: int | None = None
    project_name: str | None = None
    rule_version: int = Field(default=1, description="Rule version observed at analysis time.")
    usages: list[AttributeReference] = Field(default_factory=list)


class AttributeImpact(BaseModel):
    """Blast radius of a proposed change to one attribute."""

    attribute_name: str
    schema_id: int
    schema_name: str | None = None
    affected_rules: list[AffectedRule] = Field(default_factory=list)
    total_affected_rules: int = 0
    risk_level: RiskLevel = RiskLevel.NONE
    summary: str = ""
