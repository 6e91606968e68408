"""Domain models for the schema attribute propagation engine."""

from schema_engine.models.attribute import AttributeType, Schema, SchemaAttribute, SchemaSource
from schema_engine.models.change import (
    ChangePlan,
    ChangeRequest,
    ChangeResult,
    ChangeType,
    RewriteInstruction,
    RewriteKind,
    RuleFailure,
    RuleRewriteOp,
)
from schema_engine.models.impact import (
    AffectedRule,
    AttributeImpact,
    AttributeReference,
    ReferenceLocation,
    ReferencePosition,
    RiskLevel,
)
from schema_engine.models.rule import (
    ActionType,
    Assignment,
    Comparison,
    ConditionOperator,
    DerivedRepresentation,
    Group,
    GroupOperator,
    Rule,
    RuleDefinition,
)

__all__ = [
    "ActionType",
    "AffectedRule",
    "Assignment",
    "AttributeImpact",
    "AttributeReference",
    "AttributeType",
    "ChangePlan",
    "ChangeRequest",
    "ChangeResult",
    "ChangeType",
    "Comparison",
    "ConditionOperator",
    "DerivedRepresentation",
    "Group",
    "GroupOperator",
    "ReferenceLocation",
    "ReferencePosition",
    "RewriteInstruction",
    "RewriteKind",
    "RiskLevel",
    "Rule",
    "RuleDefinition",
    "RuleFailure",
    "RuleRewriteOp",
    "Schema",
    "SchemaAttribute",
    "SchemaSource",
]
