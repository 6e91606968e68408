"""Change requests, rewrite plans, and propagation results."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from schema_engine.errors import FailureReason
from schema_engine.models.attribute import AttributeType, SchemaAttribute, normalize_attribute_type
from schema_engine.models.impact import AttributeReference


class ChangeType(str, Enum):
    """Kind of attribute change being proposed."""

    RENAME = "rename"
    RETYPE = "retype"
    DELETE = "delete"


class ChangeRequest(BaseModel):
    """A proposed attribute change, optionally confirmed for propagation."""

    change_type: ChangeType
    old_name: str = Field(..., min_length=1, description="Current attribute name.")
    new_name: str | None = Field(default=None, description="Target name (rename only).")
    new_type: AttributeType | None = Field(default=None, description="Target type (retype only).")
    confirm_propagation: bool = Field(
        default=False,
        description="When false the request is a read-only preview.",
    )

    @field_validator("new_type", mode="before")
    @classmethod
    def _normalize_new_type(cls, v: object) -> object:
        if isinstance(v, str):
            return normalize_attribute_type(v)
        return v

    @model_validator(mode="after")
    def validate_change_fields(self) -> ChangeRequest:
        """Each change type requires (and only uses) its own target field."""
        if self.change_type == ChangeType.RENAME:
            if not self.new_name:
                raise ValueError("A rename requires new_name.")
            if "." in self.new_name:
                raise ValueError(f"Attribute names may not contain '.', got '{self.new_name}'.")
            if self.new_name == self.old_name:
                raise ValueError("A rename requires new_name to differ from old_name.")
        if self.change_type == ChangeType.RETYPE and self.new_type is None:
            raise ValueError("A retype requires new_type.")
        return self


class RewriteKind(str, Enum):
    """The concrete edit applied at every recorded reference."""

    REPLACE_IDENTIFIER = "REPLACE_IDENTIFIER"
    UPDATE_VALUE_KIND = "UPDATE_VALUE_KIND"
    REMOVE_CLAUSE = "REMOVE_CLAUSE"


class RewriteInstruction(BaseModel):
    """How to rewrite each reference of a single rule."""

    kind: RewriteKind
    attribute_name: str
    new_name: str | None = None
    new_type: AttributeType | None = None


class RuleRewriteOp(BaseModel):
    """One rule's unit of work.

    ``usages`` are kept in scanner order, which is also the order rewrites
    are applied in.  An op with ``unsafe_reason`` set is never executed; it
    is reported as an ``UNSAFE_REWRITE`` failure requiring manual review.
    """

    rule_id: int
    rule_name: str
    rule_version: int
    usages: list[AttributeReference]
    instruction: RewriteInstruction
    unsafe_reason: str | None = None


class ChangePlan(BaseModel):
    """Ordered per-rule rewrite operations for a change request."""

    schema_id: int
    schema_name: str | None = None
    request: ChangeRequest
    attribute: SchemaAttribute | None = Field(
        default=None,
        description="The attribute as read at planning time; the expected prior state of the schema commit.",
    )
    ops: list[RuleRewriteOp] = Field(default_factory=list)
    preview: bool = Field(default=False, description="True when propagation was not confirmed.")


class RuleFailure(BaseModel):
    """A structured, itemized per-rule failure."""

    rule_id: int
    rule_name: str | None = None
    reason: FailureReason
    message: str

    def render(self) -> str:
        name = f" ({self.rule_name})" if self.rule_name else ""
        return f"Rule {self.rule_id}{name}: [{self.reason.value}] {self.message}"


class ChangeResult(BaseModel):
    """Outcome of an apply (or preview) call."""

    success: bool
    message: str
    updated_rule_ids: list[int] = Field(default_factory=list)
    failed_rule_ids: list[int] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    failures: list[RuleFailure] = Field(default_factory=list)
    schema_committed: bool = False
    preview: bool = False
    planned_rule_ids: list[int] = Field(default_factory=list)
