"""Schema and schema-attribute models.

Attributes are owned by the schema attribute store.  The engine reads them
and performs exactly one committed mutation (rename, retype, or delete) at
the end of a successful propagation.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class AttributeType(str, Enum):
    """JSON-schema value kinds an attribute may declare."""

    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


# Loose spellings accepted on input (e.g. from imported OpenAPI documents).
_TYPE_ALIASES: dict[str, AttributeType] = {
    "int": AttributeType.INTEGER,
    "long": AttributeType.INTEGER,
    "double": AttributeType.NUMBER,
    "float": AttributeType.NUMBER,
    "decimal": AttributeType.NUMBER,
    "bool": AttributeType.BOOLEAN,
    "str": AttributeType.STRING,
}


def normalize_attribute_type(value: str | AttributeType) -> AttributeType:
    """Map a loosely spelled type name onto :class:`AttributeType`.

    Raises ``ValueError`` for names that have no sensible mapping.
    """
    if isinstance(value, AttributeType):
        return value
    key = value.strip().lower()
    if key in _TYPE_ALIASES:
        return _TYPE_ALIASES[key]
    return AttributeType(key)


class SchemaSource(str, Enum):
    """How a schema was created."""

    MANUAL = "manual"
    OPENAPI = "openapi"
    JSON_SCHEMA = "json-schema"
    EXAMPLE = "example"


class SchemaAttribute(BaseModel):
    """A single named, typed field of a schema.

    ``attribute_id`` is the stable internal identity.  It survives renames,
    which is what lets the store detect a concurrent delete+recreate as a
    conflict rather than silently applying a mutation to a different field.
    """

    attribute_id: str = Field(..., min_length=1, description="Stable identity, preserved across renames.")
    schema_id: int = Field(..., description="Owning schema.")
    name: str = Field(..., min_length=1, description="Unique within the schema.")
    type: AttributeType = Field(default=AttributeType.STRING)
    format: str | None = None
    description: str | None = None
    required: bool = False
    enum_values: list[Any] | None = None
    default_value: Any = None
    constraints: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return normalize_attribute_type(v)
        return v


class Schema(BaseModel):
    """A named, optionally project-scoped, versioned record type."""

    id: int
    name: str = Field(..., min_length=1)
    description: str | None = None
    project_id: int | None = None
    version: str = "1.0.0"
    source: SchemaSource = SchemaSource.MANUAL
    group: str | None = None
    attributes: list[SchemaAttribute] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_unique_attribute_names(self) -> Schema:
        seen: set[str] = set()
        for attr in self.attributes:
            if attr.name in seen:
                raise ValueError(f"Schema '{self.name}' declares attribute '{attr.name}' more than once.")
            seen.add(attr.name)
        return self

    def get_attribute(self, name: str) -> SchemaAttribute | None:
        """Return the attribute called *name*, or ``None``."""
        for attr in self.attributes:
            if attr.name == name:
                return attr
        return None
