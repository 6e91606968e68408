"""SQLAlchemy 2.0 ORM table definitions for the schema/rule state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.
Rule logical definitions are stored as JSON documents; the derived DRL
text and its hash sit beside them as a regenerable cache.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all state tables."""


# ---------------------------------------------------------------------------
# Rule projects
# ---------------------------------------------------------------------------


class RuleProjectTable(Base):
    """Grouping of rules (and optionally schemas) under one project."""

    __tablename__ = "rule_projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class SchemaTable(Base):
    """A named record type."""

    __tablename__ = "schemas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    project_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("rule_projects.id", ondelete="SET NULL"), nullable=True
    )
    version: Mapped[str] = mapped_column(String(32), nullable=False, default="1.0.0")
    # Bumped on every attribute mutation.
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="manual")
    group_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_schemas_name", "name"),)


class SchemaAttributeTable(Base):
    """One attribute of a schema.

    ``attribute_id`` is the stable identity; ``name`` may change.
    """

    __tablename__ = "schema_attributes"

    attribute_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    schema_id: Mapped[int] = mapped_column(Integer, ForeignKey("schemas.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    format: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    enum_values: Mapped[list[Any] | None] = mapped_column(_JsonType, nullable=True)
    default_value: Mapped[Any] = mapped_column(_JsonType, nullable=True)
    constraints: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("schema_id", "name", name="uq_schema_attributes_schema_name"),
        Index("ix_schema_attributes_schema", "schema_id"),
    )


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class RuleTable(Base):
    """A rule's logical definition plus its derived representation."""

    __tablename__ = "rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("rule_projects.id", ondelete="CASCADE"), nullable=True
    )
    template_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    fact_type: Mapped[str | None] = mapped_column(String(256), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    category: Mapped[str | None] = mapped_column(String(128), nullable=True)
    activation_group: Mapped[str | None] = mapped_column(String(256), nullable=True)
    lock_on_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    date_effective: Mapped[str | None] = mapped_column(String(64), nullable=True)
    date_expires: Mapped[str | None] = mapped_column(String(64), nullable=True)
    definition_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    derived_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    derived_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("version >= 1", name="ck_rules_version_positive"),
        Index("ix_rules_project", "project_id"),
    )


class RuleSchemaBindingTable(Base):
    """Binds a rule to a schema as its input or output contract."""

    __tablename__ = "rule_schema_bindings"

    rule_id: Mapped[int] = mapped_column(Integer, ForeignKey("rules.id", ondelete="CASCADE"), nullable=False)
    schema_id: Mapped[int] = mapped_column(Integer, ForeignKey("schemas.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("rule_id", "schema_id", "role"),
        CheckConstraint("role IN ('input', 'output')", name="ck_rule_schema_bindings_role"),
        Index("ix_rule_schema_bindings_schema", "schema_id"),
    )
