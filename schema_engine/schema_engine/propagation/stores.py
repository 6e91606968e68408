"""Collaborator interfaces consumed by the propagation engine.

The engine never talks to a database or compiler directly.  Anything that
exposes methods with matching signatures can be plugged in: the SQL store
in :mod:`schema_engine.state.stores`, the compiler in
:mod:`schema_engine.compiler`, or in-memory fakes in tests.
"""

from __future__ import annotations

from typing import Protocol

from schema_engine.models.attribute import AttributeType, Schema, SchemaAttribute
from schema_engine.models.rule import DerivedRepresentation, Rule


class SchemaAttributeStore(Protocol):
    """Owns schema attribute definitions and their persistence.

    Every mutation is a single committed write.  Mutations take the
    attribute as the caller last read it (*expected*) and raise
    :class:`~schema_engine.errors.ConflictError` when the stored attribute
    no longer has that identity and type.
    """

    async def get_schema(self, schema_id: int) -> Schema:
        """Return the schema with its attributes.

        Raises
        ------
        NotFoundError
            If no schema has this id.
        """
        ...

    async def get_attribute(self, schema_id: int, name: str) -> SchemaAttribute:
        """Return one attribute, raising ``NotFoundError`` if absent."""
        ...

    async def rename_attribute(
        self,
        schema_id: int,
        expected: SchemaAttribute,
        new_name: str,
    ) -> SchemaAttribute:
        """Rename *expected* in place, preserving its ``attribute_id``."""
        ...

    async def retype_attribute(
        self,
        schema_id: int,
        expected: SchemaAttribute,
        new_type: AttributeType,
    ) -> SchemaAttribute:
        """Change the declared type of *expected*."""
        ...

    async def delete_attribute(self, schema_id: int, expected: SchemaAttribute) -> None:
        """Remove *expected* from the schema."""
        ...


class RuleStore(Protocol):
    """Owns rule definitions.

    ``persist_rule`` is optimistic: the rule's ``version`` must equal the
    stored version, otherwise ``ConflictError`` is raised.  On success the
    stored version is incremented and the persisted rule returned.
    """

    async def list_rules_referencing_schema(self, schema_id: int) -> list[Rule]:
        """All rules bound to *schema_id* as input or output, ordered by id."""
        ...

    async def get_rule(self, rule_id: int) -> Rule:
        """Return the current rule, raising ``NotFoundError`` if absent."""
        ...

    async def persist_rule(self, rule: Rule) -> Rule:
        """Write *rule*'s definition and derived representation."""
        ...


class RuleCompilerInterface(Protocol):
    """Regenerates a rule's derived executable representation."""

    def regenerate_derived(self, rule: Rule) -> DerivedRepresentation:
        """Compile *rule*, raising ``CompileError`` on failure."""
        ...
