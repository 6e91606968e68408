"""SQL-backed implementations of the engine's store interfaces.

Every public method opens its own session and transaction, so concurrent
rule ops in the executor never share a session.  Connection-level
failures surface as :class:`TransientStoreError` (retried by the engine);
integrity and version mismatches surface as :class:`ConflictError`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schema_engine.errors import ConflictError, NotFoundError, TransientStoreError
from schema_engine.models.attribute import AttributeType, Schema, SchemaAttribute
from schema_engine.models.rule import DerivedRepresentation, Rule, RuleDefinition
from schema_engine.state.database import session_scope
from schema_engine.state.repository import RuleProjectRepository, RuleRepository, SchemaRepository
from schema_engine.state.tables import RuleTable, SchemaAttributeTable, SchemaTable

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _unit_of_work(factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """One committed transaction, with driver errors mapped onto the engine taxonomy."""
    try:
        async with session_scope(factory) as session:
            yield session
    except IntegrityError as exc:
        raise ConflictError(f"integrity violation: {exc.orig}") from exc
    except OperationalError as exc:
        raise TransientStoreError(f"store unavailable: {exc.orig}") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise TransientStoreError(f"connection lost: {exc.orig}") from exc
        raise


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _to_attribute(row: SchemaAttributeTable) -> SchemaAttribute:
    return SchemaAttribute(
        attribute_id=row.attribute_id,
        schema_id=row.schema_id,
        name=row.name,
        type=row.type,
        format=row.format,
        description=row.description,
        required=row.required,
        enum_values=row.enum_values,
        default_value=row.default_value,
        constraints=row.constraints or {},
    )


def _to_schema(row: SchemaTable, attributes: list[SchemaAttributeTable]) -> Schema:
    return Schema(
        id=row.id,
        name=row.name,
        description=row.description,
        project_id=row.project_id,
        version=row.version,
        source=row.source,
        group=row.group_name,
        attributes=[_to_attribute(attr) for attr in attributes],
    )


def _to_rule(
    row: RuleTable,
    bindings: tuple[list[int], list[int]],
    project_name: str | None,
) -> Rule:
    derived = None
    if row.derived_text is not None and row.derived_hash is not None:
        derived = DerivedRepresentation(text=row.derived_text, content_hash=row.derived_hash)
    inputs, outputs = bindings
    return Rule(
        id=row.id,
        name=row.name,
        description=row.description,
        project_id=row.project_id,
        project_name=project_name,
        template_id=row.template_id,
        input_schema_ids=inputs,
        output_schema_ids=outputs,
        fact_type=row.fact_type,
        priority=row.priority,
        enabled=row.enabled,
        category=row.category,
        activation_group=row.activation_group,
        lock_on_active=row.lock_on_active,
        date_effective=row.date_effective,
        date_expires=row.date_expires,
        definition=RuleDefinition.model_validate(row.definition_json),
        derived=derived,
        version=row.version,
    )


# ---------------------------------------------------------------------------
# Schema attribute store
# ---------------------------------------------------------------------------


class SqlSchemaAttributeStore:
    """Schema attribute store over the ``schemas`` / ``schema_attributes`` tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_schema(self, schema_id: int) -> Schema:
        async with _unit_of_work(self._session_factory) as session:
            repo = SchemaRepository(session)
            row = await repo.get(schema_id)
            if row is None:
                raise NotFoundError(f"Schema {schema_id} not found")
            return _to_schema(row, await repo.list_attributes(schema_id))

    async def get_attribute(self, schema_id: int, name: str) -> SchemaAttribute:
        async with _unit_of_work(self._session_factory) as session:
            row = await SchemaRepository(session).get_attribute(schema_id, name)
            if row is None:
                raise NotFoundError(f"Attribute '{name}' not found in schema {schema_id}")
            return _to_attribute(row)

    async def rename_attribute(self, schema_id: int, expected: SchemaAttribute, new_name: str) -> SchemaAttribute:
        async with _unit_of_work(self._session_factory) as session:
            repo = SchemaRepository(session)
            if await repo.get_attribute(schema_id, new_name) is not None:
                raise ConflictError(f"Attribute '{new_name}' already exists in schema {schema_id}")
            ok = await repo.rename_attribute(
                schema_id, expected.attribute_id, expected.name, expected.type.value, new_name
            )
            if not ok:
                raise ConflictError(f"Attribute '{expected.name}' changed since it was read")
            logger.info("Renamed attribute %s.%s to %s", schema_id, expected.name, new_name)
        return expected.model_copy(update={"name": new_name})

    async def retype_attribute(
        self,
        schema_id: int,
        expected: SchemaAttribute,
        new_type: AttributeType,
    ) -> SchemaAttribute:
        async with _unit_of_work(self._session_factory) as session:
            ok = await SchemaRepository(session).retype_attribute(
                schema_id, expected.attribute_id, expected.name, expected.type.value, new_type.value
            )
            if not ok:
                raise ConflictError(f"Attribute '{expected.name}' changed since it was read")
            logger.info("Retyped attribute %s.%s to %s", schema_id, expected.name, new_type.value)
        return expected.model_copy(update={"type": new_type})

    async def delete_attribute(self, schema_id: int, expected: SchemaAttribute) -> None:
        async with _unit_of_work(self._session_factory) as session:
            ok = await SchemaRepository(session).delete_attribute(
                schema_id, expected.attribute_id, expected.name, expected.type.value
            )
            if not ok:
                raise ConflictError(f"Attribute '{expected.name}' changed since it was read")
            logger.info("Deleted attribute %s.%s", schema_id, expected.name)


# ---------------------------------------------------------------------------
# Rule store
# ---------------------------------------------------------------------------


class SqlRuleStore:
    """Rule store over the ``rules`` / ``rule_schema_bindings`` tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_rules_referencing_schema(self, schema_id: int) -> list[Rule]:
        async with _unit_of_work(self._session_factory) as session:
            repo = RuleRepository(session)
            rows = await repo.list_for_schema(schema_id)
            return await self._hydrate(session, rows)

    async def get_rule(self, rule_id: int) -> Rule:
        async with _unit_of_work(self._session_factory) as session:
            row = await RuleRepository(session).get(rule_id)
            if row is None:
                raise NotFoundError(f"Rule {rule_id} not found")
            return (await self._hydrate(session, [row]))[0]

    async def persist_rule(self, rule: Rule) -> Rule:
        async with _unit_of_work(self._session_factory) as session:
            ok = await RuleRepository(session).update_if_version(
                rule.id,
                rule.version,
                definition_json=rule.definition.model_dump(mode="json"),
                derived_text=rule.derived.text if rule.derived else None,
                derived_hash=rule.derived.content_hash if rule.derived else None,
            )
            if not ok:
                if await RuleRepository(session).get(rule.id) is None:
                    raise NotFoundError(f"Rule {rule.id} not found")
                raise ConflictError(f"Rule {rule.id} was modified concurrently (expected version {rule.version})")
        return rule.model_copy(update={"version": rule.version + 1})

    @staticmethod
    async def _hydrate(session: AsyncSession, rows: list[RuleTable]) -> list[Rule]:
        bindings = await RuleRepository(session).get_bindings([row.id for row in rows])
        project_ids = {row.project_id for row in rows if row.project_id is not None}
        names = await RuleProjectRepository(session).get_names(project_ids)
        return [
            _to_rule(row, bindings[row.id], names.get(row.project_id) if row.project_id is not None else None)
            for row in rows
        ]
