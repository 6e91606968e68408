"""Repository classes providing CRUD access to the schema/rule state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
calling ``session.commit()`` (or relying on the ``session_scope`` context
manager).

Guarded updates (``WHERE`` on the expected prior state) return ``False``
instead of raising when no row matched, leaving the conflict decision to
the caller.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from schema_engine.state.tables import (
    RuleProjectTable,
    RuleSchemaBindingTable,
    RuleTable,
    SchemaAttributeTable,
    SchemaTable,
)

logger = logging.getLogger(__name__)

ROLE_INPUT = "input"
ROLE_OUTPUT = "output"


# ---------------------------------------------------------------------------
# RuleProjectRepository
# ---------------------------------------------------------------------------


class RuleProjectRepository:
    """CRUD operations for the ``rule_projects`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, name: str, description: str | None = None) -> RuleProjectTable:
        """Insert a new project and return the persisted row."""
        row = RuleProjectTable(name=name, description=description)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, project_id: int) -> RuleProjectTable | None:
        stmt = select(RuleProjectTable).where(RuleProjectTable.id == project_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_names(self, project_ids: set[int]) -> dict[int, str]:
        """Map project id to name for the given ids."""
        if not project_ids:
            return {}
        stmt = select(RuleProjectTable.id, RuleProjectTable.name).where(RuleProjectTable.id.in_(project_ids))
        result = await self._session.execute(stmt)
        return {row.id: row.name for row in result.all()}


# ---------------------------------------------------------------------------
# SchemaRepository
# ---------------------------------------------------------------------------


class SchemaRepository:
    """CRUD operations for ``schemas`` and ``schema_attributes``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        name: str,
        *,
        description: str | None = None,
        project_id: int | None = None,
        version: str = "1.0.0",
        source: str = "manual",
        group_name: str | None = None,
    ) -> SchemaTable:
        """Insert a new schema and return the persisted row."""
        row = SchemaTable(
            name=name,
            description=description,
            project_id=project_id,
            version=version,
            source=source,
            group_name=group_name,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, schema_id: int) -> SchemaTable | None:
        stmt = select(SchemaTable).where(SchemaTable.id == schema_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_attribute(
        self,
        schema_id: int,
        name: str,
        attr_type: str,
        *,
        format: str | None = None,
        description: str | None = None,
        required: bool = False,
        enum_values: list[Any] | None = None,
        default_value: Any = None,
        constraints: dict[str, Any] | None = None,
    ) -> SchemaAttributeTable:
        """Append an attribute to a schema with a freshly minted identity."""
        count_stmt = select(func.count()).select_from(SchemaAttributeTable).where(
            SchemaAttributeTable.schema_id == schema_id
        )
        position = (await self._session.execute(count_stmt)).scalar_one()
        row = SchemaAttributeTable(
            attribute_id=uuid.uuid4().hex,
            schema_id=schema_id,
            name=name,
            type=attr_type,
            format=format,
            description=description,
            required=required,
            enum_values=enum_values,
            default_value=default_value,
            constraints=constraints or {},
            position=position,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_attributes(self, schema_id: int) -> list[SchemaAttributeTable]:
        """Attributes of *schema_id* in declaration order."""
        stmt = (
            select(SchemaAttributeTable)
            .where(SchemaAttributeTable.schema_id == schema_id)
            .order_by(SchemaAttributeTable.position, SchemaAttributeTable.attribute_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_attribute(self, schema_id: int, name: str) -> SchemaAttributeTable | None:
        stmt = select(SchemaAttributeTable).where(
            SchemaAttributeTable.schema_id == schema_id,
            SchemaAttributeTable.name == name,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def rename_attribute(
        self,
        schema_id: int,
        attribute_id: str,
        expected_name: str,
        expected_type: str,
        new_name: str,
    ) -> bool:
        """Rename in place.  ``False`` when the attribute is not as expected."""
        stmt = (
            update(SchemaAttributeTable)
            .where(
                SchemaAttributeTable.schema_id == schema_id,
                SchemaAttributeTable.attribute_id == attribute_id,
                SchemaAttributeTable.name == expected_name,
                SchemaAttributeTable.type == expected_type,
            )
            .values(name=new_name)
        )
        result = await self._session.execute(stmt)
        return await self._finish_mutation(schema_id, result.rowcount)  # type: ignore[attr-defined]

    async def retype_attribute(
        self,
        schema_id: int,
        attribute_id: str,
        expected_name: str,
        expected_type: str,
        new_type: str,
    ) -> bool:
        """Change the declared type.  ``False`` when the attribute is not as expected."""
        stmt = (
            update(SchemaAttributeTable)
            .where(
                SchemaAttributeTable.schema_id == schema_id,
                SchemaAttributeTable.attribute_id == attribute_id,
                SchemaAttributeTable.name == expected_name,
                SchemaAttributeTable.type == expected_type,
            )
            .values(type=new_type)
        )
        result = await self._session.execute(stmt)
        return await self._finish_mutation(schema_id, result.rowcount)  # type: ignore[attr-defined]

    async def delete_attribute(
        self,
        schema_id: int,
        attribute_id: str,
        expected_name: str,
        expected_type: str,
    ) -> bool:
        """Remove the attribute.  ``False`` when it is not as expected."""
        stmt = delete(SchemaAttributeTable).where(
            SchemaAttributeTable.schema_id == schema_id,
            SchemaAttributeTable.attribute_id == attribute_id,
            SchemaAttributeTable.name == expected_name,
            SchemaAttributeTable.type == expected_type,
        )
        result = await self._session.execute(stmt)
        return await self._finish_mutation(schema_id, result.rowcount)  # type: ignore[attr-defined]

    async def _finish_mutation(self, schema_id: int, rowcount: int | None) -> bool:
        if not rowcount:
            return False
        stmt = update(SchemaTable).where(SchemaTable.id == schema_id).values(revision=SchemaTable.revision + 1)
        await self._session.execute(stmt)
        await self._session.flush()
        return True


# ---------------------------------------------------------------------------
# RuleRepository
# ---------------------------------------------------------------------------


class RuleRepository:
    """CRUD operations for ``rules`` and ``rule_schema_bindings``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        name: str,
        definition: dict[str, Any],
        *,
        input_schema_ids: list[int] | None = None,
        output_schema_ids: list[int] | None = None,
        project_id: int | None = None,
        template_id: int | None = None,
        description: str | None = None,
        fact_type: str | None = None,
        priority: int = 0,
        enabled: bool = True,
        category: str | None = None,
        activation_group: str | None = None,
        derived_text: str | None = None,
        derived_hash: str | None = None,
    ) -> RuleTable:
        """Insert a rule with its schema bindings and return the persisted row."""
        row = RuleTable(
            name=name,
            definition_json=definition,
            project_id=project_id,
            template_id=template_id,
            description=description,
            fact_type=fact_type,
            priority=priority,
            enabled=enabled,
            category=category,
            activation_group=activation_group,
            derived_text=derived_text,
            derived_hash=derived_hash,
            version=1,
        )
        self._session.add(row)
        await self._session.flush()

        for schema_id in input_schema_ids or []:
            self._session.add(RuleSchemaBindingTable(rule_id=row.id, schema_id=schema_id, role=ROLE_INPUT))
        for schema_id in output_schema_ids or []:
            self._session.add(RuleSchemaBindingTable(rule_id=row.id, schema_id=schema_id, role=ROLE_OUTPUT))
        await self._session.flush()
        return row

    async def get(self, rule_id: int) -> RuleTable | None:
        stmt = select(RuleTable).where(RuleTable.id == rule_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_schema(self, schema_id: int) -> list[RuleTable]:
        """Rules bound to *schema_id* in either role, ordered by id."""
        bound = select(RuleSchemaBindingTable.rule_id).where(RuleSchemaBindingTable.schema_id == schema_id)
        stmt = select(RuleTable).where(RuleTable.id.in_(bound)).order_by(RuleTable.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_bindings(self, rule_ids: list[int]) -> dict[int, tuple[list[int], list[int]]]:
        """Map rule id to its ``(input_schema_ids, output_schema_ids)``."""
        bindings: dict[int, tuple[list[int], list[int]]] = {rule_id: ([], []) for rule_id in rule_ids}
        if not rule_ids:
            return bindings
        stmt = (
            select(RuleSchemaBindingTable)
            .where(RuleSchemaBindingTable.rule_id.in_(rule_ids))
            .order_by(RuleSchemaBindingTable.rule_id, RuleSchemaBindingTable.schema_id)
        )
        result = await self._session.execute(stmt)
        for binding in result.scalars().all():
            inputs, outputs = bindings[binding.rule_id]
            (inputs if binding.role == ROLE_INPUT else outputs).append(binding.schema_id)
        return bindings

    async def update_if_version(self, rule_id: int, expected_version: int, **values: Any) -> bool:
        """Write *values* and bump the version, only if it still equals *expected_version*."""
        stmt = (
            update(RuleTable)
            .where(RuleTable.id == rule_id, RuleTable.version == expected_version)
            .values(version=expected_version + 1, **values)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]
