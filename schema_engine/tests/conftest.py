"""Shared fixtures: in-memory stores and a recording compiler."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from schema_engine.compiler import compute_content_hash
from schema_engine.errors import CompileError, ConflictError, NotFoundError, PropagationError, TransientStoreError
from schema_engine.models.attribute import AttributeType, Schema, SchemaAttribute
from schema_engine.models.rule import (
    Assignment,
    Comparison,
    DerivedRepresentation,
    Group,
    Rule,
    RuleDefinition,
)

ORDER_SCHEMA_ID = 1
DECISION_SCHEMA_ID = 2


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


class InMemorySchemaStore:
    """Schema attribute store backed by a dict, with conflict checks on the expected attribute."""

    def __init__(self, schemas: list[Schema] | None = None) -> None:
        self.schemas: dict[int, Schema] = {s.id: s for s in schemas or []}
        self.mutations: list[tuple[str, str]] = []
        self.transient_failures = 0

    def add(self, schema: Schema) -> None:
        self.schemas[schema.id] = schema

    async def get_schema(self, schema_id: int) -> Schema:
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientStoreError("connection reset")
        if schema_id not in self.schemas:
            raise NotFoundError(f"Schema {schema_id} not found")
        return self.schemas[schema_id].model_copy(deep=True)

    async def get_attribute(self, schema_id: int, name: str) -> SchemaAttribute:
        attr = (await self.get_schema(schema_id)).get_attribute(name)
        if attr is None:
            raise NotFoundError(f"Attribute '{name}' not found in schema {schema_id}")
        return attr

    def _replace(self, schema_id: int, expected: SchemaAttribute, new: SchemaAttribute | None) -> None:
        schema = self.schemas[schema_id]
        current = next((a for a in schema.attributes if a.attribute_id == expected.attribute_id), None)
        if current is None or current.name != expected.name or current.type != expected.type:
            raise ConflictError(f"Attribute '{expected.name}' changed since it was read")
        attributes = [a for a in schema.attributes if a.attribute_id != expected.attribute_id]
        if new is not None:
            attributes.append(new)
        self.schemas[schema_id] = schema.model_copy(update={"attributes": attributes})

    async def rename_attribute(self, schema_id: int, expected: SchemaAttribute, new_name: str) -> SchemaAttribute:
        if self.schemas[schema_id].get_attribute(new_name) is not None:
            raise ConflictError(f"Attribute '{new_name}' already exists")
        renamed = expected.model_copy(update={"name": new_name})
        self._replace(schema_id, expected, renamed)
        self.mutations.append(("rename", expected.name))
        return renamed

    async def retype_attribute(
        self,
        schema_id: int,
        expected: SchemaAttribute,
        new_type: AttributeType,
    ) -> SchemaAttribute:
        retyped = expected.model_copy(update={"type": new_type})
        self._replace(schema_id, expected, retyped)
        self.mutations.append(("retype", expected.name))
        return retyped

    async def delete_attribute(self, schema_id: int, expected: SchemaAttribute) -> None:
        self._replace(schema_id, expected, None)
        self.mutations.append(("delete", expected.name))


class InMemoryRuleStore:
    """Rule store with optimistic versioning and injectable persist failures."""

    def __init__(self, rules: list[Rule] | None = None) -> None:
        self.rules: dict[int, Rule] = {r.id: r for r in rules or []}
        self.persist_failures: dict[int, PropagationError] = {}
        self.persisted: list[int] = []

    def add(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    async def list_rules_referencing_schema(self, schema_id: int) -> list[Rule]:
        return [
            self.rules[rule_id].model_copy(deep=True)
            for rule_id in sorted(self.rules)
            if self.rules[rule_id].is_bound_to(schema_id)
        ]

    async def get_rule(self, rule_id: int) -> Rule:
        if rule_id not in self.rules:
            raise NotFoundError(f"Rule {rule_id} not found")
        return self.rules[rule_id].model_copy(deep=True)

    async def persist_rule(self, rule: Rule) -> Rule:
        if rule.id in self.persist_failures:
            raise self.persist_failures[rule.id]
        current = self.rules.get(rule.id)
        if current is None:
            raise NotFoundError(f"Rule {rule.id} not found")
        if current.version != rule.version:
            raise ConflictError(f"Rule {rule.id} was modified concurrently")
        stored = rule.model_copy(update={"version": rule.version + 1}, deep=True)
        self.rules[rule.id] = stored
        self.persisted.append(rule.id)
        return stored.model_copy(deep=True)


class RecordingCompiler:
    """Compiler that serialises the definition and can be told to fail for given rules."""

    def __init__(self) -> None:
        self.fail_for: set[int] = set()
        self.compiled: list[int] = []

    def regenerate_derived(self, rule: Rule) -> DerivedRepresentation:
        if rule.id in self.fail_for:
            raise CompileError(f"cannot compile rule {rule.id}")
        self.compiled.append(rule.id)
        text = rule.definition.model_dump_json()
        return DerivedRepresentation(text=text, content_hash=compute_content_hash(text))


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _attr(name: str, attr_type: AttributeType, schema_id: int = ORDER_SCHEMA_ID) -> SchemaAttribute:
    return SchemaAttribute(attribute_id=f"{schema_id}-{name}", schema_id=schema_id, name=name, type=attr_type)


@pytest.fixture()
def order_schema() -> Schema:
    return Schema(
        id=ORDER_SCHEMA_ID,
        name="Order",
        attributes=[
            _attr("total", AttributeType.NUMBER),
            _attr("status", AttributeType.STRING),
            _attr("quantity", AttributeType.INTEGER),
            _attr("customerId", AttributeType.STRING),
            _attr("tags", AttributeType.ARRAY),
        ],
    )


@pytest.fixture()
def decision_schema() -> Schema:
    return Schema(
        id=DECISION_SCHEMA_ID,
        name="Decision",
        attributes=[
            _attr("approved", AttributeType.BOOLEAN, DECISION_SCHEMA_ID),
            _attr("discount", AttributeType.NUMBER, DECISION_SCHEMA_ID),
        ],
    )


@pytest.fixture()
def make_rule() -> Callable[..., Rule]:
    """Factory: ``make_rule(rule_id, conditions=[...], actions=[...], **fields)``."""

    def _make(
        rule_id: int,
        conditions: list[Any] | None = None,
        actions: list[Any] | None = None,
        *,
        inputs: list[int] | None = None,
        outputs: list[int] | None = None,
        **fields: Any,
    ) -> Rule:
        definition = RuleDefinition(
            conditions=Group(children=conditions or []),
            actions=Group(children=actions or []),
        )
        return Rule(
            id=rule_id,
            name=fields.pop("name", f"rule-{rule_id}"),
            input_schema_ids=inputs if inputs is not None else [ORDER_SCHEMA_ID],
            output_schema_ids=outputs if outputs is not None else [DECISION_SCHEMA_ID],
            definition=definition,
            **fields,
        )

    return _make


@pytest.fixture()
def approve_action() -> Assignment:
    return Assignment(target_field="approved", value=True)


@pytest.fixture()
def big_order() -> Comparison:
    return Comparison(field="total", operator="greaterThan", value=100)


@pytest.fixture()
def schema_store(order_schema: Schema, decision_schema: Schema) -> InMemorySchemaStore:
    return InMemorySchemaStore([order_schema, decision_schema])


@pytest.fixture()
def rule_store() -> InMemoryRuleStore:
    return InMemoryRuleStore()


@pytest.fixture()
def compiler() -> RecordingCompiler:
    return RecordingCompiler()
