"""Unit tests for schema_engine.propagation.executor and the service facade."""

from __future__ import annotations

import asyncio

import pytest
from schema_engine.config import Settings
from schema_engine.errors import ConflictError, FailureReason, NotFoundError
from schema_engine.models.attribute import AttributeType
from schema_engine.models.change import ChangeRequest, ChangeType
from schema_engine.models.impact import RiskLevel
from schema_engine.models.rule import Comparison, Group
from schema_engine.propagation.executor import PropagationExecutor, change_already_applied
from schema_engine.propagation.retry import RetryConfig
from schema_engine.propagation.service import PropagationService

ORDER = 1
_FAST_RETRY = RetryConfig(max_retries=2, base_delay=0.001, jitter=False)


def _settings(**overrides) -> Settings:
    values = {"store_retry_base_delay": 0.001, "store_retry_max_delay": 0.01}
    values.update(overrides)
    return Settings(**values)


def _service(schema_store, rule_store, compiler, **overrides) -> PropagationService:
    return PropagationService(schema_store, rule_store, compiler, settings=_settings(**overrides))


def _rename_total(confirm: bool = True) -> ChangeRequest:
    return ChangeRequest(change_type="rename", old_name="total", new_name="orderTotal", confirm_propagation=confirm)


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestRenameScenario:
    @pytest.mark.asyncio
    async def test_impact_then_apply(self, schema_store, rule_store, compiler, make_rule, big_order, approve_action):
        rule_store.add(make_rule(1, [big_order], [approve_action]))
        service = _service(schema_store, rule_store, compiler)

        impact = await service.analyze_impact(ORDER, "total", ChangeType.RENAME)
        assert impact.total_affected_rules == 1
        assert impact.risk_level == RiskLevel.LOW

        result = await service.apply_change(ORDER, _rename_total())

        assert result.success is True
        assert result.schema_committed is True
        assert result.updated_rule_ids == [1]
        assert result.failed_rule_ids == []
        assert result.message == "Successfully updated 1 rule(s)"

        rule = rule_store.rules[1]
        condition = rule.definition.conditions.children[0]
        assert condition.field == "orderTotal"
        assert condition.value == 100
        assert rule.derived is not None
        assert "orderTotal" in rule.derived.text

        schema = schema_store.schemas[ORDER]
        assert schema.get_attribute("total") is None
        renamed = schema.get_attribute("orderTotal")
        assert renamed is not None
        assert renamed.attribute_id == f"{ORDER}-total"

    @pytest.mark.asyncio
    async def test_old_name_has_no_references_afterwards(
        self, schema_store, rule_store, compiler, make_rule, big_order
    ):
        rule_store.add(make_rule(1, [big_order]))
        service = _service(schema_store, rule_store, compiler)
        await service.apply_change(ORDER, _rename_total())

        impact = await service.analyze_impact(ORDER, "total")
        assert impact.total_affected_rules == 0

    @pytest.mark.asyncio
    async def test_second_apply_is_a_no_op(self, schema_store, rule_store, compiler, make_rule, big_order):
        rule_store.add(make_rule(1, [big_order]))
        service = _service(schema_store, rule_store, compiler)
        await service.apply_change(ORDER, _rename_total())
        persisted_before = list(rule_store.persisted)

        again = await service.apply_change(ORDER, _rename_total())

        assert again.success is True
        assert again.updated_rule_ids == []
        assert rule_store.persisted == persisted_before
        assert schema_store.mutations == [("rename", "total")]


class TestDeleteScenario:
    @pytest.mark.asyncio
    async def test_twelve_rules(self, schema_store, rule_store, compiler, make_rule, big_order, approve_action):
        only_status = list(range(1, 7))
        with_total = list(range(7, 13))
        for rule_id in only_status:
            rule_store.add(make_rule(rule_id, [Comparison(field="status", value="open")], [approve_action]))
        for rule_id in with_total:
            conditions = [Group(operator="any", children=[Comparison(field="status", value="hold")]), big_order]
            rule_store.add(make_rule(rule_id, conditions, [approve_action]))
        service = _service(schema_store, rule_store, compiler)

        impact = await service.analyze_impact(ORDER, "status", ChangeType.DELETE)
        assert impact.total_affected_rules == 12
        assert impact.risk_level == RiskLevel.HIGH

        result = await service.apply_change(
            ORDER, ChangeRequest(change_type="delete", old_name="status", confirm_propagation=True)
        )

        assert result.success is False
        assert result.failed_rule_ids == only_status
        assert {f.reason for f in result.failures} == {FailureReason.UNSAFE_REWRITE}
        assert result.updated_rule_ids == with_total
        assert result.schema_committed is False
        assert "was not committed" in result.message
        assert schema_store.schemas[ORDER].get_attribute("status") is not None

        for rule_id in with_total:
            children = rule_store.rules[rule_id].definition.conditions.children
            assert [c.field for c in children] == ["total"]
        for rule_id in only_status:
            assert rule_store.rules[rule_id].version == 1

    @pytest.mark.asyncio
    async def test_rerun_after_fixing_rules_converges(
        self, schema_store, rule_store, compiler, make_rule, big_order, approve_action
    ):
        rule_store.add(make_rule(1, [Comparison(field="status", value="open")], [approve_action]))
        rule_store.add(make_rule(2, [Comparison(field="status", value="open"), big_order], [approve_action]))
        service = _service(schema_store, rule_store, compiler)
        request = ChangeRequest(change_type="delete", old_name="status", confirm_propagation=True)

        first = await service.apply_change(ORDER, request)
        assert first.failed_rule_ids == [1]
        assert first.updated_rule_ids == [2]

        # Someone gives rule 1 a second condition.
        blocked = rule_store.rules[1]
        fixed_conditions = Group(children=[*blocked.definition.conditions.children, big_order])
        rule_store.rules[1] = blocked.model_copy(
            update={
                "definition": blocked.definition.model_copy(update={"conditions": fixed_conditions}),
                "version": blocked.version + 1,
            }
        )

        second = await service.apply_change(ORDER, request)

        assert second.success is True
        assert second.updated_rule_ids == [1]
        assert second.schema_committed is True
        assert schema_store.schemas[ORDER].get_attribute("status") is None


class TestRetypeScenario:
    @pytest.mark.asyncio
    async def test_unrepresentable_literal_blocks_commit(
        self, schema_store, rule_store, compiler, make_rule, approve_action
    ):
        rule_store.add(make_rule(1, [Comparison(field="quantity", operator="isNotNull")], [approve_action]))
        rule_store.add(
            make_rule(2, [Comparison(field="quantity", operator="greaterThan", value=5)], [approve_action])
        )
        service = _service(schema_store, rule_store, compiler)

        result = await service.apply_change(
            ORDER,
            ChangeRequest(change_type="retype", old_name="quantity", new_type="string", confirm_propagation=True),
        )

        assert result.failed_rule_ids == [2]
        assert result.failures[0].reason == FailureReason.UNSAFE_REWRITE
        assert result.updated_rule_ids == [1]
        assert result.schema_committed is False
        assert schema_store.schemas[ORDER].get_attribute("quantity").type == AttributeType.INTEGER
        assert schema_store.mutations == []

    @pytest.mark.asyncio
    async def test_widening_retype_commits(self, schema_store, rule_store, compiler, make_rule):
        rule_store.add(make_rule(1, [Comparison(field="quantity", operator="greaterThan", value=5)]))
        service = _service(schema_store, rule_store, compiler)

        result = await service.apply_change(
            ORDER,
            ChangeRequest(change_type="retype", old_name="quantity", new_type="number", confirm_propagation=True),
        )

        assert result.success is True
        assert rule_store.rules[1].definition.conditions.children[0].value_type == AttributeType.NUMBER
        assert schema_store.schemas[ORDER].get_attribute("quantity").type == AttributeType.NUMBER

        again = await service.apply_change(
            ORDER,
            ChangeRequest(change_type="retype", old_name="quantity", new_type="number", confirm_propagation=True),
        )
        assert again.success is True
        assert again.updated_rule_ids == []


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------


class TestPreview:
    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, schema_store, rule_store, compiler, make_rule, big_order):
        rule_store.add(make_rule(1, [big_order]))
        rule_store.add(make_rule(2, [Comparison(field="status", value="x")]))
        service = _service(schema_store, rule_store, compiler)

        result = await service.apply_change(
            ORDER, ChangeRequest(change_type="delete", old_name="total", confirm_propagation=False)
        )

        assert result.preview is True
        assert result.success is False
        assert result.failed_rule_ids == [1]
        assert result.planned_rule_ids == []
        assert "not confirmed" in result.message
        assert rule_store.persisted == []
        assert schema_store.mutations == []

    @pytest.mark.asyncio
    async def test_preview_lists_planned_rules(self, schema_store, rule_store, compiler, make_rule, big_order):
        rule_store.add(make_rule(1, [big_order]))
        result = await _service(schema_store, rule_store, compiler).apply_change(ORDER, _rename_total(confirm=False))
        assert result.planned_rule_ids == [1]
        assert result.failed_rule_ids == []

    @pytest.mark.asyncio
    async def test_executor_rejects_preview_plan(self, schema_store, rule_store, compiler, make_rule, big_order):
        rule_store.add(make_rule(1, [big_order]))
        service = _service(schema_store, rule_store, compiler)
        plan = await service.plan_change(ORDER, _rename_total(confirm=False))
        with pytest.raises(ValueError, match="Preview"):
            await PropagationExecutor(schema_store, rule_store, compiler).apply(plan)


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_stale_plan(self, schema_store, rule_store, compiler, make_rule, big_order):
        rule_store.add(make_rule(1, [big_order]))
        rule_store.add(make_rule(2, [big_order]))
        service = _service(schema_store, rule_store, compiler)
        plan = await service.plan_change(ORDER, _rename_total())

        # Rule 1 gains another reference after analysis.
        changed = rule_store.rules[1]
        extra = Group(children=[big_order, Comparison(field="total", operator="lessThan", value=10)])
        rule_store.rules[1] = changed.model_copy(
            update={"definition": changed.definition.model_copy(update={"conditions": extra}), "version": 2}
        )

        result = await PropagationExecutor(schema_store, rule_store, compiler).apply(plan)

        assert result.failed_rule_ids == [1]
        assert result.failures[0].reason == FailureReason.STALE_PLAN
        assert result.updated_rule_ids == [2]
        assert result.schema_committed is False

    @pytest.mark.asyncio
    async def test_conflict_is_not_retried(self, schema_store, rule_store, compiler, make_rule, big_order):
        rule_store.add(make_rule(1, [big_order]))
        rule_store.persist_failures[1] = ConflictError("Rule 1 was modified concurrently")
        result = await _service(schema_store, rule_store, compiler).apply_change(ORDER, _rename_total())

        assert result.failures[0].reason == FailureReason.CONFLICT
        assert "Rule 1" in result.errors[0]
        assert rule_store.persisted == []
        assert schema_store.mutations == []

    @pytest.mark.asyncio
    async def test_compile_error_writes_nothing(self, schema_store, rule_store, compiler, make_rule, big_order):
        rule_store.add(make_rule(1, [big_order]))
        rule_store.add(make_rule(2, [big_order]))
        compiler.fail_for = {1}

        result = await _service(schema_store, rule_store, compiler).apply_change(ORDER, _rename_total())

        assert result.failed_rule_ids == [1]
        assert result.failures[0].reason == FailureReason.COMPILE_ERROR
        assert result.updated_rule_ids == [2]
        untouched = rule_store.rules[1]
        assert untouched.definition.conditions.children[0].field == "total"
        assert untouched.version == 1
        assert 1 not in rule_store.persisted
        assert result.schema_committed is False

    @pytest.mark.asyncio
    async def test_concurrent_edit_during_compile_leaves_rule_consistent(
        self, schema_store, rule_store, compiler, make_rule, big_order
    ):
        rule_store.add(make_rule(1, [big_order]))
        compile_rule = compiler.regenerate_derived

        def compile_while_rule_is_edited(rule):
            # Another writer bumps the stored version between read and persist.
            stored = rule_store.rules[rule.id]
            rule_store.rules[rule.id] = stored.model_copy(update={"version": stored.version + 1})
            return compile_rule(rule)

        compiler.regenerate_derived = compile_while_rule_is_edited

        result = await _service(schema_store, rule_store, compiler).apply_change(ORDER, _rename_total())

        assert result.failures[0].reason == FailureReason.CONFLICT
        stored = rule_store.rules[1]
        assert stored.definition.conditions.children[0].field == "total"
        assert stored.derived is None
        assert rule_store.persisted == []
        assert schema_store.mutations == []

    @pytest.mark.asyncio
    async def test_rule_deleted_before_apply(self, schema_store, rule_store, compiler, make_rule, big_order):
        rule_store.add(make_rule(1, [big_order]))
        service = _service(schema_store, rule_store, compiler)
        plan = await service.plan_change(ORDER, _rename_total())
        del rule_store.rules[1]

        result = await PropagationExecutor(schema_store, rule_store, compiler).apply(plan)

        assert result.failures[0].reason == FailureReason.NOT_FOUND

    @pytest.mark.asyncio
    async def test_schema_commit_conflict_is_reported(self, schema_store, rule_store, compiler):
        service = _service(schema_store, rule_store, compiler)
        plan = await service.plan_change(
            ORDER, ChangeRequest(change_type="delete", old_name="customerId", confirm_propagation=True)
        )
        schema = schema_store.schemas[ORDER]
        schema_store.schemas[ORDER] = schema.model_copy(
            update={
                "attributes": [
                    a.model_copy(update={"type": AttributeType.NUMBER}) if a.name == "customerId" else a
                    for a in schema.attributes
                ]
            }
        )

        result = await PropagationExecutor(schema_store, rule_store, compiler).apply(plan)

        assert result.success is False
        assert result.failures == []
        assert result.schema_committed is False
        assert "[CONFLICT]" in result.message

    @pytest.mark.asyncio
    async def test_rename_onto_existing_name_is_rejected_before_any_write(
        self, schema_store, rule_store, compiler, make_rule, big_order
    ):
        rule_store.add(make_rule(1, [big_order]))
        request = ChangeRequest(change_type="rename", old_name="total", new_name="status", confirm_propagation=True)

        with pytest.raises(ConflictError, match="already exists"):
            await _service(schema_store, rule_store, compiler).apply_change(ORDER, request)

        assert rule_store.rules[1].definition.conditions.children[0].field == "total"
        assert rule_store.persisted == []
        assert schema_store.mutations == []

    @pytest.mark.asyncio
    async def test_unknown_attribute(self, schema_store, rule_store, compiler):
        request = ChangeRequest(change_type="rename", old_name="missing", new_name="other", confirm_propagation=True)
        with pytest.raises(NotFoundError):
            await _service(schema_store, rule_store, compiler).apply_change(ORDER, request)

    @pytest.mark.asyncio
    async def test_unknown_schema(self, schema_store, rule_store, compiler):
        with pytest.raises(NotFoundError):
            await _service(schema_store, rule_store, compiler).apply_change(404, _rename_total())

    @pytest.mark.asyncio
    async def test_transient_commit_read_is_retried(self, schema_store, rule_store, compiler, make_rule, big_order):
        rule_store.add(make_rule(1, [big_order]))
        service = _service(schema_store, rule_store, compiler)
        plan = await service.plan_change(ORDER, _rename_total())
        schema_store.transient_failures = 1

        executor = PropagationExecutor(schema_store, rule_store, compiler, retry_config=_FAST_RETRY)
        result = await executor.apply(plan)

        assert result.success is True


# ---------------------------------------------------------------------------
# Cancellation and concurrency
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_event_fails_pending_ops(self, schema_store, rule_store, compiler, make_rule, big_order):
        for rule_id in (1, 2, 3):
            rule_store.add(make_rule(rule_id, [big_order]))
        service = _service(schema_store, rule_store, compiler)
        cancel = asyncio.Event()
        cancel.set()

        result = await service.apply_change(ORDER, _rename_total(), cancel_event=cancel)

        assert result.failed_rule_ids == [1, 2, 3]
        assert {f.reason for f in result.failures} == {FailureReason.CANCELLED}
        assert result.schema_committed is False
        assert rule_store.persisted == []

    @pytest.mark.asyncio
    async def test_elapsed_timeout_cancels(self, schema_store, rule_store, compiler, make_rule, big_order):
        rule_store.add(make_rule(1, [big_order]))
        result = await _service(schema_store, rule_store, compiler).apply_change(ORDER, _rename_total(), timeout=0.0)
        assert result.failures[0].reason == FailureReason.CANCELLED
        assert schema_store.mutations == []

    @pytest.mark.asyncio
    async def test_timeout_interrupts_slow_store_calls(self, schema_store, rule_store, compiler, make_rule, big_order):
        rule_store.add(make_rule(1, [big_order]))
        rule_store.add(make_rule(2, [big_order]))
        read_rule = rule_store.get_rule

        async def slow_get_rule(rule_id):
            if rule_id == 1:
                await asyncio.sleep(5)
            return await read_rule(rule_id)

        rule_store.get_rule = slow_get_rule
        loop = asyncio.get_running_loop()
        started = loop.time()

        result = await _service(schema_store, rule_store, compiler).apply_change(ORDER, _rename_total(), timeout=0.2)

        assert loop.time() - started < 2.0
        assert result.failed_rule_ids == [1]
        assert result.failures[0].reason == FailureReason.CANCELLED
        assert result.updated_rule_ids == [2]
        assert result.schema_committed is False
        assert schema_store.mutations == []

    @pytest.mark.asyncio
    async def test_cancel_without_rule_ops_skips_commit(self, schema_store, rule_store, compiler):
        cancel = asyncio.Event()
        cancel.set()
        result = await _service(schema_store, rule_store, compiler).apply_change(
            ORDER, _rename_total(), cancel_event=cancel
        )
        assert result.schema_committed is False
        assert "cancelled" in result.message


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_fan_out_is_bounded(self, schema_store, rule_store, compiler, make_rule, big_order):
        for rule_id in range(1, 7):
            rule_store.add(make_rule(rule_id, [big_order]))
        in_flight = 0
        peak = 0
        original_get_rule = rule_store.get_rule

        async def tracking_get_rule(rule_id):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return await original_get_rule(rule_id)

        rule_store.get_rule = tracking_get_rule
        service = _service(schema_store, rule_store, compiler, propagation_concurrency=2)

        result = await service.apply_change(ORDER, _rename_total())

        assert result.success is True
        assert result.updated_rule_ids == [1, 2, 3, 4, 5, 6]
        assert peak == 2

    def test_concurrency_must_be_positive(self, schema_store, rule_store, compiler):
        with pytest.raises(ValueError, match="concurrency"):
            PropagationExecutor(schema_store, rule_store, compiler, concurrency=0)


class TestChangeAlreadyApplied:
    def test_rename(self, order_schema):
        request = ChangeRequest(change_type="rename", old_name="total", new_name="amount")
        assert change_already_applied(order_schema, request) is False
        renamed = order_schema.model_copy(
            update={
                "attributes": [
                    a.model_copy(update={"name": "amount"}) if a.name == "total" else a
                    for a in order_schema.attributes
                ]
            }
        )
        assert change_already_applied(renamed, request) is True

    def test_delete(self, order_schema):
        assert change_already_applied(order_schema, ChangeRequest(change_type="delete", old_name="gone")) is True
        assert change_already_applied(order_schema, ChangeRequest(change_type="delete", old_name="total")) is False

    def test_retype(self, order_schema):
        same = ChangeRequest(change_type="retype", old_name="total", new_type="number")
        other = ChangeRequest(change_type="retype", old_name="total", new_type="string")
        assert change_already_applied(order_schema, same) is True
        assert change_already_applied(order_schema, other) is False
