"""Entry point wiring analysis, planning, and execution together.

:class:`PropagationService` is what callers (the HTTP API, scripts, tests)
use.  Each call reads the stores afresh; no analysis result is reused
between calls.
"""

from __future__ import annotations

import asyncio
import logging

from schema_engine.config import Settings
from schema_engine.errors import ConflictError, FailureReason, NotFoundError
from schema_engine.models.change import ChangePlan, ChangeRequest, ChangeResult, ChangeType, RuleFailure
from schema_engine.models.impact import AttributeImpact
from schema_engine.propagation.analyzer import ImpactAnalyzer
from schema_engine.propagation.executor import PropagationExecutor, change_already_applied
from schema_engine.propagation.planner import ChangePlanner
from schema_engine.propagation.retry import RetryConfig, async_retry_with_backoff
from schema_engine.propagation.scanner import ReferenceScanner
from schema_engine.propagation.stores import (
    RuleCompilerInterface,
    RuleStore,
    SchemaAttributeStore,
)

logger = logging.getLogger(__name__)


class PropagationService:
    """Analyse and apply schema attribute changes.

    Parameters
    ----------
    schema_store:
        Schema attribute store.
    rule_store:
        Rule store.
    compiler:
        Rule compiler used to regenerate derived representations.
    settings:
        Engine settings; defaults are used when omitted.
    """

    def __init__(
        self,
        schema_store: SchemaAttributeStore,
        rule_store: RuleStore,
        compiler: RuleCompilerInterface,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._schema_store = schema_store
        self._rule_store = rule_store
        self._retry_config = RetryConfig.from_settings(self._settings)

        scanner = ReferenceScanner(max_depth=self._settings.max_tree_depth)
        self._analyzer = ImpactAnalyzer(
            schema_store,
            rule_store,
            scanner=scanner,
            large_impact_threshold=self._settings.large_impact_threshold,
            retry_config=self._retry_config,
        )
        self._planner = ChangePlanner()
        self._executor = PropagationExecutor(
            schema_store,
            rule_store,
            compiler,
            scanner=scanner,
            concurrency=self._settings.propagation_concurrency,
            retry_config=self._retry_config,
        )

    async def analyze_impact(
        self,
        schema_id: int,
        attribute_name: str,
        change_type: ChangeType | None = None,
    ) -> AttributeImpact:
        """Report which rules reference *attribute_name* and how risky *change_type* is."""
        return await self._analyzer.analyze(schema_id, attribute_name, change_type)

    async def apply_change(
        self,
        schema_id: int,
        request: ChangeRequest,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChangeResult:
        """Preview or apply *request* against *schema_id*.

        With ``confirm_propagation=False`` nothing is written and the result
        lists the rules that would be updated and those that would fail.

        Raises
        ------
        NotFoundError
            If the schema does not exist, or the attribute is absent and the
            schema does not already reflect the change.
        ConflictError
            If a rename targets a name another attribute of the schema holds.
        """
        plan = await self.plan_change(schema_id, request)
        if plan.preview:
            return self._preview_result(plan)
        return await self._executor.apply(
            plan,
            cancel_event=cancel_event,
            timeout=timeout if timeout is not None else self._settings.apply_timeout_seconds,
        )

    async def plan_change(self, schema_id: int, request: ChangeRequest) -> ChangePlan:
        """Analyse the current rules and plan *request* without writing anything."""
        schema = await async_retry_with_backoff(
            lambda: self._schema_store.get_schema(schema_id),
            self._retry_config,
        )
        if schema.get_attribute(request.old_name) is None and not change_already_applied(schema, request):
            raise NotFoundError(f"Attribute '{request.old_name}' not found in schema '{schema.name}'")
        if (
            request.change_type == ChangeType.RENAME
            and request.new_name is not None
            and schema.get_attribute(request.old_name) is not None
            and schema.get_attribute(request.new_name) is not None
        ):
            raise ConflictError(f"Attribute '{request.new_name}' already exists in schema '{schema.name}'")

        rules = await async_retry_with_backoff(
            lambda: self._rule_store.list_rules_referencing_schema(schema_id),
            self._retry_config,
        )
        impact = self._analyzer.analyze_rules(schema, request.old_name, rules, request.change_type)
        return self._planner.plan(request, impact, schema=schema, rules=rules)

    @staticmethod
    def _preview_result(plan: ChangePlan) -> ChangeResult:
        failures = [
            RuleFailure(
                rule_id=op.rule_id,
                rule_name=op.rule_name,
                reason=FailureReason.UNSAFE_REWRITE,
                message=op.unsafe_reason,
            )
            for op in plan.ops
            if op.unsafe_reason is not None
        ]
        planned = [op.rule_id for op in plan.ops if op.unsafe_reason is None]
        logger.info(
            "Preview of %s on %s: %d rule(s) planned, %d need manual review",
            plan.request.change_type.value,
            plan.request.old_name,
            len(planned),
            len(failures),
        )
        return ChangeResult(
            success=False,
            message=(
                f"Propagation not confirmed: {len(planned)} rule(s) would be updated, "
                f"{len(failures)} would fail"
            ),
            failed_rule_ids=[f.rule_id for f in failures],
            errors=[f.render() for f in failures],
            failures=failures,
            preview=True,
            planned_rule_ids=planned,
        )
