"""Apply a confirmed change plan: rewrite rules, then commit the schema.

The executor runs in two sequential phases.

Phase 1 rewrites every affected rule as an independent unit of work,
fanned out over a bounded worker pool.  Each op walks the state machine
``PENDING -> REWRITTEN -> PERSISTED -> COMPILED`` or ends in ``FAILED``;
the rewritten definition is compiled first and persisted together with its
derived text, so a failing op writes nothing.
One rule's failure never blocks its siblings.

Phase 2 commits the single schema attribute mutation, and only when every
op of phase 1 succeeded and the apply was not cancelled.  Rules already
rewritten stay rewritten when phase 2 is skipped; re-running the same
change after fixing the failing rules converges.

Per-rule errors are returned as itemized :class:`RuleFailure` entries.
Only programming errors escape :meth:`PropagationExecutor.apply`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from schema_engine.errors import (
    ConflictError,
    FailureReason,
    NotFoundError,
    PropagationCancelledError,
    PropagationError,
    StalePlanError,
)
from schema_engine.models.attribute import Schema
from schema_engine.models.change import (
    ChangePlan,
    ChangeRequest,
    ChangeResult,
    ChangeType,
    RuleFailure,
    RuleRewriteOp,
)
from schema_engine.propagation.retry import RetryConfig, async_retry_with_backoff
from schema_engine.propagation.rewriter import apply_instruction
from schema_engine.propagation.scanner import ReferenceScanner
from schema_engine.propagation.stores import (
    RuleCompilerInterface,
    RuleStore,
    SchemaAttributeStore,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT_CONCURRENCY: int = 8


class OpState(str, Enum):
    """Lifecycle of a single rule rewrite op."""

    PENDING = "PENDING"
    REWRITTEN = "REWRITTEN"
    PERSISTED = "PERSISTED"
    COMPILED = "COMPILED"
    FAILED = "FAILED"


@dataclass
class _OpOutcome:
    rule_id: int
    state: OpState
    failure: RuleFailure | None = None
    # False when the rule already reflected the change and nothing was written.
    changed: bool = True


class _Cancellation:
    """Cooperative cancellation: an explicit event and/or a deadline."""

    def __init__(self, event: asyncio.Event | None, timeout: float | None) -> None:
        self._event = event
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._deadline = loop.time() + timeout if timeout is not None else None

    @property
    def is_cancelled(self) -> bool:
        if self._event is not None and self._event.is_set():
            return True
        return self._deadline is not None and self._loop.time() >= self._deadline

    def check(self) -> None:
        if self.is_cancelled:
            raise PropagationCancelledError("apply was cancelled before this rule was rewritten")


def change_already_applied(schema: Schema, request: ChangeRequest) -> bool:
    """True when *schema* already reflects *request*."""
    current = schema.get_attribute(request.old_name)
    if request.change_type == ChangeType.RENAME:
        if current is not None or request.new_name is None:
            return False
        return schema.get_attribute(request.new_name) is not None
    if request.change_type == ChangeType.DELETE:
        return current is None
    return current is not None and current.type == request.new_type


class PropagationExecutor:
    """Execute a :class:`ChangePlan` against the rule and schema stores.

    Parameters
    ----------
    schema_store:
        Receives the single schema mutation of phase 2.
    rule_store:
        Re-read and persist target for every rule op.
    compiler:
        Regenerates each rewritten rule's derived representation.
    scanner:
        Used to re-validate each op against the rule's current definition.
    concurrency:
        Maximum number of rule ops in flight at once.
    retry_config:
        Backoff for transient store failures.  Conflicts are never retried.
    """

    def __init__(
        self,
        schema_store: SchemaAttributeStore,
        rule_store: RuleStore,
        compiler: RuleCompilerInterface,
        *,
        scanner: ReferenceScanner | None = None,
        concurrency: int = _DEFAULT_CONCURRENCY,
        retry_config: RetryConfig | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._schema_store = schema_store
        self._rule_store = rule_store
        self._compiler = compiler
        self._scanner = scanner or ReferenceScanner()
        self._concurrency = concurrency
        self._retry_config = retry_config or RetryConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def apply(
        self,
        plan: ChangePlan,
        *,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> ChangeResult:
        """Run *plan* and report the outcome of every op.

        Parameters
        ----------
        plan:
            A confirmed plan.  Preview plans are rejected with ``ValueError``.
        cancel_event:
            Setting this event aborts every op that has not yet persisted.
        timeout:
            Seconds after which the apply behaves as if *cancel_event* was
            set.  Ops still running at that point are cancelled outright.
        """
        if plan.preview:
            raise ValueError("Preview plans cannot be applied; confirm propagation first.")

        cancellation = _Cancellation(cancel_event, timeout)
        semaphore = asyncio.Semaphore(self._concurrency)

        logger.info(
            "Applying %s of %s.%s to %d rule(s)",
            plan.request.change_type.value,
            plan.schema_name or plan.schema_id,
            plan.request.old_name,
            len(plan.ops),
        )

        # Phase 1: independent rule ops, reported in plan order.
        outcomes = await self._run_ops(plan, semaphore, cancellation, timeout)

        updated = [o.rule_id for o in outcomes if o.state == OpState.COMPILED and o.changed]
        failures = [o.failure for o in outcomes if o.failure is not None]

        # Phase 2: the single schema commit, gated on phase 1.
        schema_committed = False
        commit_error: str | None = None
        if failures:
            logger.warning(
                "Schema change for %s not committed: %d rule op(s) failed",
                plan.request.old_name,
                len(failures),
            )
        elif cancellation.is_cancelled:
            commit_error = "apply was cancelled before the schema change was committed"
        else:
            try:
                await self._commit_schema(plan)
                schema_committed = True
            except PropagationError as exc:
                commit_error = f"schema commit failed: [{exc.reason.value}] {exc}"
                logger.warning("%s", commit_error)

        result = ChangeResult(
            success=not failures and schema_committed,
            message=self._message(plan, updated, failures, schema_committed, commit_error),
            updated_rule_ids=updated,
            failed_rule_ids=[f.rule_id for f in failures],
            errors=[f.render() for f in failures] + ([commit_error] if commit_error else []),
            failures=failures,
            schema_committed=schema_committed,
        )
        logger.info(
            "Apply finished: success=%s updated=%d failed=%d schema_committed=%s",
            result.success,
            len(updated),
            len(failures),
            schema_committed,
        )
        return result

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    async def _run_ops(
        self,
        plan: ChangePlan,
        semaphore: asyncio.Semaphore,
        cancellation: _Cancellation,
        timeout: float | None,
    ) -> list[_OpOutcome]:
        """Run every op; ops still in flight when *timeout* expires are cancelled.

        A store call cut off mid-write may or may not have committed.  Either
        way the rule is reported ``CANCELLED``; re-running the change converges.
        """
        tasks = [asyncio.ensure_future(self._run_op(op, plan, semaphore, cancellation)) for op in plan.ops]
        if not tasks:
            return []

        _, pending = await asyncio.wait(tasks, timeout=max(timeout, 0.0) if timeout is not None else None)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
            logger.warning("Apply timed out after %.3fs with %d rule op(s) in flight", timeout, len(pending))

        outcomes: list[_OpOutcome] = []
        for op, task in zip(plan.ops, tasks):
            if task.cancelled():
                message = "apply timed out before this rule op finished"
                outcomes.append(self._failed(op, FailureReason.CANCELLED, message))
            else:
                outcomes.append(task.result())
        return outcomes

    async def _run_op(
        self,
        op: RuleRewriteOp,
        plan: ChangePlan,
        semaphore: asyncio.Semaphore,
        cancellation: _Cancellation,
    ) -> _OpOutcome:
        if op.unsafe_reason is not None:
            return self._failed(op, FailureReason.UNSAFE_REWRITE, op.unsafe_reason)

        async with semaphore:
            try:
                return await self._execute_op(op, plan, cancellation)
            except PropagationError as exc:
                return self._failed(op, exc.reason, str(exc))

    async def _execute_op(self, op: RuleRewriteOp, plan: ChangePlan, cancellation: _Cancellation) -> _OpOutcome:
        cancellation.check()
        rule = await self._with_retry(lambda: self._rule_store.get_rule(op.rule_id))

        # Re-scan: the rule may have changed since analysis.
        current = self._scanner.scan(rule, plan.schema_id, plan.request.old_name, plan.schema_name)
        if [ref.key() for ref in current] != [ref.key() for ref in op.usages]:
            raise StalePlanError(
                f"references to '{plan.request.old_name}' changed since analysis "
                f"({len(op.usages)} planned, {len(current)} found); re-run impact analysis"
            )

        definition = apply_instruction(rule.definition, current, op.instruction, plan.schema_name)
        if definition == rule.definition:
            logger.debug("Rule %d already reflects the change", rule.id)
            return _OpOutcome(rule_id=op.rule_id, state=OpState.COMPILED, changed=False)
        logger.debug("Rule %d %s", rule.id, OpState.REWRITTEN.value)

        # Compile before writing, so definition and derived text land in one persist.
        rewritten = rule.model_copy(update={"definition": definition})
        rewritten = rewritten.model_copy(update={"derived": self._compiler.regenerate_derived(rewritten)})

        cancellation.check()
        persisted = await self._with_retry(lambda: self._rule_store.persist_rule(rewritten))
        logger.debug(
            "Rule %d %s and %s at version %d",
            rule.id,
            OpState.PERSISTED.value,
            OpState.COMPILED.value,
            persisted.version,
        )
        return _OpOutcome(rule_id=op.rule_id, state=OpState.COMPILED)

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    async def _commit_schema(self, plan: ChangePlan) -> None:
        request = plan.request
        schema = await self._with_retry(lambda: self._schema_store.get_schema(plan.schema_id))
        if change_already_applied(schema, request):
            logger.info(
                "Schema %s already reflects the %s of '%s'",
                schema.name,
                request.change_type.value,
                request.old_name,
            )
            return

        expected = plan.attribute
        if expected is None:
            raise NotFoundError(f"Attribute '{request.old_name}' not found in schema {plan.schema_id}")
        new_name, new_type = request.new_name, request.new_type
        if request.change_type == ChangeType.RENAME and new_name is not None:
            if schema.get_attribute(new_name) is not None:
                raise ConflictError(f"Attribute '{new_name}' already exists in schema {schema.name}")
            await self._with_retry(lambda: self._schema_store.rename_attribute(plan.schema_id, expected, new_name))
        elif request.change_type == ChangeType.RETYPE and new_type is not None:
            await self._with_retry(lambda: self._schema_store.retype_attribute(plan.schema_id, expected, new_type))
        else:
            await self._with_retry(lambda: self._schema_store.delete_attribute(plan.schema_id, expected))
        logger.info("Committed %s of %s.%s", request.change_type.value, schema.name, request.old_name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _with_retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await async_retry_with_backoff(fn, self._retry_config)

    @staticmethod
    def _failed(op: RuleRewriteOp, reason: FailureReason, message: str) -> _OpOutcome:
        logger.warning("Rule %d (%s) failed: [%s] %s", op.rule_id, op.rule_name, reason.value, message)
        return _OpOutcome(
            rule_id=op.rule_id,
            state=OpState.FAILED,
            failure=RuleFailure(rule_id=op.rule_id, rule_name=op.rule_name, reason=reason, message=message),
        )

    @staticmethod
    def _message(
        plan: ChangePlan,
        updated: list[int],
        failures: list[RuleFailure],
        schema_committed: bool,
        commit_error: str | None,
    ) -> str:
        if failures:
            return (
                f"Partially completed: {len(updated)} updated, {len(failures)} failed; "
                f"schema change to '{plan.request.old_name}' was not committed"
            )
        if not schema_committed:
            return f"{len(updated)} rule(s) updated, but {commit_error}"
        if not updated:
            return "No rules required updates"
        return f"Successfully updated {len(updated)} rule(s)"
