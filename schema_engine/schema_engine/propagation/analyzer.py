"""Impact analysis for a proposed schema attribute change.

Runs the :class:`ReferenceScanner` over every rule bound to a schema,
aggregates the per-rule usage lists, and classifies the blast radius.

All analysis is read-only.  Nothing is cached between calls: rules can
change between analysis and apply, so every request starts from the
rule store's current contents.
"""

from __future__ import annotations

import logging

from schema_engine.models.attribute import Schema
from schema_engine.models.change import ChangeType
from schema_engine.models.impact import (
    AffectedRule,
    AttributeImpact,
    ReferenceLocation,
    RiskLevel,
)
from schema_engine.models.rule import Rule
from schema_engine.propagation.retry import RetryConfig, async_retry_with_backoff
from schema_engine.propagation.scanner import ReferenceScanner
from schema_engine.propagation.stores import RuleStore, SchemaAttributeStore

logger = logging.getLogger(__name__)

_DEFAULT_LARGE_IMPACT_THRESHOLD: int = 10


# ---------------------------------------------------------------------------
# Risk classification
# ---------------------------------------------------------------------------


def classify_risk(
    change_type: ChangeType | None,
    affected_rules: list[AffectedRule],
    *,
    large_impact_threshold: int = _DEFAULT_LARGE_IMPACT_THRESHOLD,
) -> RiskLevel:
    """Classify the risk of applying *change_type* to the given usages.

    Evaluated as a priority list: the ``high`` conditions first, then
    ``medium``, else ``low``; ``none`` when nothing is affected.  Without a
    change type the worst case (``delete``) is assumed.
    """
    total = len(affected_rules)
    if total == 0:
        return RiskLevel.NONE

    effective = change_type or ChangeType.DELETE
    locations = {usage.location for rule in affected_rules for usage in rule.usages}
    in_conditions = ReferenceLocation.CONDITION in locations

    if effective == ChangeType.DELETE and in_conditions:
        return RiskLevel.HIGH
    if total > large_impact_threshold:
        return RiskLevel.HIGH
    if effective == ChangeType.RETYPE:
        return RiskLevel.MEDIUM
    if effective == ChangeType.DELETE:
        # Only action locations remain at this point.
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _summarize(
    schema_label: str,
    attribute_name: str,
    affected_rules: list[AffectedRule],
    risk: RiskLevel,
) -> str:
    if not affected_rules:
        return f"Attribute '{attribute_name}' of schema {schema_label} is not referenced by any rule."

    condition_usages = sum(
        1 for rule in affected_rules for usage in rule.usages if usage.location == ReferenceLocation.CONDITION
    )
    action_usages = sum(1 for rule in affected_rules for usage in rule.usages) - condition_usages
    projects = sorted({rule.project_name for rule in affected_rules if rule.project_name})

    parts: list[str] = [
        f"Attribute '{attribute_name}' of schema {schema_label} is referenced by "
        f"{len(affected_rules)} rule(s): {condition_usages} condition and {action_usages} action usage(s)."
    ]
    if projects:
        parts.append(f"Projects: {', '.join(projects)}.")
    parts.append(f"Risk: {risk.value}.")
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class ImpactAnalyzer:
    """Compute the :class:`AttributeImpact` of a proposed attribute change.

    Parameters
    ----------
    schema_store:
        Source of schema definitions.
    rule_store:
        Source of the rules bound to a schema.
    scanner:
        Reference scanner; a default one is created when omitted.
    large_impact_threshold:
        Rule count above which any change is classified ``high``.
    retry_config:
        Backoff for transient store failures during the read.
    """

    def __init__(
        self,
        schema_store: SchemaAttributeStore,
        rule_store: RuleStore,
        *,
        scanner: ReferenceScanner | None = None,
        large_impact_threshold: int = _DEFAULT_LARGE_IMPACT_THRESHOLD,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self._schema_store = schema_store
        self._rule_store = rule_store
        self._scanner = scanner or ReferenceScanner()
        self._large_impact_threshold = large_impact_threshold
        self._retry_config = retry_config or RetryConfig()

    async def analyze(
        self,
        schema_id: int,
        attribute_name: str,
        change_type: ChangeType | None = None,
    ) -> AttributeImpact:
        """Fetch the schema and its bound rules, then analyse them.

        Raises
        ------
        NotFoundError
            If the schema does not exist.  A missing attribute is not an
            error: after a completed rename the old name simply has no
            remaining references.
        """
        schema = await async_retry_with_backoff(
            lambda: self._schema_store.get_schema(schema_id),
            self._retry_config,
        )
        rules = await async_retry_with_backoff(
            lambda: self._rule_store.list_rules_referencing_schema(schema_id),
            self._retry_config,
        )
        return self.analyze_rules(schema, attribute_name, rules, change_type)

    def analyze_rules(
        self,
        schema: Schema,
        attribute_name: str,
        rules: list[Rule],
        change_type: ChangeType | None = None,
    ) -> AttributeImpact:
        """Analyse an already-fetched rule set.  Pure; no I/O."""
        affected: list[AffectedRule] = []
        for rule in sorted(rules, key=lambda r: r.id):
            usages = self._scanner.scan(rule, schema.id, attribute_name, schema.name)
            if not usages:
                continue
            affected.append(
                AffectedRule(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    project_id=rule.project_id,
                    project_name=rule.project_name,
                    rule_version=rule.version,
                    usages=usages,
                )
            )

        risk = classify_risk(change_type, affected, large_impact_threshold=self._large_impact_threshold)
        summary = _summarize(f"'{schema.name}'", attribute_name, affected, risk)

        logger.info(
            "Impact of %s on %s.%s: %d of %d bound rule(s) affected, risk=%s",
            change_type.value if change_type else "any change",
            schema.name,
            attribute_name,
            len(affected),
            len(rules),
            risk.value,
        )

        return AttributeImpact(
            attribute_name=attribute_name,
            schema_id=schema.id,
            schema_name=schema.name,
            affected_rules=affected,
            total_affected_rules=len(affected),
            risk_level=risk,
            summary=summary,
        )
