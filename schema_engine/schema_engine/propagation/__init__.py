"""Attribute change impact analysis and rule propagation."""

from schema_engine.propagation.analyzer import ImpactAnalyzer, classify_risk
from schema_engine.propagation.executor import PropagationExecutor
from schema_engine.propagation.planner import ChangePlanner
from schema_engine.propagation.scanner import ReferenceScanner
from schema_engine.propagation.service import PropagationService

__all__ = [
    "ChangePlanner",
    "ImpactAnalyzer",
    "PropagationExecutor",
    "PropagationService",
    "ReferenceScanner",
    "classify_risk",
]
