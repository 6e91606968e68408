"""Rule compiler: regenerates the derived executable form of a rule."""

from schema_engine.compiler.drl import RuleCompiler, compute_content_hash

__all__ = ["RuleCompiler", "compute_content_hash"]
