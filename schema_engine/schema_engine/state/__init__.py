"""SQLAlchemy-backed persistence for schemas and rules."""

from schema_engine.state.database import create_tables, get_engine, get_session_factory, session_scope
from schema_engine.state.stores import SqlRuleStore, SqlSchemaAttributeStore

__all__ = [
    "SqlRuleStore",
    "SqlSchemaAttributeStore",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
