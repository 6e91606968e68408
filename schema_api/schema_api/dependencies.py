"""FastAPI dependency injection for settings, database sessions, and the engine."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from schema_engine.compiler import RuleCompiler
from schema_engine.config import Settings, load_settings
from schema_engine.propagation import PropagationService
from schema_engine.state import SqlRuleStore, SqlSchemaAttributeStore, get_engine, session_scope
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from schema_api.config import APISettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_engine_settings_cache: Settings | None = None


def get_engine_settings() -> Settings:
    """Return the cached engine :class:`Settings` singleton."""
    global _engine_settings_cache  # noqa: PLW0603
    if _engine_settings_cache is None:
        _engine_settings_cache = load_settings()
    return _engine_settings_cache


EngineSettingsDep = Annotated[Settings, Depends(get_engine_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on error."""
    async with session_scope(get_session_factory()) as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Propagation engine
# ---------------------------------------------------------------------------


def get_propagation_service(engine_settings: EngineSettingsDep) -> PropagationService:
    """Build a :class:`PropagationService` over the SQL stores.

    The stores open their own session per call, so the service holds only
    the session factory and is cheap to build per request.
    """
    factory = get_session_factory()
    return PropagationService(
        SqlSchemaAttributeStore(factory),
        SqlRuleStore(factory),
        RuleCompiler(package_name=engine_settings.compiler_package),
        settings=engine_settings,
    )


PropagationServiceDep = Annotated[PropagationService, Depends(get_propagation_service)]
