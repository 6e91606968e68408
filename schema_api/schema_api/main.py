"""FastAPI application entry-point for the schema change service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from schema_engine.errors import ConflictError, NotFoundError, TransientStoreError
from schema_engine.state import create_tables
from sqlalchemy.exc import SQLAlchemyError

from schema_api import __version__
from schema_api.config import APISettings, load_api_settings
from schema_api.dependencies import dispose_engine, get_engine_settings, init_engine
from schema_api.middleware.json_formatter import JSONFormatter
from schema_api.middleware.logging import RequestLoggingMiddleware
from schema_api.routers import health, schema_attributes

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def _enable_structured_logging() -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup the async database engine is initialised and, for SQLite or
    when ``create_tables_on_startup`` is set, the state tables are created.
    On shutdown the engine pool is disposed.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging or get_engine_settings().structured_logging:
        _enable_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.create_tables_on_startup or is_local:
        await create_tables(engine)

    yield

    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Schema Change API",
        description="Impact analysis and rule propagation for schema attribute changes.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(schema_attributes.router, prefix="/api/v1")
    app.include_router(health.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
        logger.warning("Conflict on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(TransientStoreError)
    async def store_unavailable_handler(request: Request, exc: TransientStoreError) -> JSONResponse:
        logger.error("Store unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "State store unavailable"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn schema_api.main:app``.
app = create_app()
