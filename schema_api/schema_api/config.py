"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``SCHEMA_API_`` (e.g. ``SCHEMA_API_PORT=9000``) or through a ``.env``
    file in the working directory.  Engine behaviour (concurrency, retries,
    risk threshold) is configured separately with ``SCHEMA_ENGINE_``.
    """

    model_config = SettingsConfigDict(
        env_prefix="SCHEMA_API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    database_url: str = "sqlite+aiosqlite:///.schema_engine/state.db"

    # Create missing tables at startup (always done for SQLite).
    create_tables_on_startup: bool = False

    # Replace the root log handler with single-line JSON output.
    structured_logging: bool = False

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]


def load_api_settings() -> APISettings:
    """Load and return API settings from the environment."""
    return APISettings()
