"""Schema engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Engine settings loaded from environment variables with SCHEMA_ENGINE_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="SCHEMA_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.schema_engine/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Impact analysis
    large_impact_threshold: int = Field(default=10, ge=1)
    max_tree_depth: int = Field(default=64, ge=1)

    # Propagation
    propagation_concurrency: int = Field(default=8, ge=1)
    apply_timeout_seconds: float | None = Field(default=None, gt=0.0)

    # Transient store failures (connection loss).  Conflicts are never retried.
    store_max_retries: int = Field(default=2, ge=0)
    store_retry_base_delay: float = Field(default=0.5, gt=0.0)
    store_retry_max_delay: float = Field(default=5.0, gt=0.0)

    # Compiler
    compiler_package: str = "com.rules.generated"

    # Telemetry
    structured_logging: bool = False


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
