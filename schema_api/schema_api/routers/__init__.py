"""API router modules for the schema change service."""

from __future__ import annotations

from schema_api.routers import health, schema_attributes

__all__ = ["health", "schema_attributes"]
