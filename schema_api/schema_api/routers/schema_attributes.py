"""Schema attribute router: impact analysis and change propagation.

Both endpoints are thin wrappers over :class:`PropagationService`; every
call re-reads the stores, so an impact report is never reused by a later
apply.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError
from schema_engine.models.change import ChangeRequest, ChangeType

from schema_api.dependencies import PropagationServiceDep

router = APIRouter(prefix="/schemas", tags=["schema-attributes"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class ApplyChangeBody(BaseModel):
    """Request body for applying (or previewing) an attribute change."""

    change_type: ChangeType
    old_name: str | None = Field(default=None, description="Defaults to the attribute named in the path.")
    new_name: str | None = Field(default=None, description="Target name for a rename.")
    new_type: str | None = Field(default=None, description="Target type for a retype.")
    confirm_propagation: bool = Field(default=False, description="False returns a preview and writes nothing.")


def _to_change_request(name: str, body: ApplyChangeBody) -> ChangeRequest:
    if body.old_name is not None and body.old_name != name:
        raise HTTPException(
            status_code=422,
            detail=f"old_name '{body.old_name}' does not match attribute '{name}' in the path",
        )
    try:
        return ChangeRequest(
            change_type=body.change_type,
            old_name=name,
            new_name=body.new_name,
            new_type=body.new_type,
            confirm_propagation=body.confirm_propagation,
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()],
        ) from exc


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/{schema_id}/attributes/{name}/impact")
async def get_attribute_impact(
    schema_id: int,
    name: str,
    service: PropagationServiceDep,
    change_type: ChangeType | None = Query(default=None, description="Risk is scored for this change type."),
) -> dict[str, Any]:
    """List the rules referencing an attribute and the risk of changing it."""
    impact = await service.analyze_impact(schema_id, name, change_type)
    return impact.model_dump(mode="json")


@router.post("/{schema_id}/attributes/{name}/apply-changes")
async def apply_attribute_change(
    schema_id: int,
    name: str,
    body: ApplyChangeBody,
    service: PropagationServiceDep,
) -> dict[str, Any]:
    """Preview or apply an attribute change.

    Per-rule failures are reported in the result body with HTTP 200; the
    caller inspects ``success`` and ``failures``.
    """
    result = await service.apply_change(schema_id, _to_change_request(name, body))
    return result.model_dump(mode="json")
