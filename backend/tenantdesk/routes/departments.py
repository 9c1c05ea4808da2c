"""Department landing-page content routes."""
from __future__ import annotations

import uuid
from typing import Literal

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.database import get_db
from tenantdesk.middleware.auth import get_current_user, require_level
from tenantdesk.models.department import METRIC_TYPES, TOOL_TYPES
from tenantdesk.rbac import VALID_VERTICALS
from tenantdesk.services.change_feed import ChangeFeed, get_change_feed
from tenantdesk.services.context import ActorContext
from tenantdesk.services.department_service import DepartmentContentService, serialize_item

router = APIRouter(prefix="/api/departments", tags=["departments"])

ContentKind = Literal["stat-cards", "features", "tools"]


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class _Ordering(BaseModel):
    display_order: int | None = Field(default=None, ge=0)
    is_visible: bool | None = None


class StatCardIn(_Ordering):
    label: str | None = Field(default=None, min_length=1, max_length=100)
    icon_name: str | None = None
    metric_type: str | None = None
    custom_metric_value: float | None = None

    @field_validator("metric_type")
    @classmethod
    def validate_metric_type(cls, v):
        if v is not None and v not in METRIC_TYPES:
            raise ValueError(f"Must be one of: {', '.join(METRIC_TYPES)}")
        return v


class FeatureIn(_Ordering):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None


class ToolIn(_Ordering):
    tool_name: str | None = Field(default=None, min_length=1, max_length=200)
    tool_description: str | None = None
    tool_url: str | None = None
    tool_type: str | None = None
    integration_config: dict | None = None

    @field_validator("tool_type")
    @classmethod
    def validate_tool_type(cls, v):
        if v is not None and v not in TOOL_TYPES:
            raise ValueError(f"Must be one of: {', '.join(TOOL_TYPES)}")
        return v


SCHEMAS: dict[str, type[BaseModel]] = {
    "stat-cards": StatCardIn,
    "features": FeatureIn,
    "tools": ToolIn,
}

REQUIRED_ON_CREATE: dict[str, str] = {
    "stat-cards": "label",
    "features": "title",
    "tools": "tool_name",
}


class ReorderRequest(BaseModel):
    moved_id: uuid.UUID
    target_id: uuid.UUID


def _parse(kind: str, payload: dict, creating: bool) -> dict:
    try:
        values = SCHEMAS[kind].model_validate(payload).model_dump(exclude_unset=True, exclude_none=True)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_context=False))
    if creating and not values.get(REQUIRED_ON_CREATE[kind]):
        raise HTTPException(status_code=422, detail=f"'{REQUIRED_ON_CREATE[kind]}' is required")
    return values


def _vertical(vertical_id: str | None = Query(None)) -> str | None:
    if vertical_id is not None and vertical_id not in VALID_VERTICALS:
        raise HTTPException(status_code=422, detail=f"Unknown vertical '{vertical_id}'")
    return vertical_id


def _service(
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> DepartmentContentService:
    return DepartmentContentService(db, feed)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/{department_id}/landing")
async def landing_data(
    department_id: str,
    vertical_id: str | None = Depends(_vertical),
    ctx: ActorContext = Depends(get_current_user),
    service: DepartmentContentService = Depends(_service),
):
    return await service.landing_data(ctx, department_id, vertical_id)


@router.get("/{department_id}/{kind}")
async def list_items(
    department_id: str,
    kind: ContentKind,
    vertical_id: str | None = Depends(_vertical),
    ctx: ActorContext = Depends(require_level("admin")),
    service: DepartmentContentService = Depends(_service),
):
    """All items including hidden ones, in display order."""
    items = [serialize_item(kind, i) for i in await service.list_items(ctx, kind, department_id, vertical_id)]
    return {"items": items, "total": len(items)}


@router.post("/{department_id}/{kind}", status_code=201)
async def create_item(
    department_id: str,
    kind: ContentKind,
    payload: dict = Body(...),
    vertical_id: str | None = Depends(_vertical),
    ctx: ActorContext = Depends(require_level("admin")),
    service: DepartmentContentService = Depends(_service),
):
    values = _parse(kind, payload, creating=True)
    item = await service.create_item(ctx, kind, department_id, values, vertical_id)
    return serialize_item(kind, item)


@router.post("/{department_id}/{kind}/reorder")
async def reorder_items(
    department_id: str,
    kind: ContentKind,
    body: ReorderRequest,
    vertical_id: str | None = Depends(_vertical),
    ctx: ActorContext = Depends(require_level("admin")),
    service: DepartmentContentService = Depends(_service),
):
    try:
        new_order = await service.reorder_items(
            ctx, kind, department_id, body.moved_id, body.target_id, vertical_id
        )
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {
        "items": [{"id": str(i.id), "display_order": i.display_order} for i in new_order],
    }


@router.put("/{department_id}/{kind}/{item_id}")
async def update_item(
    department_id: str,
    kind: ContentKind,
    item_id: uuid.UUID,
    payload: dict = Body(...),
    ctx: ActorContext = Depends(require_level("admin")),
    service: DepartmentContentService = Depends(_service),
):
    values = _parse(kind, payload, creating=False)
    existing = await service.get_item(ctx, kind, item_id)
    if existing is None or existing.department_id != department_id:
        raise HTTPException(status_code=404, detail="Item not found")
    item = await service.update_item(ctx, kind, item_id, values)
    return serialize_item(kind, item)


@router.delete("/{department_id}/{kind}/{item_id}")
async def delete_item(
    department_id: str,
    kind: ContentKind,
    item_id: uuid.UUID,
    ctx: ActorContext = Depends(require_level("admin")),
    service: DepartmentContentService = Depends(_service),
):
    existing = await service.get_item(ctx, kind, item_id)
    if existing is None or existing.department_id != department_id:
        raise HTTPException(status_code=404, detail="Item not found")
    if not await service.delete_item(ctx, kind, item_id):
        raise HTTPException(status_code=404, detail="Item not found")
    return {"status": "deleted"}
