"""Organization UI customization routes."""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.database import get_db
from tenantdesk.middleware.auth import get_current_user, require_level
from tenantdesk.models.customization import CONFIG_SECTIONS
from tenantdesk.rbac import VALID_VERTICALS
from tenantdesk.routes.errors import unwrap
from tenantdesk.services.change_feed import ChangeFeed, get_change_feed
from tenantdesk.services.context import ActorContext
from tenantdesk.services.customization_service import CustomizationService, serialize_history

router = APIRouter(prefix="/api/customizations", tags=["customizations"])


class CustomizationSave(BaseModel):
    dashboard_config: dict | None = None
    navigation_config: dict | None = None
    branding_config: dict | None = None
    stats_config: dict | None = None
    department_config: dict | None = None
    change_description: str | None = None


class MilestoneRequest(BaseModel):
    milestone_name: str = Field(min_length=1, max_length=200)


def _vertical(vertical_id: str | None = Query(None)) -> str | None:
    if vertical_id is not None and vertical_id not in VALID_VERTICALS:
        raise HTTPException(status_code=422, detail=f"Unknown vertical '{vertical_id}'")
    return vertical_id


def _service(
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> CustomizationService:
    return CustomizationService(db, feed)


@router.get("")
async def get_customization(
    vertical_id: str | None = Depends(_vertical),
    ctx: ActorContext = Depends(get_current_user),
    service: CustomizationService = Depends(_service),
):
    return await service.get(ctx, vertical_id)


@router.put("")
async def save_customization(
    body: CustomizationSave,
    vertical_id: str | None = Depends(_vertical),
    ctx: ActorContext = Depends(require_level("admin")),
    service: CustomizationService = Depends(_service),
):
    """Replace the sections present in the body; others are kept."""
    sections = {
        s: v for s, v in body.model_dump(exclude_unset=True).items()
        if s in CONFIG_SECTIONS and v is not None
    }
    if not sections:
        raise HTTPException(status_code=422, detail="No configuration sections provided")
    outcome = await service.save(ctx, sections, body.change_description, vertical_id)
    return unwrap(outcome)["customization"]


@router.get("/history")
async def customization_history(
    limit: int = Query(50, ge=1, le=200),
    vertical_id: str | None = Depends(_vertical),
    ctx: ActorContext = Depends(require_level("admin")),
    service: CustomizationService = Depends(_service),
):
    items = [serialize_history(h) for h in await service.history(ctx, vertical_id, limit)]
    return {"items": items, "total": len(items)}


@router.post("/history/{history_id}/milestone")
async def mark_milestone(
    history_id: uuid.UUID,
    body: MilestoneRequest,
    ctx: ActorContext = Depends(require_level("admin")),
    service: CustomizationService = Depends(_service),
):
    return unwrap(await service.mark_milestone(ctx, history_id, body.milestone_name))["history"]


@router.post("/history/{history_id}/rollback")
async def rollback_customization(
    history_id: uuid.UUID,
    ctx: ActorContext = Depends(require_level("admin")),
    service: CustomizationService = Depends(_service),
):
    return unwrap(await service.rollback(ctx, history_id))["customization"]
