"""Tool permission routes: checks, grants, revocations and templates."""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.database import get_db
from tenantdesk.middleware.auth import get_current_user, require_level
from tenantdesk.models.permission import Tool
from tenantdesk.rbac import PERMISSION_LEVELS, REVIEWER_LEVEL
from tenantdesk.routes.errors import unwrap
from tenantdesk.services.audit_service import PermissionAuditWriter, get_audit_writer
from tenantdesk.services.change_feed import ChangeFeed, get_change_feed
from tenantdesk.services.context import ActorContext
from tenantdesk.services.permission_service import (
    PermissionService,
    serialize_template,
    serialize_tool,
)

router = APIRouter(prefix="/api/permissions", tags=["permissions"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class CheckRequest(BaseModel):
    tool_id: uuid.UUID
    user_id: uuid.UUID | None = None


class GrantRequest(BaseModel):
    user_id: uuid.UUID
    tool_id: uuid.UUID
    reason: str | None = None
    expires_in_days: int | None = Field(default=None, gt=0)
    granted: bool = True


class RevokeRequest(BaseModel):
    user_id: uuid.UUID
    tool_id: uuid.UUID
    reason: str | None = None


class BulkUpdateRequest(BaseModel):
    user_ids: list[uuid.UUID] = Field(min_length=1)
    tool_id: uuid.UUID
    granted: bool
    reason: str | None = None
    expires_in_days: int | None = Field(default=None, gt=0)


class ToolPermissions(BaseModel):
    all: bool = False
    allowed_tools: list[str] = []
    denied_tools: list[str] = []


class TemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    permission_level: str
    tool_permissions: ToolPermissions = ToolPermissions()

    @field_validator("permission_level")
    @classmethod
    def validate_level(cls, v):
        if v not in PERMISSION_LEVELS:
            raise ValueError(f"Must be one of: {', '.join(PERMISSION_LEVELS)}")
        return v


class TemplateUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    permission_level: str | None = None
    tool_permissions: ToolPermissions | None = None

    @field_validator("permission_level")
    @classmethod
    def validate_level(cls, v):
        if v is not None and v not in PERMISSION_LEVELS:
            raise ValueError(f"Must be one of: {', '.join(PERMISSION_LEVELS)}")
        return v


class ApplyTemplateRequest(BaseModel):
    user_id: uuid.UUID


def _service(
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
    writer: PermissionAuditWriter = Depends(get_audit_writer),
) -> PermissionService:
    return PermissionService(db, feed, writer)


# ---------------------------------------------------------------------------
# CHECKS
# ---------------------------------------------------------------------------


@router.post("/check")
async def check_access(
    body: CheckRequest,
    ctx: ActorContext = Depends(get_current_user),
    service: PermissionService = Depends(_service),
):
    """Can ``user_id`` (default: the caller) use ``tool_id``?"""
    user_id = body.user_id or ctx.user_id
    if user_id != ctx.user_id and not ctx.has_level(REVIEWER_LEVEL):
        raise HTTPException(status_code=403, detail="Cannot check access for other users")
    result = await service.check_access(ctx, user_id, body.tool_id)
    return result.to_dict()


@router.get("/tools")
async def list_tools(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    result = await db.execute(select(Tool).order_by(Tool.category, Tool.name))
    items = [serialize_tool(t) for t in result.scalars().all()]
    return {"items": items, "total": len(items)}


@router.get("/me/tools")
async def my_tools(
    ctx: ActorContext = Depends(get_current_user),
    service: PermissionService = Depends(_service),
):
    items = await service.available_tools(ctx)
    return {"items": items, "total": len(items)}


@router.get("/users/{user_id}/summary")
async def permission_summary(
    user_id: uuid.UUID,
    ctx: ActorContext = Depends(get_current_user),
    service: PermissionService = Depends(_service),
):
    if user_id != ctx.user_id and not ctx.has_level(REVIEWER_LEVEL):
        raise HTTPException(status_code=403, detail="Cannot view other users' permissions")
    summary = await service.permission_summary(ctx, user_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="User not found")
    return summary


# ---------------------------------------------------------------------------
# GRANTS
# ---------------------------------------------------------------------------


@router.post("/grant", status_code=201)
async def grant_permission(
    body: GrantRequest,
    ctx: ActorContext = Depends(require_level("admin")),
    service: PermissionService = Depends(_service),
):
    outcome = await service.grant(
        ctx, body.user_id, body.tool_id, body.reason, body.expires_in_days, granted=body.granted
    )
    return unwrap(outcome)["permission"]


@router.post("/revoke")
async def revoke_permission(
    body: RevokeRequest,
    ctx: ActorContext = Depends(require_level("admin")),
    service: PermissionService = Depends(_service),
):
    unwrap(await service.revoke(ctx, body.user_id, body.tool_id, body.reason))
    return {"status": "revoked"}


@router.post("/bulk")
async def bulk_update(
    body: BulkUpdateRequest,
    ctx: ActorContext = Depends(require_level("admin")),
    service: PermissionService = Depends(_service),
):
    return await service.bulk_update(
        ctx, body.user_ids, body.tool_id, body.granted, body.reason, body.expires_in_days
    )


# ---------------------------------------------------------------------------
# TEMPLATES
# ---------------------------------------------------------------------------


@router.get("/templates")
async def list_templates(
    ctx: ActorContext = Depends(get_current_user),
    service: PermissionService = Depends(_service),
):
    items = [serialize_template(t) for t in await service.list_templates(ctx)]
    return {"items": items, "total": len(items)}


@router.post("/templates", status_code=201)
async def create_template(
    body: TemplateCreate,
    ctx: ActorContext = Depends(require_level("admin")),
    service: PermissionService = Depends(_service),
):
    outcome = await service.create_template(
        ctx,
        name=body.name,
        permission_level=body.permission_level,
        tool_permissions=body.tool_permissions.model_dump(),
        description=body.description,
    )
    return unwrap(outcome)["template"]


@router.put("/templates/{template_id}")
async def update_template(
    template_id: uuid.UUID,
    body: TemplateUpdate,
    ctx: ActorContext = Depends(require_level("admin")),
    service: PermissionService = Depends(_service),
):
    changes = body.model_dump(exclude_unset=True)
    outcome = await service.update_template(ctx, template_id, changes)
    return unwrap(outcome)["template"]


@router.delete("/templates/{template_id}")
async def delete_template(
    template_id: uuid.UUID,
    ctx: ActorContext = Depends(require_level("admin")),
    service: PermissionService = Depends(_service),
):
    unwrap(await service.delete_template(ctx, template_id))
    return {"status": "deleted"}


@router.post("/templates/{template_id}/apply")
async def apply_template(
    template_id: uuid.UUID,
    body: ApplyTemplateRequest,
    ctx: ActorContext = Depends(require_level("admin")),
    service: PermissionService = Depends(_service),
):
    return unwrap(await service.apply_template(ctx, body.user_id, template_id))
