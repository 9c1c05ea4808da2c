"""User management within the caller's organization (admin only)."""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.database import get_db
from tenantdesk.middleware.auth import hash_password, require_level
from tenantdesk.models.base import iso
from tenantdesk.models.user import User
from tenantdesk.rbac import PERMISSION_LEVELS, VALID_VERTICALS, level_at_least
from tenantdesk.routes.errors import unwrap
from tenantdesk.services.change_feed import ChangeFeed, get_change_feed
from tenantdesk.services.context import ActorContext
from tenantdesk.services.permission_service import PermissionService, user_permission_level

router = APIRouter(prefix="/api/users", tags=["users"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


def _check_role(v):
    if v is not None and v not in PERMISSION_LEVELS:
        raise ValueError(f"Must be one of: {', '.join(PERMISSION_LEVELS)}")
    return v


def _check_vertical(v):
    if v is not None and v not in VALID_VERTICALS:
        raise ValueError(f"Must be one of: {', '.join(VALID_VERTICALS)}")
    return v


class UserCreate(BaseModel):
    email: str
    password: str
    full_name: str | None = None
    role: str = "employee"
    active_vertical: str | None = None

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        return _check_role(v)

    @field_validator("active_vertical")
    @classmethod
    def validate_vertical(cls, v):
        return _check_vertical(v)


class UserUpdate(BaseModel):
    full_name: str | None = None
    role: str | None = None
    active_vertical: str | None = None
    default_permission_template_id: uuid.UUID | None = None
    is_active: bool | None = None

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        return _check_role(v)

    @field_validator("active_vertical")
    @classmethod
    def validate_vertical(cls, v):
        return _check_vertical(v)


def _user_out(u: User) -> dict:
    return {
        "id": str(u.id),
        "email": u.email,
        "full_name": u.full_name,
        "role": u.role,
        "active_vertical": u.active_vertical,
        "default_permission_template_id": (
            str(u.default_permission_template_id) if u.default_permission_template_id else None
        ),
        "permission_level": user_permission_level(u),
        "is_active": u.is_active,
        "created_at": iso(u.created_at),
    }


def _guard_role_assignment(ctx: ActorContext, role: str) -> None:
    # Nobody hands out a level above their own
    if not level_at_least(ctx.permission_level, role):
        raise HTTPException(status_code=403, detail=f"Cannot assign role '{role}'")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("")
async def list_users(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(require_level("admin")),
):
    result = await db.execute(
        select(User).where(User.organization_id == ctx.organization_id).order_by(User.email)
    )
    items = [_user_out(u) for u in result.scalars().all()]
    return {"items": items, "total": len(items)}


@router.post("", status_code=201)
async def create_user(
    body: UserCreate,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(require_level("admin")),
    feed: ChangeFeed = Depends(get_change_feed),
):
    _guard_role_assignment(ctx, body.role)

    existing = await db.execute(select(User).where(User.email == body.email))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail="Email already registered")

    new_user = User(
        organization_id=ctx.organization_id,
        email=body.email,
        password_hash=hash_password(body.password),
        full_name=body.full_name,
        role=body.role,
        active_vertical=body.active_vertical,
    )
    db.add(new_user)
    await db.commit()
    await db.refresh(new_user)

    feed.publish("user_profiles", "insert", ctx.organization_id, user_id=new_user.id, record_id=new_user.id)
    return _user_out(new_user)


@router.put("/{user_id}")
async def update_user(
    user_id: uuid.UUID,
    body: UserUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(require_level("admin")),
    feed: ChangeFeed = Depends(get_change_feed),
):
    result = await db.execute(
        select(User).where(User.id == user_id, User.organization_id == ctx.organization_id)
    )
    target = result.scalar_one_or_none()
    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    if body.role is not None:
        _guard_role_assignment(ctx, body.role)

    if body.default_permission_template_id is not None:
        # The service checks the template level and writes the audit row.
        unwrap(
            await PermissionService(db, feed).apply_template(
                ctx, target.id, body.default_permission_template_id
            )
        )

    if body.role is not None:
        target.role = body.role

    for field in ("full_name", "active_vertical", "is_active"):
        value = getattr(body, field)
        if value is not None:
            setattr(target, field, value)

    await db.commit()
    await db.refresh(target)

    feed.publish("user_profiles", "update", ctx.organization_id, user_id=target.id, record_id=target.id)
    return _user_out(target)
