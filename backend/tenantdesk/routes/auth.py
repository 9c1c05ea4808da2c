"""Authentication routes."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.database import get_db
from tenantdesk.middleware.auth import (
    create_access_token,
    get_current_user,
    load_actor,
    verify_password,
)
from tenantdesk.services.context import ActorContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, request: Request, db: AsyncSession = Depends(get_db)):
    from tenantdesk.models.user import User

    stmt = select(User).where(User.email == body.email, User.is_active.is_(True))
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()

    if not user or not verify_password(body.password, user.password_hash):
        logger.warning(
            "Failed login for %s from %s",
            body.email,
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    ctx = await load_actor(db, user.email)
    token = create_access_token({"sub": user.email, "user_id": user.id})
    return TokenResponse(access_token=token, user=ctx.to_dict())


@router.get("/me")
async def get_me(ctx: ActorContext = Depends(get_current_user)):
    return ctx.to_dict()


@router.post("/refresh")
async def refresh_token(ctx: ActorContext = Depends(get_current_user)):
    token = create_access_token({"sub": ctx.email, "user_id": ctx.user_id})
    return {"access_token": token, "token_type": "bearer"}
