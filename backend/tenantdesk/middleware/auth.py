"""Authentication and authorization for TenantDesk.

Provides:
- Password hashing (bcrypt)
- JWT creation / validation
- ``get_current_user()`` dependency resolving the caller to an ``ActorContext``
- ``require_level()`` permission-level gate
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.config import settings
from tenantdesk.database import get_db
from tenantdesk.rbac import PERMISSION_LEVELS
from tenantdesk.services.context import ActorContext

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain: str, hashed: str) -> bool:
    """Compare a plain-text password against a bcrypt hash."""
    return _pwd_context.verify(plain, hashed)


def hash_password(plain: str) -> str:
    """Return the bcrypt hash of a plain-text password."""
    return _pwd_context.hash(plain)


# ---------------------------------------------------------------------------
# JWT helpers
# ---------------------------------------------------------------------------


def create_access_token(data: dict[str, Any]) -> str:
    """Create a signed JWT containing *sub* (email) and *exp*."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRY_MINUTES)
    to_encode.update({"exp": expire})

    for key in ("user_id", "organization_id"):
        if key in to_encode and not isinstance(to_encode[key], str):
            to_encode[key] = str(to_encode[key])

    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> str | None:
    """Return the token subject, or ``None`` if the token is invalid."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub")


# ---------------------------------------------------------------------------
# OAuth2 scheme (tells Swagger UI where the login endpoint is)
# ---------------------------------------------------------------------------

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


# ---------------------------------------------------------------------------
# Current-user dependency
# ---------------------------------------------------------------------------


async def load_actor(
    db: AsyncSession,
    email: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> ActorContext | None:
    """Build the caller context for an active user, or ``None``."""
    from tenantdesk.models.user import User
    from tenantdesk.services.permission_service import user_permission_level

    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        return None

    return ActorContext(
        user_id=user.id,
        organization_id=user.organization_id,
        vertical_id=user.active_vertical or user.organization.vertical_id,
        role=user.role,
        permission_level=user_permission_level(user),
        email=user.email,
        full_name=user.full_name,
        ip_address=ip_address,
        user_agent=user_agent,
    )


async def get_current_user(
    request: Request,
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> ActorContext:
    """Decode the JWT and resolve the caller.

    Raises ``HTTPException(401)`` when the token is invalid or the user is
    unknown or deactivated.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    email = decode_token(token)
    if email is None:
        raise credentials_exception

    ctx = await load_actor(
        db,
        email,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    if ctx is None:
        raise credentials_exception
    return ctx


# ---------------------------------------------------------------------------
# Level-checking dependency factory
# ---------------------------------------------------------------------------


def require_level(level: str):
    """Return a FastAPI dependency that rejects callers below *level*.

    Usage::

        @router.post("/grant")
        async def grant(ctx: ActorContext = Depends(require_level("admin"))):
            ...
    """
    if level not in PERMISSION_LEVELS:
        raise ValueError(f"Unknown permission level '{level}'")

    async def _check_level(
        ctx: ActorContext = Depends(get_current_user),
    ) -> ActorContext:
        if not ctx.has_level(level):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Level '{ctx.permission_level}' is not permitted. Required: {level} or higher.",
            )
        return ctx

    return _check_level
