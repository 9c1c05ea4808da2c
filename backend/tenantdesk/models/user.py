"""Tenant and user models."""
from __future__ import annotations

import datetime
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tenantdesk.database import Base
from tenantdesk.models.base import JSONType, TimestampMixin, UUIDPrimaryKeyMixin, utcnow

if TYPE_CHECKING:
    from tenantdesk.models.permission import PermissionTemplate


class Organization(UUIDPrimaryKeyMixin, Base):
    """A tenant.  ``vertical_id`` is the default industry mode."""
    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    vertical_id: Mapped[str] = mapped_column(String(20), nullable=False, default="business")
    enabled_verticals: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<Organization {self.name!r} vertical={self.vertical_id!r}>"


class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A member of an organization.  ``role`` is a permission level."""
    __tablename__ = "user_profiles"

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(200), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(200))
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="employee")
    active_vertical: Mapped[str | None] = mapped_column(String(20))
    default_permission_template_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("ai_permission_templates.id", ondelete="SET NULL")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # ------ relationships ------
    organization: Mapped[Organization] = relationship("Organization", lazy="selectin")
    default_permission_template: Mapped[PermissionTemplate | None] = relationship(
        "PermissionTemplate",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<User {self.email!r} role={self.role!r}>"
