"""SQLAlchemy models for the tool-permission system: registry, templates,
per-user grants, access requests and the permission audit trail."""
from __future__ import annotations

import datetime
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tenantdesk.database import Base
from tenantdesk.models.base import JSONType, TimestampMixin, UUIDPrimaryKeyMixin, utcnow

if TYPE_CHECKING:
    from tenantdesk.models.user import User


class Tool(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A capability gated by the permission system.

    ``permission_level`` is the minimum level that may use the tool when no
    override or template decides otherwise.
    """
    __tablename__ = "ai_tool_registry"

    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(String(50))
    permission_level: Mapped[str] = mapped_column(String(20), nullable=False, default="employee")
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Tool {self.slug!r} requires={self.permission_level!r}>"


class PermissionTemplate(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Reusable bundle of allowed/denied tools for a permission level.

    ``tool_permissions`` holds ``{"all": bool, "allowed_tools": [...],
    "denied_tools": [...]}``; ``all`` supersedes both lists.  System
    templates have no organization and are never edited.
    """
    __tablename__ = "ai_permission_templates"

    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE")
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    permission_level: Mapped[str] = mapped_column(String(20), nullable=False)
    tool_permissions: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    is_system_template: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)

    def __repr__(self) -> str:
        return f"<PermissionTemplate {self.name!r} level={self.permission_level!r}>"


class UserPermission(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Explicit per-user grant or denial of one tool.

    One row per ``(user_id, tool_id)``.  A row whose ``expires_at`` has
    passed no longer counts; it is not deleted.
    """
    __tablename__ = "ai_user_permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "tool_id", name="uq_user_permission_user_tool"),
    )

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False
    )
    tool_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ai_tool_registry.id", ondelete="CASCADE"), nullable=False
    )
    granted: Mapped[bool] = mapped_column(Boolean, nullable=False)
    granted_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    granted_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    reason: Mapped[str | None] = mapped_column(Text)
    is_temporary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        action = "grant" if self.granted else "deny"
        return f"<UserPermission {action} tool {self.tool_id} for user {self.user_id}>"


class ToolAccessRequest(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A user's request for a tool grant, reviewed by an admin."""
    __tablename__ = "ai_tool_access_requests"
    __table_args__ = (
        Index("ix_access_requests_org_status", "organization_id", "status"),
        Index("ix_access_requests_user_tool", "user_id", "tool_id"),
        # At most one open request per user and tool
        Index(
            "uq_access_requests_pending",
            "user_id",
            "tool_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False
    )
    tool_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ai_tool_registry.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    request_reason: Mapped[str] = mapped_column(Text, nullable=False)
    business_justification: Mapped[str] = mapped_column(Text, nullable=False)
    requested_duration_days: Mapped[int | None] = mapped_column(Integer)
    is_temporary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="normal")
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("user_profiles.id", ondelete="SET NULL")
    )
    reviewed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    review_comment: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))

    # ------ relationships ------
    user: Mapped[User] = relationship(
        "User", foreign_keys="ToolAccessRequest.user_id", lazy="selectin"
    )
    reviewer: Mapped[User | None] = relationship(
        "User", foreign_keys="ToolAccessRequest.reviewed_by", lazy="selectin"
    )
    tool: Mapped[Tool] = relationship("Tool", lazy="selectin")

    def __repr__(self) -> str:
        return f"<ToolAccessRequest {self.status!r} tool {self.tool_id} by {self.user_id}>"


class PermissionAuditEntry(UUIDPrimaryKeyMixin, Base):
    """Append-only record of every permission event."""
    __tablename__ = "ai_permission_audit_trail"
    __table_args__ = (
        Index("ix_permission_audit_org_created", "organization_id", "created_at"),
        Index("ix_permission_audit_action", "action_type"),
    )

    organization_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    tool_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    action_type: Mapped[str] = mapped_column(String(20), nullable=False)
    permission_before: Mapped[dict | None] = mapped_column(JSONType)
    permission_after: Mapped[dict | None] = mapped_column(JSONType)
    performed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    reason: Mapped[str | None] = mapped_column(Text)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<PermissionAuditEntry {self.action_type!r} user {self.user_id}>"
