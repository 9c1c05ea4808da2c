"""Department landing-page content: stat cards, features and tools.

All three share the same scoping columns and a ``display_order`` that the
drag-and-drop editor rewrites.
"""
from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Float, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from tenantdesk.database import Base
from tenantdesk.models.base import JSONType, TimestampMixin, UUIDPrimaryKeyMixin

METRIC_TYPES: list[str] = ["documents", "team_members", "active_projects", "resources", "custom"]
TOOL_TYPES: list[str] = ["internal_route", "external_link", "integration"]


class DepartmentContentMixin(UUIDPrimaryKeyMixin, TimestampMixin):
    """Scoping and ordering columns shared by landing-page items."""

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    vertical_id: Mapped[str] = mapped_column(String(20), nullable=False)
    department_id: Mapped[str] = mapped_column(String(100), nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    updated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)

    @declared_attr.directive
    def __table_args__(cls):
        return (
            Index(
                f"ix_{cls.__tablename__}_scope",
                "organization_id",
                "vertical_id",
                "department_id",
            ),
        )


class StatCard(DepartmentContentMixin, Base):
    __tablename__ = "department_stat_cards"

    label: Mapped[str] = mapped_column(String(100), nullable=False)
    icon_name: Mapped[str] = mapped_column(String(50), nullable=False, default="FileText")
    metric_type: Mapped[str] = mapped_column(String(30), nullable=False, default="custom")
    custom_metric_value: Mapped[float | None] = mapped_column(Float)

    def __repr__(self) -> str:
        return f"<StatCard {self.label!r} #{self.display_order}>"


class DepartmentFeature(DepartmentContentMixin, Base):
    __tablename__ = "department_features"

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<DepartmentFeature {self.title!r} #{self.display_order}>"


class DepartmentTool(DepartmentContentMixin, Base):
    __tablename__ = "department_tools"

    tool_name: Mapped[str] = mapped_column(String(200), nullable=False)
    tool_description: Mapped[str | None] = mapped_column(Text)
    tool_url: Mapped[str | None] = mapped_column(Text)
    tool_type: Mapped[str] = mapped_column(String(30), nullable=False, default="internal_route")
    integration_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<DepartmentTool {self.tool_name!r} #{self.display_order}>"
