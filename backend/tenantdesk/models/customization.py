"""Per-organization UI customization and its version history."""
from __future__ import annotations

import datetime
import uuid

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from tenantdesk.database import Base
from tenantdesk.models.base import JSONType, TimestampMixin, UUIDPrimaryKeyMixin, utcnow

CONFIG_SECTIONS: tuple[str, ...] = (
    "dashboard_config",
    "navigation_config",
    "branding_config",
    "stats_config",
    "department_config",
)


class OrganizationCustomization(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Active UI customization for one organization and vertical."""
    __tablename__ = "organization_ui_customizations"
    __table_args__ = (
        UniqueConstraint("organization_id", "vertical_id", name="uq_customization_org_vertical"),
    )

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    vertical_id: Mapped[str] = mapped_column(String(20), nullable=False)
    dashboard_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    navigation_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    branding_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    stats_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    department_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    updated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)

    def snapshot(self) -> dict:
        return {section: dict(getattr(self, section) or {}) for section in CONFIG_SECTIONS}

    def __repr__(self) -> str:
        return f"<OrganizationCustomization {self.vertical_id!r} v{self.version}>"


class CustomizationHistory(UUIDPrimaryKeyMixin, Base):
    """Snapshot written on every save or rollback."""
    __tablename__ = "organization_customization_history"

    customization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organization_ui_customizations.id", ondelete="CASCADE"), nullable=False
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    vertical_id: Mapped[str] = mapped_column(String(20), nullable=False)
    config_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    changed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    change_description: Mapped[str | None] = mapped_column(Text)
    is_milestone: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    milestone_name: Mapped[str | None] = mapped_column(String(200))
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<CustomizationHistory {self.vertical_id!r} v{self.version_number}>"
