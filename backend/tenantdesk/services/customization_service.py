"""Organization UI customization with version history and rollback."""
from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.models.base import iso
from tenantdesk.models.customization import (
    CONFIG_SECTIONS,
    CustomizationHistory,
    OrganizationCustomization,
)
from tenantdesk.services.change_feed import ChangeFeed, get_change_feed
from tenantdesk.services.context import ActorContext, OperationResult

logger = logging.getLogger(__name__)


def default_customization(ctx: ActorContext, vertical_id: str) -> dict[str, Any]:
    return {
        "id": None,
        "organization_id": str(ctx.organization_id),
        "vertical_id": vertical_id,
        **{section: {} for section in CONFIG_SECTIONS},
        "version": 0,
        "updated_at": None,
    }


class CustomizationService:
    def __init__(self, db: AsyncSession, feed: ChangeFeed | None = None):
        self.db = db
        self.feed = feed or get_change_feed()

    async def _active(self, ctx: ActorContext, vertical_id: str) -> OrganizationCustomization | None:
        result = await self.db.execute(
            select(OrganizationCustomization).where(
                OrganizationCustomization.organization_id == ctx.organization_id,
                OrganizationCustomization.vertical_id == vertical_id,
                OrganizationCustomization.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def get(self, ctx: ActorContext, vertical_id: str | None = None) -> dict[str, Any]:
        vertical_id = vertical_id or ctx.vertical_id
        row = await self._active(ctx, vertical_id)
        if row is None:
            return default_customization(ctx, vertical_id)
        return serialize_customization(row)

    async def _write_version(
        self,
        ctx: ActorContext,
        vertical_id: str,
        sections: dict[str, Any],
        change_description: str | None,
    ) -> OrganizationCustomization:
        row = await self._active(ctx, vertical_id)
        if row is None:
            row = OrganizationCustomization(
                organization_id=ctx.organization_id,
                vertical_id=vertical_id,
                version=1,
                created_by=ctx.user_id,
                **{section: {} for section in CONFIG_SECTIONS},
            )
            self.db.add(row)
        else:
            row.version += 1

        for section, value in sections.items():
            setattr(row, section, value)
        row.updated_by = ctx.user_id
        await self.db.flush()

        self.db.add(CustomizationHistory(
            customization_id=row.id,
            organization_id=ctx.organization_id,
            vertical_id=vertical_id,
            config_snapshot=row.snapshot(),
            version_number=row.version,
            changed_by=ctx.user_id,
            change_description=change_description,
        ))
        return row

    async def save(
        self,
        ctx: ActorContext,
        sections: dict[str, Any],
        change_description: str | None = None,
        vertical_id: str | None = None,
    ) -> OperationResult:
        """Replace only the sections given; bump the version; record history."""
        unknown = set(sections) - set(CONFIG_SECTIONS)
        if unknown:
            return OperationResult.fail(f"Unknown sections: {', '.join(sorted(unknown))}")
        vertical_id = vertical_id or ctx.vertical_id
        try:
            row = await self._write_version(ctx, vertical_id, sections, change_description)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Saving customization for %s/%s failed", ctx.organization_id, vertical_id)
            raise
        await self.db.refresh(row)
        self.feed.publish("organization_ui_customizations", "update", ctx.organization_id, record_id=row.id)
        return OperationResult.ok(customization=serialize_customization(row))

    async def history(
        self, ctx: ActorContext, vertical_id: str | None = None, limit: int = 50
    ) -> list[CustomizationHistory]:
        result = await self.db.execute(
            select(CustomizationHistory)
            .where(
                CustomizationHistory.organization_id == ctx.organization_id,
                CustomizationHistory.vertical_id == (vertical_id or ctx.vertical_id),
            )
            .order_by(CustomizationHistory.version_number.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _history_entry(self, ctx: ActorContext, history_id: uuid.UUID) -> CustomizationHistory | None:
        result = await self.db.execute(
            select(CustomizationHistory).where(
                CustomizationHistory.id == history_id,
                CustomizationHistory.organization_id == ctx.organization_id,
            )
        )
        return result.scalar_one_or_none()

    async def mark_milestone(
        self, ctx: ActorContext, history_id: uuid.UUID, milestone_name: str
    ) -> OperationResult:
        entry = await self._history_entry(ctx, history_id)
        if entry is None:
            return OperationResult.fail("History entry not found", "not_found")
        entry.is_milestone = True
        entry.milestone_name = milestone_name
        await self.db.commit()
        return OperationResult.ok(history=serialize_history(entry))

    async def rollback(self, ctx: ActorContext, history_id: uuid.UUID) -> OperationResult:
        """Restore a snapshot as a new version."""
        entry = await self._history_entry(ctx, history_id)
        if entry is None:
            return OperationResult.fail("History entry not found", "not_found")
        snapshot = {s: entry.config_snapshot.get(s, {}) for s in CONFIG_SECTIONS}
        try:
            row = await self._write_version(
                ctx,
                entry.vertical_id,
                snapshot,
                f"Rolled back to version {entry.version_number}",
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Rollback to history entry %s failed", history_id)
            raise
        await self.db.refresh(row)
        self.feed.publish("organization_ui_customizations", "update", ctx.organization_id, record_id=row.id)
        return OperationResult.ok(customization=serialize_customization(row))


def serialize_customization(row: OrganizationCustomization) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "organization_id": str(row.organization_id),
        "vertical_id": row.vertical_id,
        **row.snapshot(),
        "version": row.version,
        "updated_at": iso(row.updated_at),
    }


def serialize_history(h: CustomizationHistory) -> dict[str, Any]:
    return {
        "id": str(h.id),
        "version_number": h.version_number,
        "config_snapshot": h.config_snapshot,
        "changed_by": str(h.changed_by) if h.changed_by else None,
        "change_description": h.change_description,
        "is_milestone": h.is_milestone,
        "milestone_name": h.milestone_name,
        "created_at": iso(h.created_at),
    }
