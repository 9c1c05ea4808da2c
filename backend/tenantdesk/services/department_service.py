"""Department landing-page content (stat cards, features, tools)."""
from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.models.base import iso
from tenantdesk.models.department import DepartmentFeature, DepartmentTool, StatCard
from tenantdesk.services.change_feed import ChangeFeed, get_change_feed
from tenantdesk.services.context import ActorContext
from tenantdesk.services.reorder import ReorderItem, persist_order, reorder

logger = logging.getLogger(__name__)

CONTENT_MODELS: dict[str, type] = {
    "stat-cards": StatCard,
    "features": DepartmentFeature,
    "tools": DepartmentTool,
}

CONTENT_FIELDS: dict[str, tuple[str, ...]] = {
    "stat-cards": ("label", "icon_name", "metric_type", "custom_metric_value"),
    "features": ("title", "description"),
    "tools": ("tool_name", "tool_description", "tool_url", "tool_type", "integration_config"),
}

COMMON_FIELDS: tuple[str, ...] = ("display_order", "is_visible")


class DepartmentContentService:
    def __init__(self, db: AsyncSession, feed: ChangeFeed | None = None):
        self.db = db
        self.feed = feed or get_change_feed()

    def _scoped(self, model, ctx: ActorContext, department_id: str, vertical_id: str | None = None):
        return select(model).where(
            model.organization_id == ctx.organization_id,
            model.vertical_id == (vertical_id or ctx.vertical_id),
            model.department_id == department_id,
        )

    async def landing_data(
        self, ctx: ActorContext, department_id: str, vertical_id: str | None = None
    ) -> dict[str, list[dict]]:
        """Visible stat cards, features and tools, each in display order."""
        data = {}
        for kind, model in CONTENT_MODELS.items():
            result = await self.db.execute(
                self._scoped(model, ctx, department_id, vertical_id)
                .where(model.is_visible.is_(True))
                .order_by(model.display_order, model.created_at)
            )
            data[kind.replace("-", "_")] = [serialize_item(kind, i) for i in result.scalars().all()]
        return data

    async def list_items(
        self, ctx: ActorContext, kind: str, department_id: str, vertical_id: str | None = None
    ) -> list:
        model = CONTENT_MODELS[kind]
        result = await self.db.execute(
            self._scoped(model, ctx, department_id, vertical_id)
            .order_by(model.display_order, model.created_at)
        )
        return list(result.scalars().all())

    async def get_item(self, ctx: ActorContext, kind: str, item_id: uuid.UUID):
        model = CONTENT_MODELS[kind]
        result = await self.db.execute(
            select(model).where(model.id == item_id, model.organization_id == ctx.organization_id)
        )
        return result.scalar_one_or_none()

    async def create_item(
        self,
        ctx: ActorContext,
        kind: str,
        department_id: str,
        values: dict[str, Any],
        vertical_id: str | None = None,
    ):
        model = CONTENT_MODELS[kind]
        vertical_id = vertical_id or ctx.vertical_id
        if values.get("display_order") is None:
            result = await self.db.execute(
                select(func.max(model.display_order)).where(
                    model.organization_id == ctx.organization_id,
                    model.vertical_id == vertical_id,
                    model.department_id == department_id,
                )
            )
            current_max = result.scalar()
            values["display_order"] = 0 if current_max is None else current_max + 1

        item = model(
            organization_id=ctx.organization_id,
            vertical_id=vertical_id,
            department_id=department_id,
            created_by=ctx.user_id,
            updated_by=ctx.user_id,
            **{k: v for k, v in values.items() if k in CONTENT_FIELDS[kind] + COMMON_FIELDS},
        )
        self.db.add(item)
        await self.db.commit()
        await self.db.refresh(item)
        self.feed.publish(model.__tablename__, "insert", ctx.organization_id, record_id=item.id)
        return item

    async def update_item(self, ctx: ActorContext, kind: str, item_id: uuid.UUID, values: dict[str, Any]):
        item = await self.get_item(ctx, kind, item_id)
        if item is None:
            return None
        for field in CONTENT_FIELDS[kind] + COMMON_FIELDS:
            if field in values:
                setattr(item, field, values[field])
        item.updated_by = ctx.user_id
        await self.db.commit()
        await self.db.refresh(item)
        self.feed.publish(item.__tablename__, "update", ctx.organization_id, record_id=item.id)
        return item

    async def delete_item(self, ctx: ActorContext, kind: str, item_id: uuid.UUID) -> bool:
        item = await self.get_item(ctx, kind, item_id)
        if item is None:
            return False
        await self.db.delete(item)
        await self.db.commit()
        self.feed.publish(CONTENT_MODELS[kind].__tablename__, "delete", ctx.organization_id, record_id=item_id)
        return True

    async def reorder_items(
        self,
        ctx: ActorContext,
        kind: str,
        department_id: str,
        moved_id: uuid.UUID,
        target_id: uuid.UUID,
        vertical_id: str | None = None,
    ) -> list[ReorderItem]:
        """Move one item onto another's slot and persist the whole list.

        Raises ``ValueError`` if either id is not in the list.
        """
        model = CONTENT_MODELS[kind]
        vertical_id = vertical_id or ctx.vertical_id
        current = await self.list_items(ctx, kind, department_id, vertical_id)
        new_order = reorder(
            [ReorderItem(i.id, i.display_order) for i in current], moved_id, target_id
        )
        try:
            await persist_order(
                self.db,
                model,
                new_order,
                organization_id=ctx.organization_id,
                vertical_id=vertical_id,
                department_id=department_id,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Reorder of %s in department %s failed", kind, department_id)
            raise

        self.feed.publish(model.__tablename__, "update", ctx.organization_id, record_id=moved_id)
        return new_order


def serialize_item(kind: str, item) -> dict[str, Any]:
    data = {
        "id": str(item.id),
        "vertical_id": item.vertical_id,
        "department_id": item.department_id,
        "display_order": item.display_order,
        "is_visible": item.is_visible,
        "created_at": iso(item.created_at),
        "updated_at": iso(item.updated_at),
    }
    for field in CONTENT_FIELDS[kind]:
        data[field] = getattr(item, field)
    return data
