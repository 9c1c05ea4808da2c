"""Drag-and-drop reordering of ordered lists."""
from __future__ import annotations

import dataclasses
import uuid
from collections.abc import Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession


@dataclasses.dataclass(frozen=True)
class ReorderItem:
    id: uuid.UUID
    display_order: int


def reorder(
    items: Sequence[ReorderItem],
    moved_id: uuid.UUID,
    target_id: uuid.UUID,
) -> list[ReorderItem]:
    """Move ``moved_id`` to the position currently held by ``target_id``.

    Items are taken in their current ``display_order``.  Moving down lands
    after the target, moving up lands before it.  The result is renumbered
    ``0..n-1``.
    """
    ordered = sorted(items, key=lambda item: item.display_order)
    ids = [item.id for item in ordered]
    if moved_id not in ids:
        raise ValueError(f"Unknown item id: {moved_id}")
    if target_id not in ids:
        raise ValueError(f"Unknown item id: {target_id}")

    from_index = ids.index(moved_id)
    to_index = ids.index(target_id)
    ids.insert(to_index, ids.pop(from_index))
    return [ReorderItem(id=item_id, display_order=index) for index, item_id in enumerate(ids)]


async def persist_order(db: AsyncSession, model, items: Sequence[ReorderItem], **scope) -> None:
    """Write every ``display_order`` in the caller's transaction.

    ``scope`` column filters keep the update inside one tenant's rows.
    """
    for item in items:
        stmt = update(model).where(model.id == item.id).values(display_order=item.display_order)
        for column, value in scope.items():
            stmt = stmt.where(getattr(model, column) == value)
        await db.execute(stmt)
