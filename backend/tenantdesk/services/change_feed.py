"""Realtime change notifications.

Services publish a :class:`ChangeEvent` after every committed mutation.
Subscribers (the WebSocket endpoint) forward events for their organization;
clients treat each event as "invalidate and refetch" and never diff the
payload.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from tenantdesk.models.base import utcnow

logger = logging.getLogger(__name__)

# How clients reconcile each table after a write.
#   optimistic -- client applies the change locally, then reconciles
#   refetch    -- client re-reads from the server after every write
CONSISTENCY_MODES: dict[str, str] = {
    "department_stat_cards": "optimistic",
    "department_features": "optimistic",
    "department_tools": "optimistic",
    "ai_user_permissions": "refetch",
    "ai_tool_access_requests": "refetch",
    "ai_permission_audit_trail": "refetch",
    "ai_permission_templates": "refetch",
    "organization_ui_customizations": "refetch",
    "user_profiles": "refetch",
}


class ChangeEvent(BaseModel):
    table: str
    event: Literal["insert", "update", "delete"]
    organization_id: uuid.UUID
    user_id: uuid.UUID | None = None
    record_id: uuid.UUID | None = None
    consistency: str = "refetch"
    timestamp: datetime = Field(default_factory=utcnow)


class ChangeFeed:
    """In-process pub/sub bus for change events."""

    def __init__(self, max_queue: int = 500) -> None:
        self._subscribers: list[asyncio.Queue[ChangeEvent]] = []
        self._max_queue = max_queue

    def publish(
        self,
        table: str,
        event: Literal["insert", "update", "delete"],
        organization_id: uuid.UUID,
        user_id: uuid.UUID | None = None,
        record_id: uuid.UUID | None = None,
    ) -> ChangeEvent:
        change = ChangeEvent(
            table=table,
            event=event,
            organization_id=organization_id,
            user_id=user_id,
            record_id=record_id,
            consistency=CONSISTENCY_MODES.get(table, "refetch"),
        )
        for queue in self._subscribers:
            try:
                queue.put_nowait(change)
            except asyncio.QueueFull:
                # Drop oldest if subscriber is slow
                with contextlib.suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
                queue.put_nowait(change)
        return change

    def subscribe(self) -> asyncio.Queue[ChangeEvent]:
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ChangeEvent]) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(queue)

    @contextlib.asynccontextmanager
    async def subscription(self) -> AsyncIterator[asyncio.Queue[ChangeEvent]]:
        """Async context manager that auto-unsubscribes on exit."""
        queue = self.subscribe()
        try:
            yield queue
        finally:
            self.unsubscribe(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


_feed: ChangeFeed | None = None


def get_change_feed() -> ChangeFeed:
    global _feed
    if _feed is None:
        _feed = ChangeFeed()
    return _feed
