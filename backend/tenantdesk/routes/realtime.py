"""WebSocket stream of change events for the caller's organization."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.database import get_db
from tenantdesk.middleware.auth import decode_token, load_actor
from tenantdesk.services.change_feed import ChangeEvent, ChangeFeed, get_change_feed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/realtime", tags=["realtime"])


@router.websocket("/ws")
async def change_stream(
    ws: WebSocket,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> None:
    """Push every committed change in the caller's organization.

    Clients invalidate and refetch on each event; payloads carry ids only.
    """
    email = decode_token(token)
    ctx = await load_actor(db, email) if email else None
    await db.close()
    if ctx is None:
        await ws.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await ws.accept()
    async with feed.subscription() as queue:
        try:
            while True:
                event: ChangeEvent = await queue.get()
                if event.organization_id != ctx.organization_id:
                    continue
                await ws.send_text(event.model_dump_json())
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.warning("WebSocket error during change streaming", exc_info=True)
