"""Scheduled sweep that expires stale tool-access requests.

Pending requests older than ``STALE_REQUEST_DAYS`` become ``expired`` with
an ``expire`` audit entry each.  Temporary permissions are not touched
here: an expired grant simply stops counting at check time.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from tenantdesk.config import settings
from tenantdesk.models.base import utcnow
from tenantdesk.services.access_request_service import AccessRequestService
from tenantdesk.services.change_feed import ChangeFeed

logger = logging.getLogger(__name__)


async def run_expiry_sweep(
    session_factory: Any,
    feed: ChangeFeed | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Run one sweep on a fresh session.

    Parameters
    ----------
    session_factory:
        An ``async_sessionmaker`` (e.g. ``AsyncSessionLocal``).
    feed:
        Change feed to notify; the process-wide feed when omitted.

    Returns a summary dict; failures are logged and reported, not raised.
    """
    now = now or utcnow()
    summary: dict[str, Any] = {"started_at": now.isoformat(), "requests_expired": 0}
    try:
        async with session_factory() as db:
            service = AccessRequestService(db, feed)
            summary["requests_expired"] = await service.expire_stale_requests(
                now=now, max_age_days=settings.STALE_REQUEST_DAYS
            )
        summary["status"] = "completed"
    except Exception as e:
        logger.exception("Expiry sweep failed")
        summary["status"] = "failed"
        summary["error"] = str(e)
    return summary
