"""Permission audit trail routes: query, CSV export and statistics."""
from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.config import settings
from tenantdesk.database import get_db
from tenantdesk.middleware.auth import require_level
from tenantdesk.models.base import utcnow
from tenantdesk.rbac import AUDIT_ACTIONS, format_action_type
from tenantdesk.services.audit_service import AuditTrailFilters, AuditTrailService
from tenantdesk.services.context import ActorContext

router = APIRouter(prefix="/api/audit", tags=["audit"])


def _filters(
    user_id: uuid.UUID | None = Query(None),
    tool_id: uuid.UUID | None = Query(None),
    action_type: str | None = Query(None),
    performed_by: uuid.UUID | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    show_denials_only: bool = Query(False),
) -> AuditTrailFilters:
    try:
        return AuditTrailFilters(
            user_id=user_id,
            tool_id=tool_id,
            action_type=action_type,
            performed_by=performed_by,
            date_from=date_from,
            date_to=date_to,
            show_denials_only=show_denials_only,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_context=False))


@router.get("")
async def list_audit_entries(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=settings.AUDIT_MAX_PAGE_SIZE),
    filters: AuditTrailFilters = Depends(_filters),
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(require_level("admin")),
):
    """Filtered permission audit entries, newest first."""
    data = await AuditTrailService(db).fetch(ctx, filters, page=page, page_size=page_size)
    for entry in data["entries"]:
        entry["action_label"] = format_action_type(entry["action_type"])
    return {**data, "page": page, "page_size": page_size}


@router.get("/export")
async def export_audit_csv(
    filters: AuditTrailFilters = Depends(_filters),
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(require_level("admin")),
):
    body = await AuditTrailService(db).export_csv(ctx, filters)
    filename = f"permission-audit-{utcnow().strftime('%Y%m%d-%H%M%S')}.csv"
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/stats")
async def audit_stats(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(require_level("admin")),
):
    return await AuditTrailService(db).stats(ctx)


@router.get("/actions")
async def list_actions(ctx: ActorContext = Depends(require_level("admin"))):
    return {"items": [{"action_type": a, "label": format_action_type(a)} for a in AUDIT_ACTIONS]}
