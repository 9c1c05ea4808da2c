"""Tool-access request routes: submit, cancel, review queues and stats."""
from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.database import get_db
from tenantdesk.middleware.auth import get_current_user, require_level
from tenantdesk.rbac import REQUEST_PRIORITIES, REVIEW_DECISIONS
from tenantdesk.routes.errors import unwrap
from tenantdesk.services.access_request_service import (
    AccessRequestService,
    RequestFilters,
    serialize_request,
)
from tenantdesk.services.change_feed import ChangeFeed, get_change_feed
from tenantdesk.services.context import ActorContext

router = APIRouter(prefix="/api/access-requests", tags=["access-requests"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class AccessRequestCreate(BaseModel):
    tool_id: uuid.UUID
    request_reason: str = Field(min_length=1)
    business_justification: str = Field(min_length=1)
    requested_duration_days: int | None = Field(default=None, gt=0)
    is_temporary: bool = False
    priority: str = "normal"

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v):
        if v not in REQUEST_PRIORITIES:
            raise ValueError(f"Must be one of: {', '.join(REQUEST_PRIORITIES)}")
        return v

    @model_validator(mode="after")
    def validate_duration(self):
        if self.is_temporary and not self.requested_duration_days:
            raise ValueError("Temporary access requests need requested_duration_days")
        return self


class ReviewRequest(BaseModel):
    decision: str
    comment: str
    grant_duration_days: int | None = Field(default=None, gt=0)

    @field_validator("decision")
    @classmethod
    def validate_decision(cls, v):
        if v not in REVIEW_DECISIONS:
            raise ValueError(f"Must be one of: {', '.join(REVIEW_DECISIONS)}")
        return v


class BulkReviewRequest(ReviewRequest):
    request_ids: list[uuid.UUID] = Field(min_length=1)


def _service(
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> AccessRequestService:
    return AccessRequestService(db, feed)


def _filters(
    user_id: uuid.UUID | None = Query(None),
    tool_id: uuid.UUID | None = Query(None),
    status: str | None = Query(None),
    priority: str | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
) -> RequestFilters:
    try:
        return RequestFilters(
            user_id=user_id,
            tool_id=tool_id,
            status=status,
            priority=priority,
            date_from=date_from,
            date_to=date_to,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_context=False))


# ---------------------------------------------------------------------------
# Requester
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def create_request(
    body: AccessRequestCreate,
    ctx: ActorContext = Depends(get_current_user),
    service: AccessRequestService = Depends(_service),
):
    outcome = await service.create_request(
        ctx,
        tool_id=body.tool_id,
        request_reason=body.request_reason,
        business_justification=body.business_justification,
        requested_duration_days=body.requested_duration_days,
        is_temporary=body.is_temporary,
        priority=body.priority,
    )
    return unwrap(outcome)


@router.get("/mine")
async def my_requests(
    ctx: ActorContext = Depends(get_current_user),
    service: AccessRequestService = Depends(_service),
):
    items = [serialize_request(r) for r in await service.my_requests(ctx)]
    return {"items": items, "total": len(items)}


@router.post("/{request_id}/cancel")
async def cancel_request(
    request_id: uuid.UUID,
    ctx: ActorContext = Depends(get_current_user),
    service: AccessRequestService = Depends(_service),
):
    return unwrap(await service.cancel_request(ctx, request_id))


# ---------------------------------------------------------------------------
# Reviewer
# ---------------------------------------------------------------------------


@router.get("/pending")
async def pending_requests(
    sort: str = Query("priority", pattern="^(priority|newest)$"),
    filters: RequestFilters = Depends(_filters),
    ctx: ActorContext = Depends(require_level("admin")),
    service: AccessRequestService = Depends(_service),
):
    requests = await service.pending_requests(ctx, filters, sort_by_priority=sort == "priority")
    items = [serialize_request(r) for r in requests]
    return {"items": items, "total": len(items)}


@router.get("")
async def all_requests(
    filters: RequestFilters = Depends(_filters),
    ctx: ActorContext = Depends(require_level("admin")),
    service: AccessRequestService = Depends(_service),
):
    items = [serialize_request(r) for r in await service.all_requests(ctx, filters)]
    return {"items": items, "total": len(items)}


@router.get("/stats")
async def request_stats(
    ctx: ActorContext = Depends(require_level("admin")),
    service: AccessRequestService = Depends(_service),
):
    return await service.request_stats(ctx)


@router.post("/bulk-review")
async def bulk_review(
    body: BulkReviewRequest,
    ctx: ActorContext = Depends(require_level("admin")),
    service: AccessRequestService = Depends(_service),
):
    return await service.bulk_review(
        ctx, body.request_ids, body.decision, body.comment, body.grant_duration_days
    )


@router.post("/{request_id}/review")
async def review_request(
    request_id: uuid.UUID,
    body: ReviewRequest,
    ctx: ActorContext = Depends(require_level("admin")),
    service: AccessRequestService = Depends(_service),
):
    outcome = await service.review(
        ctx, request_id, body.decision, body.comment, body.grant_duration_days
    )
    return unwrap(outcome)
