"""Tool-access request workflow: submit, cancel, review and expire.

A request leaves ``pending`` exactly once.  Every transition is a
conditional ``UPDATE ... WHERE status = 'pending'`` so two reviewers racing
on the same request cannot both succeed; the loser's transaction is rolled
back and nothing it wrote survives.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Any

from pydantic import BaseModel, field_validator
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.config import settings
from tenantdesk.models.base import iso, utcnow
from tenantdesk.models.permission import Tool, ToolAccessRequest
from tenantdesk.rbac import REQUEST_PRIORITIES, REQUEST_STATUSES, REVIEW_DECISIONS, REVIEWER_LEVEL
from tenantdesk.services.audit_service import (
    apply_date_range,
    day_start,
    permission_snapshot,
    record_permission_event,
)
from tenantdesk.services.change_feed import ChangeFeed, get_change_feed
from tenantdesk.services.context import ActorContext, OperationResult
from tenantdesk.services.permission_service import expiry_from_days, upsert_permission

logger = logging.getLogger(__name__)

PRIORITY_RANK = case(
    {p: i for i, p in enumerate(REQUEST_PRIORITIES)},
    value=ToolAccessRequest.priority,
    else_=len(REQUEST_PRIORITIES),
)


class RequestFilters(BaseModel):
    user_id: uuid.UUID | None = None
    tool_id: uuid.UUID | None = None
    status: str | None = None
    priority: str | None = None
    date_from: date | None = None
    date_to: date | None = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v is not None and v not in REQUEST_STATUSES:
            raise ValueError(f"Must be one of: {', '.join(REQUEST_STATUSES)}")
        return v

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v):
        if v is not None and v not in REQUEST_PRIORITIES:
            raise ValueError(f"Must be one of: {', '.join(REQUEST_PRIORITIES)}")
        return v


def grant_expiry(
    request: ToolAccessRequest,
    grant_duration_days: int | None,
    now: datetime,
) -> datetime | None:
    """Expiry of the permission an approval creates.

    Only temporary requests expire.  The reviewer's duration wins over the
    one the requester asked for.
    """
    if not request.is_temporary:
        return None
    return expiry_from_days(grant_duration_days or request.requested_duration_days, now)


class AccessRequestService:
    def __init__(self, db: AsyncSession, feed: ChangeFeed | None = None):
        self.db = db
        self.feed = feed or get_change_feed()

    # ---------------------------------------------------------------------------
    # Requester side
    # ---------------------------------------------------------------------------

    async def _pending_exists(self, user_id: uuid.UUID, tool_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(func.count())
            .select_from(ToolAccessRequest)
            .where(
                ToolAccessRequest.user_id == user_id,
                ToolAccessRequest.tool_id == tool_id,
                ToolAccessRequest.status == "pending",
            )
        )
        return (result.scalar() or 0) > 0

    async def create_request(
        self,
        ctx: ActorContext,
        tool_id: uuid.UUID,
        request_reason: str,
        business_justification: str,
        requested_duration_days: int | None = None,
        is_temporary: bool = False,
        priority: str = "normal",
    ) -> OperationResult:
        tool = (await self.db.execute(select(Tool).where(Tool.id == tool_id))).scalar_one_or_none()
        if tool is None:
            return OperationResult.fail("Tool not found", "not_found")
        if await self._pending_exists(ctx.user_id, tool_id):
            return OperationResult.fail("You already have a pending request for this tool", "conflict")

        request = ToolAccessRequest(
            organization_id=ctx.organization_id,
            user_id=ctx.user_id,
            tool_id=tool_id,
            status="pending",
            request_reason=request_reason,
            business_justification=business_justification,
            requested_duration_days=requested_duration_days,
            is_temporary=is_temporary,
            priority=priority,
        )
        try:
            self.db.add(request)
            await self.db.flush()
            await record_permission_event(
                self.db,
                ctx,
                "request",
                user_id=ctx.user_id,
                tool_id=tool_id,
                reason=request_reason,
                metadata={
                    "request_id": str(request.id),
                    "priority": priority,
                    "is_temporary": is_temporary,
                    "requested_duration_days": requested_duration_days,
                },
            )
            await self.db.commit()
        except IntegrityError:
            # Lost the race against a concurrent submit of the same request
            await self.db.rollback()
            return OperationResult.fail("You already have a pending request for this tool", "conflict")
        except Exception:
            await self.db.rollback()
            logger.exception("Failed to create access request for tool %s", tool_id)
            raise

        logger.info("Access request %s submitted by %s for tool %s", request.id, ctx.user_id, tool.slug)
        self.feed.publish(
            "ai_tool_access_requests", "insert", ctx.organization_id,
            user_id=ctx.user_id, record_id=request.id,
        )
        return OperationResult.ok(request_id=str(request.id), status="pending")

    async def cancel_request(self, ctx: ActorContext, request_id: uuid.UUID) -> OperationResult:
        """Withdraw the caller's own pending request."""
        request = await self._get(ctx, request_id)
        if request is None or request.user_id != ctx.user_id:
            return OperationResult.fail("Request not found", "not_found")

        now = utcnow()
        try:
            result = await self.db.execute(
                update(ToolAccessRequest)
                .where(
                    ToolAccessRequest.id == request_id,
                    ToolAccessRequest.user_id == ctx.user_id,
                    ToolAccessRequest.status == "pending",
                )
                .values(status="cancelled", updated_at=now)
            )
            if result.rowcount == 0:
                await self.db.rollback()
                return OperationResult.fail("Only pending requests can be cancelled", "conflict")

            await record_permission_event(
                self.db,
                ctx,
                "request",
                user_id=ctx.user_id,
                tool_id=request.tool_id,
                reason="Request cancelled by requester",
                metadata={"request_id": str(request_id), "status": "cancelled"},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Failed to cancel access request %s", request_id)
            raise

        self.feed.publish(
            "ai_tool_access_requests", "update", ctx.organization_id,
            user_id=ctx.user_id, record_id=request_id,
        )
        return OperationResult.ok(request_id=str(request_id), status="cancelled")

    # ---------------------------------------------------------------------------
    # Queues
    # ---------------------------------------------------------------------------

    async def _get(self, ctx: ActorContext, request_id: uuid.UUID) -> ToolAccessRequest | None:
        result = await self.db.execute(
            select(ToolAccessRequest).where(
                ToolAccessRequest.id == request_id,
                ToolAccessRequest.organization_id == ctx.organization_id,
            )
        )
        return result.scalar_one_or_none()

    def _filtered(self, stmt, filters: RequestFilters | None):
        if filters is None:
            return stmt
        if filters.user_id:
            stmt = stmt.where(ToolAccessRequest.user_id == filters.user_id)
        if filters.tool_id:
            stmt = stmt.where(ToolAccessRequest.tool_id == filters.tool_id)
        if filters.status:
            stmt = stmt.where(ToolAccessRequest.status == filters.status)
        if filters.priority:
            stmt = stmt.where(ToolAccessRequest.priority == filters.priority)
        return apply_date_range(
            stmt, ToolAccessRequest.created_at, filters.date_from, filters.date_to
        )

    async def my_requests(self, ctx: ActorContext) -> list[ToolAccessRequest]:
        result = await self.db.execute(
            select(ToolAccessRequest)
            .where(
                ToolAccessRequest.organization_id == ctx.organization_id,
                ToolAccessRequest.user_id == ctx.user_id,
            )
            .order_by(ToolAccessRequest.created_at.desc())
        )
        return list(result.scalars().all())

    async def pending_requests(
        self,
        ctx: ActorContext,
        filters: RequestFilters | None = None,
        sort_by_priority: bool = True,
    ) -> list[ToolAccessRequest]:
        """Review queue.  Urgent first, then oldest first within a priority."""
        stmt = select(ToolAccessRequest).where(
            ToolAccessRequest.organization_id == ctx.organization_id,
            ToolAccessRequest.status == "pending",
        )
        stmt = self._filtered(stmt, filters)
        if sort_by_priority:
            stmt = stmt.order_by(PRIORITY_RANK, ToolAccessRequest.created_at.asc())
        else:
            stmt = stmt.order_by(ToolAccessRequest.created_at.desc())
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def all_requests(
        self, ctx: ActorContext, filters: RequestFilters | None = None
    ) -> list[ToolAccessRequest]:
        stmt = select(ToolAccessRequest).where(
            ToolAccessRequest.organization_id == ctx.organization_id
        )
        stmt = self._filtered(stmt, filters).order_by(ToolAccessRequest.created_at.desc())
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # ---------------------------------------------------------------------------
    # Review
    # ---------------------------------------------------------------------------

    async def review(
        self,
        ctx: ActorContext,
        request_id: uuid.UUID,
        decision: str,
        comment: str,
        grant_duration_days: int | None = None,
    ) -> OperationResult:
        """Approve or deny a pending request in a single transaction.

        Approval upserts the user's permission row.  Either way exactly one
        audit entry is written.  Rule violations come back as a failed
        result; storage errors propagate after rollback.
        """
        if decision not in REVIEW_DECISIONS:
            return OperationResult.fail(f"Decision must be one of: {', '.join(REVIEW_DECISIONS)}")
        comment = (comment or "").strip()
        if len(comment) < settings.REVIEW_COMMENT_MIN_LENGTH:
            return OperationResult.fail(
                f"Review comment must be at least {settings.REVIEW_COMMENT_MIN_LENGTH} characters"
            )
        if not ctx.has_level(REVIEWER_LEVEL):
            return OperationResult.fail("Insufficient permissions to review requests", "forbidden")

        request = await self._get(ctx, request_id)
        if request is None:
            return OperationResult.fail("Request not found", "not_found")
        if request.status != "pending":
            return OperationResult.fail(f"Request is already {request.status}", "conflict")

        now = utcnow()
        expires_at = grant_expiry(request, grant_duration_days, now) if decision == "approved" else None
        if decision == "approved" and request.is_temporary and expires_at is None:
            return OperationResult.fail("Temporary access needs a grant duration")
        user_id, tool_id = request.user_id, request.tool_id
        permission = None

        try:
            result = await self.db.execute(
                update(ToolAccessRequest)
                .where(
                    ToolAccessRequest.id == request_id,
                    ToolAccessRequest.status == "pending",
                )
                .values(
                    status=decision,
                    reviewed_by=ctx.user_id,
                    reviewed_at=now,
                    review_comment=comment,
                    expires_at=expires_at,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                await self.db.rollback()
                return OperationResult.fail("Request is no longer pending", "conflict")

            if decision == "approved":
                permission, before = await upsert_permission(
                    self.db,
                    organization_id=request.organization_id,
                    user_id=user_id,
                    tool_id=tool_id,
                    granted=True,
                    granted_by=ctx.user_id,
                    expires_at=expires_at,
                    reason=comment,
                )
                await record_permission_event(
                    self.db,
                    ctx,
                    "approve",
                    user_id=user_id,
                    tool_id=tool_id,
                    permission_before=before,
                    permission_after=permission_snapshot(permission),
                    reason=comment,
                    metadata={
                        "request_id": str(request_id),
                        "grant_duration_days": grant_duration_days,
                    },
                )
            else:
                await record_permission_event(
                    self.db,
                    ctx,
                    "deny",
                    user_id=user_id,
                    tool_id=tool_id,
                    reason=comment,
                    metadata={"request_id": str(request_id)},
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Review of access request %s failed", request_id)
            raise

        logger.info("Access request %s %s by %s", request_id, decision, ctx.user_id)
        self.feed.publish(
            "ai_tool_access_requests", "update", ctx.organization_id,
            user_id=user_id, record_id=request_id,
        )
        if permission is not None:
            self.feed.publish(
                "ai_user_permissions", "update", ctx.organization_id,
                user_id=user_id, record_id=permission.id,
            )
        self.feed.publish("ai_permission_audit_trail", "insert", ctx.organization_id, user_id=user_id)
        return OperationResult.ok(
            request_id=str(request_id),
            status=decision,
            expires_at=iso(expires_at),
        )

    async def bulk_review(
        self,
        ctx: ActorContext,
        request_ids: list[uuid.UUID],
        decision: str,
        comment: str,
        grant_duration_days: int | None = None,
    ) -> dict[str, Any]:
        """Review each id independently; report how many went through."""
        succeeded = failed = 0
        errors: list[dict[str, str]] = []
        for request_id in request_ids:
            try:
                outcome = await self.review(ctx, request_id, decision, comment, grant_duration_days)
            except Exception as exc:
                await self.db.rollback()
                logger.warning("Bulk review of %s failed: %s", request_id, exc)
                failed += 1
                errors.append({"request_id": str(request_id), "error": str(exc)})
                continue
            if outcome.success:
                succeeded += 1
            else:
                failed += 1
                errors.append({"request_id": str(request_id), "error": outcome.error})
        return {decision: succeeded, "failed": failed, "errors": errors}

    # ---------------------------------------------------------------------------
    # Maintenance & stats
    # ---------------------------------------------------------------------------

    async def expire_stale_requests(
        self, now: datetime | None = None, max_age_days: int | None = None
    ) -> int:
        """Mark pending requests older than the cutoff as expired."""
        now = now or utcnow()
        cutoff = now - timedelta(days=max_age_days or settings.STALE_REQUEST_DAYS)

        result = await self.db.execute(
            select(ToolAccessRequest).where(
                ToolAccessRequest.status == "pending",
                ToolAccessRequest.created_at < cutoff,
            )
        )
        stale = list(result.scalars().all())
        expired: list[ToolAccessRequest] = []

        try:
            for request in stale:
                updated = await self.db.execute(
                    update(ToolAccessRequest)
                    .where(
                        ToolAccessRequest.id == request.id,
                        ToolAccessRequest.status == "pending",
                    )
                    .values(status="expired", updated_at=now)
                )
                if updated.rowcount == 0:
                    continue
                await record_permission_event(
                    self.db,
                    None,
                    "expire",
                    user_id=request.user_id,
                    tool_id=request.tool_id,
                    reason=f"Request pending for more than {(now - cutoff).days} days",
                    metadata={"request_id": str(request.id)},
                    organization_id=request.organization_id,
                )
                expired.append(request)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Expiry sweep failed")
            raise

        for request in expired:
            self.feed.publish(
                "ai_tool_access_requests", "update", request.organization_id,
                user_id=request.user_id, record_id=request.id,
            )
        if expired:
            logger.info("Expired %d stale access requests", len(expired))
        return len(expired)

    async def request_stats(self, ctx: ActorContext) -> dict[str, int]:
        org_filter = ToolAccessRequest.organization_id == ctx.organization_id
        by_status = dict((await self.db.execute(
            select(ToolAccessRequest.status, func.count())
            .where(org_filter)
            .group_by(ToolAccessRequest.status)
        )).all())

        today = day_start(utcnow().date())
        reviewed_today = dict((await self.db.execute(
            select(ToolAccessRequest.status, func.count())
            .where(org_filter, ToolAccessRequest.reviewed_at >= today)
            .group_by(ToolAccessRequest.status)
        )).all())

        stats = {status: by_status.get(status, 0) for status in REQUEST_STATUSES}
        stats["total"] = sum(by_status.values())
        stats["approved_today"] = reviewed_today.get("approved", 0)
        stats["denied_today"] = reviewed_today.get("denied", 0)
        return stats


def serialize_request(r: ToolAccessRequest) -> dict[str, Any]:
    return {
        "id": str(r.id),
        "organization_id": str(r.organization_id),
        "user_id": str(r.user_id),
        "user_email": r.user.email if r.user else None,
        "user_name": r.user.full_name if r.user else None,
        "tool_id": str(r.tool_id),
        "tool_name": r.tool.name if r.tool else None,
        "tool_slug": r.tool.slug if r.tool else None,
        "status": r.status,
        "request_reason": r.request_reason,
        "business_justification": r.business_justification,
        "requested_duration_days": r.requested_duration_days,
        "is_temporary": r.is_temporary,
        "priority": r.priority,
        "reviewed_by": str(r.reviewed_by) if r.reviewed_by else None,
        "reviewer_email": r.reviewer.email if r.reviewer else None,
        "reviewed_at": iso(r.reviewed_at),
        "review_comment": r.review_comment,
        "expires_at": iso(r.expires_at),
        "created_at": iso(r.created_at),
        "updated_at": iso(r.updated_at),
    }
