"""Permission audit trail: writes, queries, CSV export and statistics.

Entries are append-only.  Mutating services record their entry inside the
same transaction as the change (``record_permission_event``).  Tool-access
checks log through :class:`PermissionAuditWriter`, which writes on its own
session in the background; a failure there is logged and never affects
the access decision.
"""

from __future__ import annotations

import asyncio
import csv
import dataclasses
import io
import logging
import uuid
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from pydantic import BaseModel, field_validator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from tenantdesk.models.base import as_utc, iso, utcnow
from tenantdesk.models.permission import PermissionAuditEntry, Tool, UserPermission
from tenantdesk.models.user import User
from tenantdesk.rbac import AUDIT_ACTIONS, DENIAL_ACTIONS
from tenantdesk.services.context import ActorContext

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "Date/Time",
    "User Email",
    "User Name",
    "Tool Name",
    "Action Type",
    "Performed By",
    "Reason",
    "IP Address",
]

CSV_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


# ---------------------------------------------------------------------------
# Snapshots & in-transaction writes
# ---------------------------------------------------------------------------


def permission_snapshot(permission: UserPermission | None) -> dict[str, Any] | None:
    """Before/after state of a grant as stored on audit entries."""
    if permission is None:
        return None
    return {
        "granted": permission.granted,
        "expires_at": iso(permission.expires_at),
        "is_temporary": permission.is_temporary,
        "reason": permission.reason,
    }


async def record_permission_event(
    db: AsyncSession,
    ctx: ActorContext | None,
    action_type: str,
    user_id: uuid.UUID,
    tool_id: uuid.UUID | None = None,
    permission_before: dict | None = None,
    permission_after: dict | None = None,
    reason: str | None = None,
    metadata: dict | None = None,
    organization_id: uuid.UUID | None = None,
) -> PermissionAuditEntry:
    """Add an audit entry to the caller's transaction.

    ``ctx`` is the performer; ``None`` means the system did it.
    """
    if action_type not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action '{action_type}'")

    entry = PermissionAuditEntry(
        organization_id=organization_id or (ctx.organization_id if ctx else None),
        user_id=user_id,
        tool_id=tool_id,
        action_type=action_type,
        permission_before=permission_before,
        permission_after=permission_after,
        performed_by=ctx.user_id if ctx else None,
        reason=reason,
        metadata_=metadata or {},
        ip_address=ctx.ip_address if ctx else None,
        user_agent=ctx.user_agent if ctx else None,
    )
    db.add(entry)
    await db.flush()
    return entry


# ---------------------------------------------------------------------------
# Background writer (best-effort entries)
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class AuditRecord:
    organization_id: uuid.UUID | None
    user_id: uuid.UUID
    tool_id: uuid.UUID | None
    action_type: str
    performed_by: uuid.UUID | None = None
    reason: str | None = None
    metadata: dict | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class PermissionAuditWriter:
    """Writes audit records on a dedicated session without blocking callers."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory
        self._pending: set[asyncio.Task] = set()

    async def write(self, record: AuditRecord) -> None:
        async with self.session_factory() as db:
            db.add(PermissionAuditEntry(
                organization_id=record.organization_id,
                user_id=record.user_id,
                tool_id=record.tool_id,
                action_type=record.action_type,
                performed_by=record.performed_by,
                reason=record.reason,
                metadata_=record.metadata or {},
                ip_address=record.ip_address,
                user_agent=record.user_agent,
            ))
            await db.commit()

    def fire_and_forget(self, record: AuditRecord) -> None:
        """Schedule the write without awaiting.  Failures are logged only."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; dropping audit record %s", record.action_type)
            return
        task = loop.create_task(self._safe_write(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _safe_write(self, record: AuditRecord) -> None:
        try:
            await self.write(record)
        except Exception:
            logger.exception(
                "Audit write failed for %s (user %s)", record.action_type, record.user_id
            )

    async def drain(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


_writer: PermissionAuditWriter | None = None


def get_audit_writer() -> PermissionAuditWriter:
    global _writer
    if _writer is None:
        from tenantdesk.database import AsyncSessionLocal

        _writer = PermissionAuditWriter(AsyncSessionLocal)
    return _writer


# ---------------------------------------------------------------------------
# Query filters
# ---------------------------------------------------------------------------


class AuditTrailFilters(BaseModel):
    user_id: uuid.UUID | None = None
    tool_id: uuid.UUID | None = None
    action_type: str | None = None
    performed_by: uuid.UUID | None = None
    date_from: date | None = None
    date_to: date | None = None
    show_denials_only: bool = False

    @field_validator("action_type")
    @classmethod
    def validate_action_type(cls, v):
        if v is not None and v not in AUDIT_ACTIONS:
            raise ValueError(f"Must be one of: {', '.join(AUDIT_ACTIONS)}")
        return v


def day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def apply_date_range(stmt, column, date_from: date | None, date_to: date | None):
    """Inclusive calendar-day range on a timestamp column (UTC days)."""
    if date_from is not None:
        stmt = stmt.where(column >= day_start(date_from))
    if date_to is not None:
        stmt = stmt.where(column < day_start(date_to + timedelta(days=1)))
    return stmt


# ---------------------------------------------------------------------------
# CSV rendering
# ---------------------------------------------------------------------------


def _or(value: Any, default: str) -> Any:
    return default if value is None else value


def render_audit_csv(entries: Iterable[dict[str, Any]]) -> str:
    """Serialise audit entries (as returned by ``fetch``) to CSV text."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for entry in entries:
        created_at = entry.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        created_at = as_utc(created_at)
        writer.writerow([
            created_at.strftime(CSV_TIMESTAMP_FORMAT) if created_at else "N/A",
            _or(entry.get("user_email"), "N/A"),
            _or(entry.get("user_name"), "N/A"),
            _or(entry.get("tool_name"), "N/A"),
            entry["action_type"],
            _or(entry.get("performed_by_email"), "System"),
            _or(entry.get("reason"), "N/A"),
            _or(entry.get("ip_address"), "N/A"),
        ])
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuditTrailService:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _filtered(self, stmt, ctx: ActorContext, filters: AuditTrailFilters):
        stmt = stmt.where(PermissionAuditEntry.organization_id == ctx.organization_id)
        if filters.user_id:
            stmt = stmt.where(PermissionAuditEntry.user_id == filters.user_id)
        if filters.tool_id:
            stmt = stmt.where(PermissionAuditEntry.tool_id == filters.tool_id)
        if filters.action_type:
            stmt = stmt.where(PermissionAuditEntry.action_type == filters.action_type)
        if filters.performed_by:
            stmt = stmt.where(PermissionAuditEntry.performed_by == filters.performed_by)
        if filters.show_denials_only:
            stmt = stmt.where(PermissionAuditEntry.action_type.in_(DENIAL_ACTIONS))
        return apply_date_range(
            stmt, PermissionAuditEntry.created_at, filters.date_from, filters.date_to
        )

    async def fetch(
        self,
        ctx: ActorContext,
        filters: AuditTrailFilters,
        page: int = 1,
        page_size: int | None = 50,
    ) -> dict[str, Any]:
        """Filtered audit entries, newest first, with the unpaginated total."""
        subject = aliased(User)
        performer = aliased(User)

        count_stmt = self._filtered(
            select(func.count()).select_from(PermissionAuditEntry), ctx, filters
        )
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(
                PermissionAuditEntry,
                subject.email,
                subject.full_name,
                Tool.name,
                performer.email,
            )
            .outerjoin(subject, subject.id == PermissionAuditEntry.user_id)
            .outerjoin(Tool, Tool.id == PermissionAuditEntry.tool_id)
            .outerjoin(performer, performer.id == PermissionAuditEntry.performed_by)
        )
        stmt = self._filtered(stmt, ctx, filters).order_by(
            PermissionAuditEntry.created_at.desc(),
            PermissionAuditEntry.id.desc(),
        )
        if page_size is not None:
            stmt = stmt.offset((page - 1) * page_size).limit(page_size)

        result = await self.db.execute(stmt)
        entries = [
            _entry_to_dict(e, user_email, user_name, tool_name, performer_email)
            for e, user_email, user_name, tool_name, performer_email in result.all()
        ]
        return {"entries": entries, "total": total}

    async def export_csv(self, ctx: ActorContext, filters: AuditTrailFilters) -> str:
        """Same filter set as ``fetch`` with no page limit."""
        data = await self.fetch(ctx, filters, page=1, page_size=None)
        logger.info(
            "Exporting %d audit entries for organization %s",
            len(data["entries"]),
            ctx.organization_id,
        )
        return render_audit_csv(data["entries"])

    async def stats(self, ctx: ActorContext) -> dict[str, Any]:
        org_filter = PermissionAuditEntry.organization_id == ctx.organization_id
        today = day_start(utcnow().date())

        total = (await self.db.execute(
            select(func.count()).select_from(PermissionAuditEntry).where(org_filter)
        )).scalar() or 0

        today_rows = await self.db.execute(
            select(PermissionAuditEntry.action_type, func.count())
            .where(org_filter, PermissionAuditEntry.created_at >= today)
            .group_by(PermissionAuditEntry.action_type)
        )
        today_counts = dict(today_rows.all())

        action_rows = await self.db.execute(
            select(PermissionAuditEntry.action_type, func.count().label("n"))
            .where(org_filter)
            .group_by(PermissionAuditEntry.action_type)
            .order_by(func.count().desc())
            .limit(5)
        )
        performer_rows = await self.db.execute(
            select(PermissionAuditEntry.performed_by, User.email, func.count().label("n"))
            .outerjoin(User, User.id == PermissionAuditEntry.performed_by)
            .where(org_filter, PermissionAuditEntry.performed_by.is_not(None))
            .group_by(PermissionAuditEntry.performed_by, User.email)
            .order_by(func.count().desc())
            .limit(5)
        )

        return {
            "total_entries": total,
            "entries_today": sum(today_counts.values()),
            "grants_today": today_counts.get("grant", 0),
            "revokes_today": today_counts.get("revoke", 0),
            "denials_today": today_counts.get("deny", 0) + today_counts.get("check_denied", 0),
            "top_actions": [
                {"action_type": action, "count": n} for action, n in action_rows.all()
            ],
            "top_performers": [
                {
                    "performer_id": str(performer_id),
                    "performer_email": email or "Unknown",
                    "count": n,
                }
                for performer_id, email, n in performer_rows.all()
            ],
        }


def _entry_to_dict(
    e: PermissionAuditEntry,
    user_email: str | None,
    user_name: str | None,
    tool_name: str | None,
    performer_email: str | None,
) -> dict[str, Any]:
    return {
        "id": str(e.id),
        "user_id": str(e.user_id),
        "user_email": user_email,
        "user_name": user_name,
        "tool_id": str(e.tool_id) if e.tool_id else None,
        "tool_name": tool_name,
        "action_type": e.action_type,
        "permission_before": e.permission_before,
        "permission_after": e.permission_after,
        "performed_by": str(e.performed_by) if e.performed_by else None,
        "performed_by_email": performer_email,
        "reason": e.reason,
        "metadata": e.metadata_,
        "ip_address": e.ip_address,
        "user_agent": e.user_agent,
        "created_at": iso(e.created_at),
    }
