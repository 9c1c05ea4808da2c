"""Tool permission resolution, grants and templates.

Resolution order for a ``(user, tool)`` pair, first match wins:

1. ``master_admin`` role
2. unexpired per-user override (``granted`` decides)
3. template: denied list, then ``all`` / allowed list
4. registered tool: user level against the tool's required level
5. denied
"""
from __future__ import annotations

import dataclasses
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantdesk.models.base import as_utc, iso, utcnow
from tenantdesk.models.permission import PermissionTemplate, Tool, UserPermission
from tenantdesk.models.user import User
from tenantdesk.rbac import REVIEWER_LEVEL, SELF_LEVEL_ROLES, level_at_least
from tenantdesk.services.audit_service import (
    AuditRecord,
    PermissionAuditWriter,
    permission_snapshot,
    record_permission_event,
)
from tenantdesk.services.change_feed import ChangeFeed, get_change_feed
from tenantdesk.services.context import ActorContext, OperationResult

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class PermissionCheckResult:
    allowed: bool
    permission_level: str
    source: str  # role | template | override | denied
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


# ---------------------------------------------------------------------------
# Pure resolution
# ---------------------------------------------------------------------------


def user_permission_level(user: User) -> str:
    """Admins keep their role; everyone else takes their template's level."""
    if user.role in SELF_LEVEL_ROLES:
        return user.role
    template = user.default_permission_template
    if template is not None:
        return template.permission_level
    return user.role


def override_is_active(override: UserPermission | None, now: datetime) -> bool:
    if override is None:
        return False
    expires_at = as_utc(override.expires_at)
    return expires_at is None or expires_at > now


def resolve_access(
    *,
    role: str,
    level: str,
    tool_id: uuid.UUID,
    tool: Tool | None,
    override: UserPermission | None,
    template: PermissionTemplate | None,
    now: datetime,
) -> PermissionCheckResult:
    if role == "master_admin":
        return PermissionCheckResult(True, level, "role")

    if override_is_active(override, now):
        if override.granted:
            return PermissionCheckResult(True, level, "override")
        return PermissionCheckResult(False, level, "denied", "Access explicitly denied")

    if template is not None:
        rules = template.tool_permissions or {}
        keys = {str(tool_id)}
        if tool is not None:
            keys.add(tool.slug)
        if keys & set(rules.get("denied_tools") or []):
            return PermissionCheckResult(
                False, level, "denied", f"Denied by template '{template.name}'"
            )
        if rules.get("all") or keys & set(rules.get("allowed_tools") or []):
            return PermissionCheckResult(True, level, "template")

    if tool is not None:
        if level_at_least(level, tool.permission_level):
            return PermissionCheckResult(True, level, "role")
        return PermissionCheckResult(
            False, level, "denied", f"Requires {tool.permission_level} level or higher"
        )

    return PermissionCheckResult(False, level, "denied", "Tool is not registered")


# ---------------------------------------------------------------------------
# Shared write helper
# ---------------------------------------------------------------------------


async def upsert_permission(
    db: AsyncSession,
    *,
    organization_id: uuid.UUID,
    user_id: uuid.UUID,
    tool_id: uuid.UUID,
    granted: bool,
    granted_by: uuid.UUID | None,
    expires_at: datetime | None,
    reason: str | None,
) -> tuple[UserPermission, dict | None]:
    """Insert or update the single row for ``(user, tool)``.

    Returns the row and the snapshot it had before (``None`` if new).
    """
    result = await db.execute(
        select(UserPermission).where(
            UserPermission.user_id == user_id,
            UserPermission.tool_id == tool_id,
        )
    )
    permission = result.scalar_one_or_none()
    before = permission_snapshot(permission)

    if permission is None:
        permission = UserPermission(
            organization_id=organization_id,
            user_id=user_id,
            tool_id=tool_id,
        )
        db.add(permission)

    permission.granted = granted
    permission.granted_by = granted_by
    permission.granted_at = utcnow()
    permission.expires_at = expires_at
    permission.is_temporary = expires_at is not None
    permission.reason = reason
    await db.flush()
    return permission, before


def expiry_from_days(days: int | None, now: datetime | None = None) -> datetime | None:
    if not days:
        return None
    return (now or utcnow()) + timedelta(days=days)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class PermissionService:
    def __init__(
        self,
        db: AsyncSession,
        feed: ChangeFeed | None = None,
        writer: PermissionAuditWriter | None = None,
    ):
        self.db = db
        self.feed = feed or get_change_feed()
        self.writer = writer

    # ------ lookups ------

    async def _get_user(self, ctx: ActorContext, user_id: uuid.UUID) -> User | None:
        result = await self.db.execute(
            select(User).where(
                User.id == user_id,
                User.organization_id == ctx.organization_id,
            )
        )
        return result.scalar_one_or_none()

    async def _get_tool(self, tool_id: uuid.UUID) -> Tool | None:
        result = await self.db.execute(select(Tool).where(Tool.id == tool_id))
        return result.scalar_one_or_none()

    async def _effective_template(self, user: User) -> PermissionTemplate | None:
        if user.default_permission_template is not None:
            return user.default_permission_template
        result = await self.db.execute(
            select(PermissionTemplate)
            .where(
                PermissionTemplate.is_system_template.is_(True),
                PermissionTemplate.permission_level == user_permission_level(user),
            )
            .order_by(PermissionTemplate.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _overrides(self, user_id: uuid.UUID) -> dict[uuid.UUID, UserPermission]:
        result = await self.db.execute(
            select(UserPermission).where(UserPermission.user_id == user_id)
        )
        return {p.tool_id: p for p in result.scalars().all()}

    async def get_user_permission_level(self, ctx: ActorContext, user_id: uuid.UUID) -> str | None:
        user = await self._get_user(ctx, user_id)
        return user_permission_level(user) if user else None

    # ------ checks ------

    async def check_access(
        self,
        ctx: ActorContext,
        user_id: uuid.UUID,
        tool_id: uuid.UUID,
        log: bool = True,
    ) -> PermissionCheckResult:
        user = await self._get_user(ctx, user_id)
        if user is None or not user.is_active:
            decision = PermissionCheckResult(False, "viewer", "denied", "User not found")
        else:
            tool = await self._get_tool(tool_id)
            overrides = await self._overrides(user.id)
            decision = resolve_access(
                role=user.role,
                level=user_permission_level(user),
                tool_id=tool_id,
                tool=tool,
                override=overrides.get(tool_id),
                template=await self._effective_template(user),
                now=utcnow(),
            )

        if log and self.writer is not None:
            self.writer.fire_and_forget(AuditRecord(
                organization_id=ctx.organization_id,
                user_id=user_id,
                tool_id=tool_id,
                action_type="check_allowed" if decision.allowed else "check_denied",
                performed_by=ctx.user_id,
                reason=decision.reason,
                metadata={"source": decision.source, "permission_level": decision.permission_level},
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
            ))
        return decision

    async def available_tools(self, ctx: ActorContext) -> list[dict[str, Any]]:
        """Enabled tools the caller may use right now."""
        user = await self._get_user(ctx, ctx.user_id)
        if user is None:
            return []
        result = await self.db.execute(
            select(Tool).where(Tool.is_enabled.is_(True)).order_by(Tool.category, Tool.name)
        )
        overrides = await self._overrides(user.id)
        template = await self._effective_template(user)
        level = user_permission_level(user)
        now = utcnow()

        tools = []
        for tool in result.scalars().all():
            decision = resolve_access(
                role=user.role,
                level=level,
                tool_id=tool.id,
                tool=tool,
                override=overrides.get(tool.id),
                template=template,
                now=now,
            )
            if decision.allowed:
                tools.append({**serialize_tool(tool), "source": decision.source})
        return tools

    async def permission_summary(self, ctx: ActorContext, user_id: uuid.UUID) -> dict | None:
        user = await self._get_user(ctx, user_id)
        if user is None:
            return None
        template = await self._effective_template(user)
        now = utcnow()

        granted, denied, temporary = [], [], []
        for tool_id, perm in (await self._overrides(user.id)).items():
            if not override_is_active(perm, now):
                continue
            (granted if perm.granted else denied).append(str(tool_id))
            if perm.granted and perm.expires_at is not None:
                temporary.append({"tool_id": str(tool_id), "expires_at": iso(perm.expires_at)})

        return {
            "user_id": str(user.id),
            "role": user.role,
            "template_id": str(template.id) if template else None,
            "template_name": template.name if template else None,
            "granted_tools": granted,
            "denied_tools": denied,
            "temporary_permissions": temporary,
            "effective_permission_level": user_permission_level(user),
        }

    # ------ grants ------

    async def grant(
        self,
        ctx: ActorContext,
        user_id: uuid.UUID,
        tool_id: uuid.UUID,
        reason: str | None = None,
        expires_in_days: int | None = None,
        granted: bool = True,
    ) -> OperationResult:
        """Upsert an override.  ``granted=False`` stores an explicit denial."""
        if not ctx.has_level(REVIEWER_LEVEL):
            return OperationResult.fail("Insufficient permissions to manage tool access", "forbidden")
        if await self._get_user(ctx, user_id) is None:
            return OperationResult.fail("User not found", "not_found")
        if await self._get_tool(tool_id) is None:
            return OperationResult.fail("Tool not found", "not_found")

        try:
            permission, before = await upsert_permission(
                self.db,
                organization_id=ctx.organization_id,
                user_id=user_id,
                tool_id=tool_id,
                granted=granted,
                granted_by=ctx.user_id,
                expires_at=expiry_from_days(expires_in_days),
                reason=reason,
            )
            await record_permission_event(
                self.db,
                ctx,
                "grant" if granted else "revoke",
                user_id=user_id,
                tool_id=tool_id,
                permission_before=before,
                permission_after=permission_snapshot(permission),
                reason=reason,
                metadata={} if granted else {"explicit_deny": True},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Failed to update permission for user %s tool %s", user_id, tool_id)
            raise

        self.feed.publish(
            "ai_user_permissions",
            "insert" if before is None else "update",
            ctx.organization_id,
            user_id=user_id,
            record_id=permission.id,
        )
        return OperationResult.ok(permission=serialize_permission(permission))

    async def revoke(
        self,
        ctx: ActorContext,
        user_id: uuid.UUID,
        tool_id: uuid.UUID,
        reason: str | None = None,
    ) -> OperationResult:
        """Delete the override so the template and role decide again."""
        if not ctx.has_level(REVIEWER_LEVEL):
            return OperationResult.fail("Insufficient permissions to manage tool access", "forbidden")

        result = await self.db.execute(
            select(UserPermission).where(
                UserPermission.user_id == user_id,
                UserPermission.tool_id == tool_id,
                UserPermission.organization_id == ctx.organization_id,
            )
        )
        permission = result.scalar_one_or_none()
        if permission is None:
            return OperationResult.fail("Permission not found", "not_found")

        permission_id = permission.id
        try:
            before = permission_snapshot(permission)
            await self.db.delete(permission)
            await record_permission_event(
                self.db,
                ctx,
                "revoke",
                user_id=user_id,
                tool_id=tool_id,
                permission_before=before,
                permission_after=None,
                reason=reason,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Failed to revoke tool %s from user %s", tool_id, user_id)
            raise

        self.feed.publish(
            "ai_user_permissions", "delete", ctx.organization_id,
            user_id=user_id, record_id=permission_id,
        )
        return OperationResult.ok()

    async def bulk_update(
        self,
        ctx: ActorContext,
        user_ids: list[uuid.UUID],
        tool_id: uuid.UUID,
        granted: bool,
        reason: str | None = None,
        expires_in_days: int | None = None,
    ) -> dict[str, int]:
        """Grant or revoke one tool for many users; each user is independent."""
        updated = failed = 0
        for user_id in user_ids:
            try:
                if granted:
                    outcome = await self.grant(ctx, user_id, tool_id, reason, expires_in_days)
                else:
                    outcome = await self.revoke(ctx, user_id, tool_id, reason)
            except Exception:
                failed += 1
                continue
            if outcome.success:
                updated += 1
            else:
                failed += 1
        logger.info("Bulk permission update on tool %s: %d updated, %d failed", tool_id, updated, failed)
        return {"updated": updated, "failed": failed}

    # ------ templates ------

    async def list_templates(self, ctx: ActorContext) -> list[PermissionTemplate]:
        result = await self.db.execute(
            select(PermissionTemplate)
            .where(
                or_(
                    PermissionTemplate.is_system_template.is_(True),
                    PermissionTemplate.organization_id == ctx.organization_id,
                )
            )
            .order_by(PermissionTemplate.is_system_template.desc(), PermissionTemplate.name)
        )
        return list(result.scalars().all())

    async def _get_editable_template(
        self, ctx: ActorContext, template_id: uuid.UUID
    ) -> PermissionTemplate | OperationResult:
        result = await self.db.execute(
            select(PermissionTemplate).where(PermissionTemplate.id == template_id)
        )
        template = result.scalar_one_or_none()
        if template is None or (
            not template.is_system_template and template.organization_id != ctx.organization_id
        ):
            return OperationResult.fail("Template not found", "not_found")
        if template.is_system_template:
            return OperationResult.fail("System templates cannot be modified", "forbidden")
        return template

    async def create_template(
        self,
        ctx: ActorContext,
        name: str,
        permission_level: str,
        tool_permissions: dict,
        description: str | None = None,
    ) -> OperationResult:
        if not ctx.has_level(REVIEWER_LEVEL):
            return OperationResult.fail("Insufficient permissions to manage templates", "forbidden")
        template = PermissionTemplate(
            organization_id=ctx.organization_id,
            name=name,
            description=description,
            permission_level=permission_level,
            tool_permissions=tool_permissions,
            is_system_template=False,
            created_by=ctx.user_id,
        )
        self.db.add(template)
        await self.db.commit()
        self.feed.publish(
            "ai_permission_templates", "insert", ctx.organization_id, record_id=template.id
        )
        return OperationResult.ok(template=serialize_template(template))

    async def update_template(
        self, ctx: ActorContext, template_id: uuid.UUID, changes: dict[str, Any]
    ) -> OperationResult:
        if not ctx.has_level(REVIEWER_LEVEL):
            return OperationResult.fail("Insufficient permissions to manage templates", "forbidden")
        template = await self._get_editable_template(ctx, template_id)
        if isinstance(template, OperationResult):
            return template

        for field in ("name", "description", "permission_level", "tool_permissions"):
            if field in changes and changes[field] is not None:
                setattr(template, field, changes[field])
        await self.db.commit()
        await self.db.refresh(template)
        self.feed.publish(
            "ai_permission_templates", "update", ctx.organization_id, record_id=template.id
        )
        return OperationResult.ok(template=serialize_template(template))

    async def delete_template(self, ctx: ActorContext, template_id: uuid.UUID) -> OperationResult:
        if not ctx.has_level(REVIEWER_LEVEL):
            return OperationResult.fail("Insufficient permissions to manage templates", "forbidden")
        template = await self._get_editable_template(ctx, template_id)
        if isinstance(template, OperationResult):
            return template

        await self.db.delete(template)
        await self.db.commit()
        self.feed.publish(
            "ai_permission_templates", "delete", ctx.organization_id, record_id=template_id
        )
        return OperationResult.ok()

    async def apply_template(
        self, ctx: ActorContext, user_id: uuid.UUID, template_id: uuid.UUID
    ) -> OperationResult:
        """Make ``template_id`` the user's default template."""
        if not ctx.has_level(REVIEWER_LEVEL):
            return OperationResult.fail("Insufficient permissions to manage templates", "forbidden")
        user = await self._get_user(ctx, user_id)
        if user is None:
            return OperationResult.fail("User not found", "not_found")
        result = await self.db.execute(
            select(PermissionTemplate).where(
                PermissionTemplate.id == template_id,
                or_(
                    PermissionTemplate.is_system_template.is_(True),
                    PermissionTemplate.organization_id == ctx.organization_id,
                ),
            )
        )
        template = result.scalar_one_or_none()
        if template is None:
            return OperationResult.fail("Template not found", "not_found")
        if not level_at_least(ctx.permission_level, template.permission_level):
            return OperationResult.fail(
                "Cannot apply a template above your own permission level", "forbidden"
            )

        previous = user.default_permission_template_id
        try:
            user.default_permission_template_id = template.id
            user.default_permission_template = template
            await record_permission_event(
                self.db,
                ctx,
                "grant",
                user_id=user.id,
                permission_before={"template_id": str(previous) if previous else None},
                permission_after={"template_id": str(template.id)},
                reason=f"Applied template '{template.name}'",
                metadata={"template_id": str(template.id)},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception("Failed to apply template %s to user %s", template_id, user_id)
            raise

        self.feed.publish("user_profiles", "update", ctx.organization_id, user_id=user.id, record_id=user.id)
        return OperationResult.ok(
            user_id=str(user.id),
            template_id=str(template.id),
            permission_level=user_permission_level(user),
        )


# ---------------------------------------------------------------------------
# Serialisers
# ---------------------------------------------------------------------------


def serialize_tool(tool: Tool) -> dict[str, Any]:
    return {
        "id": str(tool.id),
        "slug": tool.slug,
        "name": tool.name,
        "description": tool.description,
        "category": tool.category,
        "permission_level": tool.permission_level,
        "is_enabled": tool.is_enabled,
    }


def serialize_permission(p: UserPermission) -> dict[str, Any]:
    return {
        "id": str(p.id),
        "user_id": str(p.user_id),
        "tool_id": str(p.tool_id),
        "granted": p.granted,
        "granted_by": str(p.granted_by) if p.granted_by else None,
        "granted_at": iso(p.granted_at),
        "expires_at": iso(p.expires_at),
        "is_temporary": p.is_temporary,
        "reason": p.reason,
    }


def serialize_template(t: PermissionTemplate) -> dict[str, Any]:
    return {
        "id": str(t.id),
        "organization_id": str(t.organization_id) if t.organization_id else None,
        "name": t.name,
        "description": t.description,
        "permission_level": t.permission_level,
        "tool_permissions": t.tool_permissions,
        "is_system_template": t.is_system_template,
        "created_at": iso(t.created_at),
        "updated_at": iso(t.updated_at),
    }
