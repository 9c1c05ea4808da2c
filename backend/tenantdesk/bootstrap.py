"""First-run setup: schema, system templates, first organization and admin."""
from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from tenantdesk.config import settings
from tenantdesk.database import Base
from tenantdesk.middleware.auth import hash_password
from tenantdesk.models import Organization, PermissionTemplate, User
from tenantdesk.rbac import PERMISSION_LEVELS, SELF_LEVEL_ROLES, VALID_VERTICALS

logger = logging.getLogger(__name__)


def system_templates() -> list[PermissionTemplate]:
    """One system template per level.  Admin levels may use every tool;
    the rest defer to each tool's required level."""
    return [
        PermissionTemplate(
            organization_id=None,
            name=f"{level.replace('_', ' ').title()} (default)",
            description=f"Default tool access for the {level} level",
            permission_level=level,
            tool_permissions={
                "all": level in SELF_LEVEL_ROLES,
                "allowed_tools": [],
                "denied_tools": [],
            },
            is_system_template=True,
        )
        for level in PERMISSION_LEVELS
    ]


async def create_schema(engine: AsyncEngine) -> None:
    import tenantdesk.models  # noqa: F401  (registers every table)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")


async def seed_defaults(session_factory: async_sessionmaker) -> dict[str, int]:
    """Insert system templates and the bootstrap tenant if they are missing."""
    created = {"templates": 0, "organizations": 0, "users": 0}
    async with session_factory() as db:
        template_count = (await db.execute(
            select(func.count()).select_from(PermissionTemplate)
            .where(PermissionTemplate.is_system_template.is_(True))
        )).scalar() or 0
        if template_count == 0:
            templates = system_templates()
            db.add_all(templates)
            created["templates"] = len(templates)

        org_count = (await db.execute(select(func.count()).select_from(Organization))).scalar() or 0
        if org_count == 0:
            org = Organization(
                name=settings.BOOTSTRAP_ORG_NAME,
                vertical_id=settings.BOOTSTRAP_VERTICAL,
                enabled_verticals=list(VALID_VERTICALS),
            )
            db.add(org)
            await db.flush()
            db.add(User(
                organization_id=org.id,
                email=settings.BOOTSTRAP_ADMIN_EMAIL,
                password_hash=hash_password(settings.BOOTSTRAP_ADMIN_PASSWORD),
                full_name="Administrator",
                role="master_admin",
            ))
            created["organizations"] = 1
            created["users"] = 1
        await db.commit()

    if any(created.values()):
        logger.info("Bootstrap data created: %s", created)
    return created
