"""
Test fixtures for TenantDesk.

Every test gets a fresh SQLite database (through aiosqlite) in a temporary
directory, the FastAPI app wired to it via ``dependency_overrides``, and a
seeded tenant: one organization (plus a foreign one), a user per
permission level, a few registered tools and the system templates.
"""
import uuid
from dataclasses import dataclass, field

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from tenantdesk.bootstrap import system_templates
from tenantdesk.database import Base, get_db
from tenantdesk.main import app
from tenantdesk.middleware.auth import create_access_token, hash_password
from tenantdesk.models import Organization, Tool, User
from tenantdesk.services.audit_service import PermissionAuditWriter, get_audit_writer
from tenantdesk.services.change_feed import ChangeFeed, get_change_feed
from tenantdesk.services.context import ActorContext
from tenantdesk.services.permission_service import user_permission_level

PASSWORD = "correct-horse-battery"
PASSWORD_HASH = hash_password(PASSWORD)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def auth_headers(email: str) -> dict:
    """Return auth header dict for a user's email."""
    return {"Authorization": f"Bearer {create_access_token({'sub': email})}"}


def actor(user: User, vertical_id: str = "business") -> ActorContext:
    """Service-level caller context for a seeded user."""
    return ActorContext(
        user_id=user.id,
        organization_id=user.organization_id,
        vertical_id=vertical_id,
        role=user.role,
        permission_level=user_permission_level(user),
        email=user.email,
        full_name=user.full_name,
        ip_address="127.0.0.1",
        user_agent="pytest",
    )


@dataclass
class Seed:
    org: Organization
    other_org: Organization
    users: dict[str, User] = field(default_factory=dict)
    tools: dict[str, Tool] = field(default_factory=dict)
    templates: dict[str, object] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tenantdesk.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    """A session for direct setup and assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def audit_writer(session_factory):
    return PermissionAuditWriter(session_factory)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def seed(session_factory) -> Seed:
    """Organization, one user per level, three tools and system templates."""
    async with session_factory() as s:
        org = Organization(name="Acme Works", vertical_id="business", enabled_verticals=["business"])
        other_org = Organization(name="Grace Chapel", vertical_id="church", enabled_verticals=["church"])
        s.add_all([org, other_org])
        await s.flush()

        data = Seed(org=org, other_org=other_org)
        for role in ("master_admin", "admin", "manager", "employee", "viewer"):
            data.users[role] = User(
                organization_id=org.id,
                email=f"{role}@acme.test",
                password_hash=PASSWORD_HASH,
                full_name=f"{role.replace('_', ' ').title()} User",
                role=role,
            )
        data.users["outsider"] = User(
            organization_id=other_org.id,
            email="admin@grace.test",
            password_hash=PASSWORD_HASH,
            full_name="Grace Admin",
            role="admin",
        )
        s.add_all(data.users.values())

        for slug, name, level in (
            ("document-ai", "Document AI", "employee"),
            ("financial-insights", "Financial Insights", "manager"),
            ("admin-console", "Admin Console", "admin"),
        ):
            data.tools[slug] = Tool(slug=slug, name=name, category="ai", permission_level=level)
        s.add_all(data.tools.values())

        for template in system_templates():
            data.templates[template.permission_level] = template
            s.add(template)

        await s.commit()
        for user in data.users.values():
            await s.refresh(user)
        return data


# ---------------------------------------------------------------------------
# App & client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(session_factory, feed, audit_writer, seed):
    """HTTP client against the app with storage, feed and writer overridden."""

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_change_feed] = lambda: feed
    app.dependency_overrides[get_audit_writer] = lambda: audit_writer

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c

    await audit_writer.drain()
    app.dependency_overrides.clear()


@pytest.fixture
def master_headers():
    return auth_headers("master_admin@acme.test")


@pytest.fixture
def admin_headers():
    return auth_headers("admin@acme.test")


@pytest.fixture
def manager_headers():
    return auth_headers("manager@acme.test")


@pytest.fixture
def employee_headers():
    return auth_headers("employee@acme.test")


@pytest.fixture
def viewer_headers():
    return auth_headers("viewer@acme.test")


@pytest.fixture
def outsider_headers():
    return auth_headers("admin@grace.test")


def new_id() -> str:
    return str(uuid.uuid4())
