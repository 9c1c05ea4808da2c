"""
Authentication, caller context and user management.

Tests 701-718.
"""
import pytest
from fastapi import HTTPException
from sqlalchemy import select

from conftest import PASSWORD, actor, auth_headers
from tenantdesk.bootstrap import seed_defaults, system_templates
from tenantdesk.middleware.auth import (
    create_access_token,
    decode_token,
    hash_password,
    require_level,
    verify_password,
)
from tenantdesk.models import PermissionAuditEntry, User
from tenantdesk.rbac import PERMISSION_LEVELS, level_at_least


class TestAuth:

    async def test_701_login_returns_context(self, client, seed):
        r = await client.post(
            "/api/auth/login", json={"email": "manager@acme.test", "password": PASSWORD}
        )
        assert r.status_code == 200
        body = r.json()
        assert body["token_type"] == "bearer"
        assert body["user"]["role"] == "manager"
        assert body["user"]["organization_id"] == str(seed.org.id)
        assert body["user"]["vertical_id"] == "business"
        assert decode_token(body["access_token"]) == "manager@acme.test"

    async def test_702_wrong_password(self, client):
        r = await client.post(
            "/api/auth/login", json={"email": "manager@acme.test", "password": "wrong"}
        )
        assert r.status_code == 401

    async def test_703_me(self, client, viewer_headers):
        r = await client.get("/api/auth/me", headers=viewer_headers)
        assert r.status_code == 200
        assert r.json()["email"] == "viewer@acme.test"
        assert r.json()["permission_level"] == "viewer"

    async def test_704_refresh(self, client, employee_headers):
        r = await client.post("/api/auth/refresh", headers=employee_headers)
        assert r.status_code == 200
        assert decode_token(r.json()["access_token"]) == "employee@acme.test"

    async def test_705_bad_token(self, client):
        r = await client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"})
        assert r.status_code == 401
        missing = await client.get("/api/auth/me")
        assert missing.status_code == 401

    async def test_706_deactivated_user_rejected(self, client, admin_headers, seed):
        r = await client.put(
            f"/api/users/{seed.users['viewer'].id}", headers=admin_headers, json={"is_active": False}
        )
        assert r.status_code == 200
        me = await client.get("/api/auth/me", headers=auth_headers("viewer@acme.test"))
        assert me.status_code == 401

    def test_707_password_and_token_helpers(self):
        hashed = hash_password("s3cret-value")
        assert verify_password("s3cret-value", hashed)
        assert not verify_password("other", hashed)
        token = create_access_token({"sub": "x@y.test", "user_id": 42})
        assert decode_token(token) == "x@y.test"
        assert decode_token(token + "tampered") is None


class TestLevels:

    def test_708_hierarchy(self):
        assert PERMISSION_LEVELS == ["viewer", "employee", "manager", "admin", "master_admin"]
        assert level_at_least("admin", "manager")
        assert not level_at_least("employee", "manager")
        assert not level_at_least("unknown", "viewer")

    async def test_709_require_level_gate(self, seed):
        gate = require_level("manager")
        assert (await gate(ctx=actor(seed.users["manager"]))).role == "manager"
        with pytest.raises(HTTPException) as exc:
            await gate(ctx=actor(seed.users["employee"]))
        assert exc.value.status_code == 403

    def test_710_unknown_level_rejected(self):
        with pytest.raises(ValueError):
            require_level("overlord")


class TestUsers:

    async def test_711_list_users_in_org(self, client, admin_headers):
        r = await client.get("/api/users", headers=admin_headers)
        assert r.status_code == 200
        emails = {u["email"] for u in r.json()["items"]}
        assert "employee@acme.test" in emails
        assert "admin@grace.test" not in emails

    async def test_712_create_user(self, client, admin_headers):
        r = await client.post(
            "/api/users",
            headers=admin_headers,
            json={"email": "new@acme.test", "password": "long-password", "role": "manager"},
        )
        assert r.status_code == 201
        assert r.json()["permission_level"] == "manager"

        dup = await client.post(
            "/api/users",
            headers=admin_headers,
            json={"email": "new@acme.test", "password": "long-password"},
        )
        assert dup.status_code == 409

        login = await client.post(
            "/api/auth/login", json={"email": "new@acme.test", "password": "long-password"}
        )
        assert login.status_code == 200

    async def test_713_cannot_assign_higher_level(self, client, admin_headers, seed):
        r = await client.put(
            f"/api/users/{seed.users['employee'].id}",
            headers=admin_headers,
            json={"role": "master_admin"},
        )
        assert r.status_code == 403

    async def test_714_template_sets_effective_level(self, client, admin_headers, seed):
        r = await client.put(
            f"/api/users/{seed.users['employee'].id}",
            headers=admin_headers,
            json={"default_permission_template_id": str(seed.templates["manager"].id)},
        )
        assert r.status_code == 200
        assert r.json()["permission_level"] == "manager"
        me = await client.get("/api/auth/me", headers=auth_headers("employee@acme.test"))
        assert me.json()["permission_level"] == "manager"

    async def test_717_template_change_is_audited(self, client, admin_headers, seed, db):
        employee = seed.users["employee"]
        template = seed.templates["manager"]
        r = await client.put(
            f"/api/users/{employee.id}",
            headers=admin_headers,
            json={"default_permission_template_id": str(template.id), "full_name": "Emma Ployee"},
        )
        assert r.status_code == 200
        assert r.json()["full_name"] == "Emma Ployee"

        entries = (await db.execute(select(PermissionAuditEntry))).scalars().all()
        assert len(entries) == 1
        assert entries[0].action_type == "grant"
        assert entries[0].user_id == employee.id
        assert entries[0].performed_by == seed.users["admin"].id
        assert entries[0].metadata_["template_id"] == str(template.id)
        assert entries[0].permission_after == {"template_id": str(template.id)}

    async def test_718_cannot_assign_template_above_own_level(self, client, admin_headers, seed, db):
        employee = seed.users["employee"]
        r = await client.put(
            f"/api/users/{employee.id}",
            headers=admin_headers,
            json={"default_permission_template_id": str(seed.templates["master_admin"].id), "full_name": "Nope"},
        )
        assert r.status_code == 403

        stored = (await db.execute(select(User).where(User.id == employee.id))).scalar_one()
        assert stored.default_permission_template_id is None
        assert stored.full_name != "Nope"
        assert (await db.execute(select(PermissionAuditEntry))).scalars().all() == []
        me = await client.get("/api/auth/me", headers=auth_headers("employee@acme.test"))
        assert me.json()["permission_level"] == "employee"


class TestBootstrap:

    def test_715_one_system_template_per_level(self):
        templates = system_templates()
        assert [t.permission_level for t in templates] == PERMISSION_LEVELS
        assert all(t.is_system_template for t in templates)
        assert {t.permission_level for t in templates if t.tool_permissions["all"]} == {
            "admin", "master_admin",
        }

    async def test_716_seed_defaults_is_idempotent(self, session_factory):
        first = await seed_defaults(session_factory)
        second = await seed_defaults(session_factory)
        assert first == {"templates": 5, "organizations": 1, "users": 1}
        assert second == {"templates": 0, "organizations": 0, "users": 0}
