"""
Organization UI customization: partial saves, versioning, history,
milestones and rollback.

Tests 501-511.
"""
import pytest

from conftest import actor
from tenantdesk.services.customization_service import CustomizationService


BRANDING = {"primary_color": "#0044aa", "logo_url": "/logo.png"}


class TestCustomizationApi:

    async def test_501_default_before_first_save(self, client, employee_headers):
        r = await client.get("/api/customizations", headers=employee_headers)
        assert r.status_code == 200
        body = r.json()
        assert body["version"] == 0
        assert body["id"] is None
        assert body["vertical_id"] == "business"
        assert body["branding_config"] == {}

    async def test_502_first_save_is_version_one(self, client, admin_headers):
        r = await client.put(
            "/api/customizations",
            headers=admin_headers,
            json={"branding_config": BRANDING, "change_description": "Brand refresh"},
        )
        assert r.status_code == 200
        assert r.json()["version"] == 1
        assert r.json()["branding_config"] == BRANDING

    async def test_503_partial_save_keeps_other_sections(self, client, admin_headers):
        await client.put("/api/customizations", headers=admin_headers, json={"branding_config": BRANDING})
        r = await client.put(
            "/api/customizations",
            headers=admin_headers,
            json={"navigation_config": {"collapsed": True}},
        )
        body = r.json()
        assert body["version"] == 2
        assert body["branding_config"] == BRANDING
        assert body["navigation_config"] == {"collapsed": True}

    async def test_504_empty_save_rejected(self, client, admin_headers):
        r = await client.put(
            "/api/customizations", headers=admin_headers, json={"change_description": "Nothing"}
        )
        assert r.status_code == 422

    async def test_505_employee_cannot_save(self, client, employee_headers):
        r = await client.put(
            "/api/customizations", headers=employee_headers, json={"branding_config": BRANDING}
        )
        assert r.status_code == 403

    async def test_506_history_newest_first(self, client, admin_headers):
        await client.put("/api/customizations", headers=admin_headers, json={"branding_config": BRANDING})
        await client.put(
            "/api/customizations", headers=admin_headers, json={"stats_config": {"show": ["documents"]}}
        )
        r = await client.get("/api/customizations/history", headers=admin_headers)
        assert r.status_code == 200
        versions = [h["version_number"] for h in r.json()["items"]]
        assert versions == [2, 1]
        assert r.json()["items"][1]["config_snapshot"]["branding_config"] == BRANDING

    async def test_507_mark_milestone(self, client, admin_headers):
        await client.put("/api/customizations", headers=admin_headers, json={"branding_config": BRANDING})
        history = await client.get("/api/customizations/history", headers=admin_headers)
        history_id = history.json()["items"][0]["id"]

        r = await client.post(
            f"/api/customizations/history/{history_id}/milestone",
            headers=admin_headers,
            json={"milestone_name": "Launch look"},
        )
        assert r.status_code == 200
        assert r.json()["is_milestone"] is True
        assert r.json()["milestone_name"] == "Launch look"

    async def test_508_rollback_creates_new_version(self, client, admin_headers):
        await client.put("/api/customizations", headers=admin_headers, json={"branding_config": BRANDING})
        await client.put(
            "/api/customizations",
            headers=admin_headers,
            json={"branding_config": {"primary_color": "#ff0000"}},
        )
        history = await client.get("/api/customizations/history", headers=admin_headers)
        first = next(h for h in history.json()["items"] if h["version_number"] == 1)

        r = await client.post(f"/api/customizations/history/{first['id']}/rollback", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["version"] == 3
        assert r.json()["branding_config"] == BRANDING

        latest = await client.get("/api/customizations/history", headers=admin_headers)
        assert latest.json()["items"][0]["change_description"] == "Rolled back to version 1"

    async def test_509_other_tenant_history_is_404(self, client, admin_headers, outsider_headers):
        await client.put("/api/customizations", headers=admin_headers, json={"branding_config": BRANDING})
        history = await client.get("/api/customizations/history", headers=admin_headers)
        history_id = history.json()["items"][0]["id"]
        r = await client.post(
            f"/api/customizations/history/{history_id}/rollback", headers=outsider_headers
        )
        assert r.status_code == 404


class TestCustomizationService:

    async def test_510_unknown_section_rejected(self, db, seed, feed):
        service = CustomizationService(db, feed)
        outcome = await service.save(actor(seed.users["admin"]), {"theme_config": {}})
        assert outcome.success is False
        assert "theme_config" in outcome.error

    @pytest.mark.parametrize("vertical", ["church", "estate"])
    async def test_511_verticals_are_independent(self, db, seed, feed, vertical):
        service = CustomizationService(db, feed)
        ctx = actor(seed.users["admin"])
        await service.save(ctx, {"branding_config": BRANDING})
        other = await service.get(ctx, vertical)
        assert other["version"] == 0
        assert (await service.get(ctx))["version"] == 1
