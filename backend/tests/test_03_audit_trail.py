"""
Permission audit trail: filtering, date ranges, pagination, CSV export
and statistics.

Tests 301-318.
"""
import csv
import io
import uuid
from datetime import date, datetime, timezone

import pytest

from tenantdesk.models import PermissionAuditEntry
from tenantdesk.rbac import format_action_type
from tenantdesk.services.audit_service import (
    CSV_HEADERS,
    AuditTrailFilters,
    record_permission_event,
    render_audit_csv,
)


def _at(*args):
    return datetime(*args, tzinfo=timezone.utc)


async def _insert(db, seed, created_at, action_type="grant", **extra):
    values = dict(
        organization_id=seed.org.id,
        user_id=seed.users["employee"].id,
        tool_id=seed.tools["document-ai"].id,
        action_type=action_type,
        performed_by=seed.users["admin"].id,
        metadata_={},
        created_at=created_at,
    )
    values.update(extra)
    entry = PermissionAuditEntry(**values)
    db.add(entry)
    await db.commit()
    return entry


def _parse_csv(text):
    return list(csv.reader(io.StringIO(text)))


class TestDateRange:
    """Date filters are inclusive whole UTC days."""

    async def test_301_inclusive_day_boundaries(self, client, seed, admin_headers, db):
        await _insert(db, seed, _at(2024, 1, 13, 23, 59, 59), reason="before")
        await _insert(db, seed, _at(2024, 1, 14, 0, 0, 0), reason="first")
        await _insert(db, seed, _at(2024, 1, 15, 23, 59, 59), reason="last")
        await _insert(db, seed, _at(2024, 1, 16, 0, 0, 0), reason="after")

        r = await client.get(
            "/api/audit?date_from=2024-01-14&date_to=2024-01-15", headers=admin_headers
        )
        assert r.status_code == 200
        body = r.json()
        assert body["total"] == 2
        assert [e["reason"] for e in body["entries"]] == ["last", "first"]

    async def test_302_single_day(self, client, seed, admin_headers, db):
        await _insert(db, seed, _at(2024, 1, 15, 12, 0, 0))
        await _insert(db, seed, _at(2024, 1, 16, 12, 0, 0))
        r = await client.get(
            "/api/audit?date_from=2024-01-15&date_to=2024-01-15", headers=admin_headers
        )
        assert r.json()["total"] == 1

    async def test_303_open_ended_range(self, client, seed, admin_headers, db):
        await _insert(db, seed, _at(2024, 1, 10))
        await _insert(db, seed, _at(2024, 2, 10))
        r = await client.get("/api/audit?date_from=2024-02-01", headers=admin_headers)
        assert r.json()["total"] == 1


class TestFilteringAndPaging:

    async def test_304_filter_by_action_and_label(self, client, seed, admin_headers, db):
        await _insert(db, seed, _at(2024, 1, 10), action_type="grant")
        await _insert(db, seed, _at(2024, 1, 11), action_type="revoke")
        r = await client.get("/api/audit?action_type=revoke", headers=admin_headers)
        entries = r.json()["entries"]
        assert len(entries) == 1
        assert entries[0]["action_label"] == "Permission Revoked"
        assert entries[0]["user_email"] == "employee@acme.test"
        assert entries[0]["tool_name"] == "Document AI"
        assert entries[0]["performed_by_email"] == "admin@acme.test"

    async def test_305_unknown_action_type_is_422(self, client, admin_headers):
        r = await client.get("/api/audit?action_type=teleport", headers=admin_headers)
        assert r.status_code == 422

    async def test_306_denials_only(self, client, seed, admin_headers, db):
        for action in ("grant", "check_denied", "deny", "revoke", "check_allowed"):
            await _insert(db, seed, _at(2024, 1, 10), action_type=action)
        r = await client.get("/api/audit?show_denials_only=true", headers=admin_headers)
        assert {e["action_type"] for e in r.json()["entries"]} == {"check_denied", "deny", "revoke"}

    async def test_307_pagination(self, client, seed, admin_headers, db):
        for day in range(1, 8):
            await _insert(db, seed, _at(2024, 1, day), reason=f"day {day}")
        first = await client.get("/api/audit?page=1&page_size=3", headers=admin_headers)
        third = await client.get("/api/audit?page=3&page_size=3", headers=admin_headers)
        assert first.json()["total"] == 7
        assert [e["reason"] for e in first.json()["entries"]] == ["day 7", "day 6", "day 5"]
        assert [e["reason"] for e in third.json()["entries"]] == ["day 1"]

    async def test_308_page_size_capped(self, client, admin_headers):
        r = await client.get("/api/audit?page_size=100000", headers=admin_headers)
        assert r.status_code == 422

    async def test_309_tenant_isolation(self, client, seed, admin_headers, outsider_headers, db):
        await _insert(db, seed, _at(2024, 1, 10))
        mine = await client.get("/api/audit", headers=admin_headers)
        theirs = await client.get("/api/audit", headers=outsider_headers)
        assert mine.json()["total"] == 1
        assert theirs.json()["total"] == 0

    async def test_310_requires_admin(self, client, manager_headers):
        r = await client.get("/api/audit", headers=manager_headers)
        assert r.status_code == 403


class TestCsvExport:

    def test_311_special_characters_survive(self):
        """Commas, quotes and newlines round-trip through a CSV parser."""
        reason = 'Needs "full" access, per CFO\nsee ticket'
        text = render_audit_csv([{
            "created_at": "2024-01-15T10:30:00+00:00",
            "user_email": "a@b.test",
            "user_name": "Doe, Jane",
            "tool_name": "Document AI",
            "action_type": "grant",
            "performed_by_email": "admin@b.test",
            "reason": reason,
            "ip_address": "10.0.0.1",
        }])
        rows = _parse_csv(text)
        assert rows[0] == CSV_HEADERS
        assert rows[1] == [
            "2024-01-15T10:30:00Z",
            "a@b.test",
            "Doe, Jane",
            "Document AI",
            "grant",
            "admin@b.test",
            reason,
            "10.0.0.1",
        ]

    def test_312_missing_values_default(self):
        rows = _parse_csv(render_audit_csv([{
            "created_at": _at(2024, 1, 15, 8, 0, 0),
            "action_type": "expire",
        }]))
        assert rows[1] == ["2024-01-15T08:00:00Z", "N/A", "N/A", "N/A", "expire", "System", "N/A", "N/A"]

    async def test_313_export_endpoint(self, client, seed, admin_headers, db):
        await _insert(db, seed, _at(2024, 1, 15, 9, 0, 0), reason="Quarter close, urgent")
        await _insert(db, seed, _at(2023, 12, 1), reason="Out of range")
        r = await client.get(
            "/api/audit/export?date_from=2024-01-01&date_to=2024-01-31", headers=admin_headers
        )
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/csv")
        assert "attachment" in r.headers["content-disposition"]
        rows = _parse_csv(r.text)
        assert len(rows) == 2
        assert rows[1][0] == "2024-01-15T09:00:00Z"
        assert rows[1][6] == "Quarter close, urgent"

    def test_318_empty_reason_is_not_missing(self):
        rows = _parse_csv(render_audit_csv([
            {"created_at": _at(2024, 1, 15), "action_type": "grant", "reason": ""},
            {"created_at": _at(2024, 1, 15), "action_type": "grant", "reason": None},
        ]))
        assert rows[1][6] == ""
        assert rows[2][6] == "N/A"


class TestStatsAndHelpers:

    async def test_314_stats(self, client, seed, admin_headers, db):
        for action in ("grant", "grant", "revoke", "check_denied"):
            await _insert(db, seed, datetime.now(timezone.utc), action_type=action)
        await _insert(db, seed, _at(2024, 1, 1), action_type="deny")

        r = await client.get("/api/audit/stats", headers=admin_headers)
        assert r.status_code == 200
        stats = r.json()
        assert stats["total_entries"] == 5
        assert stats["entries_today"] == 4
        assert stats["grants_today"] == 2
        assert stats["revokes_today"] == 1
        assert stats["denials_today"] == 1
        assert stats["top_actions"][0] == {"action_type": "grant", "count": 2}
        assert stats["top_performers"][0]["performer_email"] == "admin@acme.test"
        assert stats["top_performers"][0]["count"] == 5

    async def test_315_unknown_action_rejected_on_write(self, db, seed):
        with pytest.raises(ValueError):
            await record_permission_event(db, None, "teleport", user_id=uuid.uuid4())

    def test_316_action_labels(self):
        assert format_action_type("check_denied") == "Access Denied"
        assert format_action_type("approve") == "Request Approved"
        assert format_action_type("custom") == "custom"
        with pytest.raises(ValueError):
            AuditTrailFilters(action_type="custom")
        assert AuditTrailFilters(date_from=date(2024, 1, 1)).date_from == date(2024, 1, 1)


class TestScenarios:

    async def test_317_january_denials(self, client, seed, admin_headers, db):
        """Denials-only view of January 2024, newest first."""
        await _insert(db, seed, _at(2023, 12, 31, 23, 0, 0), action_type="deny", reason="december")
        await _insert(db, seed, _at(2024, 1, 3), action_type="check_denied", reason="jan 3")
        await _insert(db, seed, _at(2024, 1, 10), action_type="grant", reason="jan 10 grant")
        await _insert(db, seed, _at(2024, 1, 20), action_type="revoke", reason="jan 20")
        await _insert(db, seed, _at(2024, 1, 31, 23, 59, 59), action_type="deny", reason="jan 31")
        await _insert(db, seed, _at(2024, 2, 1), action_type="check_denied", reason="february")

        r = await client.get(
            "/api/audit?show_denials_only=true&date_from=2024-01-01&date_to=2024-01-31",
            headers=admin_headers,
        )
        assert r.status_code == 200
        assert [e["reason"] for e in r.json()["entries"]] == ["jan 31", "jan 20", "jan 3"]
        assert r.json()["total"] == 3
