"""
Tests for the audit trail: entries written by services and the admin-only read API.
"""

from decimal import Decimal

from npd_tracker.models import db
from npd_tracker.models.audit import AuditLog, write_audit
from tests.conftest import auth_headers


class TestWriteAudit:
    def test_diff_serialised_with_decimals(self, org):
        log = write_audit(entity_table="rka_accounts", entity_id=5, action="updated",
                          organization_id=org.id, diff={"pagu_tahun": {"old": Decimal("1.50"), "new": 2}})
        db.session.commit()
        assert log.entity_id == "5"
        assert log.diff == {"pagu_tahun": {"old": "1.50", "new": 2}}

    def test_request_context_fills_actor(self, client, users, draft_npd):
        entry = AuditLog.query.filter_by(entity_table="npd_documents", action="created").one()
        assert entry.actor_user_id == users["pptk"].id
        assert entry.organization_id == users["pptk"].organization_id
        assert entry.ip_address == "127.0.0.1"


class TestAuditApi:
    def test_admin_lists_org_entries(self, client, users, draft_npd):
        res = client.get("/api/v1/audit-logs", headers=auth_headers(users["admin"]))
        assert res.status_code == 200
        body = res.get_json()
        assert body["total"] >= 1
        assert body["page"] == 1
        assert all(log["organization_id"] == users["admin"].organization_id for log in body["audit_logs"])

    def test_filters(self, client, users, draft_npd):
        headers = auth_headers(users["admin"])
        client.post(f"/api/v1/npd/{draft_npd['id']}/transitions/submit", json={},
                    headers=auth_headers(users["pptk"]))

        res = client.get(
            f"/api/v1/audit-logs?entity_table=npd_documents&entity_id={draft_npd['id']}&action=sub",
            headers=headers,
        )
        logs = res.get_json()["audit_logs"]
        assert [log["action"] for log in logs] == ["submitted"]

        res = client.get(f"/api/v1/audit-logs?actor={users['pptk'].id}&per_page=1", headers=headers)
        body = res.get_json()
        assert len(body["audit_logs"]) == 1
        assert body["pages"] == body["total"]

    def test_non_admin_forbidden(self, client, users):
        for role in ("pptk", "bendahara", "verifikator", "viewer"):
            res = client.get("/api/v1/audit-logs", headers=auth_headers(users[role]))
            assert res.status_code == 403, role

    def test_other_org_entry_hidden(self, client, users, other_org):
        log = write_audit(entity_table="organizations", entity_id=other_org.id, action="updated",
                          organization_id=other_org.id)
        db.session.commit()
        res = client.get(f"/api/v1/audit-logs/{log.id}", headers=auth_headers(users["admin"]))
        assert res.status_code == 404
