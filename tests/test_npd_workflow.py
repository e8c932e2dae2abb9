"""
NPD lifecycle tests through the API.

    draft → diajukan → diverifikasi → final
    diajukan / diverifikasi → rejected → diajukan

Covers role guards per event, checklist precondition on verify, the
rejection note format, optimistic versioning, immutability of final
documents and organization isolation.
"""

from npd_tracker.models import db
from npd_tracker.models.audit import AuditLog
from npd_tracker.models.notification import Notification
from npd_tracker.models.npd import NpdDocument
from tests.conftest import auth_headers, make_budget, make_user

UP_REQUIRED = ["surat_permohonan", "rincian_biaya", "bukti_pendukung", "sisa_pagu", "kelengkapan_data"]


def _transition(client, npd_id, event, user, **body):
    return client.post(
        f"/api/v1/npd/{npd_id}/transitions/{event}",
        json=body,
        headers=auth_headers(user),
    )


def _check_all(client, npd_id, user, items=UP_REQUIRED):
    res = client.put(
        f"/api/v1/npd/{npd_id}/checklist",
        json={"results": [{"item_id": i, "checked": True} for i in items]},
        headers=auth_headers(user),
    )
    assert res.status_code == 200, res.get_json()
    return res.get_json()


def _to_final(client, npd_id, users):
    assert _transition(client, npd_id, "submit", users["pptk"]).status_code == 200
    _check_all(client, npd_id, users["verifikator"])
    assert _transition(client, npd_id, "verify", users["verifikator"]).status_code == 200
    assert _transition(client, npd_id, "finalize", users["bendahara"]).status_code == 200


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_draft_with_number_checklist_and_total(self, draft_npd):
        assert draft_npd["status"] == "draft"
        assert draft_npd["document_number"] == "NPD-2025-001"
        assert draft_npd["total_amount"] == 3000000
        assert draft_npd["checklist"]["checklist_type"] == "UP"
        assert draft_npd["checklist"]["completion"]["required_total"] == 5
        assert draft_npd["available_transitions"] == ["submit"]

    def test_sequence_increments(self, client, users, budget, draft_npd):
        res = client.post(
            "/api/v1/npd",
            json={"subkegiatan_id": budget["subkegiatan"].id, "title": "Kedua", "jenis": "GU"},
            headers=auth_headers(users["pptk"]),
        )
        assert res.status_code == 201
        assert res.get_json()["document_number"] == "NPD-2025-002"

    def test_viewer_cannot_create(self, client, users, budget):
        res = client.post(
            "/api/v1/npd",
            json={"subkegiatan_id": budget["subkegiatan"].id, "title": "X", "jenis": "UP"},
            headers=auth_headers(users["viewer"]),
        )
        assert res.status_code == 403

    def test_invalid_jenis(self, client, users, budget):
        res = client.post(
            "/api/v1/npd",
            json={"subkegiatan_id": budget["subkegiatan"].id, "title": "X", "jenis": "ZZ"},
            headers=auth_headers(users["pptk"]),
        )
        assert res.status_code == 422

    def test_line_exceeding_sisa_pagu_rejected(self, client, users, budget, draft_npd):
        acct_b = budget["accounts"][1]
        res = client.post(
            f"/api/v1/npd/{draft_npd['id']}/lines",
            json={"account_id": acct_b.id, "jumlah": "3000001"},
            headers=auth_headers(users["pptk"]),
        )
        assert res.status_code == 422
        assert "sisa pagu" in res.get_json()["error"]

    def test_line_amount_from_volume_and_price(self, client, users, budget, draft_npd):
        acct_a = budget["accounts"][0]
        res = client.post(
            f"/api/v1/npd/{draft_npd['id']}/lines",
            json={"account_id": acct_a.id, "volume": "3", "harga_satuan": "12500.50"},
            headers=auth_headers(users["pptk"]),
        )
        assert res.status_code == 201
        assert res.get_json()["line"]["jumlah"] == 37501.5

    def test_unauthenticated(self, client, budget):
        res = client.get("/api/v1/npd")
        assert res.status_code == 401


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


class TestHappyPath:
    def test_full_lifecycle(self, client, users, draft_npd):
        npd_id = draft_npd["id"]

        res = _transition(client, npd_id, "submit", users["pptk"])
        assert res.status_code == 200
        assert res.get_json()["new_status"] == "diajukan"

        checklist = _check_all(client, npd_id, users["verifikator"])
        assert checklist["status"] == "completed"
        assert checklist["completion"]["complete"] is True

        res = _transition(client, npd_id, "verify", users["verifikator"])
        assert res.status_code == 200
        assert res.get_json()["new_status"] == "diverifikasi"

        res = _transition(client, npd_id, "finalize", users["bendahara"])
        assert res.status_code == 200
        assert res.get_json()["new_status"] == "final"

        npd = db.session.get(NpdDocument, npd_id)
        assert npd.verified_by == users["verifikator"].id
        assert npd.finalized_by == users["bendahara"].id
        assert npd.checklist.status == "completed"

        actions = [a.action for a in AuditLog.query.filter_by(
            entity_table="npd_documents", entity_id=str(npd_id)).order_by(AuditLog.id)]
        assert actions == ["created", "submitted", "verified", "finalized"]

    def test_submit_notifies_verifiers_and_bendahara(self, client, users, draft_npd):
        _transition(client, draft_npd["id"], "submit", users["pptk"])
        notified = {n.user_id for n in Notification.query.filter_by(type="npd_submitted")}
        assert notified == {users["verifikator"].id, users["bendahara"].id}

    def test_finalize_notifies_creator(self, client, users, draft_npd):
        _to_final(client, draft_npd["id"], users)
        types = [n.type for n in Notification.query.filter_by(user_id=users["pptk"].id)]
        assert "npd_verified" in types
        assert "npd_finalized" in types


class TestGuards:
    def test_submit_without_lines(self, client, users, budget):
        res = client.post(
            "/api/v1/npd",
            json={"subkegiatan_id": budget["subkegiatan"].id, "title": "Kosong", "jenis": "LS"},
            headers=auth_headers(users["pptk"]),
        )
        res = _transition(client, res.get_json()["id"], "submit", users["pptk"])
        assert res.status_code == 422

    def test_verify_with_unchecked_required_item(self, client, users, draft_npd):
        npd_id = draft_npd["id"]
        _transition(client, npd_id, "submit", users["pptk"])
        _check_all(client, npd_id, users["verifikator"], items=UP_REQUIRED[:-1])

        res = _transition(client, npd_id, "verify", users["verifikator"])
        assert res.status_code == 422
        body = res.get_json()
        assert "Kelengkapan Data harus dicentang" in body["error"]
        assert body["details"]["missing"] == ["kelengkapan_data"]
        assert db.session.get(NpdDocument, npd_id).status == "diajukan"

    def test_verifikator_cannot_finalize(self, client, users, draft_npd):
        npd_id = draft_npd["id"]
        _transition(client, npd_id, "submit", users["pptk"])
        _check_all(client, npd_id, users["verifikator"])
        _transition(client, npd_id, "verify", users["verifikator"])

        res = _transition(client, npd_id, "finalize", users["verifikator"])
        assert res.status_code == 403

    def test_pptk_cannot_verify(self, client, users, draft_npd):
        _transition(client, draft_npd["id"], "submit", users["pptk"])
        res = _transition(client, draft_npd["id"], "verify", users["pptk"])
        assert res.status_code == 403

    def test_invalid_transition_is_conflict(self, client, users, draft_npd):
        res = _transition(client, draft_npd["id"], "finalize", users["bendahara"])
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_unknown_event(self, client, users, draft_npd):
        res = _transition(client, draft_npd["id"], "approve", users["admin"])
        assert res.status_code == 400

    def test_stale_version(self, client, users, draft_npd):
        res = _transition(client, draft_npd["id"], "submit", users["pptk"],
                          version=draft_npd["version"] + 5)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_VERSION"

    def test_second_verify_with_old_version_conflicts(self, client, users, draft_npd):
        npd_id = draft_npd["id"]
        _transition(client, npd_id, "submit", users["pptk"])
        seen_version = _check_all(client, npd_id, users["verifikator"])["npd_version"]

        first = _transition(client, npd_id, "verify", users["verifikator"], version=seen_version)
        assert first.status_code == 200
        second = _transition(client, npd_id, "verify", users["bendahara"], version=seen_version)
        assert second.status_code == 409

    def test_checklist_change_invalidates_seen_version(self, client, users, draft_npd):
        npd_id = draft_npd["id"]
        submitted = _transition(client, npd_id, "submit", users["pptk"]).get_json()
        checked = _check_all(client, npd_id, users["verifikator"])
        assert checked["npd_version"] > submitted["version"]

        res = _transition(client, npd_id, "verify", users["verifikator"], version=submitted["version"])
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_VERSION"

    def test_line_change_bumps_version(self, client, users, draft_npd):
        npd_id = draft_npd["id"]
        line_id = draft_npd["lines"][0]["id"]
        res = client.patch(f"/api/v1/npd/{npd_id}/lines/{line_id}", json={"uraian": "Obat generik"},
                           headers=auth_headers(users["pptk"]))
        assert res.status_code == 200
        db.session.expire_all()
        assert db.session.get(NpdDocument, npd_id).version > draft_npd["version"]

        res = _transition(client, npd_id, "submit", users["pptk"], version=draft_npd["version"])
        assert res.status_code == 409

    def test_stale_checklist_write(self, client, users, draft_npd):
        npd_id = draft_npd["id"]
        submitted = _transition(client, npd_id, "submit", users["pptk"]).get_json()
        _check_all(client, npd_id, users["verifikator"])
        res = client.put(f"/api/v1/npd/{npd_id}/checklist",
                         json={"results": [{"item_id": "sisa_pagu", "checked": False}],
                               "version": submitted["version"]},
                         headers=auth_headers(users["bendahara"]))
        assert res.status_code == 409


class TestReject:
    def test_reject_requires_reason(self, client, users, draft_npd):
        _transition(client, draft_npd["id"], "submit", users["pptk"])
        res = _transition(client, draft_npd["id"], "reject", users["verifikator"], reason="   ")
        assert res.status_code == 422

    def test_reject_rewrites_catatan_and_allows_resubmit(self, client, users, budget):
        res = client.post(
            "/api/v1/npd",
            json={
                "subkegiatan_id": budget["subkegiatan"].id, "title": "Dengan catatan",
                "jenis": "UP", "catatan": "catatan awal",
                "lines": [{"account_id": budget["accounts"][0].id, "jumlah": "500000"}],
            },
            headers=auth_headers(users["pptk"]),
        )
        npd_id = res.get_json()["id"]
        _transition(client, npd_id, "submit", users["pptk"])
        _check_all(client, npd_id, users["verifikator"])
        _transition(client, npd_id, "verify", users["verifikator"])

        res = _transition(client, npd_id, "reject", users["bendahara"], reason="Kwitansi kurang")
        assert res.status_code == 200

        npd = db.session.get(NpdDocument, npd_id)
        assert npd.status == "rejected"
        assert npd.catatan == "DITOLAK: Kwitansi kurang\n\nCatatan asli:\ncatatan awal"
        assert npd.verified_by is None
        assert npd.checklist.status == "rejected"
        notif = Notification.query.filter_by(user_id=users["pptk"].id, type="npd_rejected").one()
        assert "Kwitansi kurang" in notif.message

        # rejected is editable and can be resubmitted
        res = client.patch(f"/api/v1/npd/{npd_id}", json={"title": "Diperbaiki"},
                           headers=auth_headers(users["pptk"]))
        assert res.status_code == 200
        assert _transition(client, npd_id, "submit", users["pptk"]).status_code == 200


class TestFinalImmutable:
    def test_final_refuses_every_mutation(self, client, users, budget, draft_npd):
        npd_id = draft_npd["id"]
        _to_final(client, npd_id, users)
        headers = auth_headers(users["admin"])
        line_id = draft_npd["lines"][0]["id"]

        assert client.patch(f"/api/v1/npd/{npd_id}", json={"title": "x"}, headers=headers).status_code == 422
        assert client.post(f"/api/v1/npd/{npd_id}/lines",
                           json={"account_id": budget["accounts"][0].id, "jumlah": "1"},
                           headers=headers).status_code == 422
        assert client.patch(f"/api/v1/npd/{npd_id}/lines/{line_id}", json={"jumlah": "1"},
                            headers=headers).status_code == 422
        assert client.delete(f"/api/v1/npd/{npd_id}/lines/{line_id}", headers=headers).status_code == 422
        assert client.delete(f"/api/v1/npd/{npd_id}", headers=headers).status_code == 422
        for event in ("submit", "verify", "finalize", "reject"):
            assert _transition(client, npd_id, event, users["admin"], reason="x").status_code == 409
        assert db.session.get(NpdDocument, npd_id).status == "final"


class TestIsolationAndDelete:
    def test_other_org_sees_404(self, client, other_org, draft_npd):
        outsider = make_user(other_org, "admin", clerk_id="user_outsider")
        db.session.commit()
        res = client.get(f"/api/v1/npd/{draft_npd['id']}", headers=auth_headers(outsider))
        assert res.status_code == 404

    def test_line_account_must_belong_to_subkegiatan(self, client, users, org, draft_npd):
        other = make_budget(org, prefix="2")
        db.session.commit()
        res = client.post(
            f"/api/v1/npd/{draft_npd['id']}/lines",
            json={"account_id": other["accounts"][0].id, "jumlah": "1000"},
            headers=auth_headers(users["pptk"]),
        )
        assert res.status_code == 422

    def test_creator_deletes_draft(self, client, users, draft_npd):
        res = client.delete(f"/api/v1/npd/{draft_npd['id']}", headers=auth_headers(users["pptk"]))
        assert res.status_code == 200
        assert db.session.get(NpdDocument, draft_npd["id"]) is None

    def test_other_user_cannot_delete(self, client, users, draft_npd):
        res = client.delete(f"/api/v1/npd/{draft_npd['id']}", headers=auth_headers(users["bendahara"]))
        assert res.status_code == 403
