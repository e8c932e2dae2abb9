"""
Tests for SP2D issuance and realization booking.

    final NPD (1,000,000 + 2,000,000) ─SP2D 1,500,000─▶ shares 500,000 / 1,000,000
"""

from npd_tracker.models import db
from npd_tracker.models.notification import Notification
from npd_tracker.models.rka import RkaAccount
from npd_tracker.models.sp2d import Realization, Sp2dRef
from tests.conftest import auth_headers


def _issue(client, npd_id, user, **body):
    payload = {"no_sp2d": "SP2D-001/2025", "nilai_cair": "1500000", "tgl_sp2d": "2025-03-10"}
    payload.update(body)
    return client.post(f"/api/v1/npd/{npd_id}/sp2d", json=payload, headers=auth_headers(user))


def _accounts(budget):
    db.session.expire_all()
    return [db.session.get(RkaAccount, a.id) for a in budget["accounts"]]


class TestCreateSp2d:
    def test_proportional_realization(self, client, users, budget, final_npd):
        res = _issue(client, final_npd["id"], users["bendahara"])
        assert res.status_code == 201, res.get_json()
        body = res.get_json()
        assert body["nilai_cair"] == 1500000
        assert [r["total_cair"] for r in body["realizations"]] == [500000, 1000000]

        acct_a, acct_b = _accounts(budget)
        assert acct_a.realisasi_tahun == 500000
        assert acct_a.sisa_pagu == 9500000
        assert acct_b.realisasi_tahun == 1000000
        assert acct_b.sisa_pagu == 4000000

    def test_realizations_sum_to_nilai_cair(self, client, users, budget, final_npd):
        _issue(client, final_npd["id"], users["bendahara"], nilai_cair="1000001")
        total = sum(r.total_cair for r in Realization.query.all())
        assert total == 1000001

    def test_creator_notified(self, client, users, final_npd):
        _issue(client, final_npd["id"], users["bendahara"])
        assert Notification.query.filter_by(user_id=users["pptk"].id, type="sp2d_created").count() == 1

    def test_duplicate_number(self, client, users, final_npd):
        assert _issue(client, final_npd["id"], users["bendahara"], nilai_cair="1000").status_code == 201
        res = _issue(client, final_npd["id"], users["bendahara"], nilai_cair="1000")
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_non_final_npd(self, client, users, draft_npd):
        res = _issue(client, draft_npd["id"], users["bendahara"])
        assert res.status_code == 422
        assert Sp2dRef.query.count() == 0

    def test_exceeding_npd_total(self, client, users, final_npd):
        res = _issue(client, final_npd["id"], users["bendahara"], nilai_cair="3000000.01")
        assert res.status_code == 422

    def test_cumulative_sp2d_capped_at_npd_total(self, client, users, budget, final_npd):
        npd_id = final_npd["id"]
        assert _issue(client, npd_id, users["bendahara"], no_sp2d="S-1", nilai_cair="2000000").status_code == 201
        res = _issue(client, npd_id, users["bendahara"], no_sp2d="S-2", nilai_cair="1000001")
        assert res.status_code == 422
        assert float(res.get_json()["details"]["sisa"]) == 1000000
        assert _issue(client, npd_id, users["bendahara"], no_sp2d="S-3", nilai_cair="1000000").status_code == 201
        assert _issue(client, npd_id, users["bendahara"], no_sp2d="S-4", nilai_cair="1").status_code == 422

        acct_a, acct_b = _accounts(budget)
        assert acct_a.realisasi_tahun + acct_b.realisasi_tahun == 3000000
        assert acct_b.sisa_pagu >= 0

    def test_deleted_sp2d_frees_npd_amount(self, client, users, final_npd):
        npd_id = final_npd["id"]
        sp2d_id = _issue(client, npd_id, users["bendahara"], no_sp2d="S-1", nilai_cair="3000000").get_json()["id"]
        client.delete(f"/api/v1/sp2d/{sp2d_id}", headers=auth_headers(users["admin"]))
        assert _issue(client, npd_id, users["bendahara"], no_sp2d="S-2", nilai_cair="3000000").status_code == 201

    def test_missing_nilai_cair(self, client, users, final_npd):
        res = client.post(f"/api/v1/npd/{final_npd['id']}/sp2d", json={"no_sp2d": "X"},
                          headers=auth_headers(users["bendahara"]))
        assert res.status_code == 400

    def test_bad_date(self, client, users, final_npd):
        res = _issue(client, final_npd["id"], users["bendahara"], tgl_sp2d="10/03/2025")
        assert res.status_code == 422

    def test_pptk_cannot_issue(self, client, users, final_npd):
        assert _issue(client, final_npd["id"], users["pptk"]).status_code == 403


class TestDeleteSp2d:
    def test_admin_delete_reverses_realization(self, client, users, budget, final_npd):
        sp2d_id = _issue(client, final_npd["id"], users["bendahara"]).get_json()["id"]

        res = client.delete(f"/api/v1/sp2d/{sp2d_id}", headers=auth_headers(users["admin"]))
        assert res.status_code == 200

        acct_a, acct_b = _accounts(budget)
        assert acct_a.realisasi_tahun == 0
        assert acct_a.sisa_pagu == 10000000
        assert acct_b.sisa_pagu == 5000000
        assert Realization.query.count() == 0

    def test_bendahara_cannot_delete(self, client, users, final_npd):
        sp2d_id = _issue(client, final_npd["id"], users["bendahara"]).get_json()["id"]
        res = client.delete(f"/api/v1/sp2d/{sp2d_id}", headers=auth_headers(users["bendahara"]))
        assert res.status_code == 403


class TestListSp2d:
    def test_filters(self, client, users, final_npd):
        _issue(client, final_npd["id"], users["bendahara"], no_sp2d="A-1", nilai_cair="1000",
               tgl_sp2d="2025-01-15")
        _issue(client, final_npd["id"], users["bendahara"], no_sp2d="B-2", nilai_cair="1000",
               tgl_sp2d="2025-02-15")
        headers = auth_headers(users["viewer"])

        res = client.get("/api/v1/sp2d", headers=headers)
        assert res.get_json()["total"] == 2
        res = client.get("/api/v1/sp2d?from=2025-02-01", headers=headers)
        assert [s["no_sp2d"] for s in res.get_json()["items"]] == ["B-2"]
        res = client.get("/api/v1/sp2d?q=A-", headers=headers)
        assert res.get_json()["total"] == 1

    def test_detail_includes_realizations(self, client, users, final_npd):
        sp2d_id = _issue(client, final_npd["id"], users["bendahara"]).get_json()["id"]
        res = client.get(f"/api/v1/sp2d/{sp2d_id}", headers=auth_headers(users["viewer"]))
        assert res.status_code == 200
        assert len(res.get_json()["realizations"]) == 2


class TestBudgetAlert:
    def test_alert_when_threshold_crossed(self, app, client, users, budget, final_npd, monkeypatch):
        monkeypatch.setitem(app.config, "BUDGET_ALERT_THRESHOLD_PERCENT", 30)
        # account B goes 0% -> 40%, account A only 0% -> 10%
        assert _issue(client, final_npd["id"], users["bendahara"], nilai_cair="3000000").status_code == 201

        alerts = Notification.query.filter_by(type="budget_alert").all()
        assert sorted(n.user_id for n in alerts) == sorted([users["bendahara"].id, users["admin"].id])
        assert {n.entity_id for n in alerts} == {budget["accounts"][1].id}
        assert "40.0%" in alerts[0].title

    def test_no_repeat_once_above(self, app, client, users, final_npd, monkeypatch):
        monkeypatch.setitem(app.config, "BUDGET_ALERT_THRESHOLD_PERCENT", 30)
        _issue(client, final_npd["id"], users["bendahara"], no_sp2d="S-1", nilai_cair="2400000")
        _issue(client, final_npd["id"], users["bendahara"], no_sp2d="S-2", nilai_cair="600000")
        assert Notification.query.filter_by(type="budget_alert").count() == 2

    def test_default_threshold_quiet(self, client, users, final_npd):
        _issue(client, final_npd["id"], users["bendahara"], nilai_cair="3000000")
        assert Notification.query.filter_by(type="budget_alert").count() == 0
