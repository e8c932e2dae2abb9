"""
Shared pytest fixtures for the NPD Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org / other_org: Pre-created organizations
    - users: one active user per role in ``org``
    - budget: program → kegiatan → sub-kegiatan with two accounts
    - auth_headers(user): Bearer session token for a user
    - draft_npd / final_npd: a two-line UP NPD before and after approval
"""

from decimal import Decimal

import pytest

from npd_tracker import create_app
from npd_tracker.models import db as _db
from npd_tracker.models.organization import Organization, User
from npd_tracker.models.rka import RkaAccount, RkaKegiatan, RkaProgram, RkaSubkegiatan
from npd_tracker.services.jwt_service import issue_session_token
from npd_tracker.services.rka import recompute_totals

ROLES = ("admin", "pptk", "bendahara", "verifikator", "viewer")


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app(tmp_path_factory):
    """Create the Flask application once per test session."""
    application = create_app("testing")
    application.config["UPLOAD_FOLDER"] = str(tmp_path_factory.mktemp("uploads"))
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Identity helpers ─────────────────────────────────────────────────────


def make_org(name="Dinas Kesehatan", slug="dinkes", clerk_id="org_dinkes"):
    org = Organization(name=name, slug=slug, clerk_organization_id=clerk_id)
    _db.session.add(org)
    _db.session.flush()
    return org


def make_user(org, role, *, clerk_id=None, email=None, name=None):
    clerk_id = clerk_id or f"user_{role}_{org.id if org else 'none'}"
    user = User(
        clerk_user_id=clerk_id,
        email=email or f"{clerk_id}@example.go.id",
        name=name or role.title(),
        organization_id=org.id if org else None,
        role=role,
        is_active=True,
    )
    _db.session.add(user)
    _db.session.flush()
    return user


def auth_headers(user) -> dict:
    """Authorization header carrying an HS256 session token for ``user``."""
    return {"Authorization": f"Bearer {issue_session_token(user.clerk_user_id)}"}


@pytest.fixture()
def org():
    org = make_org()
    _db.session.commit()
    return org


@pytest.fixture()
def other_org():
    org = make_org(name="Dinas Pendidikan", slug="disdik", clerk_id="org_disdik")
    _db.session.commit()
    return org


@pytest.fixture()
def users(org):
    """One active user per role in ``org``, keyed by role name."""
    created = {role: make_user(org, role) for role in ROLES}
    _db.session.commit()
    return created


# ── Budget fixtures ──────────────────────────────────────────────────────


def make_budget(org, *, year=2025, paguA="10000000", paguB="5000000", prefix="1"):
    """Create a minimal hierarchy with two accounts and recompute totals."""
    prog = RkaProgram(organization_id=org.id, fiscal_year=year, kode=f"{prefix}.01",
                      nama="Program Pelayanan Kesehatan")
    _db.session.add(prog)
    _db.session.flush()
    keg = RkaKegiatan(organization_id=org.id, program_id=prog.id, fiscal_year=year,
                      kode=f"{prefix}.01.01", nama="Kegiatan Puskesmas")
    _db.session.add(keg)
    _db.session.flush()
    sub = RkaSubkegiatan(organization_id=org.id, kegiatan_id=keg.id, fiscal_year=year,
                         kode=f"{prefix}.01.01.001", nama="Sub Kegiatan Obat")
    _db.session.add(sub)
    _db.session.flush()
    accounts = []
    for kode, uraian, pagu in (
        ("5.1.02.01.001", "Belanja Obat", paguA),
        ("5.1.02.01.002", "Belanja Alat Kesehatan", paguB),
    ):
        acct = RkaAccount(
            organization_id=org.id, subkegiatan_id=sub.id, fiscal_year=year,
            kode=kode, uraian=uraian, pagu_tahun=Decimal(pagu),
            realisasi_tahun=Decimal("0"), sisa_pagu=Decimal(pagu),
        )
        _db.session.add(acct)
        accounts.append(acct)
    _db.session.flush()
    recompute_totals(sub)
    return {"program": prog, "kegiatan": keg, "subkegiatan": sub, "accounts": accounts}


@pytest.fixture()
def budget(org):
    data = make_budget(org)
    _db.session.commit()
    return data


@pytest.fixture()
def draft_npd(client, users, budget):
    """A draft UP NPD created by the PPTK with two lines (1,000,000 and 2,000,000)."""
    acct_a, acct_b = budget["accounts"]
    res = client.post(
        "/api/v1/npd",
        json={
            "subkegiatan_id": budget["subkegiatan"].id,
            "title": "Pengadaan obat triwulan I",
            "jenis": "UP",
            "lines": [
                {"account_id": acct_a.id, "uraian": "Obat generik", "jumlah": "1000000"},
                {"account_id": acct_b.id, "uraian": "Alat suntik", "jumlah": "2000000"},
            ],
        },
        headers=auth_headers(users["pptk"]),
    )
    assert res.status_code == 201, res.get_json()
    return res.get_json()


UP_REQUIRED_ITEMS = ("surat_permohonan", "rincian_biaya", "bukti_pendukung", "sisa_pagu", "kelengkapan_data")


@pytest.fixture()
def final_npd(client, users, draft_npd):
    """``draft_npd`` walked through submit → checklist → verify → finalize."""
    npd_id = draft_npd["id"]

    def _post(path, user, body=None, method="post"):
        res = getattr(client, method)(path, json=body or {}, headers=auth_headers(user))
        assert res.status_code == 200, res.get_json()

    _post(f"/api/v1/npd/{npd_id}/transitions/submit", users["pptk"])
    _post(f"/api/v1/npd/{npd_id}/checklist", users["verifikator"],
          {"results": [{"item_id": i, "checked": True} for i in UP_REQUIRED_ITEMS]}, method="put")
    _post(f"/api/v1/npd/{npd_id}/transitions/verify", users["verifikator"])
    _post(f"/api/v1/npd/{npd_id}/transitions/finalize", users["bendahara"])
    return client.get(f"/api/v1/npd/{npd_id}", headers=auth_headers(users["pptk"])).get_json()
