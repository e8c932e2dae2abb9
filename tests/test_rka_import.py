"""
Tests for npd_tracker/services/rka_import.py and the import endpoints.
"""

import io

import pytest
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError

from npd_tracker.models import db
from npd_tracker.models.audit import AuditLog
from npd_tracker.models.rka import ImportProgress, RkaAccount, RkaProgram
from npd_tracker.services.rka_import import (
    ImportValidationError,
    generate_csv_template,
    parse_csv,
    validate_rows,
)
from tests.conftest import auth_headers

HEADER = ("programKode,programNama,kegiatanKode,kegiatanNama,subkegiatanKode,subkegiatanNama,"
          "akunKode,akunUraian,satuan,volume,hargaSatuan,paguTahun")


def _row(akun="5.1.02.01.001", pagu="1000000", sub="2.01.01.001", uraian="Belanja ATK"):
    return f"2.01,Program Kesehatan,2.01.01,Kegiatan Gizi,{sub},Sub Gizi,{akun},{uraian},paket,1,{pagu},{pagu}"


def _csv(*rows, header=HEADER):
    return "\n".join([header, *rows]) + "\n"


def _bulk_csv(count):
    """``count`` accounts spread over three sub-kegiatans, pagu 1,000 each."""
    return _csv(*(
        _row(akun=f"5.1.02.01.{i:03d}", pagu="1000", sub=f"2.01.01.00{i % 3 + 1}")
        for i in range(1, count + 1)
    ))


@pytest.fixture()
def failing_account():
    """Make the INSERT of one account code raise inside the flush."""
    kode = "5.1.02.01.077"

    def _fail_insert(mapper, connection, target):
        if target.kode == kode:
            raise SQLAlchemyError("disk full")

    event.listen(RkaAccount, "before_insert", _fail_insert)
    yield kode
    event.remove(RkaAccount, "before_insert", _fail_insert)


def _post(client, user, content, year=2025, path="/api/v1/rka/import"):
    return client.post(path, json={"content": content, "fiscal_year": year, "filename": "rka.csv"},
                       headers=auth_headers(user))


# ═════════════════════════════════════════════════════════════════════════════
# Parsing
# ═════════════════════════════════════════════════════════════════════════════


class TestParse:
    def test_bom_and_snake_case_headers(self):
        header = ("program_kode,program_nama,kegiatan_kode,kegiatan_nama,subkegiatan_kode,"
                  "subkegiatan_nama,akun_kode,akun_uraian,satuan,volume,harga_satuan,pagu_tahun")
        content = ("\ufeff" + _csv(_row(), header=header)).encode("utf-8")
        rows = parse_csv(content)
        assert len(rows) == 1
        assert rows[0]["programKode"] == "2.01"
        assert rows[0]["hargaSatuan"] == "1000000"
        assert rows[0]["row_num"] == 2

    def test_blank_lines_skipped(self):
        rows = parse_csv(_csv(_row(), ",,,,,,,,,,,", _row(akun="5.1.02.01.002")))
        assert [r["row_num"] for r in rows] == [2, 4]

    def test_missing_header(self):
        with pytest.raises(ImportValidationError) as exc:
            parse_csv("programKode,programNama\n1,2\n")
        assert "akunKode" in exc.value.errors[0]["message"]

    def test_non_utf8_bytes(self):
        with pytest.raises(ImportValidationError):
            parse_csv(b"\xff\xfe\x00bad")

    def test_template_parses_cleanly(self):
        rows = parse_csv(generate_csv_template())
        assert validate_rows(rows)["errors"] == []


class TestValidateRows:
    def test_invalid_account_code(self):
        rows = parse_csv(_csv(_row(akun="5.1.1.1")))
        result = validate_rows(rows)
        assert result["valid"] == []
        (error,) = result["errors"]
        assert error["row"] == 2
        assert error["field"] == "akunKode"
        assert error["message"].startswith("Baris 2: Format kode akun tidak valid")

    def test_duplicate_within_file(self):
        rows = parse_csv(_csv(_row(), _row(uraian="Lain")))
        errors = validate_rows(rows)["errors"]
        assert [e["row"] for e in errors] == [3]

    def test_bad_amount(self):
        rows = parse_csv(_csv(_row(pagu="satu juta")))
        errors = validate_rows(rows)["errors"]
        assert {e["field"] for e in errors} == {"paguTahun", "hargaSatuan"}

    def test_same_account_under_other_program_is_not_duplicate(self):
        other = _row().replace("2.01,Program Kesehatan,2.01.01", "3.02,Program Sanitasi,3.02.01")
        rows = parse_csv(_csv(_row(), other))
        result = validate_rows(rows)
        assert result["errors"] == []
        assert len(result["valid"]) == 2

    def test_full_path_duplicate(self):
        other = _row().replace("2.01,Program Kesehatan,2.01.01", "3.02,Program Sanitasi,3.02.01")
        rows = parse_csv(_csv(_row(), other, other))
        (error,) = validate_rows(rows)["errors"]
        assert error["row"] == 4
        assert "baris 3" in error["message"]


# ═════════════════════════════════════════════════════════════════════════════
# Endpoints
# ═════════════════════════════════════════════════════════════════════════════


class TestImportEndpoint:
    def test_valid_import(self, client, users):
        content = _csv(_row(), _row(akun="5.1.02.01.002", pagu="2500000"),
                       _row(akun="5.1.02.01.001", sub="2.01.01.002"))
        res = _post(client, users["pptk"], content)
        assert res.status_code == 201, res.get_json()
        summary = res.get_json()["summary"]
        assert summary["accountsCreated"] == 3
        assert summary["programsCreated"] == 1
        assert summary["subkegiatansCreated"] == 2

        prog = RkaProgram.query.filter_by(kode="2.01").one()
        assert prog.total_pagu == 4500000
        progress = db.session.get(ImportProgress, res.get_json()["progress_id"])
        assert progress.status == "completed"
        assert progress.processed_rows == 3

    def test_one_bad_row_writes_nothing(self, client, users):
        content = _csv(_row(), _row(akun="5.1.1.1"))
        res = _post(client, users["pptk"], content)
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_IMPORT_INVALID"
        assert len(body["details"]["errors"]) == 1
        assert body["details"]["errors"][0]["row"] == 3

        assert RkaAccount.query.count() == 0
        assert RkaProgram.query.count() == 0
        progress = db.session.get(ImportProgress, body["details"]["progress_id"])
        assert progress.status == "failed"
        assert AuditLog.query.filter_by(action="import_rka_failed").count() == 1

    def test_existing_account_rejected(self, client, users):
        assert _post(client, users["pptk"], _csv(_row())).status_code == 201
        res = _post(client, users["pptk"], _csv(_row()))
        assert res.status_code == 422
        assert RkaAccount.query.count() == 1

    def test_existing_code_under_other_program_accepted(self, client, users):
        assert _post(client, users["pptk"], _csv(_row())).status_code == 201
        other = _row().replace("2.01,Program Kesehatan,2.01.01", "3.02,Program Sanitasi,3.02.01")
        res = _post(client, users["pptk"], _csv(other))
        assert res.status_code == 201, res.get_json()
        assert RkaAccount.query.filter_by(kode="5.1.02.01.001").count() == 2

    def test_import_larger_than_one_batch(self, client, users):
        res = _post(client, users["pptk"], _bulk_csv(120))
        assert res.status_code == 201, res.get_json()
        summary = res.get_json()["summary"]
        assert summary["accountsCreated"] == 120
        assert summary["subkegiatansCreated"] == 3

        assert RkaAccount.query.count() == 120
        assert RkaProgram.query.filter_by(kode="2.01").one().total_pagu == 120000
        progress = db.session.get(ImportProgress, res.get_json()["progress_id"])
        assert progress.processed_rows == 120

    def test_write_failure_names_row_and_rolls_back(self, client, users, failing_account):
        res = _post(client, users["pptk"], _bulk_csv(120))
        assert res.status_code == 422
        (error,) = res.get_json()["details"]["errors"]
        assert error["row"] == 78
        assert failing_account in error["message"]

        db.session.expire_all()
        assert RkaAccount.query.count() == 0
        assert RkaProgram.query.count() == 0
        progress = db.session.get(ImportProgress, res.get_json()["details"]["progress_id"])
        assert progress.status == "failed"
        assert progress.total_rows == 120
        assert progress.processed_rows == 0

    def test_multipart_upload(self, client, users):
        data = {
            "file": (io.BytesIO(("\ufeff" + _csv(_row())).encode("utf-8")), "rka.csv"),
            "fiscal_year": "2025",
        }
        res = client.post("/api/v1/rka/import", data=data, content_type="multipart/form-data",
                          headers=auth_headers(users["pptk"]))
        assert res.status_code == 201, res.get_json()

    def test_missing_fiscal_year(self, client, users):
        res = client.post("/api/v1/rka/import", json={"content": _csv(_row())},
                          headers=auth_headers(users["pptk"]))
        assert res.status_code == 400

    def test_feature_flag_off(self, app, client, users, monkeypatch):
        monkeypatch.setitem(app.config, "ENABLE_CSV_IMPORT", False)
        res = _post(client, users["pptk"], _csv(_row()))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FEATURE_DISABLED"

    def test_bendahara_cannot_import(self, client, users):
        assert _post(client, users["bendahara"], _csv(_row())).status_code == 403


class TestValidateAndTemplate:
    def test_dry_run_writes_nothing(self, client, users):
        res = _post(client, users["pptk"], _csv(_row(), _row(akun="bad")),
                    path="/api/v1/rka/import/validate")
        assert res.status_code == 200
        body = res.get_json()
        assert body == {"valid": False, "total_rows": 2, "valid_rows": 1, "errors": body["errors"]}
        assert ImportProgress.query.count() == 0

    def test_template_download(self, client, users):
        res = client.get("/api/v1/rka/import/template", headers=auth_headers(users["viewer"]))
        assert res.status_code == 200
        text = res.get_data(as_text=True)
        assert text.startswith("\ufeffprogramKode,")
        assert "attachment" in res.headers["Content-Disposition"]

    def test_progress_listing(self, client, users):
        _post(client, users["pptk"], _csv(_row()))
        res = client.get("/api/v1/rka/import/progress", headers=auth_headers(users["viewer"]))
        assert res.get_json()["total"] == 1
