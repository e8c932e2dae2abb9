"""
Tests for CSV / Excel export (services/export_service.py + export_bp).
"""

import io
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from openpyxl import load_workbook

from npd_tracker.core.exceptions import ValidationError
from npd_tracker.models import db
from npd_tracker.services.export_service import build_options, format_value, select_columns, to_csv
from tests.conftest import auth_headers, make_user

BOM = "\ufeff"


class TestFormatting:
    @pytest.fixture()
    def opts(self):
        return build_options({})

    def test_currency_variants(self, opts):
        assert format_value(Decimal("1500000"), "currency", opts) == "Rp 1.500.000"
        en = build_options({"number_format": "en", "currency_format": "code"})
        assert format_value(Decimal("1500000.6"), "currency", en) == "IDR 1,500,001"
        bare = build_options({"currency_format": "none"})
        assert format_value(1000, "currency", bare) == "1.000"

    def test_dates(self, opts):
        dt = datetime(2025, 3, 9, 8, 30, tzinfo=timezone.utc)
        assert format_value(dt, "date", opts) == "09/03/2025"
        assert format_value(date(2025, 3, 9), "date", build_options({"date_format": "iso"})) == "2025-03-09"
        assert format_value(dt, "date", build_options({"date_format": "timestamp"})) == "1741509000000"

    def test_boolean_and_empty(self, opts):
        assert format_value(True, "boolean", opts) == "Ya"
        assert format_value(None, "boolean", opts) == "Tidak"
        assert format_value(None, "currency", opts) == ""

    def test_invalid_options(self):
        with pytest.raises(ValidationError):
            build_options({"delimiter": "|"})
        with pytest.raises(ValidationError):
            build_options({"date_format": "us"})

    def test_unknown_column(self):
        with pytest.raises(ValidationError) as exc:
            select_columns("npd", ["document_number", "secret"])
        assert exc.value.details["unknown"] == ["secret"]

    def test_csv_semicolon_without_headers(self):
        columns = select_columns("sp2d", ["no_sp2d", "nilai_cair"])
        opts = build_options({"delimiter": "semicolon", "include_headers": "false"})
        out = to_csv([{"no_sp2d": "S-1", "nilai_cair": Decimal("2500")}], columns, opts)
        assert out.decode("utf-8") == BOM + "S-1;Rp 2.500\n"


class TestExportEndpoint:
    def test_npd_csv(self, client, users, draft_npd):
        res = client.get("/api/v1/export/npd.csv", headers=auth_headers(users["viewer"]))
        assert res.status_code == 200
        assert res.mimetype == "text/csv"
        assert "attachment; filename=npd-" in res.headers["Content-Disposition"]
        text = res.get_data().decode("utf-8")
        assert text.startswith(BOM + "No. Dokumen,Judul NPD,")
        lines = text.splitlines()
        assert len(lines) == 2
        assert lines[1].startswith("NPD-2025-001,Pengadaan obat triwulan I,UP,")
        assert "Rp 3.000.000" in lines[1]
        assert lines[1].endswith(",Tidak")

    def test_status_filter(self, client, users, draft_npd):
        res = client.get("/api/v1/export/npd.csv?status=final", headers=auth_headers(users["viewer"]))
        assert len(res.get_data().decode("utf-8").splitlines()) == 1

    def test_selected_columns(self, client, users, budget):
        res = client.get("/api/v1/export/rka-accounts.csv?columns=kode,sisa_pagu&delimiter=tab",
                         headers=auth_headers(users["viewer"]))
        lines = res.get_data().decode("utf-8").lstrip(BOM).splitlines()
        assert lines == ["Kode Akun\tSisa Pagu", "5.1.02.01.001\tRp 10.000.000",
                         "5.1.02.01.002\tRp 5.000.000"]

    def test_xlsx_styling(self, client, users, budget):
        res = client.get("/api/v1/export/rka-accounts.xlsx", headers=auth_headers(users["viewer"]))
        assert res.status_code == 200
        wb = load_workbook(io.BytesIO(res.get_data()))
        ws = wb.active
        assert ws.title == "Akun RKA"
        assert ws.freeze_panes == "A2"
        header = ws["A1"]
        assert header.value == "Kode Sub Kegiatan"
        assert header.fill.start_color.rgb.endswith("4472C4")
        assert header.font.bold is True
        assert ws["G2"].value == 10000000
        assert ws["G2"].number_format == '"Rp"#,##0'

    def test_unknown_entity(self, client, users):
        res = client.get("/api/v1/export/secrets.csv", headers=auth_headers(users["viewer"]))
        assert res.status_code == 422

    def test_unknown_extension(self, client, users):
        res = client.get("/api/v1/export/npd.pdf", headers=auth_headers(users["viewer"]))
        assert res.status_code == 404

    def test_org_scoped(self, client, other_org, draft_npd):
        outsider = make_user(other_org, "viewer", clerk_id="user_x")
        db.session.commit()
        res = client.get("/api/v1/export/npd.csv", headers=auth_headers(outsider))
        assert len(res.get_data().decode("utf-8").splitlines()) == 1
