"""
CSV & Excel export of NPD, SP2D and RKA account listings.

Columns come from a per-entity registry; callers pick a subset and the
formatting locale. CSV output is always UTF-8 with a BOM so spreadsheet
tools detect the encoding. Excel output is a single styled sheet.
"""

import csv
import io
import logging
from datetime import date, datetime, timezone
from decimal import Decimal

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from npd_tracker.core.exceptions import ValidationError
from npd_tracker.models.npd import NpdDocument
from npd_tracker.models.rka import RkaAccount, RkaSubkegiatan
from npd_tracker.models.sp2d import Sp2dRef
from npd_tracker.services.permission import check_permission
from npd_tracker.utils.money import group_thousands

logger = logging.getLogger(__name__)

HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True)
THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)
CURRENCY_FORMAT = '"Rp"#,##0'
DEFAULT_WIDTH = 15

DELIMITERS = {",": ",", "comma": ",", ";": ";", "semicolon": ";", "\t": "\t", "tab": "\t"}
DATE_FORMATS = ("id", "iso", "timestamp")
NUMBER_FORMATS = ("id", "en")
CURRENCY_FORMATS = ("symbol", "code", "none")

STATUS_LABELS = {
    "draft": "Draft",
    "diajukan": "Diajukan",
    "diverifikasi": "Diverifikasi",
    "final": "Final",
    "rejected": "Ditolak",
}


def _col(key, label, type_="text", width=DEFAULT_WIDTH):
    return {"key": key, "label": label, "type": type_, "width": width}


COLUMN_REGISTRY: dict[str, list[dict]] = {
    "npd": [
        _col("document_number", "No. Dokumen", width=18),
        _col("title", "Judul NPD", width=40),
        _col("jenis", "Jenis NPD", width=10),
        _col("subkegiatan_kode", "Kode Sub Kegiatan", width=18),
        _col("subkegiatan_nama", "Nama Sub Kegiatan", width=35),
        _col("tahun", "Tahun", "text", 8),
        _col("status_label", "Status", width=14),
        _col("total_amount", "Total NPD", "currency", 18),
        _col("line_count", "Jumlah Baris", "number", 12),
        _col("created_at", "Tanggal Dibuat", "date"),
        _col("finalized_at", "Tanggal Final", "date"),
        _col("has_sp2d", "Sudah SP2D", "boolean", 12),
    ],
    "sp2d": [
        _col("no_sp2d", "No. SP2D", width=20),
        _col("no_spm", "No. SPM", width=20),
        _col("tgl_sp2d", "Tanggal SP2D", "date"),
        _col("npd_document_number", "No. NPD", width=18),
        _col("nilai_cair", "Nilai Cair", "currency", 18),
        _col("catatan", "Catatan", width=40),
    ],
    "rka-accounts": [
        _col("subkegiatan_kode", "Kode Sub Kegiatan", width=18),
        _col("kode", "Kode Akun", width=18),
        _col("uraian", "Uraian", width=40),
        _col("satuan", "Satuan", width=10),
        _col("volume", "Volume", "number", 10),
        _col("harga_satuan", "Harga Satuan", "currency", 16),
        _col("pagu_tahun", "Pagu Tahun", "currency", 18),
        _col("realisasi_tahun", "Realisasi", "currency", 18),
        _col("sisa_pagu", "Sisa Pagu", "currency", 18),
        _col("fiscal_year", "Tahun", "text", 8),
    ],
}

ENTITY_RESOURCE = {"npd": "npd", "sp2d": "sp2d", "rka-accounts": "rka"}
ENTITY_TITLES = {"npd": "Daftar NPD", "sp2d": "Daftar SP2D", "rka-accounts": "Akun RKA"}


# ═══════════════════════════════════════════════════════════════
# Options & formatting
# ═══════════════════════════════════════════════════════════════

def build_options(args) -> dict:
    """Normalise query-string options; unknown values raise ValidationError."""
    delimiter = DELIMITERS.get(args.get("delimiter", ","))
    if delimiter is None:
        raise ValidationError("delimiter harus ',', ';' atau tab", details={"delimiter": args.get("delimiter")})
    opts = {
        "delimiter": delimiter,
        "date_format": args.get("date_format", "id"),
        "number_format": args.get("number_format", "id"),
        "currency_format": args.get("currency_format", "symbol"),
        "include_headers": str(args.get("include_headers", "true")).lower() not in ("0", "false", "no"),
        "columns": [c.strip() for c in (args.get("columns") or "").split(",") if c.strip()],
    }
    for key, allowed in (("date_format", DATE_FORMATS), ("number_format", NUMBER_FORMATS),
                         ("currency_format", CURRENCY_FORMATS)):
        if opts[key] not in allowed:
            raise ValidationError(f"{key} harus salah satu dari {', '.join(allowed)}",
                                  details={key: opts[key]})
    return opts


def select_columns(entity: str, keys: list[str] | None = None) -> list[dict]:
    registry = COLUMN_REGISTRY.get(entity)
    if registry is None:
        raise ValidationError(f"Unknown export entity: {entity}")
    if not keys:
        return registry
    by_key = {c["key"]: c for c in registry}
    unknown = [k for k in keys if k not in by_key]
    if unknown:
        raise ValidationError("Kolom ekspor tidak dikenal", details={"unknown": unknown,
                                                                   "available": list(by_key)})
    return [by_key[k] for k in keys]


def _format_number(value, number_format: str) -> str:
    return group_thousands(value, "." if number_format == "id" else ",")


def _format_date(value, date_format: str) -> str:
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    else:
        return str(value)
    if date_format == "iso":
        return dt.isoformat() if isinstance(value, datetime) else value.isoformat()
    if date_format == "timestamp":
        return str(int(dt.timestamp() * 1000))
    return dt.strftime("%d/%m/%Y")


def format_value(value, type_: str, options: dict) -> str:
    """Render one cell for CSV output."""
    if type_ == "boolean":
        return "Ya" if value else "Tidak"
    if value is None or value == "":
        return ""
    if type_ == "number":
        return _format_number(value, options["number_format"])
    if type_ == "currency":
        number = _format_number(value, options["number_format"])
        if options["currency_format"] == "symbol":
            return f"Rp {number}"
        if options["currency_format"] == "code":
            return f"IDR {number}"
        return number
    if type_ == "date":
        return _format_date(value, options["date_format"])
    return str(value)


# ═══════════════════════════════════════════════════════════════
# Row sources
# ═══════════════════════════════════════════════════════════════

def _npd_rows(user, filters: dict) -> list[dict]:
    q = NpdDocument.query.filter_by(organization_id=user.organization_id)
    if filters.get("status"):
        q = q.filter(NpdDocument.status == filters["status"])
    if filters.get("tahun"):
        q = q.filter(NpdDocument.tahun == int(filters["tahun"]))
    rows = []
    for npd in q.order_by(NpdDocument.document_number).all():
        sub = npd.subkegiatan
        rows.append({
            "document_number": npd.document_number,
            "title": npd.title,
            "jenis": npd.jenis,
            "subkegiatan_kode": sub.kode if sub else "",
            "subkegiatan_nama": sub.nama if sub else "",
            "tahun": npd.tahun,
            "status_label": STATUS_LABELS.get(npd.status, npd.status),
            "total_amount": npd.total_amount,
            "line_count": len(npd.lines),
            "created_at": npd.created_at,
            "finalized_at": npd.finalized_at,
            "has_sp2d": bool(npd.sp2d_refs),
        })
    return rows


def _sp2d_rows(user, filters: dict) -> list[dict]:
    q = Sp2dRef.query.filter_by(organization_id=user.organization_id)
    if filters.get("npd_id"):
        q = q.filter(Sp2dRef.npd_id == int(filters["npd_id"]))
    return [
        {
            "no_sp2d": s.no_sp2d,
            "no_spm": s.no_spm or "",
            "tgl_sp2d": s.tgl_sp2d,
            "npd_document_number": s.npd.document_number if s.npd else "",
            "nilai_cair": s.nilai_cair,
            "catatan": s.catatan or "",
        }
        for s in q.order_by(Sp2dRef.tgl_sp2d, Sp2dRef.id).all()
    ]


def _account_rows(user, filters: dict) -> list[dict]:
    q = (
        RkaAccount.query.join(RkaSubkegiatan, RkaAccount.subkegiatan_id == RkaSubkegiatan.id)
        .filter(RkaAccount.organization_id == user.organization_id)
    )
    if filters.get("fiscal_year"):
        q = q.filter(RkaAccount.fiscal_year == int(filters["fiscal_year"]))
    return [
        {
            "subkegiatan_kode": a.subkegiatan.kode if a.subkegiatan else "",
            "kode": a.kode,
            "uraian": a.uraian,
            "satuan": a.satuan or "",
            "volume": a.volume,
            "harga_satuan": a.harga_satuan,
            "pagu_tahun": a.pagu_tahun,
            "realisasi_tahun": a.realisasi_tahun,
            "sisa_pagu": a.sisa_pagu,
            "fiscal_year": a.fiscal_year,
        }
        for a in q.order_by(RkaSubkegiatan.kode, RkaAccount.kode).all()
    ]


_ROW_SOURCES = {"npd": _npd_rows, "sp2d": _sp2d_rows, "rka-accounts": _account_rows}


def collect_rows(user, entity: str, filters: dict | None = None) -> list[dict]:
    """Org-scoped rows for ``entity``; needs ``read`` on its resource."""
    if entity not in _ROW_SOURCES:
        raise ValidationError(f"Unknown export entity: {entity}",
                              details={"available": list(_ROW_SOURCES)})
    check_permission(user, "read", ENTITY_RESOURCE[entity])
    try:
        return _ROW_SOURCES[entity](user, filters or {})
    except ValueError:
        raise ValidationError("Filter ekspor tidak valid", details=dict(filters or {})) from None


# ═══════════════════════════════════════════════════════════════
# Writers
# ═══════════════════════════════════════════════════════════════

def to_csv(rows: list[dict], columns: list[dict], options: dict) -> bytes:
    """Render rows as CSV bytes, UTF-8 with BOM."""
    output = io.StringIO()
    writer = csv.writer(output, delimiter=options["delimiter"], lineterminator="\n")
    if options.get("include_headers", True):
        writer.writerow([c["label"] for c in columns])
    for row in rows:
        writer.writerow([format_value(row.get(c["key"]), c["type"], options) for c in columns])
    return output.getvalue().encode("utf-8-sig")


def _xlsx_value(value, type_: str):
    if value is None:
        return None
    if type_ in ("currency", "number") and isinstance(value, Decimal):
        return float(value)
    if type_ == "boolean":
        return "Ya" if value else "Tidak"
    if type_ == "date" and isinstance(value, datetime) and value.tzinfo:
        return value.replace(tzinfo=None)
    return value


def to_xlsx(rows: list[dict], columns: list[dict], title: str = "Export") -> io.BytesIO:
    """
    Generate a styled single-sheet workbook.
    Returns a BytesIO buffer ready for Flask send_file.
    """
    wb = Workbook()
    ws = wb.active
    ws.title = title[:31]

    for col, column in enumerate(columns, 1):
        cell = ws.cell(row=1, column=col, value=column["label"])
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.border = THIN_BORDER
        cell.alignment = Alignment(horizontal="center", vertical="center")
        ws.column_dimensions[get_column_letter(col)].width = column.get("width", DEFAULT_WIDTH)

    for r, row in enumerate(rows, 2):
        for col, column in enumerate(columns, 1):
            cell = ws.cell(row=r, column=col, value=_xlsx_value(row.get(column["key"]), column["type"]))
            cell.border = THIN_BORDER
            if column["type"] == "currency":
                cell.number_format = CURRENCY_FORMAT
            elif column["type"] == "date":
                cell.number_format = "DD/MM/YYYY"

    ws.freeze_panes = "A2"
    if columns:
        ws.auto_filter.ref = f"A1:{get_column_letter(len(columns))}{max(len(rows) + 1, 1)}"

    buf = io.BytesIO()
    wb.save(buf)
    buf.seek(0)
    logger.debug("Excel export %s: %d rows", title, len(rows))
    return buf


def export_filename(entity: str, ext: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"{entity}-{stamp}.{ext}"
