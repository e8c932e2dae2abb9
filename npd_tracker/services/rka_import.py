"""
RKA CSV Import Service.

Bulk-loads the Program → Kegiatan → Sub-kegiatan → Akun hierarchy for one
fiscal year from a CSV file.

Flow:
  1. parse_csv       header normalisation (camelCase or snake_case), BOM tolerated
  2. validate_rows   every row checked before anything is written
  3. execute_import  hierarchy nodes grouped by code, accounts written in
                     batches of BATCH_SIZE with one savepoint per row;
                     every failing row is reported and the whole import
                     is rolled back
  4. ImportProgress  one status row per run, committed on its own so a
                     failed import is still visible
"""

import csv
import io
import logging
import re
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from npd_tracker.core.exceptions import ValidationError
from npd_tracker.models import db
from npd_tracker.models.audit import write_audit
from npd_tracker.models.rka import (
    ImportProgress,
    RkaAccount,
    RkaKegiatan,
    RkaProgram,
    RkaSubkegiatan,
)
from npd_tracker.services.helpers.scoped_queries import get_scoped
from npd_tracker.services.permission import check_permission
from npd_tracker.services.rka import recompute_totals
from npd_tracker.utils.money import parse_amount

logger = logging.getLogger(__name__)

BATCH_SIZE = 50

REQUIRED_FIELDS = [
    "programKode", "programNama",
    "kegiatanKode", "kegiatanNama",
    "subkegiatanKode", "subkegiatanNama",
    "akunKode", "akunUraian",
    "paguTahun",
]
OPTIONAL_FIELDS = ["satuan", "volume", "hargaSatuan"]

ACCOUNT_CODE_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+\.\d+$")


class ImportValidationError(ValidationError):
    """Raised when an import is refused; carries every row error."""

    def __init__(self, errors: list[dict], progress_id: int | None = None):
        self.errors = errors
        self.progress_id = progress_id
        super().__init__(
            f"Impor RKA gagal: {len(errors)} kesalahan ditemukan",
            details={"errors": errors, "progress_id": progress_id},
        )


def _error(row: int, field: str | None, message: str) -> dict:
    return {"row": row, "field": field, "message": f"Baris {row}: {message}"}


# ═══════════════════════════════════════════════════════════════
# CSV Template
# ═══════════════════════════════════════════════════════════════

CSV_TEMPLATE_HEADER = REQUIRED_FIELDS[:-1] + ["satuan", "volume", "hargaSatuan", "paguTahun"]
CSV_TEMPLATE_EXAMPLE = [
    ["1.01", "Program Penunjang Urusan Pemerintahan", "1.01.01", "Perencanaan dan Keuangan",
     "1.01.01.2.01", "Penyusunan Dokumen Perencanaan", "5.1.02.01.001",
     "Belanja Alat Tulis Kantor", "paket", "12", "250000", "3000000"],
    ["1.01", "Program Penunjang Urusan Pemerintahan", "1.01.01", "Perencanaan dan Keuangan",
     "1.01.01.2.01", "Penyusunan Dokumen Perencanaan", "5.1.02.02.001",
     "Belanja Makanan dan Minuman Rapat", "kotak", "200", "35000", "7000000"],
]


def generate_csv_template() -> str:
    """Generate a CSV template string for RKA import."""
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_TEMPLATE_HEADER)
    writer.writerows(CSV_TEMPLATE_EXAMPLE)
    return output.getvalue()


# ═══════════════════════════════════════════════════════════════
# CSV Parsing & Validation
# ═══════════════════════════════════════════════════════════════

def _header_key(name: str) -> str:
    return re.sub(r"[\s_\-]", "", (name or "").strip()).lower()


_CANONICAL = {_header_key(f): f for f in REQUIRED_FIELDS + OPTIONAL_FIELDS}


def parse_csv(file_content: str | bytes) -> list[dict]:
    """
    Parse CSV content into row dicts keyed by camelCase field names.

    ``program_kode``, ``ProgramKode`` and ``programKode`` are equivalent.
    Each row carries ``row_num`` (header is row 1).
    """
    if isinstance(file_content, bytes):
        try:
            file_content = file_content.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise ImportValidationError([_error(1, None, "File harus berformat UTF-8")]) from None
    elif file_content.startswith("\ufeff"):
        file_content = file_content[1:]

    reader = csv.DictReader(io.StringIO(file_content))
    fieldnames = reader.fieldnames or []
    mapping = {f: _CANONICAL.get(_header_key(f)) for f in fieldnames}

    present = {c for c in mapping.values() if c}
    missing = [f for f in REQUIRED_FIELDS if f not in present]
    if missing:
        raise ImportValidationError([
            _error(1, None, f"Header yang diperlukan tidak ada: {', '.join(missing)}")
        ])

    rows = []
    for i, raw in enumerate(reader, start=2):
        row = {"row_num": i}
        for header, value in raw.items():
            canonical = mapping.get(header) if header is not None else None
            if canonical:
                row[canonical] = (value or "").strip()
        if all(not row.get(f) for f in REQUIRED_FIELDS + OPTIONAL_FIELDS):
            continue  # blank line
        rows.append(row)
    return rows


def validate_rows(rows: list[dict], organization_id: int | None = None,
                  fiscal_year: int | None = None) -> dict:
    """
    Validate all rows before import.

    Returns {"valid": [...], "errors": [{row, field, message}, ...]}.
    Valid rows carry parsed Decimal amounts.
    """
    existing = set()
    if organization_id is not None and fiscal_year is not None:
        existing = set(
            db.session.query(RkaProgram.kode, RkaKegiatan.kode, RkaSubkegiatan.kode, RkaAccount.kode)
            .join(RkaKegiatan, RkaKegiatan.program_id == RkaProgram.id)
            .join(RkaSubkegiatan, RkaSubkegiatan.kegiatan_id == RkaKegiatan.id)
            .join(RkaAccount, RkaAccount.subkegiatan_id == RkaSubkegiatan.id)
            .filter(RkaAccount.organization_id == organization_id,
                    RkaAccount.fiscal_year == fiscal_year)
            .all()
        )

    valid, errors = [], []
    seen = {}
    for row in rows:
        n = row["row_num"]
        row_errors = []

        missing = [f for f in REQUIRED_FIELDS if not row.get(f)]
        if missing:
            row_errors.append(_error(n, ",".join(missing),
                                     f"Field yang diperlukan kosong: {', '.join(missing)}"))

        kode = row.get("akunKode", "")
        if kode and not ACCOUNT_CODE_RE.match(kode):
            row_errors.append(_error(
                n, "akunKode",
                "Format kode akun tidak valid. Format yang benar: X.XX.XX.XX.XXX (contoh: 5.1.01.01.001)",
            ))

        parsed = {}
        for field, required in (("paguTahun", True), ("volume", False), ("hargaSatuan", False)):
            if not row.get(field):
                continue
            try:
                parsed[field] = parse_amount(row.get(field), field, required=required)
            except ValidationError as exc:
                row_errors.append(_error(n, field, str(exc)))

        # Same path as _HierarchyCache: one account code per sub-kegiatan node.
        path = tuple(row.get(f, "") for f in ("programKode", "kegiatanKode", "subkegiatanKode"))
        key = (*path, kode)
        if kode and all(path):
            if key in seen:
                row_errors.append(_error(
                    n, "akunKode", f"Kode akun {kode} duplikat (sama dengan baris {seen[key]})",
                ))
            elif key in existing:
                row_errors.append(_error(
                    n, "akunKode", f"Kode akun {kode} sudah ada pada sub-kegiatan {'/'.join(path)}",
                ))
            else:
                seen[key] = n

        if row_errors:
            errors.extend(row_errors)
        else:
            valid.append({**row, **parsed})

    return {"valid": valid, "errors": errors}


# ═══════════════════════════════════════════════════════════════
# Import execution
# ═══════════════════════════════════════════════════════════════

class _HierarchyCache:
    """Get-or-create program/kegiatan/sub-kegiatan nodes by code for one org + year."""

    def __init__(self, user, fiscal_year: int):
        self.user = user
        self.fiscal_year = fiscal_year
        self.programs, self.kegiatans, self.subkegiatans = {}, {}, {}
        self.created = {"programs": 0, "kegiatans": 0, "subkegiatans": 0}

    def forget(self) -> None:
        """Drop cached nodes; a rolled-back savepoint may have discarded some."""
        self.programs, self.kegiatans, self.subkegiatans = {}, {}, {}

    def program(self, row) -> RkaProgram:
        kode = row["programKode"]
        if kode not in self.programs:
            prog = RkaProgram.query.filter_by(
                organization_id=self.user.organization_id, fiscal_year=self.fiscal_year, kode=kode,
            ).first()
            if prog is None:
                prog = RkaProgram(
                    organization_id=self.user.organization_id, fiscal_year=self.fiscal_year,
                    kode=kode, nama=row["programNama"][:300], created_by=self.user.id,
                )
                db.session.add(prog)
                db.session.flush()
                self.created["programs"] += 1
            self.programs[kode] = prog
        return self.programs[kode]

    def kegiatan(self, row) -> RkaKegiatan:
        key = (row["programKode"], row["kegiatanKode"])
        if key not in self.kegiatans:
            prog = self.program(row)
            keg = RkaKegiatan.query.filter_by(program_id=prog.id, kode=key[1]).first()
            if keg is None:
                keg = RkaKegiatan(
                    organization_id=self.user.organization_id, program_id=prog.id,
                    fiscal_year=self.fiscal_year, kode=key[1], nama=row["kegiatanNama"][:300],
                )
                db.session.add(keg)
                db.session.flush()
                self.created["kegiatans"] += 1
            self.kegiatans[key] = keg
        return self.kegiatans[key]

    def subkegiatan(self, row) -> RkaSubkegiatan:
        key = (row["programKode"], row["kegiatanKode"], row["subkegiatanKode"])
        if key not in self.subkegiatans:
            keg = self.kegiatan(row)
            sub = RkaSubkegiatan.query.filter_by(kegiatan_id=keg.id, kode=key[2]).first()
            if sub is None:
                sub = RkaSubkegiatan(
                    organization_id=self.user.organization_id, kegiatan_id=keg.id,
                    fiscal_year=self.fiscal_year, kode=key[2], nama=row["subkegiatanNama"][:300],
                )
                db.session.add(sub)
                db.session.flush()
                self.created["subkegiatans"] += 1
            self.subkegiatans[key] = sub
        return self.subkegiatans[key]


def _start_progress(user, fiscal_year: int, filename: str) -> ImportProgress:
    progress = ImportProgress(
        organization_id=user.organization_id,
        filename=(filename or "")[:255],
        fiscal_year=fiscal_year,
        status="processing",
        started_by=user.id,
        errors=[],
    )
    db.session.add(progress)
    db.session.commit()
    return progress


def _fail(user, progress_id: int, fiscal_year: int, errors: list[dict], total_rows: int) -> None:
    db.session.rollback()
    progress = db.session.get(ImportProgress, progress_id)
    progress.status = "failed"
    progress.total_rows = total_rows
    progress.processed_rows = 0
    progress.errors = errors
    progress.completed_at = datetime.now(timezone.utc)
    write_audit(
        entity_table="csv_import",
        entity_id=f"{user.organization_id}_{fiscal_year}",
        action="import_rka_failed",
        actor_user_id=user.id,
        organization_id=user.organization_id,
        diff={"progress_id": progress_id, "errors": len(errors), "first_error": errors[0]["message"]},
    )
    db.session.commit()
    logger.warning("RKA import %s failed with %d errors", progress_id, len(errors))


def _coerce_year(fiscal_year) -> int:
    try:
        year = int(fiscal_year)
    except (TypeError, ValueError):
        raise ValidationError("fiscal_year wajib berupa tahun", details={"fiscal_year": fiscal_year}) from None
    if not 2000 <= year <= 2100:
        raise ValidationError("fiscal_year di luar rentang", details={"fiscal_year": year})
    return year


def validate_import(user, file_content: str | bytes, fiscal_year) -> dict:
    """Dry run: parse and validate without writing anything."""
    check_permission(user, "create", "rka")
    year = _coerce_year(fiscal_year)
    try:
        rows = parse_csv(file_content)
    except ImportValidationError as exc:
        return {"valid": False, "total_rows": 0, "valid_rows": 0, "errors": exc.errors}
    result = validate_rows(rows, user.organization_id, year)
    return {
        "valid": not result["errors"],
        "total_rows": len(rows),
        "valid_rows": len(result["valid"]),
        "errors": result["errors"],
    }


def execute_import(user, file_content: str | bytes, fiscal_year, filename: str = "") -> dict:
    """
    Import an RKA CSV atomically.

    Returns:
        {"success": True, "progress_id", "summary": {...}}

    Raises:
        ImportValidationError: validation or write errors; nothing is written.
    """
    check_permission(user, "create", "rka")
    year = _coerce_year(fiscal_year)
    progress = _start_progress(user, year, filename)
    progress_id = progress.id

    try:
        rows = parse_csv(file_content)
    except ImportValidationError as exc:
        _fail(user, progress_id, year, exc.errors, 0)
        raise ImportValidationError(exc.errors, progress_id) from None

    if not rows:
        errors = [_error(1, None, "File tidak berisi baris data")]
        _fail(user, progress_id, year, errors, 0)
        raise ImportValidationError(errors, progress_id)

    result = validate_rows(rows, user.organization_id, year)
    if result["errors"]:
        _fail(user, progress_id, year, result["errors"], len(rows))
        raise ImportValidationError(result["errors"], progress_id)

    # Write pass: one savepoint per row so a failure names its own row.
    cache = _HierarchyCache(user, year)
    accounts_created = 0
    write_errors = []
    touched = {}
    valid = result["valid"]
    for start in range(0, len(valid), BATCH_SIZE):
        batch = valid[start:start + BATCH_SIZE]
        for row in batch:
            try:
                with db.session.begin_nested():
                    sub = cache.subkegiatan(row)
                    pagu = row["paguTahun"]
                    db.session.add(RkaAccount(
                        organization_id=user.organization_id,
                        subkegiatan_id=sub.id,
                        fiscal_year=year,
                        kode=row["akunKode"],
                        uraian=row["akunUraian"][:500],
                        satuan=row.get("satuan") or None,
                        volume=row.get("volume"),
                        harga_satuan=row.get("hargaSatuan"),
                        pagu_tahun=pagu,
                        realisasi_tahun=0,
                        sisa_pagu=pagu,
                    ))
                    db.session.flush()
            except SQLAlchemyError as exc:
                logger.exception("RKA import %s: row %d failed", progress_id, row["row_num"])
                write_errors.append(_error(
                    row["row_num"], "akunKode",
                    f"Gagal menyimpan akun {row['akunKode']}: {exc.__class__.__name__}",
                ))
                cache.forget()
                continue
            touched[sub.id] = sub
            accounts_created += 1
        logger.debug("RKA import %s: rows %d-%d written", progress_id,
                     batch[0]["row_num"], batch[-1]["row_num"])

    if write_errors:
        _fail(user, progress_id, year, write_errors, len(rows))
        raise ImportValidationError(write_errors, progress_id)

    for sub in touched.values():
        recompute_totals(sub)

    summary = {
        "totalRows": len(rows),
        "programsCreated": cache.created["programs"],
        "kegiatansCreated": cache.created["kegiatans"],
        "subkegiatansCreated": cache.created["subkegiatans"],
        "accountsCreated": accounts_created,
        "errors": 0,
        "fiscalYear": year,
    }
    progress = db.session.get(ImportProgress, progress_id)
    progress.status = "completed"
    progress.total_rows = len(rows)
    progress.processed_rows = accounts_created
    progress.completed_at = datetime.now(timezone.utc)

    write_audit(
        entity_table="csv_import",
        entity_id=f"{user.organization_id}_{year}",
        action="imported_rka",
        actor_user_id=user.id,
        organization_id=user.organization_id,
        diff={"progress_id": progress_id, **summary},
    )
    logger.info("RKA import %s completed: %d accounts", progress_id, accounts_created)
    return {"success": True, "progress_id": progress_id, "summary": summary}


def get_progress(user, progress_id: int) -> ImportProgress:
    check_permission(user, "read", "rka")
    return get_scoped(ImportProgress, progress_id, organization_id=user.organization_id)


def list_progress(user, limit: int = 20) -> list[ImportProgress]:
    check_permission(user, "read", "rka")
    return (
        ImportProgress.query.filter_by(organization_id=user.organization_id)
        .order_by(ImportProgress.started_at.desc(), ImportProgress.id.desc())
        .limit(limit).all()
    )
