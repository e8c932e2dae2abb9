"""
NPD document & line-item service.

Creates and edits NPD headers and lines. Every mutation first asserts the
document is still editable (``draft`` or ``rejected``); once an NPD is
``final`` no path here will touch it.

Status changes live in services.npd_workflow.
"""

import logging
import re
from decimal import Decimal

from npd_tracker.core.exceptions import NotFoundError, StaleVersionError, ValidationError
from npd_tracker.models import db
from npd_tracker.models.audit import write_audit
from npd_tracker.models.npd import NPD_JENIS, NpdDocument, NpdLine, VerificationChecklist
from npd_tracker.models.rka import RkaAccount, RkaSubkegiatan
from npd_tracker.services.checklist import build_checklist_results
from npd_tracker.services.helpers.scoped_queries import get_scoped
from npd_tracker.services.permission import PermissionDenied, check_permission, has_permission
from npd_tracker.utils.money import parse_amount

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"^NPD-(\d{4})-(\d+)$")


class NpdLockedError(ValidationError):
    """Raised when a mutation targets an NPD that is no longer editable."""

    def __init__(self, npd: NpdDocument):
        super().__init__(
            f"NPD {npd.document_number} berstatus '{npd.status}' dan tidak dapat diubah",
            details={"status": npd.status},
        )
        self.npd_id = npd.id


# ── Helpers ──────────────────────────────────────────────────────────────────

def assert_editable(npd: NpdDocument) -> None:
    if not npd.is_editable:
        raise NpdLockedError(npd)


def check_version(npd: NpdDocument, expected_version) -> None:
    """Optimistic-concurrency guard for client-supplied versions."""
    if expected_version is None:
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError):
        raise ValidationError("version harus berupa angka", details={"version": expected_version}) from None
    if expected != npd.version:
        raise StaleVersionError("NPD", npd.id, expected, npd.version)


def next_document_number(organization_id: int, year: int) -> str:
    """``NPD-{year}-{seq:03d}``; the sequence runs per organization and year."""
    numbers = (
        db.session.query(NpdDocument.document_number)
        .filter(
            NpdDocument.organization_id == organization_id,
            NpdDocument.document_number.like(f"NPD-{year}-%"),
        )
        .all()
    )
    highest = 0
    for (number,) in numbers:
        m = _NUMBER_RE.match(number or "")
        if m and int(m.group(2)) > highest:
            highest = int(m.group(2))
    return f"NPD-{year}-{highest + 1:03d}"


def get_npd(user, npd_id: int) -> NpdDocument:
    check_permission(user, "read", "npd")
    return get_scoped(NpdDocument, npd_id, organization_id=user.organization_id)


def list_npds(user, *, status=None, jenis=None, tahun=None, subkegiatan_id=None, search=None):
    """Return an org-scoped query (caller paginates)."""
    check_permission(user, "read", "npd")
    q = NpdDocument.query.filter_by(organization_id=user.organization_id)
    if status:
        q = q.filter(NpdDocument.status == status)
    if jenis:
        q = q.filter(NpdDocument.jenis == jenis)
    if tahun:
        q = q.filter(NpdDocument.tahun == tahun)
    if subkegiatan_id:
        q = q.filter(NpdDocument.subkegiatan_id == subkegiatan_id)
    if search:
        like = f"%{search}%"
        q = q.filter(db.or_(NpdDocument.title.ilike(like), NpdDocument.document_number.ilike(like)))
    return q.order_by(NpdDocument.created_at.desc(), NpdDocument.id.desc())


# ── Header CRUD ──────────────────────────────────────────────────────────────

def _validate_jenis(jenis) -> str:
    if jenis not in NPD_JENIS:
        raise ValidationError(
            f"Jenis NPD harus salah satu dari {', '.join(NPD_JENIS)}",
            details={"jenis": jenis},
        )
    return jenis


def create_npd(user, data: dict) -> NpdDocument:
    """
    Create a draft NPD with its verification checklist and optional lines.

    Args:
        data: {subkegiatan_id, title, jenis, description?, catatan?, tahun?, lines?: [...]}
    """
    check_permission(user, "create", "npd")
    title = str(data.get("title") or "").strip()
    if not title:
        raise ValidationError("Judul NPD wajib diisi", details={"title": "required"})
    jenis = _validate_jenis(data.get("jenis"))
    sub = get_scoped(RkaSubkegiatan, data.get("subkegiatan_id"), organization_id=user.organization_id)

    tahun = data.get("tahun") or sub.fiscal_year
    try:
        tahun = int(tahun)
    except (TypeError, ValueError):
        raise ValidationError("tahun tidak valid", details={"tahun": tahun}) from None

    npd = NpdDocument(
        organization_id=user.organization_id,
        subkegiatan_id=sub.id,
        document_number=next_document_number(user.organization_id, tahun),
        title=title[:300],
        description=data.get("description") or "",
        catatan=data.get("catatan") or "",
        jenis=jenis,
        tahun=tahun,
        status="draft",
        created_by=user.id,
    )
    npd.checklist = VerificationChecklist(
        organization_id=user.organization_id,
        checklist_type=jenis,
        results=build_checklist_results(jenis),
        status="draft",
    )
    db.session.add(npd)
    db.session.flush()

    for line_data in data.get("lines") or []:
        _add_line(npd, line_data)

    write_audit(
        entity_table="npd_documents",
        entity_id=npd.id,
        action="created",
        actor_user_id=user.id,
        organization_id=user.organization_id,
        diff={"document_number": npd.document_number, "jenis": jenis, "title": npd.title},
    )
    logger.info("NPD %s created by user %s", npd.document_number, user.id)
    return npd


def update_npd(user, npd_id: int, data: dict, expected_version=None) -> NpdDocument:
    """Edit header fields while the NPD is editable. Changing jenis resets the checklist."""
    check_permission(user, "update", "npd")
    npd = get_scoped(NpdDocument, npd_id, organization_id=user.organization_id)
    check_version(npd, expected_version)
    assert_editable(npd)

    diff = {}
    if "title" in data:
        title = str(data.get("title") or "").strip()
        if not title:
            raise ValidationError("Judul NPD wajib diisi", details={"title": "required"})
        if title != npd.title:
            diff["title"] = {"old": npd.title, "new": title}
            npd.title = title[:300]
    for field in ("description", "catatan"):
        if field in data and (data.get(field) or "") != (getattr(npd, field) or ""):
            diff[field] = {"old": getattr(npd, field), "new": data.get(field) or ""}
            setattr(npd, field, data.get(field) or "")
    if "jenis" in data and data["jenis"] != npd.jenis:
        jenis = _validate_jenis(data["jenis"])
        diff["jenis"] = {"old": npd.jenis, "new": jenis}
        npd.jenis = jenis
        npd.checklist.checklist_type = jenis
        npd.checklist.results = build_checklist_results(jenis)
        npd.checklist.status = "draft"

    if diff:
        db.session.flush()
        write_audit(
            entity_table="npd_documents",
            entity_id=npd.id,
            action="updated",
            actor_user_id=user.id,
            organization_id=npd.organization_id,
            diff=diff,
        )
    return npd


def delete_npd(user, npd_id: int) -> list[str]:
    """
    Delete a draft NPD. Only its creator (with update rights) or an admin may do so.

    Returns the storage keys of its attachments; the caller removes the
    blobs after commit.
    """
    npd = get_scoped(NpdDocument, npd_id, organization_id=user.organization_id)
    is_owner = npd.created_by == user.id and has_permission(user.role, "update", "npd")
    if not (is_owner or has_permission(user.role, "delete", "npd")):
        raise PermissionDenied(user.id, "delete", "npd")
    if npd.status != "draft":
        raise ValidationError(
            "Hanya NPD berstatus draft yang dapat dihapus",
            details={"status": npd.status},
        )
    write_audit(
        entity_table="npd_documents",
        entity_id=npd.id,
        action="deleted",
        actor_user_id=user.id,
        organization_id=npd.organization_id,
        diff={"snapshot": npd.to_dict(include_lines=True)},
    )
    blob_keys = [a.storage_key for a in npd.attachments]
    db.session.delete(npd)
    db.session.flush()
    logger.info("NPD %s deleted by user %s", npd.document_number, user.id)
    return blob_keys


# ── Lines ────────────────────────────────────────────────────────────────────

def _line_amount(data: dict, existing: NpdLine | None = None) -> tuple:
    volume = parse_amount(data.get("volume"), "volume", required=False) if "volume" in data else (
        existing.volume if existing else None)
    harga = parse_amount(data.get("harga_satuan"), "harga_satuan", required=False) if "harga_satuan" in data else (
        existing.harga_satuan if existing else None)
    if data.get("jumlah") not in (None, ""):
        jumlah = parse_amount(data.get("jumlah"), "jumlah", allow_zero=False)
    elif "volume" in data or "harga_satuan" in data or existing is None:
        if volume is None or harga is None:
            raise ValidationError(
                "jumlah wajib diisi (atau volume dan harga_satuan)",
                details={"jumlah": "required"},
            )
        jumlah = (volume * harga).quantize(Decimal("0.01"))
        if jumlah <= 0:
            raise ValidationError("jumlah harus lebih besar dari 0", details={"jumlah": str(jumlah)})
    else:
        jumlah = existing.jumlah
    return volume, harga, jumlah


def _check_sisa_pagu(npd: NpdDocument, account: RkaAccount, jumlah: Decimal,
                     exclude_line_id: int | None = None) -> None:
    requested = sum(
        (line.jumlah for line in npd.lines
         if line.account_id == account.id and line.id != exclude_line_id and line.jumlah is not None),
        Decimal("0"),
    )
    available = account.sisa_pagu or Decimal("0")
    if requested + jumlah > available:
        raise ValidationError(
            f"Jumlah melebihi sisa pagu akun {account.kode}. Tersedia: {available}",
            details={"account_id": account.id, "sisa_pagu": str(available),
                     "requested": str(requested + jumlah)},
        )


def _resolve_account(npd: NpdDocument, account_id) -> RkaAccount:
    account = get_scoped(RkaAccount, account_id, organization_id=npd.organization_id)
    if account.subkegiatan_id != npd.subkegiatan_id:
        raise ValidationError(
            "Akun tidak termasuk dalam sub-kegiatan NPD",
            details={"account_id": account.id, "subkegiatan_id": npd.subkegiatan_id},
        )
    return account


def _add_line(npd: NpdDocument, data: dict) -> NpdLine:
    account = _resolve_account(npd, data.get("account_id"))
    volume, harga, jumlah = _line_amount(data)
    _check_sisa_pagu(npd, account, jumlah)
    line = NpdLine(
        npd_id=npd.id,
        account_id=account.id,
        uraian=str(data.get("uraian") or account.uraian)[:500],
        volume=volume,
        satuan=data.get("satuan") or account.satuan,
        harga_satuan=harga,
        jumlah=jumlah,
    )
    npd.lines.append(line)
    npd.touch()
    db.session.flush()
    return line


def add_line(user, npd_id: int, data: dict, expected_version=None) -> NpdLine:
    check_permission(user, "update", "npd")
    npd = get_scoped(NpdDocument, npd_id, organization_id=user.organization_id)
    check_version(npd, expected_version)
    assert_editable(npd)
    line = _add_line(npd, data)
    write_audit(
        entity_table="npd_lines",
        entity_id=line.id,
        action="created",
        actor_user_id=user.id,
        organization_id=npd.organization_id,
        diff={"npd_id": npd.id, "account_id": line.account_id, "jumlah": line.jumlah},
    )
    return line


def _get_line(npd: NpdDocument, line_id: int) -> NpdLine:
    for line in npd.lines:
        if line.id == line_id:
            return line
    raise NotFoundError(resource="NPD line", resource_id=line_id)


def update_line(user, npd_id: int, line_id: int, data: dict, expected_version=None) -> NpdLine:
    check_permission(user, "update", "npd")
    npd = get_scoped(NpdDocument, npd_id, organization_id=user.organization_id)
    check_version(npd, expected_version)
    assert_editable(npd)
    line = _get_line(npd, line_id)

    account = _resolve_account(npd, data["account_id"]) if "account_id" in data else line.account
    volume, harga, jumlah = _line_amount(data, existing=line)
    _check_sisa_pagu(npd, account, jumlah, exclude_line_id=line.id)

    before = line.to_dict()
    line.account_id = account.id
    line.account = account
    line.volume = volume
    line.harga_satuan = harga
    line.jumlah = jumlah
    if "uraian" in data:
        line.uraian = str(data.get("uraian") or "")[:500]
    if "satuan" in data:
        line.satuan = data.get("satuan") or None
    npd.touch()
    db.session.flush()

    after = line.to_dict()
    write_audit(
        entity_table="npd_lines",
        entity_id=line.id,
        action="updated",
        actor_user_id=user.id,
        organization_id=npd.organization_id,
        diff={k: {"old": before[k], "new": after[k]} for k in after if before.get(k) != after[k]},
    )
    return line


def remove_line(user, npd_id: int, line_id: int, expected_version=None) -> None:
    check_permission(user, "update", "npd")
    npd = get_scoped(NpdDocument, npd_id, organization_id=user.organization_id)
    check_version(npd, expected_version)
    assert_editable(npd)
    line = _get_line(npd, line_id)
    write_audit(
        entity_table="npd_lines",
        entity_id=line.id,
        action="deleted",
        actor_user_id=user.id,
        organization_id=npd.organization_id,
        diff={"snapshot": line.to_dict()},
    )
    npd.lines.remove(line)
    npd.touch()
    db.session.flush()
