"""
RKA hierarchy service.

CRUD for Program → Kegiatan → Sub-kegiatan → Akun, scoped to the caller's
organization. After every child insert/update/delete the aggregate
``total_pagu`` of each ancestor is recomputed from its direct children,
so a node's amount always equals the sum of its children.

Services flush; blueprints commit.
"""

import logging
from decimal import Decimal

from sqlalchemy import func

from npd_tracker.core.exceptions import ConflictError, ValidationError
from npd_tracker.models import db
from npd_tracker.models.audit import write_audit
from npd_tracker.models.npd import NpdLine
from npd_tracker.models.rka import (
    RKA_STATUSES,
    RkaAccount,
    RkaKegiatan,
    RkaProgram,
    RkaSubkegiatan,
)
from npd_tracker.models.sp2d import Realization
from npd_tracker.services.helpers.scoped_queries import get_scoped
from npd_tracker.services.permission import check_permission
from npd_tracker.utils.money import parse_amount

logger = logging.getLogger(__name__)

LEVELS = {
    "program": RkaProgram,
    "kegiatan": RkaKegiatan,
    "subkegiatan": RkaSubkegiatan,
    "account": RkaAccount,
}


# ── Aggregate maintenance ────────────────────────────────────────────────────

def _sum(column, parent_column, parent_id) -> Decimal:
    value = db.session.query(func.coalesce(func.sum(column), 0)).filter(parent_column == parent_id).scalar()
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


def recompute_subkegiatan(sub: RkaSubkegiatan) -> None:
    sub.total_pagu = _sum(RkaAccount.pagu_tahun, RkaAccount.subkegiatan_id, sub.id)


def recompute_kegiatan(keg: RkaKegiatan) -> None:
    keg.total_pagu = _sum(RkaSubkegiatan.total_pagu, RkaSubkegiatan.kegiatan_id, keg.id)


def recompute_program(prog: RkaProgram) -> None:
    prog.total_pagu = _sum(RkaKegiatan.total_pagu, RkaKegiatan.program_id, prog.id)


def recompute_totals(node) -> None:
    """Recompute ``total_pagu`` from ``node`` (or its parent, for an account) up to the program."""
    db.session.flush()
    if isinstance(node, RkaAccount):
        node = db.session.get(RkaSubkegiatan, node.subkegiatan_id)
    if isinstance(node, RkaSubkegiatan):
        recompute_subkegiatan(node)
        db.session.flush()
        node = db.session.get(RkaKegiatan, node.kegiatan_id)
    if isinstance(node, RkaKegiatan):
        recompute_kegiatan(node)
        db.session.flush()
        node = db.session.get(RkaProgram, node.program_id)
    if isinstance(node, RkaProgram):
        recompute_program(node)
        db.session.flush()


# ── Helpers ──────────────────────────────────────────────────────────────────

def _require_text(data: dict, field: str, max_len: int = 300) -> str:
    value = str(data.get(field) or "").strip()
    if not value:
        raise ValidationError(f"{field} wajib diisi", details={field: "required"})
    return value[:max_len]


def _fiscal_year(data: dict) -> int:
    try:
        year = int(data.get("fiscal_year"))
    except (TypeError, ValueError):
        raise ValidationError("fiscal_year wajib diisi", details={"fiscal_year": "required"}) from None
    if not 2000 <= year <= 2100:
        raise ValidationError("fiscal_year tidak valid", details={"fiscal_year": "out of range"})
    return year


def _ensure_unique(model, parent_filter: dict, kode: str, exclude_id=None) -> None:
    q = model.query.filter_by(kode=kode, **parent_filter)
    if exclude_id is not None:
        q = q.filter(model.id != exclude_id)
    if q.first() is not None:
        raise ConflictError(model.__name__, "kode", kode)


def _audit(user, node, action, diff=None):
    write_audit(
        entity_table=node.__tablename__,
        entity_id=node.id,
        action=action,
        actor_user_id=user.id,
        organization_id=user.organization_id,
        diff=diff,
    )


# ── Create ───────────────────────────────────────────────────────────────────

def create_program(user, data: dict) -> RkaProgram:
    check_permission(user, "create", "rka")
    kode = _require_text(data, "kode", 50)
    year = _fiscal_year(data)
    _ensure_unique(RkaProgram, {"organization_id": user.organization_id, "fiscal_year": year}, kode)
    prog = RkaProgram(
        organization_id=user.organization_id,
        fiscal_year=year,
        kode=kode,
        nama=_require_text(data, "nama"),
        total_pagu=Decimal("0"),
        created_by=user.id,
    )
    db.session.add(prog)
    db.session.flush()
    _audit(user, prog, "created", {"kode": kode, "fiscal_year": year})
    return prog


def create_kegiatan(user, program_id: int, data: dict) -> RkaKegiatan:
    check_permission(user, "create", "rka")
    prog = get_scoped(RkaProgram, program_id, organization_id=user.organization_id)
    kode = _require_text(data, "kode", 50)
    _ensure_unique(RkaKegiatan, {"program_id": prog.id}, kode)
    keg = RkaKegiatan(
        organization_id=user.organization_id,
        program_id=prog.id,
        fiscal_year=prog.fiscal_year,
        kode=kode,
        nama=_require_text(data, "nama"),
        total_pagu=Decimal("0"),
    )
    db.session.add(keg)
    db.session.flush()
    _audit(user, keg, "created", {"kode": kode, "program_id": prog.id})
    return keg


def create_subkegiatan(user, kegiatan_id: int, data: dict) -> RkaSubkegiatan:
    check_permission(user, "create", "rka")
    keg = get_scoped(RkaKegiatan, kegiatan_id, organization_id=user.organization_id)
    kode = _require_text(data, "kode", 50)
    _ensure_unique(RkaSubkegiatan, {"kegiatan_id": keg.id}, kode)
    sub = RkaSubkegiatan(
        organization_id=user.organization_id,
        kegiatan_id=keg.id,
        fiscal_year=keg.fiscal_year,
        kode=kode,
        nama=_require_text(data, "nama"),
        total_pagu=Decimal("0"),
    )
    db.session.add(sub)
    db.session.flush()
    _audit(user, sub, "created", {"kode": kode, "kegiatan_id": keg.id})
    return sub


def create_account(user, subkegiatan_id: int, data: dict) -> RkaAccount:
    check_permission(user, "create", "rka")
    sub = get_scoped(RkaSubkegiatan, subkegiatan_id, organization_id=user.organization_id)
    kode = _require_text(data, "kode", 50)
    _ensure_unique(RkaAccount, {"subkegiatan_id": sub.id}, kode)
    pagu = parse_amount(data.get("pagu_tahun"), "pagu_tahun")
    acct = RkaAccount(
        organization_id=user.organization_id,
        subkegiatan_id=sub.id,
        fiscal_year=sub.fiscal_year,
        kode=kode,
        uraian=_require_text(data, "uraian", 500),
        satuan=(data.get("satuan") or None),
        volume=parse_amount(data.get("volume"), "volume", required=False),
        harga_satuan=parse_amount(data.get("harga_satuan"), "harga_satuan", required=False),
        pagu_tahun=pagu,
        realisasi_tahun=Decimal("0"),
        sisa_pagu=pagu,
    )
    db.session.add(acct)
    db.session.flush()
    recompute_totals(acct)
    _audit(user, acct, "created", {"kode": kode, "pagu_tahun": pagu})
    return acct


# ── Update ───────────────────────────────────────────────────────────────────

def update_node(user, level: str, node_id: int, data: dict):
    """Update name/code/status of any level; ``pagu_tahun`` and detail fields on accounts."""
    check_permission(user, "update", "rka")
    model = LEVELS.get(level)
    if model is None:
        raise ValidationError(f"Unknown level: {level}")
    node = get_scoped(model, node_id, organization_id=user.organization_id)

    diff = {}
    name_field = "uraian" if model is RkaAccount else "nama"
    if name_field in data:
        new = _require_text(data, name_field, 500)
        if new != getattr(node, name_field):
            diff[name_field] = {"old": getattr(node, name_field), "new": new}
            setattr(node, name_field, new)

    if "kode" in data:
        kode = _require_text(data, "kode", 50)
        if kode != node.kode:
            parent_filter = {
                RkaProgram: lambda n: {"organization_id": n.organization_id, "fiscal_year": n.fiscal_year},
                RkaKegiatan: lambda n: {"program_id": n.program_id},
                RkaSubkegiatan: lambda n: {"kegiatan_id": n.kegiatan_id},
                RkaAccount: lambda n: {"subkegiatan_id": n.subkegiatan_id},
            }[model](node)
            _ensure_unique(model, parent_filter, kode, exclude_id=node.id)
            diff["kode"] = {"old": node.kode, "new": kode}
            node.kode = kode

    if "status" in data:
        if data["status"] not in RKA_STATUSES:
            raise ValidationError("status tidak valid", details={"status": sorted(RKA_STATUSES)})
        if data["status"] != node.status:
            diff["status"] = {"old": node.status, "new": data["status"]}
            node.status = data["status"]

    if model is RkaAccount:
        for field in ("volume", "harga_satuan"):
            if field in data:
                node_value = parse_amount(data.get(field), field, required=False)
                setattr(node, field, node_value)
        if "satuan" in data:
            node.satuan = data.get("satuan") or None
        if "pagu_tahun" in data:
            pagu = parse_amount(data.get("pagu_tahun"), "pagu_tahun")
            if pagu < (node.realisasi_tahun or 0):
                raise ValidationError(
                    "Pagu tidak boleh lebih kecil dari realisasi",
                    details={"pagu_tahun": str(pagu), "realisasi_tahun": str(node.realisasi_tahun)},
                )
            if pagu != node.pagu_tahun:
                diff["pagu_tahun"] = {"old": node.pagu_tahun, "new": pagu}
                node.pagu_tahun = pagu
                node.sisa_pagu = pagu - (node.realisasi_tahun or Decimal("0"))
                recompute_totals(node)

    db.session.flush()
    if diff:
        _audit(user, node, "updated", diff)
    return node


# ── Delete ───────────────────────────────────────────────────────────────────

def _child_count(node) -> int:
    if isinstance(node, RkaProgram):
        return RkaKegiatan.query.filter_by(program_id=node.id).count()
    if isinstance(node, RkaKegiatan):
        return RkaSubkegiatan.query.filter_by(kegiatan_id=node.id).count()
    if isinstance(node, RkaSubkegiatan):
        return RkaAccount.query.filter_by(subkegiatan_id=node.id).count()
    return 0


def delete_node(user, level: str, node_id: int) -> None:
    check_permission(user, "delete", "rka")
    model = LEVELS.get(level)
    if model is None:
        raise ValidationError(f"Unknown level: {level}")
    node = get_scoped(model, node_id, organization_id=user.organization_id)

    if _child_count(node):
        raise ValidationError(
            "Node masih memiliki turunan dan tidak dapat dihapus",
            details={"level": level, "id": node_id},
        )
    if isinstance(node, RkaAccount):
        used = (
            NpdLine.query.filter_by(account_id=node.id).count()
            + Realization.query.filter_by(account_id=node.id).count()
        )
        if used:
            raise ValidationError(
                "Akun sudah digunakan pada NPD/realisasi dan tidak dapat dihapus",
                details={"account_id": node.id},
            )

    parent = {
        RkaKegiatan: lambda n: db.session.get(RkaProgram, n.program_id),
        RkaSubkegiatan: lambda n: db.session.get(RkaKegiatan, n.kegiatan_id),
        RkaAccount: lambda n: db.session.get(RkaSubkegiatan, n.subkegiatan_id),
    }.get(model, lambda n: None)(node)

    _audit(user, node, "deleted", {"snapshot": node.to_dict()})
    db.session.delete(node)
    db.session.flush()
    if parent is not None:
        recompute_totals(parent)
    logger.info("RKA %s %s deleted by user %s", level, node_id, user.id)


# ── Read ─────────────────────────────────────────────────────────────────────

def get_tree(user, fiscal_year: int | None = None) -> list[dict]:
    """Nested program → account tree for the caller's organization."""
    check_permission(user, "read", "rka")
    q = RkaProgram.query.filter_by(organization_id=user.organization_id)
    if fiscal_year:
        q = q.filter_by(fiscal_year=fiscal_year)
    return [p.to_dict(include_children=True) for p in q.order_by(RkaProgram.kode).all()]


def list_accounts(user, fiscal_year: int | None = None, subkegiatan_id: int | None = None,
                  search: str | None = None):
    check_permission(user, "read", "rka")
    q = RkaAccount.query.filter_by(organization_id=user.organization_id)
    if fiscal_year:
        q = q.filter_by(fiscal_year=fiscal_year)
    if subkegiatan_id:
        q = q.filter_by(subkegiatan_id=subkegiatan_id)
    if search:
        like = f"%{search}%"
        q = q.filter(db.or_(RkaAccount.kode.ilike(like), RkaAccount.uraian.ilike(like)))
    return q.order_by(RkaAccount.kode)
