"""
SP2D & realization service.

An SP2D is issued against a ``final`` NPD. Its ``nilai_cair`` is split
across the NPD lines in proportion to each line's ``jumlah``
(services.distribution), and every share is booked onto the line's RKA
account as realization. An account whose realization crosses
BUDGET_ALERT_THRESHOLD_PERCENT of its pagu raises a ``budget_alert``.
Creation and corrective deletion each run in the caller's single
transaction.
"""

import logging
from datetime import date, datetime
from decimal import Decimal

from flask import current_app

from npd_tracker.core.exceptions import ConflictError, ValidationError
from npd_tracker.models import db
from npd_tracker.models.audit import write_audit
from npd_tracker.models.npd import NpdDocument
from npd_tracker.models.organization import User
from npd_tracker.models.rka import RkaAccount
from npd_tracker.models.sp2d import Realization, Sp2dRef
from npd_tracker.services.distribution import distribute
from npd_tracker.services.helpers.scoped_queries import get_scoped
from npd_tracker.services.notification import NotificationService
from npd_tracker.services.permission import check_permission
from npd_tracker.utils.money import format_rupiah, parse_amount

logger = logging.getLogger(__name__)


def _parse_date(value) -> date:
    if isinstance(value, date):
        return value
    if not value:
        return date.today()
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError("tgl_sp2d harus berformat YYYY-MM-DD", details={"tgl_sp2d": value}) from None


def _book(account: RkaAccount, amount: Decimal) -> None:
    account.realisasi_tahun = (account.realisasi_tahun or Decimal("0")) + amount
    account.sisa_pagu = (account.pagu_tahun or Decimal("0")) - account.realisasi_tahun


def _utilization(account: RkaAccount) -> Decimal:
    pagu = account.pagu_tahun or Decimal("0")
    if pagu <= 0:
        return Decimal("0")
    return (account.realisasi_tahun or Decimal("0")) * 100 / pagu


def _alert_budget(accounts: list[RkaAccount], before: dict[int, Decimal], organization_id: int) -> None:
    """Notify bendahara and admin for every account that just crossed the threshold."""
    threshold = Decimal(current_app.config.get("BUDGET_ALERT_THRESHOLD_PERCENT", 90))
    for account in accounts:
        after = _utilization(account)
        if before[account.id] >= threshold or after < threshold:
            continue
        utilization = after.quantize(Decimal("0.1"))
        NotificationService.notify_roles(
            organization_id,
            ("bendahara", "admin"),
            type="budget_alert",
            title=f"Realisasi akun {account.kode} mencapai {utilization}%",
            message=f"Sisa pagu {account.uraian}: {format_rupiah(account.sisa_pagu)}.",
            entity_type="rka_accounts",
            entity_id=account.id,
            email_template="BudgetAlert",
            email_data={
                "accountCode": account.kode,
                "accountName": account.uraian,
                "utilization": str(utilization),
                "remaining": format_rupiah(account.sisa_pagu),
            },
        )
        logger.warning("Account %s crossed %s%% of pagu (%s%%)", account.kode, threshold, utilization)


def create_sp2d(npd_id: int, data: dict, user: User) -> Sp2dRef:
    """
    Issue an SP2D for a final NPD and distribute it as realization.

    Args:
        data: {no_sp2d, nilai_cair, tgl_sp2d?, no_spm?, catatan?}
    """
    check_permission(user, "create", "sp2d")
    npd = get_scoped(NpdDocument, npd_id, organization_id=user.organization_id)
    if npd.status != "final":
        raise ValidationError(
            "SP2D hanya dapat dibuat untuk NPD berstatus final",
            details={"status": npd.status},
        )

    no_sp2d = str(data.get("no_sp2d") or "").strip()
    if not no_sp2d:
        raise ValidationError("no_sp2d wajib diisi", details={"no_sp2d": "required"})
    if Sp2dRef.query.filter_by(organization_id=user.organization_id, no_sp2d=no_sp2d).first():
        raise ConflictError("SP2D", "no_sp2d", no_sp2d)

    nilai_cair = parse_amount(data.get("nilai_cair"), "nilai_cair", allow_zero=False)
    lines = list(npd.lines)
    total_npd = sum((line.jumlah or Decimal("0") for line in lines), Decimal("0"))
    already_cair = sum((ref.nilai_cair or Decimal("0") for ref in npd.sp2d_refs), Decimal("0"))
    remaining = total_npd - already_cair
    if nilai_cair > remaining:
        raise ValidationError(
            f"Nilai cair melebihi sisa NPD yang belum dicairkan ({format_rupiah(remaining)})",
            details={"nilai_cair": str(nilai_cair), "total_npd": str(total_npd),
                     "sudah_cair": str(already_cair), "sisa": str(remaining)},
        )

    sp2d = Sp2dRef(
        organization_id=user.organization_id,
        npd_id=npd.id,
        no_spm=(data.get("no_spm") or None),
        no_sp2d=no_sp2d,
        tgl_sp2d=_parse_date(data.get("tgl_sp2d")),
        nilai_cair=nilai_cair,
        catatan=data.get("catatan") or "",
        created_by=user.id,
    )
    db.session.add(sp2d)
    db.session.flush()

    shares = distribute(nilai_cair, [line.jumlah or Decimal("0") for line in lines])
    touched: dict[int, RkaAccount] = {}
    before: dict[int, Decimal] = {}
    for line, share in zip(lines, shares):
        sp2d.realizations.append(Realization(
            organization_id=user.organization_id,
            npd_id=npd.id,
            npd_line_id=line.id,
            account_id=line.account_id,
            total_cair=share,
            catatan=f"Distribusi proporsional dari SP2D {no_sp2d}",
            created_by=user.id,
        ))
        account = line.account or db.session.get(RkaAccount, line.account_id)
        if account.id not in touched:
            touched[account.id] = account
            before[account.id] = _utilization(account)
        _book(account, share)
    db.session.flush()
    _alert_budget(list(touched.values()), before, user.organization_id)

    if npd.created_by:
        creator = db.session.get(User, npd.created_by)
        if creator is not None and creator.is_active:
            NotificationService.create(
                user=creator,
                type="sp2d_created",
                title=f"SP2D {no_sp2d} diterbitkan",
                message=f"SP2D {no_sp2d} sebesar {format_rupiah(nilai_cair)} diterbitkan untuk NPD {npd.document_number}.",
                entity_type="sp2d_refs",
                entity_id=sp2d.id,
                email_template="SP2DCreated",
                email_data={
                    "sp2dNumber": no_sp2d,
                    "documentNumber": npd.document_number,
                    "amount": format_rupiah(nilai_cair),
                    "date": sp2d.tgl_sp2d.strftime("%d/%m/%Y"),
                    "actionUrl": f"/npd/{npd.id}",
                },
            )

    write_audit(
        entity_table="sp2d_refs",
        entity_id=sp2d.id,
        action="created",
        actor_user_id=user.id,
        organization_id=user.organization_id,
        diff={
            "npd_id": npd.id,
            "no_sp2d": no_sp2d,
            "nilai_cair": str(nilai_cair),
            "shares": [str(s) for s in shares],
        },
    )
    logger.info("SP2D %s (%s) created for NPD %s by user %s",
                no_sp2d, nilai_cair, npd.document_number, user.id)
    return sp2d


def list_sp2d(user, *, npd_id=None, date_from=None, date_to=None, search=None):
    """Org-scoped query, newest first (caller paginates)."""
    check_permission(user, "read", "sp2d")
    q = Sp2dRef.query.filter_by(organization_id=user.organization_id)
    if npd_id:
        q = q.filter(Sp2dRef.npd_id == npd_id)
    if date_from:
        q = q.filter(Sp2dRef.tgl_sp2d >= _parse_date(date_from))
    if date_to:
        q = q.filter(Sp2dRef.tgl_sp2d <= _parse_date(date_to))
    if search:
        like = f"%{search}%"
        q = q.filter(db.or_(Sp2dRef.no_sp2d.ilike(like), Sp2dRef.no_spm.ilike(like)))
    return q.order_by(Sp2dRef.tgl_sp2d.desc(), Sp2dRef.id.desc())


def get_sp2d(user, sp2d_id: int) -> Sp2dRef:
    check_permission(user, "read", "sp2d")
    return get_scoped(Sp2dRef, sp2d_id, organization_id=user.organization_id)


def delete_sp2d(sp2d_id: int, user: User) -> None:
    """Corrective deletion: reverse every realization, then drop the SP2D."""
    check_permission(user, "delete", "sp2d")
    sp2d = get_scoped(Sp2dRef, sp2d_id, organization_id=user.organization_id)
    snapshot = sp2d.to_dict(include_realizations=True)

    for realization in sp2d.realizations:
        account = realization.account or db.session.get(RkaAccount, realization.account_id)
        _book(account, -(realization.total_cair or Decimal("0")))

    write_audit(
        entity_table="sp2d_refs",
        entity_id=sp2d.id,
        action="deleted",
        actor_user_id=user.id,
        organization_id=user.organization_id,
        diff={"snapshot": snapshot},
    )
    db.session.delete(sp2d)
    db.session.flush()
    logger.info("SP2D %s deleted by user %s", snapshot["no_sp2d"], user.id)
