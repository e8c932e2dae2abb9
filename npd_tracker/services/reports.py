"""
Read-only reports over one organization's fiscal year.

    realisasi_report — per-account pagu vs realization, optionally for one
                       month of SP2D dates, with program/kegiatan/subkegiatan
    npd_summary      — NPD count and line total per status
"""

import logging
from decimal import Decimal

from sqlalchemy import extract, func

from npd_tracker.core.exceptions import ValidationError
from npd_tracker.models import db
from npd_tracker.models.npd import NPD_STATUSES, NpdDocument, NpdLine
from npd_tracker.models.rka import RkaAccount, RkaKegiatan, RkaProgram, RkaSubkegiatan, as_number
from npd_tracker.models.sp2d import Realization, Sp2dRef
from npd_tracker.services.permission import check_permission

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _percent(part: Decimal, whole: Decimal) -> float:
    if not whole:
        return 0.0
    return round(float(part * 100 / whole), 2)


def _check_period(tahun, bulan) -> None:
    if not isinstance(tahun, int) or tahun < 2000 or tahun > 2100:
        raise ValidationError("tahun tidak valid", details={"tahun": tahun})
    if bulan is not None and (not isinstance(bulan, int) or not 1 <= bulan <= 12):
        raise ValidationError("bulan harus antara 1 dan 12", details={"bulan": bulan})


def realisasi_report(user, tahun: int, bulan: int | None = None) -> dict:
    """
    Budget realization per account for fiscal year ``tahun``.

    With ``bulan`` only realizations from SP2Ds dated in that month count,
    and ``sisa_pagu`` is pagu minus that month's realization.
    """
    check_permission(user, "read", "reports")
    check_permission(user, "read", "realisasi")
    _check_period(tahun, bulan)

    org_id = user.organization_id
    sums = (
        db.session.query(Realization.account_id, func.sum(Realization.total_cair))
        .join(Sp2dRef, Realization.sp2d_id == Sp2dRef.id)
        .filter(Realization.organization_id == org_id)
    )
    if bulan is not None:
        sums = sums.filter(
            extract("year", Sp2dRef.tgl_sp2d) == tahun,
            extract("month", Sp2dRef.tgl_sp2d) == bulan,
        )
    realized = {account_id: Decimal(str(total or 0)) for account_id, total in sums.group_by(Realization.account_id)}

    rows = (
        db.session.query(RkaAccount, RkaSubkegiatan, RkaKegiatan, RkaProgram)
        .join(RkaSubkegiatan, RkaAccount.subkegiatan_id == RkaSubkegiatan.id)
        .join(RkaKegiatan, RkaSubkegiatan.kegiatan_id == RkaKegiatan.id)
        .join(RkaProgram, RkaKegiatan.program_id == RkaProgram.id)
        .filter(RkaAccount.organization_id == org_id, RkaAccount.fiscal_year == tahun)
        .order_by(RkaProgram.kode, RkaKegiatan.kode, RkaSubkegiatan.kode, RkaAccount.kode)
        .all()
    )

    accounts = []
    total_pagu = total_realisasi = ZERO
    for account, sub, keg, prog in rows:
        pagu = account.pagu_tahun or ZERO
        realisasi = realized.get(account.id, ZERO)
        total_pagu += pagu
        total_realisasi += realisasi
        accounts.append({
            "account_id": account.id,
            "kode": account.kode,
            "uraian": account.uraian,
            "pagu_tahun": as_number(pagu),
            "realisasi": as_number(realisasi),
            "sisa_pagu": as_number(pagu - realisasi),
            "persentase_realisasi": _percent(realisasi, pagu),
            "subkegiatan": {"id": sub.id, "kode": sub.kode, "nama": sub.nama},
            "kegiatan": {"id": keg.id, "kode": keg.kode, "nama": keg.nama},
            "program": {"id": prog.id, "kode": prog.kode, "nama": prog.nama},
        })

    logger.debug("Realisasi report org=%s tahun=%s bulan=%s accounts=%d", org_id, tahun, bulan, len(accounts))
    return {
        "tahun": tahun,
        "bulan": bulan,
        "accounts": accounts,
        "totals": {
            "pagu_tahun": as_number(total_pagu),
            "realisasi": as_number(total_realisasi),
            "sisa_pagu": as_number(total_pagu - total_realisasi),
            "persentase_realisasi": _percent(total_realisasi, total_pagu),
        },
    }


def npd_summary(user, tahun: int) -> dict:
    """Count and line-total of the organization's NPDs per status."""
    check_permission(user, "read", "reports")
    _check_period(tahun, None)

    base = NpdDocument.query.filter(
        NpdDocument.organization_id == user.organization_id,
        NpdDocument.tahun == tahun,
    )
    counts = dict(
        base.with_entities(NpdDocument.status, func.count(NpdDocument.id))
        .group_by(NpdDocument.status)
        .all()
    )
    amounts = dict(
        base.join(NpdLine, NpdLine.npd_id == NpdDocument.id)
        .with_entities(NpdDocument.status, func.sum(NpdLine.jumlah))
        .group_by(NpdDocument.status)
        .all()
    )

    summary = {
        status: {
            "count": counts.get(status, 0),
            "total_amount": as_number(Decimal(str(amounts.get(status) or 0))),
        }
        for status in NPD_STATUSES
    }
    return {"tahun": tahun, "total_npds": sum(counts.values()), "summary": summary}
