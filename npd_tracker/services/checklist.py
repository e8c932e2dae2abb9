"""
Verification checklist service.

Per-jenis static templates of required/optional items, the completion
aggregate, and the "every required item checked" guard used by the
``verify`` transition.
"""

import logging
from datetime import datetime, timezone

from npd_tracker.core.exceptions import ValidationError
from npd_tracker.models import db
from npd_tracker.models.audit import write_audit
from npd_tracker.models.npd import NpdDocument, VerificationChecklist
from npd_tracker.services.permission import check_permission

logger = logging.getLogger(__name__)


def _item(item_id, label, required=True):
    return {"id": item_id, "label": label, "required": required}


_OPTIONAL_NOTE = _item("catatan_tambahan", "Catatan tambahan verifikator", required=False)

CHECKLIST_TEMPLATES: dict[str, list[dict]] = {
    "UP": [
        _item("surat_permohonan", "Surat Permohonan UP"),
        _item("rincian_biaya", "Rincian Rencana Penggunaan Dana"),
        _item("bukti_pendukung", "Bukti Pendukung"),
        _item("sisa_pagu", "Kecukupan Sisa Pagu"),
        _item("kelengkapan_data", "Kelengkapan Data"),
        _OPTIONAL_NOTE,
    ],
    "GU": [
        _item("surat_pengantar", "Surat Pengantar GU"),
        _item("kwitansi_asli", "Kwitansi Asli"),
        _item("bukti_pembelanjaan", "Bukti Pembelanjaan"),
        _item("sisa_pagu", "Kecukupan Sisa Pagu"),
        _item("perhitungan", "Perhitungan Penggantian"),
        _OPTIONAL_NOTE,
    ],
    "TU": [
        _item("surat_permohonan", "Surat Permohonan TU"),
        _item("rincian_biaya", "Rincian Rencana Penggunaan Dana"),
        _item("bukti_pendukung", "Bukti Pendukung"),
        _item("sisa_pagu", "Kecukupan Sisa Pagu"),
        _item("kebutuhan", "Justifikasi Kebutuhan Mendesak"),
        _OPTIONAL_NOTE,
    ],
    "LS": [
        _item("surat_perintah", "Surat Perintah Kerja / Kontrak"),
        _item("kwitansi_asli", "Kwitansi Asli"),
        _item("bukti_pelaksanaan", "Berita Acara Pelaksanaan"),
        _item("sisa_pagu", "Kecukupan Sisa Pagu"),
        _item("pelaksanaan", "Kesesuaian Pelaksanaan Pekerjaan"),
        _OPTIONAL_NOTE,
    ],
}


def get_template(jenis: str) -> list[dict]:
    template = CHECKLIST_TEMPLATES.get(jenis)
    if template is None:
        raise ValidationError(
            f"Jenis NPD tidak dikenal: {jenis}",
            details={"jenis": f"must be one of {sorted(CHECKLIST_TEMPLATES)}"},
        )
    return template


def build_checklist_results(jenis: str) -> list[dict]:
    """Initial (all unchecked) results for a jenis template."""
    return [
        {"item_id": item["id"], "checked": False, "notes": ""}
        for item in get_template(jenis)
    ]


def completion(checklist: VerificationChecklist) -> dict:
    """
    Aggregate completion for a checklist.

    Returns:
        {checked, total, required_checked, required_total, percent,
         complete, missing_required: [{"id", "label"}]}
    """
    template = CHECKLIST_TEMPLATES.get(checklist.checklist_type, [])
    checked_ids = {
        r.get("item_id") for r in (checklist.results or []) if r.get("checked")
    }
    required = [item for item in template if item["required"]]
    missing = [
        {"id": item["id"], "label": item["label"]}
        for item in required if item["id"] not in checked_ids
    ]
    checked = sum(1 for item in template if item["id"] in checked_ids)
    total = len(template)
    return {
        "checked": checked,
        "total": total,
        "required_checked": len(required) - len(missing),
        "required_total": len(required),
        "percent": round(checked * 100 / total) if total else 0,
        "complete": not missing,
        "missing_required": missing,
    }


def assert_required_checked(checklist: VerificationChecklist | None) -> None:
    """Raise ValidationError naming every unchecked required item."""
    if checklist is None:
        raise ValidationError("Checklist verifikasi belum dibuat")
    missing = completion(checklist)["missing_required"]
    if missing:
        raise ValidationError(
            "; ".join(f"{item['label']} harus dicentang" for item in missing),
            details={"missing": [item["id"] for item in missing]},
        )


def update_checklist(npd: NpdDocument, results: list, user, catatan: str | None = None) -> VerificationChecklist:
    """
    Record verifier check marks for an NPD under review.

    ``results`` entries are ``{"item_id", "checked", "notes"?}``; items not
    mentioned keep their previous value. Caller commits.
    """
    check_permission(user, "verify", "npd")
    if npd.status != "diajukan":
        raise ValidationError(
            f"Checklist hanya dapat diubah saat NPD berstatus diajukan (status={npd.status})"
        )
    if not isinstance(results, list):
        raise ValidationError("results must be a list", details={"results": "expected list"})

    checklist = npd.checklist
    template = get_template(checklist.checklist_type)
    known = {item["id"] for item in template}

    updates = {}
    for entry in results:
        if not isinstance(entry, dict) or entry.get("item_id") not in known:
            raise ValidationError(
                "Item checklist tidak dikenal",
                details={"item_id": entry.get("item_id") if isinstance(entry, dict) else entry},
            )
        updates[entry["item_id"]] = entry

    current = {r["item_id"]: r for r in checklist.results or []}
    before = {item_id: bool(r.get("checked")) for item_id, r in current.items()}
    merged = []
    for item in template:
        entry = {"item_id": item["id"], "checked": False, "notes": ""}
        entry.update(current.get(item["id"], {}))
        new = updates.get(item["id"])
        if new is not None:
            entry["checked"] = bool(new.get("checked"))
            if "notes" in new:
                entry["notes"] = str(new["notes"] or "")
        merged.append(entry)

    # Reassign so the JSON column is flagged dirty.
    checklist.results = merged
    if catatan is not None:
        checklist.catatan = catatan
    checklist.status = "completed" if completion(checklist)["complete"] else "in_progress"
    checklist.updated_at = datetime.now(timezone.utc)
    npd.touch()

    write_audit(
        entity_table="verification_checklists",
        entity_id=checklist.id,
        action="updated",
        actor_user_id=user.id,
        organization_id=npd.organization_id,
        diff={
            m["item_id"]: {"old": before.get(m["item_id"], False), "new": m["checked"]}
            for m in merged if before.get(m["item_id"], False) != m["checked"]
        },
    )
    db.session.flush()
    logger.info("Checklist for NPD %s updated by user %s (status=%s)",
                npd.document_number, user.id, checklist.status)
    return checklist
