"""
NPD Lifecycle Service.

Manages NPD status transitions through one guarded entry point:

    draft ──submit──▶ diajukan ──verify──▶ diverifikasi ──finalize──▶ final
      ▲                  │                      │
      └──submit── rejected ◀──────reject────────┘

``final`` is terminal. Every handler goes through ``validate_transition``
so the status rules are read from NPD_TRANSITIONS alone.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.orm.exc import StaleDataError

from npd_tracker.core.exceptions import StaleVersionError, ValidationError
from npd_tracker.models import db
from npd_tracker.models.audit import write_audit
from npd_tracker.models.npd import NPD_TRANSITIONS, NpdDocument
from npd_tracker.models.organization import User
from npd_tracker.services.checklist import assert_required_checked, completion
from npd_tracker.services.helpers.scoped_queries import get_scoped
from npd_tracker.services.notification import NotificationService
from npd_tracker.services.npd_service import check_version
from npd_tracker.services.permission import PermissionDenied, has_permission
from npd_tracker.utils.money import format_rupiah

logger = logging.getLogger(__name__)

# Any one of the listed (action, resource) pairs grants the event.
_EVENT_PERMISSION = {
    "submit": [("submit", "npd"), ("update", "npd")],
    "verify": [("verify", "npd")],
    "finalize": [("approve", "npd")],
    "reject": [("verify", "npd")],
}

# Events further restricted by role; admin passes every check.
_EVENT_ROLES = {
    "finalize": {"bendahara", "admin"},
}

_AUDIT_ACTION = {
    "submit": "submitted",
    "verify": "verified",
    "finalize": "finalized",
    "reject": "rejected",
}

VERIFIER_ROLES = ("verifikator", "bendahara")


class TransitionError(Exception):
    """Raised when an NPD transition is invalid."""

    def __init__(self, document_number: str, event: str, current: str, reason: str | None = None):
        msg = f"Tidak dapat '{event}' NPD {document_number} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.document_number = document_number
        self.event = event
        self.current_status = current
        self.reason = reason


# ═════════════════════════════════════════════════════════════════════════════
# Guards
# ═════════════════════════════════════════════════════════════════════════════

def validate_transition(npd: NpdDocument, event: str) -> dict:
    """
    Validate whether an event is valid for the current state.

    Returns:
        {"valid": bool, "from": str, "to": str|None, "reason": str|None}
    """
    rule = NPD_TRANSITIONS.get(event)
    if not rule:
        return {"valid": False, "from": npd.status, "to": None,
                "reason": f"Unknown event: {event}"}

    if npd.status not in rule["from"]:
        return {"valid": False, "from": npd.status, "to": rule["to"],
                "reason": f"Cannot '{event}' from status '{npd.status}'"}

    return {"valid": True, "from": npd.status, "to": rule["to"], "reason": None}


def can_perform(user, event: str) -> bool:
    if user is None or not getattr(user, "is_active", True):
        return False
    allowed_roles = _EVENT_ROLES.get(event)
    if allowed_roles is not None and user.role not in allowed_roles:
        return False
    return any(has_permission(user.role, action, resource)
               for action, resource in _EVENT_PERMISSION.get(event, []))


def get_available_transitions(npd: NpdDocument, user) -> list[str]:
    """Events ``user`` may run on ``npd`` right now."""
    return [
        event for event in NPD_TRANSITIONS
        if validate_transition(npd, event)["valid"] and can_perform(user, event)
    ]


# ═════════════════════════════════════════════════════════════════════════════
# Transition
# ═════════════════════════════════════════════════════════════════════════════

def transition_npd(
    npd_id: int,
    event: str,
    user: User,
    *,
    reason: str | None = None,
    expected_version=None,
) -> dict:
    """
    Execute an NPD lifecycle transition.

    Args:
        npd_id: NPD primary key (scoped to the user's organization)
        event: submit | verify | finalize | reject
        user: Acting user
        reason: Required for 'reject'
        expected_version: Version the client last saw; mismatch → 409

    Returns:
        {"npd_id", "document_number", "previous_status", "new_status", "event", "version"}

    Raises:
        NotFoundError, PermissionDenied, StaleVersionError, TransitionError, ValidationError
    """
    npd = get_scoped(NpdDocument, npd_id, organization_id=user.organization_id)

    # 1. Permission check
    if event in _EVENT_PERMISSION and not can_perform(user, event):
        action, resource = _EVENT_PERMISSION[event][0]
        raise PermissionDenied(user.id, action, resource)

    # 2. Version check
    check_version(npd, expected_version)

    # 3. Validate transition
    validation = validate_transition(npd, event)
    if not validation["valid"]:
        raise TransitionError(npd.document_number, event, npd.status, validation["reason"])

    # 4. Pre-transition checks
    if event == "submit" and not npd.lines:
        raise ValidationError(
            "NPD harus memiliki minimal satu baris rincian sebelum diajukan",
            details={"lines": "required"},
        )
    if event == "verify":
        assert_required_checked(npd.checklist)
    if event == "reject":
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Alasan penolakan wajib diisi", details={"reason": "required"})

    # 5. Execute transition
    now = datetime.now(timezone.utc)
    previous_status = npd.status
    previous_version = npd.version
    npd.status = validation["to"]
    diff = {"status": {"old": previous_status, "new": npd.status}}

    # 6. Side effects
    if event == "submit":
        npd.submitted_at = now
        npd.rejection_reason = None
        if npd.checklist is not None:
            npd.checklist.status = "in_progress" if completion(npd.checklist)["checked"] else "draft"
    elif event == "verify":
        npd.verified_by = user.id
        npd.verified_at = now
        npd.checklist.status = "completed"
        npd.checklist.verified_by = user.id
        npd.checklist.verified_at = now
    elif event == "finalize":
        npd.finalized_by = user.id
        npd.finalized_at = now
    elif event == "reject":
        old_catatan = npd.catatan or ""
        npd.rejected_by = user.id
        npd.rejected_at = now
        npd.rejection_reason = reason
        npd.verified_by = None
        npd.verified_at = None
        npd.catatan = f"DITOLAK: {reason}\n\nCatatan asli:\n{old_catatan}"
        if npd.checklist is not None:
            npd.checklist.status = "rejected"
        diff["rejection_reason"] = {"old": None, "new": reason}

    try:
        db.session.flush()
    except StaleDataError:
        raise StaleVersionError("NPD", npd_id, expected_version or previous_version, "newer") from None

    # 7. Notifications
    _notify(npd, event, user, reason)

    # 8. Audit log
    write_audit(
        entity_table="npd_documents",
        entity_id=npd.id,
        action=_AUDIT_ACTION[event],
        actor_user_id=user.id,
        organization_id=npd.organization_id,
        keterangan=reason or "",
        diff=diff,
    )
    logger.info("NPD %s %s → %s by user %s",
                npd.document_number, previous_status, npd.status, user.id)

    return {
        "npd_id": npd.id,
        "document_number": npd.document_number,
        "previous_status": previous_status,
        "new_status": npd.status,
        "event": event,
        "version": npd.version,
    }


def _notify(npd: NpdDocument, event: str, actor: User, reason: str | None) -> None:
    actor_name = actor.name or actor.email
    email_data = {
        "documentNumber": npd.document_number,
        "title": npd.title,
        "amount": format_rupiah(npd.total_amount),
        "actionUrl": f"/npd/{npd.id}",
    }
    common = {"entity_type": "npd_documents", "entity_id": npd.id}

    if event == "submit":
        NotificationService.notify_roles(
            npd.organization_id, VERIFIER_ROLES,
            exclude_user_id=actor.id,
            type="npd_submitted",
            title=f"NPD {npd.document_number} diajukan",
            message=f"{actor_name} mengajukan NPD {npd.document_number} ({npd.title}) untuk verifikasi.",
            email_template="NPDSubmitted",
            email_data={**email_data, "submitterName": actor_name},
            **common,
        )
        return

    creator = db.session.get(User, npd.created_by) if npd.created_by else None
    if creator is None or not creator.is_active:
        return

    if event == "verify":
        NotificationService.create(
            user=creator, type="npd_verified",
            title=f"NPD {npd.document_number} diverifikasi",
            message=f"NPD {npd.document_number} telah diverifikasi oleh {actor_name}.",
            email_template="NPDVerified",
            email_data={**email_data, "verifierName": actor_name},
            **common,
        )
    elif event == "finalize":
        NotificationService.create(
            user=creator, type="npd_finalized",
            title=f"NPD {npd.document_number} difinalisasi",
            message=f"NPD {npd.document_number} telah difinalisasi dan siap diterbitkan SP2D.",
            email_template="NPDFinalized",
            email_data=email_data,
            **common,
        )
    elif event == "reject":
        NotificationService.create(
            user=creator, type="npd_rejected",
            title=f"NPD {npd.document_number} ditolak",
            message=f"Alasan: {reason}",
            email_template="NPDRejected",
            email_data={**email_data, "rejectorName": actor_name, "reason": reason},
            **common,
        )
