"""
NPD Tracker
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for every mutation.
"""

import json
from datetime import UTC, datetime

from npd_tracker.models import db


# ── Local coercion ───────────────────────────────────────────────────────────

def _as_int(value):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TABLES = {
    "organizations", "users",
    "rka_programs", "rka_kegiatans", "rka_subkegiatans", "rka_accounts",
    "npd_documents", "npd_lines", "verification_checklists", "attachments",
    "sp2d_refs",
}

AUDIT_ACTIONS = {
    # NPD lifecycle
    "submitted",
    "verified",
    "finalized",
    "rejected",
    # RKA import
    "imported_rka",
    "import_rka_failed",
    # Identity sync / admin
    "synced",
    "role_changed",
    "membership_changed",
    # Generic
    "created",
    "updated",
    "deleted",
}


class AuditLog(db.Model):
    """
    Append-only audit trail.

    One row per action.  ``diff_json`` carries a before/after snapshot
    (``{field: {"old", "new"}}``) or the action payload.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_table", "entity_id"),
        db.Index("idx_audit_org_ts", "organization_id", "timestamp"),
        db.Index("idx_audit_action", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="NULL for system / webhook entries",
    )

    # Polymorphic entity reference
    entity_table = db.Column(db.String(40), nullable=False, comment="npd_documents | sp2d_refs | …")
    entity_id = db.Column(db.String(64), nullable=False)

    action = db.Column(db.String(40), nullable=False)
    keterangan = db.Column(db.Text, default="")

    # Change payload
    diff_json = db.Column(db.Text, default="{}")

    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "actor_user_id": self.actor_user_id,
            "entity_table": self.entity_table,
            "entity_id": self.entity_id,
            "action": self.action,
            "keterangan": self.keterangan,
            "diff": self.diff,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_table}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_table: str,
    entity_id,
    action: str,
    actor_user_id: int | None = None,
    organization_id: int | None = None,
    keterangan: str = "",
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control: if the surrounding mutation rolls back, so
    does its audit entry, and an audit failure aborts the mutation.

    Returns the (flushed) AuditLog instance.
    """
    ip_address = None
    user_agent = None
    from flask import g, has_request_context, request
    if has_request_context():
        ip_address = request.remote_addr
        user_agent = (request.user_agent.string or "")[:500] or None
        current = getattr(g, "current_user", None)
        if actor_user_id is None and current is not None:
            actor_user_id = current.id
        if organization_id is None and current is not None:
            organization_id = current.organization_id

    log = AuditLog(
        organization_id=_as_int(organization_id),
        actor_user_id=_as_int(actor_user_id),
        entity_table=entity_table,
        entity_id=str(entity_id),
        action=action,
        keterangan=keterangan or "",
        diff_json=json.dumps(diff or {}, default=str),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.add(log)
    db.session.flush()
    return log
