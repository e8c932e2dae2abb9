"""
Audit Blueprint.

Endpoints:
    GET  /api/v1/audit-logs               — list / filter audit logs (admin)
    GET  /api/v1/audit-logs/<int:log_id>  — single audit entry (admin)

The audit trail is append-only: there are no write routes here.
"""

from flask import Blueprint, g, jsonify, request

from npd_tracker.middleware.permission_required import require_permission
from npd_tracker.models.audit import AuditLog
from npd_tracker.utils.errors import E, api_error

audit_bp = Blueprint("audit_bp", __name__, url_prefix="/api/v1")


# ── List / filter ────────────────────────────────────────────────────────────

@audit_bp.route("/audit-logs", methods=["GET"])
@require_permission("read", "audit_logs")
def list_audit_logs():
    """
    Return paginated audit logs of the caller's organization.

    Query params:
        entity_table — filter by table name (npd_documents, sp2d_refs, …)
        entity_id    — filter by entity PK
        action       — filter by action string (prefix match)
        actor        — filter by actor user id
        page         — page number (default 1)
        per_page     — items per page (default 50, max 200)
    """
    q = AuditLog.query.filter(AuditLog.organization_id == g.current_user.organization_id)

    # ── Filters ──────────────────────────────────────────────────────────
    entity_table = request.args.get("entity_table")
    if entity_table:
        q = q.filter(AuditLog.entity_table == entity_table)

    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action.startswith(action))

    actor = request.args.get("actor", type=int)
    if actor is not None:
        q = q.filter(AuditLog.actor_user_id == actor)

    # ── Ordering ─────────────────────────────────────────────────────────
    q = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())

    # ── Pagination ───────────────────────────────────────────────────────
    page = max(1, request.args.get("page", 1, type=int))
    per_page = min(200, max(1, request.args.get("per_page", 50, type=int)))

    paginated = q.paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        "audit_logs": [log.to_dict() for log in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "per_page": paginated.per_page,
        "pages": paginated.pages,
    })


@audit_bp.route("/audit-logs/<int:log_id>", methods=["GET"])
@require_permission("read", "audit_logs")
def get_audit_log(log_id):
    log = AuditLog.query.filter_by(id=log_id, organization_id=g.current_user.organization_id).first()
    if log is None:
        return api_error(E.NOT_FOUND, "Audit log not found")
    return jsonify(log.to_dict())
