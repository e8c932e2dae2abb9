"""
SP2D Blueprint: disbursement orders for final NPDs.

Creating an SP2D distributes ``nilai_cair`` over the NPD lines and books
the shares as realization on each account, all in one commit.
"""

import logging

from flask import Blueprint, g, jsonify, request

from npd_tracker.blueprints import commit_or_error, int_arg, paginate_query
from npd_tracker.middleware.permission_required import require_permission
from npd_tracker.services import sp2d as sp2d_service
from npd_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

sp2d_bp = Blueprint("sp2d_bp", __name__, url_prefix="/api/v1")


@sp2d_bp.route("/sp2d", methods=["GET"])
@require_permission("read", "sp2d")
def list_sp2d():
    query = sp2d_service.list_sp2d(
        g.current_user,
        npd_id=int_arg("npd_id"),
        date_from=request.args.get("from"),
        date_to=request.args.get("to"),
        search=request.args.get("q"),
    )
    items, total = paginate_query(query)
    return jsonify({"items": [s.to_dict() for s in items], "total": total})


@sp2d_bp.route("/sp2d/<int:sp2d_id>", methods=["GET"])
@require_permission("read", "sp2d")
def get_sp2d(sp2d_id):
    sp2d = sp2d_service.get_sp2d(g.current_user, sp2d_id)
    return jsonify(sp2d.to_dict(include_realizations=True))


@sp2d_bp.route("/npd/<int:npd_id>/sp2d", methods=["POST"])
@require_permission("create", "sp2d")
def create_sp2d(npd_id):
    data = request.get_json(silent=True) or {}
    if data.get("nilai_cair") in (None, ""):
        return api_error(E.VALIDATION_REQUIRED, "nilai_cair is required")

    sp2d = sp2d_service.create_sp2d(npd_id, data, g.current_user)
    err = commit_or_error("creating SP2D")
    if err:
        return err
    return jsonify(sp2d.to_dict(include_realizations=True)), 201


@sp2d_bp.route("/sp2d/<int:sp2d_id>", methods=["DELETE"])
@require_permission("delete", "sp2d")
def delete_sp2d(sp2d_id):
    """Corrective deletion; realization is reversed on every account."""
    sp2d_service.delete_sp2d(sp2d_id, g.current_user)
    err = commit_or_error("deleting SP2D")
    if err:
        return err
    return jsonify({"deleted": True, "id": sp2d_id})
