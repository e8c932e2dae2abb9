"""
RKA Blueprint: budget hierarchy (program → kegiatan → sub-kegiatan → akun).

Every mutation recomputes the parent totals inside the service layer, so
the response of a child write already reflects the new aggregates.
"""

import logging

from flask import Blueprint, g, jsonify, request

from npd_tracker.blueprints import commit_or_error, int_arg, paginate_query
from npd_tracker.middleware.permission_required import require_permission
from npd_tracker.models.rka import RkaProgram
from npd_tracker.services import rka as rka_service
from npd_tracker.services.helpers.scoped_queries import get_scoped
from npd_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

rka_bp = Blueprint("rka_bp", __name__, url_prefix="/api/v1/rka")

_LEVEL_URLS = {
    "programs": "program",
    "kegiatan": "kegiatan",
    "subkegiatan": "subkegiatan",
    "accounts": "account",
}


# ═══════════════════════════════════════════════════════════════════════════
#  READ
# ═══════════════════════════════════════════════════════════════════════════

@rka_bp.route("/tree", methods=["GET"])
@require_permission("read", "rka")
def tree():
    """Nested hierarchy with totals, optionally for one fiscal year."""
    year = int_arg("fiscal_year")
    programs = rka_service.get_tree(g.current_user, year)
    return jsonify({"fiscal_year": year, "programs": programs})


@rka_bp.route("/programs", methods=["GET"])
@require_permission("read", "rka")
def list_programs():
    q = RkaProgram.query.filter_by(organization_id=g.current_user.organization_id)
    year = int_arg("fiscal_year")
    if year:
        q = q.filter_by(fiscal_year=year)
    items, total = paginate_query(q.order_by(RkaProgram.fiscal_year.desc(), RkaProgram.kode))
    return jsonify({"items": [p.to_dict() for p in items], "total": total})


@rka_bp.route("/programs/<int:program_id>", methods=["GET"])
@require_permission("read", "rka")
def get_program(program_id):
    prog = get_scoped(RkaProgram, program_id, organization_id=g.current_user.organization_id)
    return jsonify(prog.to_dict(include_children=True))


@rka_bp.route("/accounts", methods=["GET"])
@require_permission("read", "rka")
def list_accounts():
    query = rka_service.list_accounts(
        g.current_user,
        fiscal_year=int_arg("fiscal_year"),
        subkegiatan_id=int_arg("subkegiatan_id"),
        search=request.args.get("q"),
    )
    items, total = paginate_query(query, default_limit=100, max_limit=1000)
    return jsonify({"items": [a.to_dict() for a in items], "total": total})


# ═══════════════════════════════════════════════════════════════════════════
#  CREATE
# ═══════════════════════════════════════════════════════════════════════════

@rka_bp.route("/programs", methods=["POST"])
@require_permission("create", "rka")
def create_program():
    data = request.get_json(silent=True) or {}
    prog = rka_service.create_program(g.current_user, data)
    err = commit_or_error("creating RKA program")
    if err:
        return err
    return jsonify(prog.to_dict()), 201


@rka_bp.route("/programs/<int:program_id>/kegiatan", methods=["POST"])
@require_permission("create", "rka")
def create_kegiatan(program_id):
    data = request.get_json(silent=True) or {}
    keg = rka_service.create_kegiatan(g.current_user, program_id, data)
    err = commit_or_error("creating RKA kegiatan")
    if err:
        return err
    return jsonify(keg.to_dict()), 201


@rka_bp.route("/kegiatan/<int:kegiatan_id>/subkegiatan", methods=["POST"])
@require_permission("create", "rka")
def create_subkegiatan(kegiatan_id):
    data = request.get_json(silent=True) or {}
    sub = rka_service.create_subkegiatan(g.current_user, kegiatan_id, data)
    err = commit_or_error("creating RKA sub-kegiatan")
    if err:
        return err
    return jsonify(sub.to_dict()), 201


@rka_bp.route("/subkegiatan/<int:subkegiatan_id>/accounts", methods=["POST"])
@require_permission("create", "rka")
def create_account(subkegiatan_id):
    data = request.get_json(silent=True) or {}
    if data.get("pagu_tahun") in (None, ""):
        return api_error(E.VALIDATION_REQUIRED, "pagu_tahun is required")
    acct = rka_service.create_account(g.current_user, subkegiatan_id, data)
    err = commit_or_error("creating RKA account")
    if err:
        return err
    return jsonify(acct.to_dict()), 201


# ═══════════════════════════════════════════════════════════════════════════
#  UPDATE / DELETE (any level)
# ═══════════════════════════════════════════════════════════════════════════

@rka_bp.route("/<level_url>/<int:node_id>", methods=["PATCH"])
@require_permission("update", "rka")
def update_node(level_url, node_id):
    level = _LEVEL_URLS.get(level_url)
    if level is None:
        return api_error(E.NOT_FOUND, f"Unknown RKA level: {level_url}")
    data = request.get_json(silent=True) or {}
    node = rka_service.update_node(g.current_user, level, node_id, data)
    err = commit_or_error(f"updating RKA {level}")
    if err:
        return err
    return jsonify(node.to_dict())


@rka_bp.route("/<level_url>/<int:node_id>", methods=["DELETE"])
@require_permission("delete", "rka")
def delete_node(level_url, node_id):
    level = _LEVEL_URLS.get(level_url)
    if level is None:
        return api_error(E.NOT_FOUND, f"Unknown RKA level: {level_url}")
    rka_service.delete_node(g.current_user, level, node_id)
    err = commit_or_error(f"deleting RKA {level}")
    if err:
        return err
    return jsonify({"deleted": True, "level": level, "id": node_id})
