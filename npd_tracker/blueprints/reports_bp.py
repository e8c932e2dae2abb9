"""
Reports Blueprint.

Endpoints:
    GET  /api/v1/reports/realisasi?tahun=2025[&bulan=3]  — realization per account
    GET  /api/v1/reports/npd-summary?tahun=2025          — NPD count/amount per status
"""

from flask import Blueprint, g, jsonify

from npd_tracker.blueprints import int_arg
from npd_tracker.middleware.permission_required import require_permission
from npd_tracker.services import reports as reports_service
from npd_tracker.utils.errors import E, api_error

reports_bp = Blueprint("reports_bp", __name__, url_prefix="/api/v1/reports")


@reports_bp.route("/realisasi", methods=["GET"])
@require_permission("read", "reports")
def realisasi():
    tahun = int_arg("tahun")
    if tahun is None:
        return api_error(E.VALIDATION_REQUIRED, "tahun is required")
    return jsonify(reports_service.realisasi_report(g.current_user, tahun, int_arg("bulan")))


@reports_bp.route("/npd-summary", methods=["GET"])
@require_permission("read", "reports")
def npd_summary():
    tahun = int_arg("tahun")
    if tahun is None:
        return api_error(E.VALIDATION_REQUIRED, "tahun is required")
    return jsonify(reports_service.npd_summary(g.current_user, tahun))
