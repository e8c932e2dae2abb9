"""
RKA CSV import Blueprint.

Endpoints:
    GET  /api/v1/rka/import/template        — CSV template download
    POST /api/v1/rka/import/validate        — dry run, nothing written
    POST /api/v1/rka/import                 — validate + import (all-or-nothing)
    GET  /api/v1/rka/import/progress        — recent imports
    GET  /api/v1/rka/import/progress/<id>   — one import's progress

Upload as multipart (``file`` + ``fiscal_year``) or JSON
``{"content": "<csv text>", "fiscal_year": 2025, "filename": "..."}``.
Gated by ENABLE_CSV_IMPORT.
"""

import logging

from flask import Blueprint, Response, g, jsonify, request

from npd_tracker.blueprints import commit_or_error, int_arg
from npd_tracker.middleware.permission_required import require_feature, require_permission
from npd_tracker.services import rka_import
from npd_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

rka_import_bp = Blueprint("rka_import_bp", __name__, url_prefix="/api/v1/rka/import")


def _read_upload():
    """Return (content, fiscal_year, filename, error_response)."""
    upload = request.files.get("file")
    if upload is not None:
        return upload.read(), request.form.get("fiscal_year"), upload.filename or "", None

    data = request.get_json(silent=True) or {}
    content = data.get("content")
    if not content:
        return None, None, None, api_error(E.VALIDATION_REQUIRED, "file or content is required")
    return content, data.get("fiscal_year"), data.get("filename") or "", None


@rka_import_bp.route("/template", methods=["GET"])
@require_permission("read", "rka")
def template():
    return Response(
        "\ufeff" + rka_import.generate_csv_template(),
        mimetype="text/csv; charset=utf-8",
        headers={"Content-Disposition": "attachment; filename=template_rka.csv"},
    )


@rka_import_bp.route("/validate", methods=["POST"])
@require_feature("ENABLE_CSV_IMPORT")
@require_permission("create", "rka")
def validate():
    content, year, _filename, err = _read_upload()
    if err:
        return err
    if year in (None, ""):
        return api_error(E.VALIDATION_REQUIRED, "fiscal_year is required")
    return jsonify(rka_import.validate_import(g.current_user, content, year))


@rka_import_bp.route("", methods=["POST"])
@require_feature("ENABLE_CSV_IMPORT")
@require_permission("create", "rka")
def run_import():
    """Errors surface as 422 with the per-row list (see ImportValidationError)."""
    content, year, filename, err = _read_upload()
    if err:
        return err
    if year in (None, ""):
        return api_error(E.VALIDATION_REQUIRED, "fiscal_year is required")

    result = rka_import.execute_import(g.current_user, content, year, filename=filename)
    err = commit_or_error("committing RKA import")
    if err:
        return err
    return jsonify(result), 201


@rka_import_bp.route("/progress", methods=["GET"])
@require_permission("read", "rka")
def list_progress():
    limit = int_arg("limit") or 20
    items = rka_import.list_progress(g.current_user, limit=min(max(limit, 1), 100))
    return jsonify({"items": [p.to_dict() for p in items], "total": len(items)})


@rka_import_bp.route("/progress/<int:progress_id>", methods=["GET"])
@require_permission("read", "rka")
def get_progress(progress_id):
    return jsonify(rka_import.get_progress(g.current_user, progress_id).to_dict())
