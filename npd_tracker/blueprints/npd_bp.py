"""
NPD Blueprint: Nota Pencairan Dana documents.

Endpoints:
    GET    /api/v1/npd                               — list (filters + pagination)
    POST   /api/v1/npd                               — create draft
    GET    /api/v1/npd/<id>                          — detail with lines, checklist, SP2D, attachments
    PATCH  /api/v1/npd/<id>                          — edit header (draft / rejected)
    DELETE /api/v1/npd/<id>                          — delete draft
    POST   /api/v1/npd/<id>/lines                    — add line
    PATCH  /api/v1/npd/<id>/lines/<line_id>          — edit line
    DELETE /api/v1/npd/<id>/lines/<line_id>          — remove line
    GET    /api/v1/npd/<id>/transitions              — events available to the caller
    POST   /api/v1/npd/<id>/transitions/<event>      — submit | verify | finalize | reject
    GET    /api/v1/npd/<id>/checklist                — checklist + completion
    PUT    /api/v1/npd/<id>/checklist                — record verifier check marks
    GET    /api/v1/npd/<id>/attachments              — list attachments
    POST   /api/v1/npd/<id>/attachments              — reserve upload (multipart)
    POST   /api/v1/attachments/<id>/confirm          — confirm upload
    GET    /api/v1/attachments/<id>/download         — download bytes
    DELETE /api/v1/attachments/<id>                  — delete attachment
"""

import logging

from flask import Blueprint, g, jsonify, request, send_file

from npd_tracker.blueprints import commit_or_error, expected_version, int_arg, paginate_query
from npd_tracker.middleware.permission_required import login_required, require_permission
from npd_tracker.models.npd import NPD_TRANSITIONS
from npd_tracker.services import attachment as attachment_service
from npd_tracker.services import npd_service
from npd_tracker.services.checklist import completion, get_template, update_checklist
from npd_tracker.services.npd_workflow import get_available_transitions, transition_npd
from npd_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

npd_bp = Blueprint("npd_bp", __name__, url_prefix="/api/v1")


def _detail(npd) -> dict:
    d = npd.to_dict(include_lines=True)
    checklist = npd.checklist
    if checklist is not None:
        d["checklist"] = {**checklist.to_dict(), "completion": completion(checklist)}
    else:
        d["checklist"] = None
    d["sp2d"] = [s.to_dict() for s in npd.sp2d_refs]
    d["attachments"] = [a.to_dict() for a in npd.attachments]
    d["available_transitions"] = get_available_transitions(npd, g.current_user)
    return d


# ═══════════════════════════════════════════════════════════════════════════
#  NPD CRUD
# ═══════════════════════════════════════════════════════════════════════════

@npd_bp.route("/npd", methods=["GET"])
@require_permission("read", "npd")
def list_npd():
    """List NPDs of the caller's organization."""
    query = npd_service.list_npds(
        g.current_user,
        status=request.args.get("status"),
        jenis=request.args.get("jenis"),
        tahun=int_arg("tahun"),
        subkegiatan_id=int_arg("subkegiatan_id"),
        search=request.args.get("q"),
    )
    items, total = paginate_query(query)
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@npd_bp.route("/npd", methods=["POST"])
@require_permission("create", "npd")
def create_npd():
    data = request.get_json(silent=True) or {}
    if not data.get("subkegiatan_id"):
        return api_error(E.VALIDATION_REQUIRED, "subkegiatan_id is required")

    npd = npd_service.create_npd(g.current_user, data)
    err = commit_or_error("creating NPD")
    if err:
        return err
    return jsonify(_detail(npd)), 201


@npd_bp.route("/npd/<int:npd_id>", methods=["GET"])
@require_permission("read", "npd")
def get_npd(npd_id):
    npd = npd_service.get_npd(g.current_user, npd_id)
    return jsonify(_detail(npd))


@npd_bp.route("/npd/<int:npd_id>", methods=["PATCH"])
@require_permission("update", "npd")
def update_npd(npd_id):
    data = request.get_json(silent=True) or {}
    npd = npd_service.update_npd(g.current_user, npd_id, data, expected_version(data))
    err = commit_or_error("updating NPD")
    if err:
        return err
    return jsonify(_detail(npd))


@npd_bp.route("/npd/<int:npd_id>", methods=["DELETE"])
@login_required
def delete_npd(npd_id):
    """Creator (with update npd) or any holder of delete npd; draft only."""
    blob_keys = npd_service.delete_npd(g.current_user, npd_id)
    err = commit_or_error("deleting NPD")
    if err:
        return err
    attachment_service.remove_blobs(blob_keys)
    return jsonify({"deleted": True, "id": npd_id})


# ═══════════════════════════════════════════════════════════════════════════
#  LINE ITEMS
# ═══════════════════════════════════════════════════════════════════════════

@npd_bp.route("/npd/<int:npd_id>/lines", methods=["POST"])
@require_permission("update", "npd")
def add_line(npd_id):
    data = request.get_json(silent=True) or {}
    if not data.get("account_id"):
        return api_error(E.VALIDATION_REQUIRED, "account_id is required")

    line = npd_service.add_line(g.current_user, npd_id, data, expected_version(data))
    err = commit_or_error("adding NPD line")
    if err:
        return err
    return jsonify({"line": line.to_dict(), "npd": line.npd.to_dict()}), 201


@npd_bp.route("/npd/<int:npd_id>/lines/<int:line_id>", methods=["PATCH"])
@require_permission("update", "npd")
def update_line(npd_id, line_id):
    data = request.get_json(silent=True) or {}
    line = npd_service.update_line(g.current_user, npd_id, line_id, data, expected_version(data))
    err = commit_or_error("updating NPD line")
    if err:
        return err
    return jsonify({"line": line.to_dict(), "npd": line.npd.to_dict()})


@npd_bp.route("/npd/<int:npd_id>/lines/<int:line_id>", methods=["DELETE"])
@require_permission("update", "npd")
def remove_line(npd_id, line_id):
    npd_service.remove_line(g.current_user, npd_id, line_id, expected_version())
    err = commit_or_error("removing NPD line")
    if err:
        return err
    return jsonify({"deleted": True, "id": line_id})


# ═══════════════════════════════════════════════════════════════════════════
#  WORKFLOW
# ═══════════════════════════════════════════════════════════════════════════

@npd_bp.route("/npd/<int:npd_id>/transitions", methods=["GET"])
@require_permission("read", "npd")
def available_transitions(npd_id):
    npd = npd_service.get_npd(g.current_user, npd_id)
    return jsonify({
        "npd_id": npd.id,
        "status": npd.status,
        "available": get_available_transitions(npd, g.current_user),
    })


@npd_bp.route("/npd/<int:npd_id>/transitions/<event>", methods=["POST"])
@login_required
def run_transition(npd_id, event):
    """Per-event permissions are enforced by the workflow service."""
    if event not in NPD_TRANSITIONS:
        return api_error(
            E.VALIDATION_INVALID, f"Unknown event: {event}",
            details={"allowed": sorted(NPD_TRANSITIONS)},
        )
    data = request.get_json(silent=True) or {}
    result = transition_npd(
        npd_id, event, g.current_user,
        reason=data.get("reason"),
        expected_version=expected_version(data),
    )
    err = commit_or_error(f"running NPD transition {event}")
    if err:
        return err
    logger.info("NPD %s: %s → %s by user %s",
                result["document_number"], result["previous_status"],
                result["new_status"], g.current_user.id)
    return jsonify(result)


# ═══════════════════════════════════════════════════════════════════════════
#  CHECKLIST
# ═══════════════════════════════════════════════════════════════════════════

@npd_bp.route("/npd/<int:npd_id>/checklist", methods=["GET"])
@require_permission("read", "npd")
def get_checklist(npd_id):
    npd = npd_service.get_npd(g.current_user, npd_id)
    checklist = npd.checklist
    if checklist is None:
        return api_error(E.NOT_FOUND, "Checklist not found")
    return jsonify({
        **checklist.to_dict(),
        "template": get_template(checklist.checklist_type),
        "completion": completion(checklist),
    })


@npd_bp.route("/npd/<int:npd_id>/checklist", methods=["PUT"])
@require_permission("verify", "npd")
def put_checklist(npd_id):
    data = request.get_json(silent=True) or {}
    if "results" not in data:
        return api_error(E.VALIDATION_REQUIRED, "results is required")

    npd = npd_service.get_npd(g.current_user, npd_id)
    npd_service.check_version(npd, expected_version(data))
    checklist = update_checklist(npd, data["results"], g.current_user, data.get("catatan"))
    err = commit_or_error("updating checklist")
    if err:
        return err
    return jsonify({**checklist.to_dict(), "completion": completion(checklist), "npd_version": npd.version})


# ═══════════════════════════════════════════════════════════════════════════
#  ATTACHMENTS
# ═══════════════════════════════════════════════════════════════════════════

@npd_bp.route("/npd/<int:npd_id>/attachments", methods=["GET"])
@require_permission("read", "npd")
def list_attachments(npd_id):
    items = attachment_service.list_attachments(g.current_user, npd_id)
    return jsonify({"items": [a.to_dict() for a in items], "total": len(items)})


@npd_bp.route("/npd/<int:npd_id>/attachments", methods=["POST"])
@require_permission("update", "npd")
def upload_attachment(npd_id):
    """Reserve an upload. The record stays ``pending`` until confirmed."""
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return api_error(E.VALIDATION_REQUIRED, "file is required")

    attachment = attachment_service.reserve_upload(
        g.current_user, npd_id,
        filename=upload.filename,
        mime_type=upload.mimetype or "",
        data=upload.read(),
        tipe_file=request.form.get("tipe_file"),
    )
    storage_key = attachment.storage_key
    err = commit_or_error("reserving attachment")
    if err:
        attachment_service.remove_blob(storage_key)
        return err
    return jsonify(attachment.to_dict()), 201


@npd_bp.route("/attachments/<int:attachment_id>/confirm", methods=["POST"])
@require_permission("update", "npd")
def confirm_attachment(attachment_id):
    attachment = attachment_service.confirm_upload(g.current_user, attachment_id)
    err = commit_or_error("confirming attachment")
    if err:
        return err
    return jsonify(attachment.to_dict())


@npd_bp.route("/attachments/<int:attachment_id>/download", methods=["GET"])
@require_permission("read", "npd")
def download_attachment(attachment_id):
    attachment, path = attachment_service.open_attachment(g.current_user, attachment_id)
    return send_file(
        path,
        mimetype=attachment.mime_type,
        as_attachment=True,
        download_name=attachment.nama_file,
    )


@npd_bp.route("/attachments/<int:attachment_id>", methods=["DELETE"])
@require_permission("update", "npd")
def delete_attachment(attachment_id):
    storage_key = attachment_service.delete_attachment(g.current_user, attachment_id)
    err = commit_or_error("deleting attachment")
    if err:
        return err
    attachment_service.remove_blob(storage_key)
    return jsonify({"deleted": True, "id": attachment_id})
