"""
Internal email endpoint.

    POST /api/v1/email/send
    Authorization: Bearer <INTERNAL_API_KEY>

    {"to": "...", "subject"?: "...", "templateName": "NPDSubmitted",
     "templateData": {...}, "notificationId"?: "..."}

Called by trusted backend jobs, not by browser sessions, so the session
auth middleware skips this prefix and the shared key is checked here.
"""

import hmac
import logging

from email_validator import EmailNotValidError, validate_email
from flask import Blueprint, current_app, jsonify, request

from npd_tracker.blueprints import commit_or_error
from npd_tracker.services.email_service import TEMPLATE_NAMES, EmailService
from npd_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

email_bp = Blueprint("email_bp", __name__, url_prefix="/api/v1/email")


def _authorized() -> bool:
    expected = current_app.config.get("INTERNAL_API_KEY")
    header = request.headers.get("Authorization", "")
    if not expected or not header.startswith("Bearer "):
        return False
    return hmac.compare_digest(header[7:].strip().encode(), expected.encode())


@email_bp.route("/send", methods=["POST"])
def send_email():
    if not _authorized():
        return api_error(E.UNAUTHENTICATED, "Unauthorized")

    data = request.get_json(silent=True) or {}
    template_name = data.get("templateName")
    if not template_name:
        return api_error(E.VALIDATION_REQUIRED, "templateName is required")
    if template_name not in TEMPLATE_NAMES:
        return api_error(
            E.VALIDATION_INVALID, f"Unknown template: {template_name}",
            details={"allowed": list(TEMPLATE_NAMES)},
        )

    raw_to = data.get("to")
    if not raw_to:
        return api_error(E.VALIDATION_REQUIRED, "to is required")
    recipients = [raw_to] if isinstance(raw_to, str) else list(raw_to)
    normalized = []
    for address in recipients:
        try:
            normalized.append(validate_email(str(address), check_deliverability=False).normalized)
        except EmailNotValidError as e:
            return api_error(E.VALIDATION_INVALID, f"Invalid email: {e}")

    result = EmailService.send_template(
        normalized,
        template_name,
        data.get("templateData") or {},
        subject=data.get("subject"),
        notification_id=data.get("notificationId"),
    )
    err = commit_or_error("recording email log")
    if err:
        return err

    if not result["success"]:
        return jsonify(result), 500
    return jsonify(result), 200
