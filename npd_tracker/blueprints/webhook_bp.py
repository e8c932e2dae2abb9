"""
Identity-provider webhook.

    POST /api/webhooks/clerk

Signed Svix-style; verification runs against the raw body before any
JSON parsing. Exempt from session auth and rate limiting.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from npd_tracker.blueprints import commit_or_error
from npd_tracker.services.webhook_sync import WebhookVerificationError, handle_event, verify_webhook
from npd_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook_bp", __name__, url_prefix="/api/webhooks")


@webhook_bp.route("/clerk", methods=["POST"])
def clerk_webhook():
    secret = current_app.config.get("CLERK_WEBHOOK_SIGNING_SECRET")
    if not secret:
        logger.error("CLERK_WEBHOOK_SIGNING_SECRET is not configured")
        return api_error(E.INTERNAL, "Webhook secret not configured")

    body = request.get_data()
    try:
        event = verify_webhook(secret, request.headers, body)
    except WebhookVerificationError as exc:
        logger.warning("Webhook verification failed: %s", exc)
        return api_error(E.VALIDATION_INVALID, "Invalid webhook signature")

    result = handle_event(event)
    err = commit_or_error(f"syncing webhook {event.get('type')}")
    if err:
        return err
    return jsonify({"received": True, **result})
