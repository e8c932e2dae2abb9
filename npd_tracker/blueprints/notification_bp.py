"""
Notification Blueprint: the caller's in-app notifications.

A user only ever sees and marks their own notifications; another user's
notification id answers 404.
"""

import logging

from flask import Blueprint, g, jsonify, request

from npd_tracker.blueprints import commit_or_error, int_arg
from npd_tracker.middleware.permission_required import login_required
from npd_tracker.services.notification import NotificationService

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


@notification_bp.route("/notifications", methods=["GET"])
@login_required
def list_notifications():
    """List notifications, newest first. ?unread_only=true&limit=&offset="""
    unread_only = request.args.get("unread_only", "false").lower() in ("true", "1", "yes")
    limit = min(max(int_arg("limit") or 50, 1), 200)
    offset = max(int_arg("offset") or 0, 0)
    return jsonify(NotificationService.list_for_user(
        g.current_user.id, unread_only=unread_only, limit=limit, offset=offset,
    ))


@notification_bp.route("/notifications/unread-count", methods=["GET"])
@login_required
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(g.current_user.id)})


@notification_bp.route("/notifications/<int:nid>/read", methods=["PATCH", "POST"])
@login_required
def mark_read(nid):
    notif = NotificationService.mark_read(nid, g.current_user.id)
    err = commit_or_error("marking notification read")
    if err:
        return err
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
@login_required
def mark_all_read():
    count = NotificationService.mark_all_read(g.current_user.id)
    err = commit_or_error("marking all notifications read")
    if err:
        return err
    return jsonify({"marked_read": count})
