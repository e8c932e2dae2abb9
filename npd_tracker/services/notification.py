"""
NPD Tracker
Notification Service.

Creates in-app notifications for workflow events and, when
ENABLE_EMAIL_NOTIFICATIONS is on, queues a matching email in the same
transaction. Delivery happens after commit (`flask send-emails`).

Usage:
    from npd_tracker.services.notification import NotificationService

    NotificationService.create(
        user=creator,
        type="npd_rejected",
        title="NPD ditolak",
        message=reason,
        entity_type="npd_documents",
        entity_id=npd.id,
    )
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from npd_tracker.core.exceptions import NotFoundError
from npd_tracker.models import db
from npd_tracker.models.notification import Notification
from npd_tracker.models.organization import User

logger = logging.getLogger(__name__)


class NotificationService:
    """In-app notification management."""

    @staticmethod
    def create(
        *,
        user: User,
        type: str,
        title: str,
        message: str = "",
        entity_type: str = "",
        entity_id: int | None = None,
        email_template: str | None = None,
        email_data: dict | None = None,
    ) -> Notification:
        """Create one notification for ``user``; caller commits."""
        notif = Notification(
            user_id=user.id,
            organization_id=user.organization_id,
            type=type,
            title=title,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.flush()

        if email_template and current_app.config.get("ENABLE_EMAIL_NOTIFICATIONS") and user.email:
            NotificationService._send_email(user, notif, email_template, email_data or {})
        return notif

    @staticmethod
    def _send_email(user: User, notif: Notification, template: str, data: dict) -> None:
        # Only queued here; a queueing failure never aborts the workflow.
        from npd_tracker.services.email_service import EmailService

        payload = {"recipientName": user.name or user.email, **data}
        try:
            with db.session.begin_nested():
                EmailService.queue_template(user.email, template, payload, notification_id=notif.id)
        except (SQLAlchemyError, KeyError):
            logger.exception("Email for notification %s could not be recorded", notif.id)

    @staticmethod
    def notify_roles(
        organization_id: int,
        roles: tuple[str, ...] | list[str],
        *,
        exclude_user_id: int | None = None,
        **kwargs,
    ) -> list[Notification]:
        """Notify every active user of the organization holding one of ``roles``."""
        query = User.query.filter(
            User.organization_id == organization_id,
            User.role.in_(list(roles)),
            User.is_active.is_(True),
        )
        if exclude_user_id is not None:
            query = query.filter(User.id != exclude_user_id)
        return [NotificationService.create(user=u, **kwargs) for u in query.order_by(User.id).all()]

    @staticmethod
    def list_for_user(user_id: int, unread_only: bool = False, limit: int = 50, offset: int = 0) -> dict:
        """List notifications for a user, newest first."""
        q = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            q = q.filter(Notification.is_read.is_(False))
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return {
            "items": [n.to_dict() for n in items],
            "total": total,
            "unread_count": NotificationService.unread_count(user_id),
        }

    @staticmethod
    def unread_count(user_id: int) -> int:
        return Notification.query.filter_by(user_id=user_id, is_read=False).count()

    @staticmethod
    def mark_read(notification_id: int, user_id: int) -> Notification:
        """Mark a notification read. Another user's notification is reported as not found."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or notif.user_id != user_id:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        if not notif.is_read:
            notif.mark_read()
        return notif

    @staticmethod
    def mark_all_read(user_id: int) -> int:
        """Mark every unread notification of the user as read; return the count."""
        count = Notification.query.filter_by(user_id=user_id, is_read=False).update(
            {"is_read": True, "read_at": datetime.now(timezone.utc)},
            synchronize_session="fetch",
        )
        return count
