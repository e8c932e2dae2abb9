"""
NPD Tracker
Notification domain model.

Models:
    - Notification: in-app notification for one user, with read tracking
    - EmailLog: outbox row for one email; queued as pending inside the
      workflow transaction, delivered later (sent / failed / logged)
"""

from datetime import datetime, timezone

from npd_tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {
    "npd_submitted", "npd_verified", "npd_finalized", "npd_rejected",
    "sp2d_created", "budget_alert", "system",
}
EMAIL_STATUSES = {"pending", "sent", "failed", "logged"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event; only the recipient may mark it read.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("idx_notification_user_read", "user_id", "is_read"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    type = db.Column(db.String(30), nullable=False, default="system")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    # Link to source entity
    entity_type = db.Column(db.String(40), default="", comment="npd_documents | sp2d_refs | …")
    entity_id = db.Column(db.Integer, nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"


class EmailLog(db.Model):
    """Delivery record for every email the service attempted (or only logged)."""

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False)
    subject = db.Column(db.String(500), nullable=False)
    template = db.Column(db.String(50), default="")
    html = db.Column(db.Text, nullable=True, comment="rendered body, kept until delivery")
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    attempts = db.Column(db.Integer, default=0)
    message_id = db.Column(db.String(120), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    notification_id = db.Column(db.String(64), nullable=True, comment="caller-supplied notification reference")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_email": self.recipient_email,
            "subject": self.subject,
            "template": self.template,
            "status": self.status,
            "attempts": self.attempts,
            "message_id": self.message_id,
            "error_message": self.error_message,
            "notification_id": self.notification_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }
