"""
NPD Tracker
Email Service.

Template-based transactional email delivered through the Resend HTTP API.
When RESEND_API_KEY is not configured, emails are logged but not sent
(dev/test mode).

Delivery:
    - Workflow notifications are queued as pending EmailLog rows in the
      caller's transaction and sent after commit by `flask send-emails`
    - Up to EMAIL_MAX_ATTEMPTS attempts (default 3)
    - Exponential backoff between attempts: EMAIL_BACKOFF_BASE_MS * 2**attempt
    - Every outcome is recorded in EmailLog

Configuration (env vars):
    RESEND_API_KEY  Resend API key (default: None → log-only mode)
    FROM_EMAIL      Sender address (default: noreply@npd-tracker.go.id)
    FROM_NAME       Sender display name (default: NPD Tracker)
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

import requests
from flask import current_app

from npd_tracker.models import db
from npd_tracker.models.notification import EmailLog

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """Raised by the transport when Resend rejects or cannot receive a message."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: #1e3a8a; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">NPD Tracker</h2>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        {body}
        <p style="margin-top: 24px;">
            <a href="{action_url}" style="background: #2563eb; color: white; padding: 10px 18px;
               border-radius: 6px; text-decoration: none;">Lihat Detail</a>
        </p>
    </div>
    <div style="background: #f1f5f9; padding: 12px 24px; border-radius: 0 0 8px 8px;
                border: 1px solid #e2e8f0; border-top: none; text-align: center;">
        <p style="color: #94a3b8; font-size: 12px; margin: 0;">
            Email ini dikirim otomatis oleh NPD Tracker. Mohon tidak membalas email ini.
        </p>
    </div>
</div>
"""


def _layout(body: str) -> str:
    return _LAYOUT.replace("{body}", body)


_TEMPLATES: dict[str, dict[str, str]] = {
    "NPDSubmitted": {
        "subject": "NPD {documentNumber} diajukan untuk verifikasi",
        "html": _layout(
            "<p>Yth. {recipientName},</p>"
            "<p>NPD <strong>{documentNumber}</strong> ({title}) telah diajukan oleh "
            "{submitterName} dengan total <strong>{amount}</strong> dan menunggu verifikasi Anda.</p>"
        ),
    },
    "NPDVerified": {
        "subject": "NPD {documentNumber} telah diverifikasi",
        "html": _layout(
            "<p>Yth. {recipientName},</p>"
            "<p>NPD <strong>{documentNumber}</strong> ({title}) telah diverifikasi oleh "
            "{verifierName} dan menunggu finalisasi bendahara.</p>"
        ),
    },
    "NPDRejected": {
        "subject": "NPD {documentNumber} ditolak",
        "html": _layout(
            "<p>Yth. {recipientName},</p>"
            "<p>NPD <strong>{documentNumber}</strong> ({title}) ditolak oleh {rejectorName}.</p>"
            "<p><strong>Alasan:</strong> {reason}</p>"
            "<p>Silakan perbaiki dokumen dan ajukan kembali.</p>"
        ),
    },
    "NPDFinalized": {
        "subject": "NPD {documentNumber} telah difinalisasi",
        "html": _layout(
            "<p>Yth. {recipientName},</p>"
            "<p>NPD <strong>{documentNumber}</strong> ({title}) telah difinalisasi dan siap "
            "diterbitkan SP2D.</p>"
        ),
    },
    "SP2DCreated": {
        "subject": "SP2D {sp2dNumber} diterbitkan untuk NPD {documentNumber}",
        "html": _layout(
            "<p>Yth. {recipientName},</p>"
            "<p>SP2D <strong>{sp2dNumber}</strong> sebesar <strong>{amount}</strong> telah "
            "diterbitkan untuk NPD {documentNumber} pada {date}.</p>"
        ),
    },
    "BudgetAlert": {
        "subject": "Peringatan anggaran: {accountCode} mencapai {utilization}%",
        "html": _layout(
            "<p>Yth. {recipientName},</p>"
            "<p>Realisasi akun <strong>{accountCode}</strong> ({accountName}) telah mencapai "
            "<strong>{utilization}%</strong> dari pagu. Sisa pagu: {remaining}.</p>"
        ),
    },
}

TEMPLATE_NAMES = tuple(_TEMPLATES)


class _SafeDict(dict):
    """dict that returns '' for missing keys (safe for str.format_map)."""

    def __missing__(self, key: str) -> str:
        return ""


def render_template(template_name: str, data: dict[str, Any] | None = None,
                    subject: str | None = None) -> tuple[str, str]:
    """Render (subject, html) for a registered template. KeyError if unknown."""
    tpl = _TEMPLATES[template_name]
    ctx = _SafeDict(data or {})
    return (subject or tpl["subject"].format_map(ctx)), tpl["html"].format_map(ctx)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Service
# ═══════════════════════════════════════════════════════════════════════════

class EmailService:
    """Email sending service with Resend transport and retry/backoff."""

    # Injected in tests to avoid real sleeping.
    sleep: Callable[[float], None] = staticmethod(time.sleep)

    @staticmethod
    def is_configured() -> bool:
        """Check whether the Resend API key is present."""
        try:
            return bool(current_app.config.get("RESEND_API_KEY"))
        except RuntimeError:
            return False

    @staticmethod
    def _post_to_resend(to: list[str], subject: str, html: str) -> str:
        """Single delivery attempt. Returns the provider message id."""
        cfg = current_app.config
        try:
            resp = requests.post(
                cfg.get("RESEND_API_URL", "https://api.resend.com/emails"),
                headers={
                    "Authorization": f"Bearer {cfg['RESEND_API_KEY']}",
                    "Content-Type": "application/json",
                },
                json={
                    "from": f"{cfg.get('FROM_NAME', 'NPD Tracker')} <{cfg.get('FROM_EMAIL')}>",
                    "to": to,
                    "subject": subject,
                    "html": html,
                },
                timeout=10,
            )
        except requests.RequestException as exc:
            raise EmailDeliveryError(f"Resend request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise EmailDeliveryError(
                f"Resend API error {resp.status_code}: {resp.text[:300]}",
                status_code=resp.status_code,
            )
        try:
            return (resp.json() or {}).get("id", "")
        except ValueError:
            return ""

    @classmethod
    def _deliver(cls, log: EmailLog, recipients: list[str], subject: str, html: str) -> dict:
        """Run the attempt loop for one EmailLog row and record the outcome on it."""
        if not cls.is_configured():
            logger.info("[EMAIL-DEV] To: %s | Subject: %s", recipients, subject)
            log.status = "logged"
            log.html = None
            db.session.add(log)
            db.session.flush()
            return {"success": True, "messageId": f"logged-{log.id}", "attempts": 0}

        max_attempts = int(current_app.config.get("EMAIL_MAX_ATTEMPTS", 3))
        base_ms = int(current_app.config.get("EMAIL_BACKOFF_BASE_MS", 1000))
        last_error = None
        attempts = 0
        message_id = None

        for attempt in range(max_attempts):
            attempts = attempt + 1
            try:
                message_id = cls._post_to_resend(recipients, subject, html)
                break
            except EmailDeliveryError as exc:
                last_error = str(exc)
                logger.warning("Email attempt %d/%d to %s failed: %s",
                               attempts, max_attempts, recipients, exc)
                if attempts < max_attempts:
                    cls.sleep(base_ms * (2 ** attempt) / 1000.0)
        log.attempts = (log.attempts or 0) + attempts
        if message_id is not None:
            log.status = "sent"
            log.message_id = message_id
            log.sent_at = datetime.now(timezone.utc)
            log.html = None
            result = {"success": True, "messageId": message_id}
            logger.info("Email sent to %s: %s (attempts=%d)", recipients, subject, attempts)
        else:
            log.status = "failed"
            log.error_message = last_error
            result = {"success": False, "error": last_error}
            logger.error("Email to %s failed after %d attempts: %s", recipients, attempts, last_error)

        db.session.add(log)
        db.session.flush()
        result["attempts"] = attempts
        return result

    @classmethod
    def send(
        cls,
        to: str | list[str],
        subject: str,
        html: str,
        *,
        template: str = "",
        notification_id: str | int | None = None,
    ) -> dict:
        """
        Send an email now, with retries. Used by the internal send endpoint
        and the outbox worker; workflow code queues instead.

        Returns:
            {"success", "messageId" | "error", "attempts", "notificationId"}
        """
        recipients = [to] if isinstance(to, str) else list(to)
        log = EmailLog(
            recipient_email=", ".join(recipients)[:255],
            subject=subject[:500],
            template=template,
            notification_id=str(notification_id) if notification_id is not None else None,
        )
        result = cls._deliver(log, recipients, subject, html)
        result["notificationId"] = notification_id
        return result

    @classmethod
    def send_template(
        cls,
        to: str | list[str],
        template_name: str,
        data: dict[str, Any] | None = None,
        *,
        subject: str | None = None,
        notification_id: str | int | None = None,
    ) -> dict:
        """Render a registered template and send it. KeyError on unknown template."""
        rendered_subject, html = render_template(template_name, data, subject)
        return cls.send(
            to, rendered_subject, html,
            template=template_name, notification_id=notification_id,
        )

    @staticmethod
    def queue_template(
        to: str,
        template_name: str,
        data: dict[str, Any] | None = None,
        *,
        notification_id: str | int | None = None,
    ) -> EmailLog:
        """
        Render a template into a ``pending`` outbox row; caller commits.

        The row shares the caller's transaction, so a rolled-back workflow
        never leaves mail behind. ``flask send-emails`` delivers it.
        """
        subject, html = render_template(template_name, data)
        log = EmailLog(
            recipient_email=to[:255],
            subject=subject[:500],
            template=template_name,
            html=html,
            status="pending",
            attempts=0,
            notification_id=str(notification_id) if notification_id is not None else None,
        )
        db.session.add(log)
        db.session.flush()
        return log

    @classmethod
    def deliver_pending(cls, limit: int = 100) -> dict:
        """
        Deliver queued outbox rows, oldest first, committing after each one.

        Returns counts per outcome: {"sent", "failed", "logged"}.
        """
        pending = (
            EmailLog.query.filter_by(status="pending")
            .order_by(EmailLog.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )
        counts = {"sent": 0, "failed": 0, "logged": 0}
        for log in pending:
            recipients = [r.strip() for r in log.recipient_email.split(",") if r.strip()]
            cls._deliver(log, recipients, log.subject, log.html or "")
            counts[log.status] += 1
            db.session.commit()
        if pending:
            logger.info("Outbox run: %s", counts)
        return counts
