"""
Auth Middleware: resolves the identity-provider session token to a User.

Authorization: Bearer <session JWT>  →  g.current_user, g.clerk_user_id

An invalid or missing token never aborts the request here; it leaves
g.current_user as None and lets ``login_required`` answer 401. This keeps
health checks and the webhook reachable without a session.
"""

import logging
from datetime import datetime, timedelta, timezone

import jwt as pyjwt
from flask import g, request

from npd_tracker.models import db
from npd_tracker.models.organization import User
from npd_tracker.services.jwt_service import decode_session_token

logger = logging.getLogger(__name__)

# Paths that skip session auth entirely
AUTH_SKIP_PREFIXES = (
    "/api/v1/health",
    "/api/v1/email/",
    "/api/webhooks/",
)

_LAST_LOGIN_RESOLUTION = timedelta(minutes=15)


def _touch_last_login(user: User) -> None:
    now = datetime.now(timezone.utc)
    last = user.last_login_at
    if last is not None and last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    if last is None or now - last > _LAST_LOGIN_RESOLUTION:
        user.last_login_at = now
        db.session.commit()


def init_auth_middleware(app):
    """Register session auth as a before_request hook."""

    @app.before_request
    def _session_auth():
        g.current_user = None
        g.clerk_user_id = None
        g.auth_error = None

        path = request.path
        if not path.startswith("/api/"):
            return
        for prefix in AUTH_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:].strip()
        try:
            payload = decode_session_token(token)
        except pyjwt.ExpiredSignatureError:
            g.auth_error = "Session token expired"
            return
        except pyjwt.InvalidTokenError as exc:
            logger.info("Rejected session token: %s", exc)
            g.auth_error = "Invalid session token"
            return

        g.clerk_user_id = payload["sub"]
        user = User.query.filter_by(clerk_user_id=payload["sub"]).first()
        if user is None:
            g.auth_error = "User not provisioned"
            return
        if not user.is_active:
            g.auth_error = "User is deactivated"
            return
        g.current_user = user
        _touch_last_login(user)
