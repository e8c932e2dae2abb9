"""
Permission Decorators: role-based route protection.

Usage:
    @npd_bp.route("/npd", methods=["POST"])
    @require_permission("create", "npd")
    def create_npd():
        user = g.current_user
        ...

    @user_bp.route("/me", methods=["GET"])
    @login_required
    def me():
        ...

``login_required`` answers 401 when no user was resolved by the auth
middleware. ``require_permission`` additionally needs an organization
membership and the (action, resource) grant, else 403.
"""

import functools
import logging

from flask import current_app, g

from npd_tracker.services.permission import has_permission
from npd_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def _unauthenticated():
    return api_error(E.UNAUTHENTICATED, getattr(g, "auth_error", None) or "Authentication required")


def login_required(f):
    """Decorator: require a resolved, active user."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if getattr(g, "current_user", None) is None:
            return _unauthenticated()
        return f(*args, **kwargs)
    return decorated


def require_permission(action: str, resource: str):
    """
    Decorator: require the current user's role to grant ``action`` on ``resource``.

    Args:
        action: e.g. "create", "verify"
        resource: e.g. "npd", "sp2d"
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user = getattr(g, "current_user", None)
            if user is None:
                return _unauthenticated()

            if user.organization_id is None:
                return api_error(E.FORBIDDEN, "User belum tergabung dalam organisasi")

            if not has_permission(user.role, action, resource):
                logger.warning(
                    "User %d (%s) denied: %s %s on %s",
                    user.id, user.role, action, resource, f.__name__,
                )
                return api_error(
                    E.FORBIDDEN, "Permission denied",
                    details={"required": f"{action}:{resource}"},
                )

            return f(*args, **kwargs)
        return decorated
    return decorator


def require_feature(flag: str):
    """Decorator: 403 when the boolean config ``flag`` is off."""
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            if not current_app.config.get(flag):
                return api_error(E.FEATURE_DISABLED, f"Fitur dinonaktifkan ({flag})")
            return f(*args, **kwargs)
        return decorated
    return decorator
