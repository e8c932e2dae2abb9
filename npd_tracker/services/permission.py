"""
Role-Based Access Control (RBAC) Service

A static permission table keyed by role. Each role maps resources to the
actions it may perform; ``"*"`` matches any action or any resource.
``admin`` holds the universal wildcard.

Usage:
    from npd_tracker.services.permission import check_permission, PermissionDenied

    # Raises PermissionDenied if not allowed
    check_permission(user, "verify", "npd")

    # Boolean check (pure, never raises)
    if has_permission("bendahara", "create", "sp2d"):
        ...
"""

from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    PPTK = "pptk"
    BENDAHARA = "bendahara"
    VERIFIKATOR = "verifikator"
    VIEWER = "viewer"


WILDCARD = "*"

_CRUD = frozenset({"create", "read", "update"})
_PROFILE = frozenset({"read", "update"})
_READ = frozenset({"read"})

PERMISSIONS: dict[Role, dict[str, frozenset[str]]] = {
    Role.ADMIN: {
        WILDCARD: frozenset({WILDCARD}),
    },
    Role.PPTK: {
        "rka": _CRUD | {"delete"},
        "npd": _CRUD | {"submit"},
        "reports": _READ,
        "profile": _PROFILE,
    },
    Role.BENDAHARA: {
        "rka": _READ,
        "npd": _CRUD | {"verify", "approve"},
        "sp2d": _CRUD,
        "realisasi": _CRUD,
        "reports": _READ,
        "profile": _PROFILE,
    },
    Role.VERIFIKATOR: {
        "rka": _READ,
        "npd": frozenset({"read", "verify", "approve"}),
        "sp2d": frozenset({"read", "verify"}),
        "realisasi": _READ,
        "reports": _READ,
        "profile": _PROFILE,
    },
    Role.VIEWER: {
        "rka": _READ,
        "npd": _READ,
        "sp2d": _READ,
        "realisasi": _READ,
        "reports": _READ,
        "profile": _PROFILE,
    },
}


class PermissionDenied(Exception):
    """Raised when a user's role lacks the required (action, resource) grant."""

    def __init__(self, user_id, action: str, resource: str):
        super().__init__(
            f"User {user_id} does not have permission to '{action}' on '{resource}'"
        )
        self.user_id = user_id
        self.action = action
        self.resource = resource


def _resolve_role(role) -> Role | None:
    if isinstance(role, Role):
        return role
    if not isinstance(role, str):
        return None
    try:
        return Role(role)
    except ValueError:
        return None


def has_permission(role, action, resource) -> bool:
    """
    Check whether ``role`` may perform ``action`` on ``resource``.

    Total and deterministic: unknown roles and non-string inputs are
    denied, never raised on.
    """
    resolved = _resolve_role(role)
    if resolved is None:
        return False
    if not isinstance(action, str) or not isinstance(resource, str):
        return False

    grants = PERMISSIONS.get(resolved, {})
    for res_key in (resource, WILDCARD):
        actions = grants.get(res_key)
        if actions and (action in actions or WILDCARD in actions):
            return True
    return False


def check_permission(user, action: str, resource: str) -> None:
    """Raise PermissionDenied unless ``user.role`` grants ``action`` on ``resource``."""
    if user is None or not has_permission(user.role, action, resource):
        raise PermissionDenied(getattr(user, "id", None), action, resource)


def get_permissions(role) -> list[str]:
    """Return the sorted ``action:resource`` grants for a role (empty if unknown)."""
    resolved = _resolve_role(role)
    if resolved is None:
        return []
    return sorted(
        f"{action}:{resource}"
        for resource, actions in PERMISSIONS[resolved].items()
        for action in actions
    )
