"""
User Blueprint: the caller's profile and admin user management.

Endpoints:
    GET   /api/v1/me                   — profile + organization + permissions
    PATCH /api/v1/me                   — update display name
    GET   /api/v1/users                — users of the caller's organization
    PATCH /api/v1/users/<id>/role      — change role (admin, same organization)
"""

import logging

from flask import Blueprint, g, jsonify, request

from npd_tracker.blueprints import commit_or_error, paginate_query
from npd_tracker.middleware.permission_required import login_required, require_permission
from npd_tracker.models.audit import write_audit
from npd_tracker.models.organization import User
from npd_tracker.services.helpers.scoped_queries import get_scoped
from npd_tracker.services.permission import Role, get_permissions
from npd_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

user_bp = Blueprint("user_bp", __name__, url_prefix="/api/v1")

_ROLES = tuple(r.value for r in Role)


def _profile(user: User) -> dict:
    d = user.to_dict()
    d["organization"] = user.organization.to_dict() if user.organization else None
    d["permissions"] = get_permissions(user.role)
    return d


@user_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify(_profile(g.current_user))


@user_bp.route("/me", methods=["PATCH"])
@login_required
def update_me():
    data = request.get_json(silent=True) or {}
    name = str(data.get("name") or "").strip()
    if not name:
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    if len(name) > 200:
        return api_error(E.VALIDATION_INVALID, "name must be at most 200 characters")

    user = g.current_user
    user.name = name
    err = commit_or_error("updating profile")
    if err:
        return err
    return jsonify(_profile(user))


@user_bp.route("/users", methods=["GET"])
@require_permission("read", "users")
def list_users():
    q = User.query.filter_by(organization_id=g.current_user.organization_id)
    role = request.args.get("role")
    if role:
        q = q.filter(User.role == role)
    items, total = paginate_query(q.order_by(User.name, User.id))
    return jsonify({"items": [u.to_dict() for u in items], "total": total})


@user_bp.route("/users/<int:user_id>/role", methods=["PATCH"])
@require_permission("update", "users")
def change_role(user_id):
    data = request.get_json(silent=True) or {}
    role = data.get("role")
    if role not in _ROLES:
        return api_error(
            E.VALIDATION_INVALID, "Invalid role",
            details={"allowed": list(_ROLES)},
        )

    actor = g.current_user
    target = get_scoped(User, user_id, organization_id=actor.organization_id)
    old_role = target.role
    if old_role == role:
        return jsonify(target.to_dict())
    if target.id == actor.id:
        return api_error(E.VALIDATION_RULE, "Admin tidak dapat mengubah perannya sendiri")

    target.role = role
    write_audit(
        entity_table="users",
        entity_id=target.id,
        action="role_changed",
        actor_user_id=actor.id,
        organization_id=actor.organization_id,
        diff={"role": {"old": old_role, "new": role}},
    )
    err = commit_or_error("changing user role")
    if err:
        return err
    logger.info("User %s role %s → %s by admin %s", target.id, old_role, role, actor.id)
    return jsonify(target.to_dict())
