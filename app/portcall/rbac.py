from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, current_app, g, jsonify

from app.portcall.models import User

SUPER_ADMIN_ROLE = "super-admin"
ADMIN_CAPABILITY = "prearrival.admin"


def _active(user: User | None) -> bool:
    return bool(user and user.is_active)


def is_super_admin(user: User | None) -> bool:
    return _active(user) and SUPER_ADMIN_ROLE in {role.key for role in user.roles}


def user_capabilities(user: User | None) -> frozenset[str]:
    """
    Every permission key reachable through the user's roles. Super admins also
    carry ADMIN_CAPABILITY, which the checklist treats as "sees and does everything".
    """
    if not _active(user):
        return frozenset()
    granted = {perm.key for role in user.roles for perm in role.permissions}
    if is_super_admin(user):
        granted.add(ADMIN_CAPABILITY)
    return frozenset(granted)


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return is_super_admin(user) or permission_key in user_capabilities(user)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Route guard: 401 JSON when signed out, 403 (with the missing key) when not allowed."""

    def decorator(view: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view)
        def guarded(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not _active(user):
                return jsonify({"error": "Authentication required."}), 401
            if user_has_permission(user, permission_key):
                return view(*args, **kwargs)
            g.missing_permission = permission_key
            current_app.logger.warning(
                "Denied %s to %s (request_id=%s)", permission_key, user.email, getattr(g, "request_id", None)
            )
            abort(403)

        return guarded

    return decorator
