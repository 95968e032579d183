from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify
from sqlalchemy.orm import Session

from app.eventpass.constants import PERMISSION_NAMES, ROLE_NAMES, ROLE_OWNER, ROLE_PERMISSIONS, ROLES
from app.eventpass.models import Permission, Role, User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def actor_role(user: User | None) -> str | None:
    """The actor's most privileged role key."""
    if not user:
        return None
    keys = set(user.role_keys)
    for key in ROLES:
        if key in keys:
            return key
    return None


def is_owner(user: User | None) -> bool:
    return actor_role(user) == ROLE_OWNER


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → 401 (API clients re-login)
            if not user or not user.is_active:
                return jsonify({"error": "Unauthorized", "message": "Login required"}), 401
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                return jsonify({"error": "Forbidden", "missing_permission": permission_key}), 403
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def ensure_roles_and_permissions(s: Session) -> dict[str, Role]:
    """
    Idempotently seed the fixed role set and its permission keys.
    Returns roles keyed by role key.
    """
    perms: dict[str, Permission] = {p.key: p for p in s.query(Permission).all()}
    for key, name in PERMISSION_NAMES.items():
        if key not in perms:
            p = Permission(key=key, name=name)
            s.add(p)
            perms[key] = p

    roles: dict[str, Role] = {r.key: r for r in s.query(Role).all()}
    for key in ROLES:
        role = roles.get(key)
        if role is None:
            role = Role(key=key, name=ROLE_NAMES[key])
            s.add(role)
            roles[key] = role
        have = {p.key for p in role.permissions}
        for perm_key in sorted(ROLE_PERMISSIONS[key] - have):
            role.permissions.append(perms[perm_key])
    s.flush()
    return roles
