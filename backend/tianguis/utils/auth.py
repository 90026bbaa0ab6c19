from __future__ import annotations

from flask import g, request

from tianguis.errors import AuthorizationError
from tianguis.extensions import db
from tianguis.models import User
from tianguis.utils.jwt_utils import decode_token, get_bearer_token

ADMIN_ROLES = ("admin",)
ARBITRATOR_ROLES = ("admin", "arbitrator")


def current_user() -> User | None:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    user = db.session.get(User, uid)
    if user is not None:
        g.auth_user_id = int(user.id)
    return user


def role_of(user: User | None) -> str:
    if not user:
        return "guest"
    return (getattr(user, "role", None) or "user").strip().lower()


def is_admin(user: User | None) -> bool:
    return role_of(user) in ADMIN_ROLES


def is_arbitrator(user: User | None) -> bool:
    return role_of(user) in ARBITRATOR_ROLES


def require_user() -> User:
    user = current_user()
    if user is None:
        raise AuthorizationError("Authentication required", code="AUTH_REQUIRED")
    return user


def require_admin() -> User:
    user = require_user()
    if not is_admin(user):
        raise AuthorizationError("Admin required", code="ADMIN_REQUIRED")
    return user
