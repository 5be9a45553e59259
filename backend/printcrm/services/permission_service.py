"""
Permission Resolution

WHY: Every workflow edge and every mutating route is gated by a permission
code. A user's effective permissions are the defaults of their role with
per-user GRANT/DENY overrides applied on top.

DESIGN PRINCIPLES:
- Fail closed: unknown roles get no permissions
- Full-access roles (SUPER_ADMIN, ADMIN) cannot be narrowed by overrides
- Denials are logged as warnings; grants are not logged
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import User, UserPermissionOverride
from ..permissions import ALL_PERMISSION_CODES, DEFAULT_ROLE_PERMISSIONS, FULL_ACCESS_ROLES, UNSCOPED_ROLES
from ..validation import ValidationError


logger = logging.getLogger(__name__)


class PermissionDeniedError(Exception):
    """Raised when user lacks required permission."""
    pass


def is_full_access(user: User) -> bool:
    return user.role in FULL_ACCESS_ROLES


def get_user_permissions(user: User) -> set[str]:
    """
    Get all permission codes for a user.

    Returns set of permission codes (e.g., {"manage_deals", "stock_confirm"}).
    """
    if not user.is_active:
        return set()

    permission_codes = set(DEFAULT_ROLE_PERMISSIONS.get(user.role, ()))
    if is_full_access(user):
        return permission_codes

    overrides = db.session.query(UserPermissionOverride).filter_by(user_id=user.id).all()
    for override in overrides:
        if override.override_type == "GRANT":
            permission_codes.add(override.permission_code)
        elif override.override_type == "DENY":
            permission_codes.discard(override.permission_code)

    return permission_codes


def user_has_permission(user: User, permission_code: str) -> bool:
    return permission_code in get_user_permissions(user)


def require_permission(user: User, permission_code: str, *, resource: str | None = None) -> None:
    """
    Require user to have permission, raise PermissionDeniedError if not.

    Args:
        resource: optional request path or entity label, used in the log line
    """
    if user_has_permission(user, permission_code):
        return

    logger.warning(
        "Permission denied: user=%s role=%s permission=%s resource=%s",
        user.id, user.role, permission_code, resource,
    )
    raise PermissionDeniedError(f"Missing permission: {permission_code}")


def can_view_all_deals(user: User) -> bool:
    return user.role in UNSCOPED_ROLES or user_has_permission(user, "view_all_deals")


def can_view_all_clients(user: User) -> bool:
    return user.role in UNSCOPED_ROLES or user_has_permission(user, "view_all_clients")


def set_override(
    *,
    user_id: int,
    permission_code: str,
    override_type: str,
    granted_by_user_id: int | None = None,
) -> UserPermissionOverride:
    """Create or replace a GRANT/DENY override. Caller commits."""
    if permission_code not in ALL_PERMISSION_CODES:
        raise ValidationError(f"Unknown permission: {permission_code}")
    if override_type not in ("GRANT", "DENY"):
        raise ValidationError("override_type must be GRANT or DENY")

    override = db.session.query(UserPermissionOverride).filter_by(
        user_id=user_id,
        permission_code=permission_code,
    ).first()
    if override is None:
        override = UserPermissionOverride(user_id=user_id, permission_code=permission_code)
        db.session.add(override)

    override.override_type = override_type
    override.granted_by_user_id = granted_by_user_id
    db.session.flush()
    return override
