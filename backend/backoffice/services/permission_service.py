# Overview: Permission lookup and grants for the RBAC collaborator.

from __future__ import annotations

from ..extensions import db
from ..models import UserPermission
from ..permissions import DEFAULT_ROLE_PERMISSIONS, validate_permission_code
from .errors import ServiceError


class PermissionDeniedError(ServiceError):
    """Raised when user lacks required permission."""
    status = 403
    reason_code = "PERMISSION_DENIED"

    def __init__(self, permission_code: str):
        super().__init__(f"Permission denied: {permission_code}")
        self.permission_code = permission_code

    def to_body(self) -> dict:
        body = super().to_body()
        body["required_permission"] = self.permission_code
        return body


def get_user_permissions(user_id: int) -> set[str]:
    rows = db.session.query(UserPermission.permission_code).filter_by(user_id=user_id).all()
    return {code for (code,) in rows}


def user_has_permission(user_id: int, permission_code: str) -> bool:
    return (
        db.session.query(UserPermission.id)
        .filter_by(user_id=user_id, permission_code=permission_code)
        .first()
        is not None
    )


def require_permission(user_id: int, permission_code: str) -> None:
    """Raise PermissionDeniedError unless the user holds permission_code."""
    if not user_has_permission(user_id, permission_code):
        raise PermissionDeniedError(permission_code)


def grant_permissions(user_id: int, codes) -> list[str]:
    """
    Grant permission codes to a user. Already-held codes are skipped.

    Returns the codes newly granted. Raises ValueError on unknown codes.
    """
    unknown = [code for code in codes if not validate_permission_code(code)]
    if unknown:
        raise ValueError(f"Unknown permission codes: {', '.join(unknown)}")

    held = get_user_permissions(user_id)
    added = []
    for code in codes:
        if code in held or code in added:
            continue
        db.session.add(UserPermission(user_id=user_id, permission_code=code))
        added.append(code)
    db.session.commit()
    return added


def grant_role(user_id: int, role_name: str) -> list[str]:
    if role_name not in DEFAULT_ROLE_PERMISSIONS:
        raise ValueError(f"Unknown role: {role_name}")
    return grant_permissions(user_id, DEFAULT_ROLE_PERMISSIONS[role_name])
