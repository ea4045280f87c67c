from fastapi import Depends, HTTPException, status

from poflow.middleware.auth import get_current_user
from poflow.models.user import ROLES

# Lowest to highest
ROLE_ORDER = ROLES
ADMIN_ROLES = frozenset({"ADMIN", "SUPER_ADMIN"})

_ADMIN_PERMISSIONS = {
    "can_manage_users": True,
    "can_change_user_roles": True,
    "can_manage_organization": True,
    "can_create_po": True,
    "can_edit_po": True,
    "can_delete_po": True,
    "can_approve_po": True,
    "can_send_po": True,
    "can_view_po": True,
}

PERMISSIONS = {
    "SUPER_ADMIN": dict(_ADMIN_PERMISSIONS),
    "ADMIN": dict(_ADMIN_PERMISSIONS),
    "MANAGER": {
        "can_manage_users": False,
        "can_change_user_roles": False,
        "can_manage_organization": False,
        "can_create_po": True,
        "can_edit_po": True,
        "can_delete_po": True,
        # Approval decisions belong to admins only
        "can_approve_po": False,
        "can_send_po": True,
        "can_view_po": True,
    },
    "VIEWER": {
        "can_manage_users": False,
        "can_change_user_roles": False,
        "can_manage_organization": False,
        "can_create_po": False,
        "can_edit_po": False,
        "can_delete_po": False,
        "can_approve_po": False,
        "can_send_po": False,
        "can_view_po": True,
    },
}


def has_permission(role: str, permission: str) -> bool:
    return PERMISSIONS.get(role, {}).get(permission, False)


def is_admin(role: str) -> bool:
    return role in ADMIN_ROLES


def role_rank(role: str) -> int:
    return ROLE_ORDER.index(role) if role in ROLE_ORDER else -1


def _forbidden(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "error": {
                "code": "INSUFFICIENT_PERMISSIONS",
                "message": message,
            }
        },
    )


def require_permission(permission: str):
    """
    FastAPI dependency factory for permission checks.

    Usage:
        @router.post("/purchase-orders")
        async def create_po(
            current_user: dict = Depends(require_permission("can_create_po")),
        ):
    """
    async def check_permission(current_user: dict = Depends(get_current_user)):
        if not has_permission(current_user["role"], permission):
            raise _forbidden(
                f"Role '{current_user['role']}' cannot perform this action. "
                f"Required permission: {permission}"
            )
        return current_user

    return check_permission

