"""
Unit tests for poflow/middleware/authorization.py and middleware/auth.py

Tests: permission matrix, require_permission dependency, bearer token
verification and user loading.
"""

import uuid

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from poflow.middleware.auth import get_current_user
from poflow.middleware.authorization import (
    PERMISSIONS,
    has_permission,
    is_admin,
    require_permission,
    role_rank,
)
from poflow.services.auth_service import create_access_token
from tests.factories import make_user, queue_results, result_with


@pytest.mark.parametrize("role", ["ADMIN", "SUPER_ADMIN"])
def test_admins_have_every_permission(role):
    assert all(PERMISSIONS[role].values())


def test_manager_works_pos_but_cannot_approve():
    assert has_permission("MANAGER", "can_create_po")
    assert has_permission("MANAGER", "can_send_po")
    assert not has_permission("MANAGER", "can_approve_po")
    assert not has_permission("MANAGER", "can_manage_organization")


def test_viewer_is_read_only():
    granted = [p for p, ok in PERMISSIONS["VIEWER"].items() if ok]
    assert granted == ["can_view_po"]


def test_unknown_role_has_nothing():
    assert not has_permission("GUEST", "can_view_po")
    assert not is_admin("GUEST")
    assert role_rank("GUEST") == -1


def test_role_rank_orders_roles():
    assert role_rank("VIEWER") < role_rank("MANAGER") < role_rank("ADMIN") < role_rank("SUPER_ADMIN")


@pytest.mark.asyncio
async def test_require_permission_allows(manager_user):
    check = require_permission("can_create_po")
    assert await check(current_user=manager_user) is manager_user


@pytest.mark.asyncio
async def test_require_permission_denies(viewer_user):
    check = require_permission("can_create_po")

    with pytest.raises(HTTPException) as exc_info:
        await check(current_user=viewer_user)

    assert exc_info.value.status_code == 403
    assert exc_info.value.detail["error"]["code"] == "INSUFFICIENT_PERMISSIONS"


# ---------------------------------------------------------------------------
# get_current_user
# ---------------------------------------------------------------------------


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.mark.asyncio
async def test_missing_token_is_401(session):
    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(credentials=None, db=session)

    assert exc_info.value.status_code == 401
    assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}


@pytest.mark.asyncio
async def test_garbage_token_is_401(session):
    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(credentials=_bearer("not-a-jwt"), db=session)

    assert exc_info.value.detail["error"]["code"] == "AUTH_TOKEN_INVALID"


@pytest.mark.asyncio
async def test_expired_token_is_401(session):
    token = create_access_token(str(uuid.uuid4()), "a@b.test", expires_minutes=-1)

    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(credentials=_bearer(token), db=session)

    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_role_comes_from_database_not_token(session):
    user = make_user("VIEWER")
    token = create_access_token(str(user.id), user.email, role="SUPER_ADMIN")
    queue_results(session, result_with(user))

    current = await get_current_user(credentials=_bearer(token), db=session)

    assert current["role"] == "VIEWER"
    assert current["user_id"] == str(user.id)
    assert current["organization_id"] == str(user.organization_id)


@pytest.mark.asyncio
async def test_user_without_organization_is_404(session):
    user = make_user("VIEWER")
    user.organization_id = None
    queue_results(session, result_with(user))
    token = create_access_token(str(user.id), user.email)

    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(credentials=_bearer(token), db=session)

    assert exc_info.value.status_code == 404
    assert exc_info.value.detail["error"]["code"] == "USER_NOT_IN_ORGANIZATION"


@pytest.mark.asyncio
async def test_inactive_user_is_404(session):
    user = make_user("ADMIN")
    user.is_active = False
    queue_results(session, result_with(user))
    token = create_access_token(str(user.id), user.email)

    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(credentials=_bearer(token), db=session)

    assert exc_info.value.status_code == 404
