import uuid
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from poflow.database import get_db
from poflow.middleware.auth import get_current_user
from poflow.middleware.authorization import require_permission
from poflow.models.user import User
from poflow.routes.purchase_orders import to_iso
from poflow.schemas.user import RoleUpdateRequest, UserResponse
from poflow.services import organization_service

router = APIRouter()


def _to_response(u: User) -> UserResponse:
    return UserResponse(
        id=str(u.id),
        email=u.email,
        name=u.name,
        role=u.role,
        is_active=u.is_active,
        updated_at=to_iso(u.updated_at),
    )


@router.get("/approvers", response_model=List[UserResponse])
async def list_approvers(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    approvers = await organization_service.list_approvers(db, current_user["organization_id"])
    return [_to_response(u) for u in approvers]


@router.patch("/{user_id}/role", response_model=UserResponse)
async def change_user_role(
    user_id: uuid.UUID,
    body: RoleUpdateRequest,
    current_user: dict = Depends(require_permission("can_change_user_roles")),
    db: AsyncSession = Depends(get_db),
):
    user = await organization_service.change_user_role(db, user_id, body.role, current_user)
    return _to_response(user)
