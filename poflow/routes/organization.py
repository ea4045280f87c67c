from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from poflow.database import get_db
from poflow.middleware.auth import get_current_user
from poflow.middleware.authorization import require_permission
from poflow.schemas.organization import ApprovalSettings
from poflow.services import organization_service
from poflow.services.approval_service import get_organization

router = APIRouter()


@router.get("/approval-settings", response_model=ApprovalSettings)
async def get_approval_settings(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    org = await get_organization(db, current_user["organization_id"])
    return ApprovalSettings(
        approval_threshold=org.approval_threshold,
        auto_approve_admin=bool(org.auto_approve_admin),
    )


@router.put("/approval-settings", response_model=ApprovalSettings)
async def update_approval_settings(
    body: ApprovalSettings,
    current_user: dict = Depends(require_permission("can_manage_organization")),
    db: AsyncSession = Depends(get_db),
):
    org = await organization_service.update_approval_settings(
        db, current_user["organization_id"], body.approval_threshold, body.auto_approve_admin
    )
    return ApprovalSettings(
        approval_threshold=org.approval_threshold,
        auto_approve_admin=org.auto_approve_admin,
    )
