"""
Approvals API routes: pending list for the organization, approve, deny.
"""

import uuid
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from poflow.database import get_db
from poflow.middleware.auth import get_current_user
from poflow.middleware.authorization import require_permission
from poflow.routes.purchase_orders import (
    approval_to_response,
    po_to_response,
    user_summary,
    to_iso,
)
from poflow.schemas.approval import (
    ApprovalDecisionResponse,
    DenyRequest,
    PendingApprovalResponse,
    PendingPurchaseOrder,
)
from poflow.services import approval_service, purchase_order_service
from poflow.services.approval_service import DecisionResult
from poflow.services.notification_service import build_po_context, send_notification

logger = structlog.get_logger()
router = APIRouter()


def _notify_requester(
    background_tasks: BackgroundTasks,
    template_id: str,
    result: DecisionResult,
    current_user: dict,
    **extra,
):
    requester = result.requester
    if not requester or not requester.is_active:
        logger.warning(
            "approval_requester_unreachable",
            approval_request_id=str(result.approval_request.id),
        )
        return
    context = build_po_context(
        result.purchase_order,
        approver_name=current_user.get("name") or current_user["email"],
        **extra,
    )
    background_tasks.add_task(send_notification, template_id, [requester.email], context)


@router.get("/pending", response_model=List[PendingApprovalResponse])
async def list_pending_approvals(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    pending = await approval_service.list_pending(db, current_user["organization_id"])
    return [
        PendingApprovalResponse(
            id=str(p.approval_request.id),
            status=p.approval_request.status,
            amount=p.approval_request.amount,
            created_at=to_iso(p.approval_request.created_at) or "",
            purchase_order=PendingPurchaseOrder(
                id=str(p.purchase_order.id),
                po_number=p.purchase_order.po_number,
                title=p.purchase_order.title,
                supplier_name=p.purchase_order.supplier_name,
                total_amount=p.purchase_order.total_amount,
                currency=p.purchase_order.currency,
            ),
            requester=user_summary(p.requester),
        )
        for p in pending
    ]


@router.post("/{approval_id}/approve", response_model=ApprovalDecisionResponse)
async def approve_request(
    approval_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(require_permission("can_approve_po")),
    db: AsyncSession = Depends(get_db),
):
    result = await approval_service.approve(db, approval_id, current_user)
    line_items = await purchase_order_service.get_line_items(db, result.purchase_order.id)
    await db.commit()
    _notify_requester(background_tasks, "approval_granted", result, current_user)
    return ApprovalDecisionResponse(
        approval_request=approval_to_response(result.approval_request),
        purchase_order=po_to_response(result.purchase_order, line_items),
    )


@router.post("/{approval_id}/deny", response_model=ApprovalDecisionResponse)
async def deny_request(
    approval_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    body: DenyRequest = DenyRequest(),
    current_user: dict = Depends(require_permission("can_approve_po")),
    db: AsyncSession = Depends(get_db),
):
    result = await approval_service.deny(db, approval_id, current_user, reason=body.reason)
    line_items = await purchase_order_service.get_line_items(db, result.purchase_order.id)
    await db.commit()
    _notify_requester(
        background_tasks,
        "approval_denied",
        result,
        current_user,
        reason=result.approval_request.reason or "No reason given",
    )
    return ApprovalDecisionResponse(
        approval_request=approval_to_response(result.approval_request),
        purchase_order=po_to_response(result.purchase_order, line_items),
    )
