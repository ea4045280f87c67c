"""
Approval service: submission, approve/deny decisions, audit trail.

PO states: DRAFT -> PENDING_APPROVAL -> SENT (approved) | DRAFT (denied).
Approval auto-sends the PO; there is no resting APPROVED state in this flow.

Every transition runs in the caller's transaction (no commit) and appends an
ApprovalAction row. Notifications are the route's job, after commit.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException, status as http_status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from poflow.database import set_lock_timeout
from poflow.middleware.authorization import ADMIN_ROLES, is_admin
from poflow.models.approval import ApprovalAction, ApprovalRequest
from poflow.models.organization import Organization
from poflow.models.purchase_order import LineItem, PurchaseOrder
from poflow.models.user import User
from poflow.schemas.purchase_order import PurchaseOrderCreate
from poflow.services import purchase_order_service
from poflow.services.purchase_order_service import as_uuid
from poflow.services.tax_service import quantize_money

logger = structlog.get_logger()


@dataclass
class SubmissionResult:
    purchase_order: PurchaseOrder
    line_items: list[LineItem]
    approval_request: ApprovalRequest
    approver: User


@dataclass
class DecisionResult:
    approval_request: ApprovalRequest
    purchase_order: PurchaseOrder
    requester: Optional[User]


@dataclass
class AuditEntry:
    action: ApprovalAction
    user: Optional[User]


@dataclass
class AuditTrail:
    has_approval_request: bool
    approval_request: Optional[ApprovalRequest] = None
    requester: Optional[User] = None
    approver: Optional[User] = None
    entries: list[AuditEntry] = field(default_factory=list)


@dataclass
class PendingApproval:
    approval_request: ApprovalRequest
    purchase_order: PurchaseOrder
    requester: Optional[User]


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": {"code": code, "message": message}},
    )


def requires_approval(organization: Organization, role: str, subtotal: Decimal) -> bool:
    """Subtotals at or above the threshold need approval, unless an admin auto-approves."""
    if is_admin(role) and organization.auto_approve_admin:
        return False
    return quantize_money(subtotal) >= quantize_money(organization.approval_threshold)


async def get_organization(session: AsyncSession, organization_id) -> Organization:
    result = await session.execute(
        select(Organization).where(Organization.id == as_uuid(organization_id))
    )
    org = result.scalar_one_or_none()
    if not org:
        raise _error(
            http_status.HTTP_404_NOT_FOUND,
            "USER_NOT_IN_ORGANIZATION",
            "Organization not found",
        )
    return org


async def validate_approver(
    session: AsyncSession, approver_id, organization_id
) -> User:
    """The approver must be an active ADMIN/SUPER_ADMIN of the same organization."""
    result = await session.execute(
        select(User).where(
            User.id == as_uuid(approver_id),
            User.organization_id == as_uuid(organization_id),
            User.role.in_(ADMIN_ROLES),
            User.is_active == True,  # noqa: E712
        )
    )
    approver = result.scalar_one_or_none()
    if not approver:
        raise _error(
            http_status.HTTP_400_BAD_REQUEST,
            "INVALID_APPROVER",
            "Approver must be an admin in your organization",
        )
    return approver


def _open_request(
    po: PurchaseOrder, approver_id, requester_id: uuid.UUID
) -> tuple[ApprovalRequest, ApprovalAction]:
    request = ApprovalRequest(
        id=uuid.uuid4(),
        organization_id=po.organization_id,
        purchase_order_id=po.id,
        requester_id=requester_id,
        approver_id=approver_id,
        status="PENDING",
        amount=po.subtotal_amount,
    )
    action = ApprovalAction(
        approval_request_id=request.id,
        user_id=requester_id,
        action="SUBMITTED",
    )
    return request, action


async def create_purchase_order(
    session: AsyncSession,
    po_data: PurchaseOrderCreate,
    status: str,
    current_user: dict,
) -> tuple[PurchaseOrder, list[LineItem]]:
    """
    Create a PO outside the approval flow, as DRAFT or straight to SENT.

    Sending directly is refused with 403 APPROVAL_REQUIRED when the subtotal
    needs approval; the caller should use submit_for_approval instead.
    """
    organization_id = uuid.UUID(current_user["organization_id"])
    snapshot = await purchase_order_service.compute_tax_snapshot(
        session,
        organization_id,
        po_data.line_items,
        po_data.tax_mode,
        po_data.tax_rate,
        po_data.tax_rate_id,
    )
    if status == "SENT":
        org = await get_organization(session, organization_id)
        if requires_approval(org, current_user["role"], snapshot.calculation.subtotal_amount):
            raise _error(
                http_status.HTTP_403_FORBIDDEN,
                "APPROVAL_REQUIRED",
                "This purchase order exceeds the approval threshold and must be "
                "submitted for approval",
            )
    return await purchase_order_service.create_purchase_order(
        session, po_data, current_user, status, snapshot
    )


async def submit_for_approval(
    session: AsyncSession,
    po_data: PurchaseOrderCreate,
    approver_id,
    current_user: dict,
) -> SubmissionResult:
    """Create a PENDING_APPROVAL PO, its ApprovalRequest and the SUBMITTED action."""
    organization_id = uuid.UUID(current_user["organization_id"])
    requester_id = uuid.UUID(current_user["user_id"])

    approver = await validate_approver(session, approver_id, organization_id)

    snapshot = await purchase_order_service.compute_tax_snapshot(
        session,
        organization_id,
        po_data.line_items,
        po_data.tax_mode,
        po_data.tax_rate,
        po_data.tax_rate_id,
    )
    po, line_items = await purchase_order_service.create_purchase_order(
        session, po_data, current_user, "PENDING_APPROVAL", snapshot
    )

    request, action = _open_request(po, approver.id, requester_id)
    session.add(request)
    await session.flush()
    session.add(action)
    await session.flush()

    logger.info(
        "po_submitted_for_approval",
        po_id=str(po.id),
        po_number=po.po_number,
        approval_request_id=str(request.id),
        approver_id=str(approver.id),
        amount=str(request.amount),
    )
    return SubmissionResult(
        purchase_order=po,
        line_items=line_items,
        approval_request=request,
        approver=approver,
    )


async def resubmit_for_approval(
    session: AsyncSession,
    po_id,
    approver_id,
    current_user: dict,
    now: Optional[datetime] = None,
) -> SubmissionResult:
    """
    Send a DRAFT PO (typically one that was denied) back for approval.

    The previous request is soft-deleted so the PO keeps exactly one live
    request; its actions stay in the audit trail.
    """
    now = now or datetime.utcnow()
    organization_id = uuid.UUID(current_user["organization_id"])
    requester_id = uuid.UUID(current_user["user_id"])

    await set_lock_timeout(session)
    po = await purchase_order_service.get_purchase_order(
        session, po_id, organization_id, lock=True
    )
    if po.status != "DRAFT":
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "INVALID_STATE_TRANSITION",
            f"Only draft purchase orders can be submitted; this one is {po.status}",
        )
    approver = await validate_approver(session, approver_id, organization_id)

    result = await session.execute(
        select(ApprovalRequest).where(
            ApprovalRequest.purchase_order_id == po.id,
            ApprovalRequest.deleted_at.is_(None),
        )
    )
    previous = result.scalar_one_or_none()
    if previous is not None:
        previous.deleted_at = now
        await session.flush()

    po.status = "PENDING_APPROVAL"
    request, action = _open_request(po, approver.id, requester_id)
    session.add(request)
    await session.flush()
    session.add(action)
    await session.flush()

    logger.info(
        "po_resubmitted_for_approval",
        po_id=str(po.id),
        approval_request_id=str(request.id),
        previous_request_id=str(previous.id) if previous else None,
    )
    line_items = await purchase_order_service.get_line_items(session, po.id)
    return SubmissionResult(
        purchase_order=po,
        line_items=line_items,
        approval_request=request,
        approver=approver,
    )


async def _lock_pending_request(
    session: AsyncSession, approval_request_id, current_user: dict
) -> tuple[ApprovalRequest, PurchaseOrder]:
    if not is_admin(current_user["role"]):
        raise _error(
            http_status.HTTP_403_FORBIDDEN,
            "INSUFFICIENT_PERMISSIONS",
            "Only admins can approve or deny purchase orders",
        )

    await set_lock_timeout(session)
    # The row lock makes a concurrent second decision wait, then see the
    # terminal status and fail with 409 instead of applying twice.
    result = await session.execute(
        select(ApprovalRequest)
        .where(
            ApprovalRequest.id == as_uuid(approval_request_id),
            ApprovalRequest.organization_id == as_uuid(current_user["organization_id"]),
            ApprovalRequest.deleted_at.is_(None),
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    request = result.scalar_one_or_none()
    if not request:
        raise _error(
            http_status.HTTP_404_NOT_FOUND,
            "APPROVAL_NOT_FOUND",
            "Approval request not found",
        )
    if request.status != "PENDING":
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "APPROVAL_ALREADY_PROCESSED",
            f"This request has already been {request.status.lower()}",
        )

    po = await purchase_order_service.get_purchase_order(
        session, request.purchase_order_id, request.organization_id, lock=True
    )
    return request, po


async def _load_user(session: AsyncSession, user_id) -> Optional[User]:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def approve(
    session: AsyncSession,
    approval_request_id,
    current_user: dict,
    now: Optional[datetime] = None,
) -> DecisionResult:
    now = now or datetime.utcnow()
    actor_id = uuid.UUID(current_user["user_id"])
    request, po = await _lock_pending_request(session, approval_request_id, current_user)

    request.status = "APPROVED"
    request.approver_id = actor_id
    request.decided_at = now
    po.status = "SENT"
    session.add(
        ApprovalAction(
            approval_request_id=request.id,
            user_id=actor_id,
            action="APPROVED",
        )
    )
    await session.flush()

    logger.info(
        "approval_granted",
        approval_request_id=str(request.id),
        po_id=str(po.id),
        approver_id=str(actor_id),
    )
    requester = await _load_user(session, request.requester_id)
    return DecisionResult(approval_request=request, purchase_order=po, requester=requester)


async def deny(
    session: AsyncSession,
    approval_request_id,
    current_user: dict,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DecisionResult:
    now = now or datetime.utcnow()
    actor_id = uuid.UUID(current_user["user_id"])
    reason = reason.strip() if reason and reason.strip() else None
    request, po = await _lock_pending_request(session, approval_request_id, current_user)

    request.status = "DENIED"
    request.approver_id = actor_id
    request.reason = reason
    request.decided_at = now
    # Back to an editable draft that can be resubmitted
    po.status = "DRAFT"
    session.add(
        ApprovalAction(
            approval_request_id=request.id,
            user_id=actor_id,
            action="DENIED",
            reason=reason,
        )
    )
    await session.flush()

    logger.info(
        "approval_denied",
        approval_request_id=str(request.id),
        po_id=str(po.id),
        approver_id=str(actor_id),
        has_reason=reason is not None,
    )
    requester = await _load_user(session, request.requester_id)
    return DecisionResult(approval_request=request, purchase_order=po, requester=requester)


async def get_audit_trail(
    session: AsyncSession, po_id, organization_id
) -> AuditTrail:
    """Current request plus every action on the PO, oldest first."""
    po = await purchase_order_service.get_purchase_order(session, po_id, organization_id)

    result = await session.execute(
        select(ApprovalRequest)
        .where(ApprovalRequest.purchase_order_id == po.id)
        .order_by(ApprovalRequest.created_at)
    )
    requests = list(result.scalars().all())
    if not requests:
        return AuditTrail(has_approval_request=False)

    current = next((r for r in requests if r.deleted_at is None), requests[-1])

    result = await session.execute(
        select(ApprovalAction, User)
        .outerjoin(User, User.id == ApprovalAction.user_id)
        .where(ApprovalAction.approval_request_id.in_([r.id for r in requests]))
        .order_by(ApprovalAction.created_at, ApprovalAction.id)
    )
    entries = [AuditEntry(action=action, user=user) for action, user in result.all()]

    people_ids = {current.requester_id}
    if current.approver_id:
        people_ids.add(current.approver_id)
    result = await session.execute(select(User).where(User.id.in_(people_ids)))
    people = {u.id: u for u in result.scalars().all()}

    return AuditTrail(
        has_approval_request=True,
        approval_request=current,
        requester=people.get(current.requester_id),
        approver=people.get(current.approver_id) if current.approver_id else None,
        entries=entries,
    )


async def list_pending(session: AsyncSession, organization_id) -> list[PendingApproval]:
    result = await session.execute(
        select(ApprovalRequest, PurchaseOrder, User)
        .join(PurchaseOrder, PurchaseOrder.id == ApprovalRequest.purchase_order_id)
        .outerjoin(User, User.id == ApprovalRequest.requester_id)
        .where(
            ApprovalRequest.organization_id == as_uuid(organization_id),
            ApprovalRequest.status == "PENDING",
            ApprovalRequest.deleted_at.is_(None),
        )
        .order_by(ApprovalRequest.created_at.desc())
    )
    return [
        PendingApproval(approval_request=req, purchase_order=po, requester=user)
        for req, po, user in result.all()
    ]
