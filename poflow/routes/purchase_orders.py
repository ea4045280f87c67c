import uuid
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from poflow.database import get_db
from poflow.middleware.authorization import require_permission
from poflow.models.approval import ApprovalRequest
from poflow.models.purchase_order import PurchaseOrder, LineItem
from poflow.models.user import User
from poflow.schemas.approval import (
    ApprovalRequestResponse,
    AuditTrailApprovalRequest,
    AuditTrailEntry,
    AuditTrailResponse,
    ResubmitRequest,
    SubmissionResponse,
    SubmitForApprovalRequest,
    UserSummary,
)
from poflow.schemas.common import Page, page_info, page_offset
from poflow.schemas.purchase_order import (
    CancelRequest,
    InvoiceDownloadResponse,
    InvoiceUploadLinkRequest,
    InvoiceUploadLinkResponse,
    LineItemResponse,
    PurchaseOrderCreateRequest,
    PurchaseOrderResponse,
    PurchaseOrderUpdate,
    SendToSupplierRequest,
    SendToSupplierResponse,
)
from poflow.services import (
    approval_service,
    invoice_upload_service,
    purchase_order_service,
    supplier_dispatch_service,
)
from poflow.services.notification_service import build_po_context, send_notification

logger = structlog.get_logger()
router = APIRouter()


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _line_to_response(li: LineItem) -> LineItemResponse:
    return LineItemResponse(
        id=str(li.id),
        line_number=li.line_number,
        description=li.description,
        quantity=li.quantity,
        unit_price=li.unit_price,
        total_price=li.total_price,
        notes=li.notes,
    )


def po_to_response(po: PurchaseOrder, line_items: list[LineItem]) -> PurchaseOrderResponse:
    return PurchaseOrderResponse(
        id=str(po.id),
        organization_id=str(po.organization_id),
        po_number=po.po_number,
        title=po.title,
        description=po.description,
        status=po.status,
        currency=po.currency,
        tax_mode=po.tax_mode,
        tax_rate=po.tax_rate,
        tax_rate_id=str(po.tax_rate_id) if po.tax_rate_id else None,
        subtotal_amount=po.subtotal_amount,
        tax_amount=po.tax_amount,
        total_amount=po.total_amount,
        supplier_name=po.supplier_name,
        supplier_email=po.supplier_email,
        supplier_phone=po.supplier_phone,
        supplier_address=po.supplier_address,
        order_date=to_iso(po.order_date),
        delivery_date=to_iso(po.delivery_date),
        notes=po.notes,
        created_by_id=str(po.created_by_id) if po.created_by_id else None,
        invoice_received_at=to_iso(po.invoice_received_at),
        has_invoice=bool(po.invoice_url),
        line_items=[_line_to_response(li) for li in line_items],
        created_at=to_iso(po.created_at) or "",
        updated_at=to_iso(po.updated_at) or "",
    )


def approval_to_response(req: ApprovalRequest) -> ApprovalRequestResponse:
    return ApprovalRequestResponse(
        id=str(req.id),
        purchase_order_id=str(req.purchase_order_id),
        requester_id=str(req.requester_id),
        approver_id=str(req.approver_id) if req.approver_id else None,
        status=req.status,
        amount=req.amount,
        reason=req.reason,
        decided_at=to_iso(req.decided_at),
        created_at=to_iso(req.created_at) or "",
    )


def user_summary(user: Optional[User]) -> Optional[UserSummary]:
    if user is None:
        return None
    return UserSummary(id=str(user.id), name=user.name, email=user.email)


def _display_name(current_user: dict) -> str:
    return current_user.get("name") or current_user["email"]


@router.get("", response_model=Page[PurchaseOrderResponse])
async def list_purchase_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    po_status: Optional[str] = Query(None, alias="status"),
    current_user: dict = Depends(require_permission("can_view_po")),
    db: AsyncSession = Depends(get_db),
):
    org_id = uuid.UUID(current_user["organization_id"])
    q = select(PurchaseOrder).where(PurchaseOrder.organization_id == org_id)
    count_q = select(func.count(PurchaseOrder.id)).where(PurchaseOrder.organization_id == org_id)
    if po_status:
        q = q.where(PurchaseOrder.status == po_status)
        count_q = count_q.where(PurchaseOrder.status == po_status)

    total = (await db.execute(count_q)).scalar() or 0
    result = await db.execute(
        q.order_by(PurchaseOrder.created_at.desc()).offset(page_offset(page, limit)).limit(limit)
    )
    pos = list(result.scalars().all())

    lines_by_po: dict = {po.id: [] for po in pos}
    if pos:
        li_result = await db.execute(
            select(LineItem)
            .where(LineItem.purchase_order_id.in_(list(lines_by_po)))
            .order_by(LineItem.line_number)
        )
        for li in li_result.scalars().all():
            lines_by_po[li.purchase_order_id].append(li)

    items = [po_to_response(po, lines_by_po[po.id]) for po in pos]
    return Page(data=items, pagination=page_info(page, limit, total))


@router.post("", response_model=PurchaseOrderResponse, status_code=201)
async def create_purchase_order(
    body: PurchaseOrderCreateRequest,
    current_user: dict = Depends(require_permission("can_create_po")),
    db: AsyncSession = Depends(get_db),
):
    po, line_items = await approval_service.create_purchase_order(
        db, body, body.status, current_user
    )
    return po_to_response(po, line_items)


@router.post("/submit-for-approval", response_model=SubmissionResponse, status_code=201)
async def submit_for_approval(
    body: SubmitForApprovalRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(require_permission("can_create_po")),
    db: AsyncSession = Depends(get_db),
):
    result = await approval_service.submit_for_approval(
        db, body.purchase_order_data, body.approver_id, current_user
    )
    # Commit before queueing the email so the approver is never told about a
    # submission that did not persist. A failed email never undoes it.
    await db.commit()
    background_tasks.add_task(
        send_notification,
        "approval_requested",
        [result.approver.email],
        build_po_context(result.purchase_order, requester_name=_display_name(current_user)),
    )
    return SubmissionResponse(
        purchase_order=po_to_response(result.purchase_order, result.line_items),
        approval_request=approval_to_response(result.approval_request),
    )


@router.get("/{po_id}", response_model=PurchaseOrderResponse)
async def get_purchase_order(
    po_id: uuid.UUID,
    current_user: dict = Depends(require_permission("can_view_po")),
    db: AsyncSession = Depends(get_db),
):
    po = await purchase_order_service.get_purchase_order(db, po_id, current_user["organization_id"])
    line_items = await purchase_order_service.get_line_items(db, po.id)
    return po_to_response(po, line_items)


@router.patch("/{po_id}", response_model=PurchaseOrderResponse)
async def update_purchase_order(
    po_id: uuid.UUID,
    body: PurchaseOrderUpdate,
    current_user: dict = Depends(require_permission("can_edit_po")),
    db: AsyncSession = Depends(get_db),
):
    po, line_items = await purchase_order_service.update_draft(db, po_id, body, current_user)
    return po_to_response(po, line_items)


@router.post("/{po_id}/cancel", response_model=PurchaseOrderResponse)
async def cancel_purchase_order(
    po_id: uuid.UUID,
    body: CancelRequest = CancelRequest(),
    current_user: dict = Depends(require_permission("can_delete_po")),
    db: AsyncSession = Depends(get_db),
):
    po = await purchase_order_service.cancel_purchase_order(db, po_id, current_user, body.reason)
    line_items = await purchase_order_service.get_line_items(db, po.id)
    return po_to_response(po, line_items)


@router.post("/{po_id}/submit-for-approval", response_model=SubmissionResponse)
async def resubmit_for_approval(
    po_id: uuid.UUID,
    body: ResubmitRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(require_permission("can_edit_po")),
    db: AsyncSession = Depends(get_db),
):
    result = await approval_service.resubmit_for_approval(
        db, po_id, body.approver_id, current_user
    )
    await db.commit()
    background_tasks.add_task(
        send_notification,
        "approval_requested",
        [result.approver.email],
        build_po_context(result.purchase_order, requester_name=_display_name(current_user)),
    )
    return SubmissionResponse(
        purchase_order=po_to_response(result.purchase_order, result.line_items),
        approval_request=approval_to_response(result.approval_request),
    )


@router.get("/{po_id}/audit-trail", response_model=AuditTrailResponse)
async def get_audit_trail(
    po_id: uuid.UUID,
    current_user: dict = Depends(require_permission("can_view_po")),
    db: AsyncSession = Depends(get_db),
):
    trail = await approval_service.get_audit_trail(db, po_id, current_user["organization_id"])
    if not trail.has_approval_request:
        return AuditTrailResponse(has_approval_request=False, audit_trail=[])

    req = trail.approval_request
    return AuditTrailResponse(
        has_approval_request=True,
        approval_request=AuditTrailApprovalRequest(
            id=str(req.id),
            status=req.status,
            amount=req.amount,
            reason=req.reason,
            created_at=to_iso(req.created_at) or "",
            decided_at=to_iso(req.decided_at),
            requester=user_summary(trail.requester),
            approver=user_summary(trail.approver),
        ),
        audit_trail=[
            AuditTrailEntry(
                id=str(entry.action.id),
                approval_request_id=str(entry.action.approval_request_id),
                action=entry.action.action,
                reason=entry.action.reason,
                created_at=to_iso(entry.action.created_at) or "",
                user=user_summary(entry.user),
            )
            for entry in trail.entries
        ],
    )


@router.post("/{po_id}/invoice-upload-link", response_model=InvoiceUploadLinkResponse)
async def create_invoice_upload_link(
    po_id: uuid.UUID,
    body: InvoiceUploadLinkRequest = InvoiceUploadLinkRequest(),
    current_user: dict = Depends(require_permission("can_send_po")),
    db: AsyncSession = Depends(get_db),
):
    ttl = timedelta(hours=body.expires_in_hours) if body.expires_in_hours else None
    issued = await invoice_upload_service.issue_token(
        db, po_id, current_user["organization_id"], ttl=ttl
    )
    return InvoiceUploadLinkResponse(
        upload_url=issued.upload_url,
        expires_at=issued.expires_at.isoformat() + "Z",
    )


@router.get("/{po_id}/invoice", response_model=InvoiceDownloadResponse)
async def get_invoice(
    po_id: uuid.UUID,
    current_user: dict = Depends(require_permission("can_view_po")),
    db: AsyncSession = Depends(get_db),
):
    url, received_at = await invoice_upload_service.get_invoice_download_url(
        db, po_id, current_user["organization_id"]
    )
    return InvoiceDownloadResponse(url=url, received_at=to_iso(received_at))


@router.post("/{po_id}/send-email", response_model=SendToSupplierResponse)
async def send_to_supplier(
    po_id: uuid.UUID,
    body: SendToSupplierRequest = SendToSupplierRequest(),
    current_user: dict = Depends(require_permission("can_send_po")),
    db: AsyncSession = Depends(get_db),
):
    ttl = timedelta(hours=body.expires_in_hours) if body.expires_in_hours else None
    prepared = await supplier_dispatch_service.prepare_dispatch(db, po_id, current_user, ttl=ttl)
    # Persist the upload link and release the PO row before calling Brevo
    await db.commit()

    await supplier_dispatch_service.deliver(prepared, reply_to=current_user["email"])

    po = await supplier_dispatch_service.mark_sent(db, po_id, current_user["organization_id"])
    await db.commit()
    line_items = await purchase_order_service.get_line_items(db, po.id)
    return SendToSupplierResponse(
        purchase_order=po_to_response(po, line_items),
        recipient=prepared.recipient,
        upload_url=prepared.upload.upload_url,
        upload_expires_at=prepared.upload.expires_at.isoformat() + "Z",
    )
