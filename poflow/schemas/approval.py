import uuid
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from poflow.schemas.purchase_order import PurchaseOrderCreate, PurchaseOrderResponse


class SubmitForApprovalRequest(BaseModel):
    purchase_order_data: PurchaseOrderCreate
    approver_id: uuid.UUID


class ResubmitRequest(BaseModel):
    approver_id: uuid.UUID


class DenyRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


class UserSummary(BaseModel):
    id: str
    name: Optional[str] = None
    email: str


class ApprovalRequestResponse(BaseModel):
    id: str
    purchase_order_id: str
    requester_id: str
    approver_id: Optional[str] = None
    status: str
    amount: Decimal
    reason: Optional[str] = None
    decided_at: Optional[str] = None
    created_at: str


class SubmissionResponse(BaseModel):
    purchase_order: PurchaseOrderResponse
    approval_request: ApprovalRequestResponse


class ApprovalDecisionResponse(BaseModel):
    approval_request: ApprovalRequestResponse
    purchase_order: PurchaseOrderResponse


class PendingPurchaseOrder(BaseModel):
    id: str
    po_number: str
    title: str
    supplier_name: str
    total_amount: Decimal
    currency: str


class PendingApprovalResponse(BaseModel):
    id: str
    status: str
    amount: Decimal
    created_at: str
    purchase_order: PendingPurchaseOrder
    requester: Optional[UserSummary] = None
    approver: Optional[UserSummary] = None


class AuditTrailApprovalRequest(BaseModel):
    id: str
    status: str
    amount: Decimal
    reason: Optional[str] = None
    created_at: str
    decided_at: Optional[str] = None
    requester: Optional[UserSummary] = None
    approver: Optional[UserSummary] = None


class AuditTrailEntry(BaseModel):
    id: str
    approval_request_id: str
    action: str
    reason: Optional[str] = None
    created_at: str
    user: Optional[UserSummary] = None


class AuditTrailResponse(BaseModel):
    has_approval_request: bool
    approval_request: Optional[AuditTrailApprovalRequest] = None
    audit_trail: List[AuditTrailEntry] = []
