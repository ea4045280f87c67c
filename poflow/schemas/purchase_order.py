import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

TaxMode = Literal["NONE", "EXCLUSIVE", "INCLUSIVE"]


class LineItemCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    # Match the Numeric(12, 3) and Numeric(12, 2) columns so nothing is rounded on write
    quantity: Decimal = Field(..., gt=0, max_digits=12, decimal_places=3)
    unit_price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    notes: Optional[str] = None


class LineItemResponse(BaseModel):
    id: str
    line_number: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    notes: Optional[str] = None


class PurchaseOrderCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    # Allocated from the organization's counter when omitted
    po_number: Optional[str] = Field(None, min_length=1, max_length=50)
    currency: str = Field("GBP", min_length=3, max_length=3)
    tax_mode: TaxMode = "EXCLUSIVE"
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100, decimal_places=2)
    tax_rate_id: Optional[uuid.UUID] = None
    supplier_name: str = Field(..., min_length=1, max_length=200)
    supplier_email: Optional[EmailStr] = None
    supplier_phone: Optional[str] = Field(None, max_length=50)
    supplier_address: Optional[str] = Field(None, max_length=500)
    order_date: Optional[datetime] = None
    delivery_date: Optional[datetime] = None
    notes: Optional[str] = None
    line_items: List[LineItemCreate] = Field(..., min_length=1)


class PurchaseOrderCreateRequest(PurchaseOrderCreate):
    """Direct creation. SENT is only allowed when no approval is needed."""

    status: Literal["DRAFT", "SENT"] = "DRAFT"


class PurchaseOrderUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    tax_mode: Optional[TaxMode] = None
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=100, decimal_places=2)
    tax_rate_id: Optional[uuid.UUID] = None
    supplier_name: Optional[str] = Field(None, min_length=1, max_length=200)
    supplier_email: Optional[EmailStr] = None
    supplier_phone: Optional[str] = Field(None, max_length=50)
    supplier_address: Optional[str] = Field(None, max_length=500)
    order_date: Optional[datetime] = None
    delivery_date: Optional[datetime] = None
    notes: Optional[str] = None
    line_items: Optional[List[LineItemCreate]] = Field(None, min_length=1)


class PurchaseOrderResponse(BaseModel):
    id: str
    organization_id: str
    po_number: str
    title: str
    description: Optional[str] = None
    status: str
    currency: str
    tax_mode: str
    tax_rate: Decimal
    tax_rate_id: Optional[str] = None
    subtotal_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    supplier_name: str
    supplier_email: Optional[str] = None
    supplier_phone: Optional[str] = None
    supplier_address: Optional[str] = None
    order_date: Optional[str] = None
    delivery_date: Optional[str] = None
    notes: Optional[str] = None
    created_by_id: Optional[str] = None
    invoice_received_at: Optional[str] = None
    has_invoice: bool = False
    line_items: List[LineItemResponse] = []
    created_at: str
    updated_at: str


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class InvoiceUploadLinkRequest(BaseModel):
    expires_in_hours: Optional[int] = Field(None, ge=1, le=24 * 90)


class InvoiceUploadLinkResponse(BaseModel):
    upload_url: str
    expires_at: str


class InvoiceDownloadResponse(BaseModel):
    url: str
    received_at: Optional[str] = None


class SendToSupplierRequest(BaseModel):
    # Lifetime of the invoice upload link included in the email
    expires_in_hours: Optional[int] = Field(None, ge=1, le=24 * 90)


class SendToSupplierResponse(BaseModel):
    purchase_order: PurchaseOrderResponse
    recipient: str
    upload_url: str
    upload_expires_at: str
