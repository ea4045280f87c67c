from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class PublicPurchaseOrder(BaseModel):
    """What a supplier holding an upload link may see. No internal ids."""

    po_number: str
    supplier_name: str
    total_amount: Decimal
    currency: str
    expires_at: Optional[str] = None


class PoDetailsResponse(BaseModel):
    success: bool = True
    purchase_order: PublicPurchaseOrder


class InvoiceUploadResponse(BaseModel):
    success: bool = True
    message: str = "Invoice uploaded successfully"
    po_number: str
