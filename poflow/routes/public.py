"""
Public, unauthenticated routes used by suppliers holding an invoice upload link.

Responses never reveal internal ids; every unknown or cleared token is the
same generic 404.
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from poflow.config import settings
from poflow.database import get_db
from poflow.routes.purchase_orders import to_iso
from poflow.schemas.public import InvoiceUploadResponse, PoDetailsResponse, PublicPurchaseOrder
from poflow.services import invoice_upload_service

logger = structlog.get_logger()
router = APIRouter()


@router.get("/po-details", response_model=PoDetailsResponse)
async def get_po_details(
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    summary = await invoice_upload_service.resolve_token(db, token)
    return PoDetailsResponse(
        purchase_order=PublicPurchaseOrder(
            po_number=summary.po_number,
            supplier_name=summary.supplier_name,
            total_amount=summary.total_amount,
            currency=summary.currency,
            expires_at=to_iso(summary.expires_at),
        )
    )


@router.post("/invoice-upload", response_model=InvoiceUploadResponse)
async def upload_invoice(
    token: Optional[str] = Query(None),
    file: Optional[UploadFile] = File(None),
    db: AsyncSession = Depends(get_db),
):
    file_bytes = None
    filename = content_type = None
    if file is not None:
        # One byte over the ceiling is enough to reject as too large
        file_bytes = await file.read(settings.INVOICE_MAX_FILE_SIZE + 1)
        filename = file.filename
        content_type = file.content_type

    consumed = await invoice_upload_service.consume_token(
        db, token, filename, content_type, file_bytes
    )
    # The supplier is only told the upload worked once the token is spent
    try:
        await db.commit()
    except Exception:
        await invoice_upload_service.discard_stored_file(consumed.invoice_url)
        raise
    return InvoiceUploadResponse(po_number=consumed.po_number)
