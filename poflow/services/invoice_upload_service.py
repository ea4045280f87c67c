"""
Invoice upload links: single-use, time-limited tokens on a purchase order.

Lifecycle:
  issue_token    store a fresh random token + expiry on the PO
  resolve_token  public lookup; 404 unknown, 410 expired, 409 already uploaded
  consume_token  same checks, store the file, then one conditional UPDATE that
                 sets the invoice and clears the token

The conditional UPDATE is the single-use guarantee. No row lock is held
while the file is written to object storage; if two uploads race, the one
whose UPDATE matches zero rows deletes its stored file and gets a 409.
"""

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException, status as http_status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import sentry_sdk
import structlog

from poflow.config import settings
from poflow.models.purchase_order import PurchaseOrder
from poflow.services.purchase_order_service import get_purchase_order
from poflow.services.storage import invoice_storage

logger = structlog.get_logger()

ALLOWED_CONTENT_TYPES = {
    "application/pdf",
    "image/png",
    "image/jpeg",
    # Non-standard, but some browsers still send it
    "image/jpg",
}
TOKEN_BYTES = 32
MAX_TOKEN_ATTEMPTS = 3
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


@dataclass
class IssuedToken:
    token: str
    expires_at: datetime
    upload_url: str


@dataclass
class PublicPurchaseOrderSummary:
    po_number: str
    supplier_name: str
    total_amount: Decimal
    currency: str
    expires_at: Optional[datetime]


@dataclass
class ConsumedUpload:
    po_number: str
    invoice_url: str


def _error(status_code: int, code: str, message: str, **extra) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": {"code": code, "message": message, **extra}},
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


def generate_upload_token() -> str:
    """256 bits from the OS CSPRNG, hex encoded."""
    return secrets.token_hex(TOKEN_BYTES)


def build_upload_url(token: str) -> str:
    return f"{settings.APP_BASE_URL.rstrip('/')}/invoice-upload?token={token}"


async def issue_token(
    session: AsyncSession,
    po_id,
    organization_id,
    ttl: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> IssuedToken:
    """Attach a fresh upload token to the PO, replacing any previous one."""
    now = now or datetime.utcnow()
    ttl = ttl or timedelta(hours=settings.INVOICE_UPLOAD_TOKEN_TTL_HOURS)

    po = await get_purchase_order(session, po_id, organization_id, lock=True)
    if po.status == "CANCELLED":
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "INVALID_STATE_TRANSITION",
            "Cannot request an invoice for a cancelled purchase order",
        )
    if po.invoice_url:
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "INVOICE_ALREADY_UPLOADED",
            "An invoice has already been uploaded for this purchase order",
            uploaded_at=_iso(po.invoice_received_at),
        )

    po_id_str = str(po.id)
    expires_at = now + ttl
    for attempt in range(1, MAX_TOKEN_ATTEMPTS + 1):
        token = generate_upload_token()
        try:
            async with session.begin_nested():
                po.invoice_upload_token = token
                po.invoice_upload_token_expires_at = expires_at
        except IntegrityError:
            # token collision on the unique index
            logger.warning("upload_token_collision", po_id=po_id_str, attempt=attempt)
            continue
        break
    else:
        raise _error(
            http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            "INTERNAL_ERROR",
            "Could not generate an upload link",
        )

    logger.info(
        "invoice_upload_token_issued",
        po_id=po_id_str,
        expires_at=expires_at.isoformat(),
    )
    return IssuedToken(token=token, expires_at=expires_at, upload_url=build_upload_url(token))


async def _find_valid(session: AsyncSession, token: Optional[str], now: datetime) -> PurchaseOrder:
    """The three public checks, in order: unknown, expired, already uploaded."""
    if not token:
        raise _error(
            http_status.HTTP_400_BAD_REQUEST,
            "UPLOAD_TOKEN_REQUIRED",
            "Token is required",
        )

    result = await session.execute(
        select(PurchaseOrder).where(PurchaseOrder.invoice_upload_token == token)
    )
    po = result.scalar_one_or_none()
    if not po:
        raise _error(
            http_status.HTTP_404_NOT_FOUND,
            "UPLOAD_TOKEN_INVALID",
            "Invalid token. This upload link is not valid.",
        )

    expires_at = po.invoice_upload_token_expires_at
    if expires_at is not None and now > expires_at:
        raise _error(
            http_status.HTTP_410_GONE,
            "UPLOAD_TOKEN_EXPIRED",
            "This upload link has expired. Please contact the sender for a new link.",
            expired_at=_iso(expires_at),
        )

    if po.invoice_url:
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "INVOICE_ALREADY_UPLOADED",
            "An invoice has already been uploaded for this purchase order.",
            uploaded_at=_iso(po.invoice_received_at),
        )
    return po


async def resolve_token(
    session: AsyncSession, token: Optional[str], now: Optional[datetime] = None
) -> PublicPurchaseOrderSummary:
    """Redacted PO summary for the public upload page. No internal ids."""
    po = await _find_valid(session, token, now or datetime.utcnow())
    return PublicPurchaseOrderSummary(
        po_number=po.po_number,
        supplier_name=po.supplier_name,
        total_amount=po.total_amount,
        currency=po.currency,
        expires_at=po.invoice_upload_token_expires_at,
    )


def validate_upload_file(content_type: Optional[str], size: int) -> None:
    if (content_type or "").lower() not in ALLOWED_CONTENT_TYPES:
        raise _error(
            http_status.HTTP_400_BAD_REQUEST,
            "INVALID_FILE_TYPE",
            "Invalid file type. Only PDF, PNG, and JPG files are allowed.",
        )
    if size > settings.INVOICE_MAX_FILE_SIZE:
        max_mb = settings.INVOICE_MAX_FILE_SIZE // (1024 * 1024)
        raise _error(
            http_status.HTTP_400_BAD_REQUEST,
            "FILE_TOO_LARGE",
            f"File too large. Maximum size is {max_mb}MB.",
        )


def sanitize_filename(filename: Optional[str]) -> str:
    # Drop any client-side directory part before replacing unsafe characters
    base = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", base).lstrip(".")
    return cleaned[:200] or "invoice"


def build_invoice_key(organization_id, po_id, filename: Optional[str], now: datetime) -> str:
    """Object key: {organization}/{po}/{timestamp_ms}/{sanitized filename}."""
    timestamp_ms = int((now - datetime(1970, 1, 1)).total_seconds() * 1000)
    return f"{organization_id}/{po_id}/{timestamp_ms}/{sanitize_filename(filename)}"


async def discard_stored_file(key: str):
    try:
        await run_in_threadpool(invoice_storage.delete, key)
    except Exception as exc:
        logger.error("invoice_orphan_delete_failed", key=key, error=str(exc))
        sentry_sdk.capture_exception(exc)


async def consume_token(
    session: AsyncSession,
    token: Optional[str],
    filename: Optional[str],
    content_type: Optional[str],
    file_bytes: Optional[bytes],
    now: Optional[datetime] = None,
) -> ConsumedUpload:
    now = now or datetime.utcnow()
    po = await _find_valid(session, token, now)

    if file_bytes is None:
        raise _error(http_status.HTTP_400_BAD_REQUEST, "FILE_REQUIRED", "No file provided")
    validate_upload_file(content_type, len(file_bytes))

    key = build_invoice_key(po.organization_id, po.id, filename, now)
    try:
        await run_in_threadpool(
            invoice_storage.upload, file_bytes, key, content_type.lower()
        )
    except Exception as exc:
        logger.error("invoice_storage_upload_failed", po_id=str(po.id), error=str(exc))
        sentry_sdk.capture_exception(exc)
        raise _error(
            http_status.HTTP_502_BAD_GATEWAY,
            "STORAGE_UPLOAD_FAILED",
            "Failed to upload file. Please try again.",
        )

    result = await session.execute(
        update(PurchaseOrder)
        .where(
            PurchaseOrder.id == po.id,
            PurchaseOrder.invoice_upload_token == token,
            PurchaseOrder.invoice_url.is_(None),
        )
        .values(
            invoice_url=key,
            invoice_received_at=now,
            status="INVOICED",
            invoice_upload_token=None,
            invoice_upload_token_expires_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Another upload consumed the token after our checks
        logger.warning("invoice_upload_lost_race", po_id=str(po.id))
        await discard_stored_file(key)
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "INVOICE_ALREADY_UPLOADED",
            "An invoice has already been uploaded for this purchase order.",
        )

    logger.info(
        "invoice_uploaded",
        po_id=str(po.id),
        po_number=po.po_number,
        size=len(file_bytes),
        content_type=content_type,
    )
    return ConsumedUpload(po_number=po.po_number, invoice_url=key)


async def get_invoice_download_url(
    session: AsyncSession, po_id, organization_id, expires_in: int = 3600
) -> tuple[str, Optional[datetime]]:
    po = await get_purchase_order(session, po_id, organization_id)
    if not po.invoice_url:
        raise _error(
            http_status.HTTP_404_NOT_FOUND,
            "INVOICE_NOT_FOUND",
            "No invoice has been uploaded for this purchase order",
        )
    url = await run_in_threadpool(invoice_storage.get_presigned_url, po.invoice_url, expires_in)
    return url, po.invoice_received_at
