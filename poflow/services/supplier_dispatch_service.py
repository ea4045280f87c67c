"""
Sending a purchase order to its supplier by email.

The send happens between two short transactions so that no row lock is held
while Brevo is called:
  prepare_dispatch  check the PO can go out, issue a fresh invoice upload link
                    and render the email
  deliver           hand the message to Brevo
  mark_sent         DRAFT/APPROVED -> SENT once Brevo accepted the message
The route commits after prepare_dispatch. If delivery fails the PO keeps its
status; the upload link it was issued is simply never used.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, status as http_status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from poflow.models.purchase_order import PurchaseOrder
from poflow.services.approval_service import get_organization, requires_approval
from poflow.services.email_service import send_email
from poflow.services.invoice_upload_service import IssuedToken, issue_token
from poflow.services.notification_service import (
    build_po_context,
    render_line_rows,
    render_template,
)
from poflow.services.purchase_order_service import get_line_items, get_purchase_order
from poflow.services.tax_service import format_currency

logger = structlog.get_logger()

SENDABLE_STATUSES = ("DRAFT", "APPROVED", "SENT")
MARKS_SENT = ("DRAFT", "APPROVED")


@dataclass
class PreparedDispatch:
    purchase_order: PurchaseOrder
    recipient: str
    subject: str
    html: str
    upload: IssuedToken


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": {"code": code, "message": message}},
    )


def _display_date(value: Optional[datetime], fmt: str = "%d %B %Y") -> str:
    return value.strftime(fmt) if value else "Not specified"


async def prepare_dispatch(
    session: AsyncSession,
    po_id,
    current_user: dict,
    ttl: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> PreparedDispatch:
    po = await get_purchase_order(session, po_id, current_user["organization_id"])
    if po.status not in SENDABLE_STATUSES:
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "INVALID_STATE_TRANSITION",
            f"A purchase order in status {po.status} cannot be sent to the supplier",
        )
    if not po.supplier_email:
        raise _error(
            http_status.HTTP_400_BAD_REQUEST,
            "SUPPLIER_EMAIL_REQUIRED",
            "The purchase order has no supplier email address",
        )

    org = await get_organization(session, po.organization_id)
    if po.status == "DRAFT" and requires_approval(org, current_user["role"], po.subtotal_amount):
        raise _error(
            http_status.HTTP_403_FORBIDDEN,
            "APPROVAL_REQUIRED",
            "This purchase order must be approved before it is sent",
        )

    line_items = await get_line_items(session, po.id)
    upload = await issue_token(session, po.id, po.organization_id, ttl=ttl, now=now)

    context = build_po_context(
        po,
        organization_name=org.name,
        line_rows=render_line_rows(line_items, po.currency),
        subtotal_display=format_currency(po.subtotal_amount, po.currency),
        tax_display=format_currency(po.tax_amount, po.currency),
        delivery_date=_display_date(po.delivery_date),
        notes=po.notes or "",
        upload_url=upload.upload_url,
        upload_expires=_display_date(upload.expires_at, "%d %B %Y %H:%M UTC"),
    )
    rendered = render_template("purchase_order_issued", context)
    if rendered is None:
        raise _error(
            http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            "INTERNAL_ERROR",
            "Could not render the purchase order email",
        )
    subject, html = rendered
    return PreparedDispatch(
        purchase_order=po,
        recipient=po.supplier_email,
        subject=subject,
        html=html,
        upload=upload,
    )


async def deliver(prepared: PreparedDispatch, reply_to: Optional[str] = None) -> None:
    """Send the rendered email. Raises 502 when Brevo does not accept it."""
    accepted = await send_email(
        [prepared.recipient], prepared.subject, prepared.html, reply_to=reply_to
    )
    if not accepted:
        logger.error(
            "supplier_email_failed",
            po_id=str(prepared.purchase_order.id),
            recipient=prepared.recipient,
        )
        raise _error(
            http_status.HTTP_502_BAD_GATEWAY,
            "EMAIL_SEND_FAILED",
            "Failed to send the purchase order email. Please try again.",
        )


async def mark_sent(session: AsyncSession, po_id, organization_id) -> PurchaseOrder:
    po = await get_purchase_order(session, po_id, organization_id, lock=True)
    if po.status in MARKS_SENT:
        po.status = "SENT"
        await session.flush()
    else:
        # Resend of a SENT PO, or the PO moved on while the email was in flight
        logger.info("supplier_email_status_unchanged", po_id=str(po.id), status=po.status)
    logger.info("purchase_order_sent_to_supplier", po_id=str(po.id), po_number=po.po_number)
    return po
