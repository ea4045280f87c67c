"""
Notification service: template rendering plus dispatch via email.

Recipient addresses are resolved DURING the request (while the DB session is
open), then send_notification runs via BackgroundTasks after the commit.
A failed notification is logged and reported; it never fails the workflow
step that triggered it.
"""

import html
from typing import Iterable, Optional

import sentry_sdk
import structlog

from poflow.config import settings
from poflow.services.email_service import send_email
from poflow.services.tax_service import format_currency

logger = structlog.get_logger()

# ---------- Template registry ----------

TEMPLATES = {
    "approval_requested": {
        "subject": "Approval Required: PO #{po_number}",
        "html": (
            "<h2>Approval Required</h2>"
            "<p>{requester_name} has submitted purchase order "
            "<strong>{po_number}</strong> for your approval.</p>"
            "<p><strong>Title:</strong> {po_title}</p>"
            "<p><strong>Supplier:</strong> {supplier_name}</p>"
            "<p><strong>Amount:</strong> {amount_display}</p>"
            "<p><a href='{po_link}'>Review the purchase order</a></p>"
        ),
    },
    "approval_granted": {
        "subject": "Approved: PO #{po_number}",
        "html": (
            "<h2>Purchase Order Approved</h2>"
            "<p>Your purchase order <strong>{po_number}</strong> ({po_title}) has been "
            "<span style='color:green'>approved</span> by {approver_name}.</p>"
            "<p><a href='{po_link}'>View the purchase order</a></p>"
        ),
    },
    "approval_denied": {
        "subject": "Denied: PO #{po_number}",
        "html": (
            "<h2>Purchase Order Denied</h2>"
            "<p>Your purchase order <strong>{po_number}</strong> ({po_title}) has been "
            "<span style='color:red'>denied</span> by {approver_name}.</p>"
            "<p><strong>Reason:</strong> {reason}</p>"
            "<p>The order is back in draft; edit it and resubmit when ready.</p>"
            "<p><a href='{po_link}'>View the purchase order</a></p>"
        ),
    },
    "purchase_order_issued": {
        "subject": "Purchase Order #{po_number} from {organization_name}",
        "html": (
            "<h2>Purchase Order {po_number}</h2>"
            "<p>Dear {supplier_name},</p>"
            "<p>{organization_name} has issued the following purchase order.</p>"
            "<table cellpadding='6' style='border-collapse:collapse'>"
            "<tr><th align='left'>Description</th><th>Qty</th>"
            "<th>Unit price</th><th>Total</th></tr>"
            "{line_rows}"
            "</table>"
            "<p><strong>Subtotal:</strong> {subtotal_display}<br>"
            "<strong>Tax:</strong> {tax_display}<br>"
            "<strong>Total:</strong> {amount_display}</p>"
            "<p><strong>Delivery date:</strong> {delivery_date}</p>"
            "<p>{notes}</p>"
            "<p>Please upload your invoice for this order here:<br>"
            "<a href='{upload_url}'>Upload invoice</a></p>"
            "<p>This link expires on {upload_expires}.</p>"
        ),
    },
}

# Context values substituted verbatim; they are built from escaped parts
PRE_RENDERED_KEYS = frozenset({"line_rows"})


def po_link(po_id) -> str:
    return f"{settings.APP_BASE_URL.rstrip('/')}/purchase-orders/{po_id}"


def build_po_context(po, **extra) -> dict:
    """Template context for a purchase order. Call while the session is open."""
    context = {
        "po_number": po.po_number,
        "po_title": po.title,
        "supplier_name": po.supplier_name,
        "amount_display": format_currency(po.total_amount, po.currency),
        "po_link": po_link(po.id),
    }
    context.update(extra)
    return context


def escape_context(context: dict) -> dict:
    """HTML-escape every value (quotes included, so links are attribute safe)."""
    escaped = {}
    for key, value in context.items():
        if key in PRE_RENDERED_KEYS:
            escaped[key] = value
        else:
            escaped[key] = html.escape("" if value is None else str(value))
    return escaped


def render_line_rows(line_items: Iterable, currency: str) -> str:
    rows = []
    for li in line_items:
        cells = (
            li.description,
            f"{li.quantity.normalize():f}",
            format_currency(li.unit_price, currency),
            format_currency(li.total_price, currency),
        )
        rows.append(
            "<tr>" + "".join(f"<td>{html.escape(str(cell))}</td>" for cell in cells) + "</tr>"
        )
    return "".join(rows)


def render_template(template_id: str, context: dict) -> Optional[tuple[str, str]]:
    """Subject is plain text; the body is rendered from escaped values."""
    template = TEMPLATES.get(template_id)
    if not template:
        logger.warning("notification_template_not_found", template_id=template_id)
        return None
    try:
        subject = template["subject"].format(**context)
        html_body = template["html"].format(**escape_context(context))
    except KeyError as e:
        logger.error(
            "notification_template_render_error",
            template_id=template_id,
            missing_key=str(e),
        )
        return None
    return subject, html_body


async def send_notification(
    template_id: str,
    recipient_emails: list[str],
    context: dict,
) -> bool:
    """Render and send. Returns success; never raises."""
    if not recipient_emails:
        logger.warning("notification_no_recipients", template_id=template_id)
        return False

    rendered = render_template(template_id, context)
    if rendered is None:
        return False
    subject, html_body = rendered

    try:
        result = await send_email(recipient_emails, subject, html_body)
    except Exception as exc:
        logger.error(
            "notification_send_failed",
            template_id=template_id,
            error=str(exc),
        )
        sentry_sdk.capture_exception(exc)
        return False

    logger.info(
        "notification_sent",
        template_id=template_id,
        recipients=recipient_emails,
        success=result,
    )
    return result
