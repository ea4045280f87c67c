"""
Purchase order service: lookups, tax snapshot, creation, draft edits, cancel.

All functions use the caller's session (no commit). get_db() auto-commits.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException, status as http_status
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from poflow.models.purchase_order import PurchaseOrder, LineItem
from poflow.models.tax_rate import TaxRate
from poflow.schemas.purchase_order import PurchaseOrderCreate, PurchaseOrderUpdate
from poflow.services.counter_service import generate_po_number
from poflow.services.tax_service import (
    TaxCalculation,
    ZERO,
    calculate_tax,
    line_total,
    to_decimal,
)

logger = structlog.get_logger()

EDITABLE_STATUSES = ("DRAFT",)
CANCELLABLE_STATUSES = ("DRAFT", "APPROVED", "SENT")
REQUIRED_FIELDS = ("title", "supplier_name", "currency", "tax_mode")
MAX_PO_NUMBER_SKIPS = 50


@dataclass
class TaxSnapshot:
    rate: Decimal
    tax_rate_id: Optional[uuid.UUID]
    calculation: TaxCalculation


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": {"code": code, "message": message}},
    )


def po_not_found() -> HTTPException:
    return _error(http_status.HTTP_404_NOT_FOUND, "PO_NOT_FOUND", "Purchase order not found")


def as_uuid(value) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Columns store naive UTC; convert aware datetimes from clients."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


async def get_purchase_order(
    session: AsyncSession,
    po_id,
    organization_id,
    lock: bool = False,
) -> PurchaseOrder:
    """Organization-scoped fetch. Absent and cross-tenant both raise 404."""
    q = select(PurchaseOrder).where(
        PurchaseOrder.id == as_uuid(po_id),
        PurchaseOrder.organization_id == as_uuid(organization_id),
    )
    if lock:
        q = q.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(q)
    po = result.scalar_one_or_none()
    if not po:
        raise po_not_found()
    return po


async def get_line_items(session: AsyncSession, po_id) -> list[LineItem]:
    result = await session.execute(
        select(LineItem)
        .where(LineItem.purchase_order_id == po_id)
        .order_by(LineItem.line_number)
    )
    return list(result.scalars().all())


async def resolve_tax_rate(
    session: AsyncSession,
    organization_id,
    tax_rate: Optional[Decimal],
    tax_rate_id: Optional[uuid.UUID],
) -> tuple[Decimal, Optional[uuid.UUID]]:
    """
    Rate to freeze onto the PO.

    An explicit rate wins; otherwise the referenced catalog entry, otherwise
    the organization's default entry, otherwise zero.
    """
    if tax_rate is not None:
        return to_decimal(tax_rate), tax_rate_id

    if tax_rate_id is not None:
        result = await session.execute(
            select(TaxRate).where(
                TaxRate.id == tax_rate_id,
                TaxRate.organization_id == as_uuid(organization_id),
                TaxRate.is_active == True,  # noqa: E712
            )
        )
        entry = result.scalar_one_or_none()
        if not entry:
            raise _error(
                http_status.HTTP_404_NOT_FOUND,
                "TAX_RATE_NOT_FOUND",
                "Tax rate not found",
            )
        return to_decimal(entry.rate), entry.id

    result = await session.execute(
        select(TaxRate).where(
            TaxRate.organization_id == as_uuid(organization_id),
            TaxRate.is_default == True,  # noqa: E712
            TaxRate.is_active == True,  # noqa: E712
        )
    )
    default = result.scalars().first()
    if default:
        return to_decimal(default.rate), default.id
    return ZERO, None


async def compute_tax_snapshot(
    session: AsyncSession,
    organization_id,
    line_items,
    tax_mode: str,
    tax_rate: Optional[Decimal],
    tax_rate_id: Optional[uuid.UUID],
) -> TaxSnapshot:
    rate, rate_id = await resolve_tax_rate(session, organization_id, tax_rate, tax_rate_id)
    return TaxSnapshot(
        rate=rate,
        tax_rate_id=rate_id,
        calculation=calculate_tax(line_items, tax_mode, rate),
    )


def _build_line_items(po_id: uuid.UUID, line_items) -> list[LineItem]:
    return [
        LineItem(
            id=uuid.uuid4(),
            purchase_order_id=po_id,
            line_number=idx,
            description=li.description,
            quantity=to_decimal(li.quantity),
            unit_price=to_decimal(li.unit_price),
            total_price=line_total(li.quantity, li.unit_price),
            notes=li.notes,
        )
        for idx, li in enumerate(line_items, start=1)
    ]


async def po_number_in_use(
    session: AsyncSession, organization_id: uuid.UUID, po_number: str
) -> bool:
    result = await session.execute(
        select(PurchaseOrder.id).where(
            PurchaseOrder.organization_id == organization_id,
            PurchaseOrder.po_number == po_number,
        )
    )
    return result.scalar_one_or_none() is not None


async def allocate_po_number(session: AsyncSession, organization_id: uuid.UUID) -> str:
    """
    Next free counter-based number.

    A number typed in by hand can sit ahead of the counter. Those are skipped
    rather than failing the insert, which would roll the counter back and hit
    the same number on every later attempt. The counter row stays locked, so
    skipping is safe against concurrent allocations.
    """
    for _ in range(MAX_PO_NUMBER_SKIPS):
        po_number = await generate_po_number(session, organization_id)
        if not await po_number_in_use(session, organization_id, po_number):
            return po_number
        logger.warning(
            "po_number_skipped",
            organization_id=str(organization_id),
            po_number=po_number,
        )
    raise _error(
        http_status.HTTP_409_CONFLICT,
        "PO_NUMBER_TAKEN",
        "Could not allocate a free purchase order number",
    )


async def create_purchase_order(
    session: AsyncSession,
    data: PurchaseOrderCreate,
    current_user: dict,
    status: str,
    snapshot: TaxSnapshot,
) -> tuple[PurchaseOrder, list[LineItem]]:
    """Insert the PO and its line items with an already computed tax snapshot."""
    organization_id = uuid.UUID(current_user["organization_id"])
    po_number = data.po_number or await allocate_po_number(session, organization_id)
    calc = snapshot.calculation

    po = PurchaseOrder(
        id=uuid.uuid4(),
        organization_id=organization_id,
        po_number=po_number,
        title=data.title,
        description=data.description,
        status=status,
        currency=data.currency.upper(),
        tax_mode=data.tax_mode,
        tax_rate=snapshot.rate,
        tax_rate_id=snapshot.tax_rate_id,
        subtotal_amount=calc.subtotal_amount,
        tax_amount=calc.tax_amount,
        total_amount=calc.total_amount,
        supplier_name=data.supplier_name,
        supplier_email=data.supplier_email,
        supplier_phone=data.supplier_phone,
        supplier_address=data.supplier_address,
        order_date=naive_utc(data.order_date) or datetime.utcnow(),
        delivery_date=naive_utc(data.delivery_date),
        notes=data.notes,
        created_by_id=uuid.UUID(current_user["user_id"]),
    )
    line_items = _build_line_items(po.id, data.line_items)

    session.add(po)
    session.add_all(line_items)
    try:
        await session.flush()
    except IntegrityError:
        # A caller-supplied number that is already taken
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "PO_NUMBER_TAKEN",
            f"Purchase order number {po_number} is already in use",
        )

    logger.info(
        "purchase_order_created",
        po_id=str(po.id),
        po_number=po_number,
        status=status,
        total_amount=str(calc.total_amount),
    )
    return po, line_items


async def update_draft(
    session: AsyncSession,
    po_id,
    data: PurchaseOrderUpdate,
    current_user: dict,
) -> tuple[PurchaseOrder, list[LineItem]]:
    """Edit a DRAFT PO. Tax is recomputed from the resulting line items."""
    po = await get_purchase_order(session, po_id, current_user["organization_id"], lock=True)
    if po.status not in EDITABLE_STATUSES:
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "PO_NOT_EDITABLE",
            f"Purchase order is {po.status} and can no longer be edited",
        )

    fields = data.model_dump(exclude_unset=True, exclude={"line_items", "tax_rate", "tax_rate_id"})
    for name, value in fields.items():
        if value is None and name in REQUIRED_FIELDS:
            continue
        if name in ("order_date", "delivery_date"):
            value = naive_utc(value)
        if name == "currency" and value:
            value = value.upper()
        setattr(po, name, value)

    if data.line_items is not None:
        await session.execute(
            delete(LineItem).where(LineItem.purchase_order_id == po.id)
        )
        line_items = _build_line_items(po.id, data.line_items)
        session.add_all(line_items)
    else:
        line_items = await get_line_items(session, po.id)

    rate_changed = "tax_rate" in data.model_fields_set or "tax_rate_id" in data.model_fields_set
    if rate_changed:
        rate, rate_id = await resolve_tax_rate(
            session, po.organization_id, data.tax_rate, data.tax_rate_id
        )
        po.tax_rate = rate
        po.tax_rate_id = rate_id

    calc = calculate_tax(line_items, po.tax_mode, po.tax_rate)
    po.subtotal_amount = calc.subtotal_amount
    po.tax_amount = calc.tax_amount
    po.total_amount = calc.total_amount
    await session.flush()

    logger.info("purchase_order_updated", po_id=str(po.id), fields=sorted(fields))
    return po, line_items


async def cancel_purchase_order(
    session: AsyncSession,
    po_id,
    current_user: dict,
    reason: Optional[str] = None,
) -> PurchaseOrder:
    po = await get_purchase_order(session, po_id, current_user["organization_id"], lock=True)
    if po.status not in CANCELLABLE_STATUSES:
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "INVALID_STATE_TRANSITION",
            f"Cannot cancel a purchase order in status {po.status}",
        )

    po.status = "CANCELLED"
    # A cancelled PO must not accept an invoice
    po.invoice_upload_token = None
    po.invoice_upload_token_expires_at = None
    if reason:
        po.notes = f"{po.notes}\n\nCancelled: {reason}" if po.notes else f"Cancelled: {reason}"
    await session.flush()

    logger.info("purchase_order_cancelled", po_id=str(po.id), user_id=current_user["user_id"])
    return po
