"""
Unit tests for poflow/services/purchase_order_service.py

Tests: tax rate resolution order, PO number allocation and collisions,
draft edits, cancellation rules.
"""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError

from poflow.models.purchase_order import LineItem
from poflow.schemas.purchase_order import PurchaseOrderCreate, PurchaseOrderUpdate
from poflow.services.purchase_order_service import (
    MAX_PO_NUMBER_SKIPS,
    TaxSnapshot,
    allocate_po_number,
    cancel_purchase_order,
    create_purchase_order,
    get_purchase_order,
    resolve_tax_rate,
    update_draft,
)
from poflow.services.tax_service import calculate_tax
from tests.factories import ORG_ID, OTHER_ORG_ID, make_po, queue_results, result_with


def _tax_rate(rate: str, is_default: bool = False):
    t = MagicMock()
    t.id = uuid.uuid4()
    t.rate = Decimal(rate)
    t.is_default = is_default
    return t


def _error_code(exc_info) -> str:
    return exc_info.value.detail["error"]["code"]


@pytest.mark.asyncio
async def test_cross_tenant_lookup_is_not_found(session):
    queue_results(session, result_with(None))

    with pytest.raises(HTTPException) as exc_info:
        await get_purchase_order(session, uuid.uuid4(), OTHER_ORG_ID)

    assert exc_info.value.status_code == 404
    assert _error_code(exc_info) == "PO_NOT_FOUND"


@pytest.mark.asyncio
async def test_explicit_rate_wins_without_query(session):
    rate, rate_id = await resolve_tax_rate(session, ORG_ID, Decimal("5"), None)

    assert rate == Decimal("5")
    assert rate_id is None
    session.execute.assert_not_called()


@pytest.mark.asyncio
async def test_catalog_rate_is_snapshotted(session):
    entry = _tax_rate("17.50")
    queue_results(session, result_with(entry))

    rate, rate_id = await resolve_tax_rate(session, ORG_ID, None, entry.id)

    assert rate == Decimal("17.50")
    assert rate_id == entry.id


@pytest.mark.asyncio
async def test_unknown_catalog_rate(session):
    queue_results(session, result_with(None))

    with pytest.raises(HTTPException) as exc_info:
        await resolve_tax_rate(session, ORG_ID, None, uuid.uuid4())

    assert exc_info.value.status_code == 404
    assert _error_code(exc_info) == "TAX_RATE_NOT_FOUND"


@pytest.mark.asyncio
async def test_falls_back_to_org_default_then_zero(session):
    default = _tax_rate("20.00", is_default=True)
    queue_results(session, result_with(many=[default]), result_with(many=[]))

    assert await resolve_tax_rate(session, ORG_ID, None, None) == (Decimal("20.00"), default.id)
    assert await resolve_tax_rate(session, ORG_ID, None, None) == (Decimal("0"), None)


@pytest.mark.asyncio
async def test_duplicate_po_number_conflicts(session, manager_user):
    session.flush = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("duplicate")))
    data = PurchaseOrderCreate(
        title="Paper",
        supplier_name="Paper Co",
        po_number="PO-00001",
        line_items=[{"description": "A4", "quantity": 10, "unit_price": "3.50"}],
    )
    calc = calculate_tax(data.line_items, "EXCLUSIVE", Decimal("0"))
    snapshot = TaxSnapshot(rate=Decimal("0"), tax_rate_id=None, calculation=calc)

    with pytest.raises(HTTPException) as exc_info:
        await create_purchase_order(session, data, manager_user, "DRAFT", snapshot)

    assert exc_info.value.status_code == 409
    assert _error_code(exc_info) == "PO_NUMBER_TAKEN"


@pytest.mark.asyncio
async def test_update_draft_replaces_lines_and_recomputes(session, manager_user):
    po = make_po("DRAFT", tax_mode="EXCLUSIVE", tax_rate=Decimal("20.00"))
    queue_results(session, result_with(po), result_with())
    body = PurchaseOrderUpdate(
        title="Standing desks",
        line_items=[
            {"description": "Desk", "quantity": 2, "unit_price": "150.00"},
            {"description": "Mat", "quantity": 1, "unit_price": "25.00"},
        ],
    )

    updated, line_items = await update_draft(session, po.id, body, manager_user)

    assert updated.title == "Standing desks"
    assert [li.line_number for li in line_items] == [1, 2]
    assert all(isinstance(li, LineItem) for li in line_items)
    assert po.subtotal_amount == Decimal("325.00")
    assert po.tax_amount == Decimal("65.00")
    assert po.total_amount == Decimal("390.00")


@pytest.mark.asyncio
async def test_update_rejected_once_submitted(session, manager_user):
    po = make_po("PENDING_APPROVAL")
    queue_results(session, result_with(po))

    with pytest.raises(HTTPException) as exc_info:
        await update_draft(session, po.id, PurchaseOrderUpdate(title="x"), manager_user)

    assert exc_info.value.status_code == 409
    assert _error_code(exc_info) == "PO_NOT_EDITABLE"


@pytest.mark.asyncio
async def test_update_does_not_null_required_fields(session, manager_user):
    po = make_po("DRAFT")
    queue_results(session, result_with(po), result_with(many=[]))

    await update_draft(session, po.id, PurchaseOrderUpdate(title=None, notes=None), manager_user)

    assert po.title == "Office chairs"
    assert po.notes is None


@pytest.mark.asyncio
async def test_cancel_clears_upload_token(session, manager_user):
    po = make_po("SENT", invoice_upload_token="abc", notes="Rush order")
    queue_results(session, result_with(po))

    await cancel_purchase_order(session, po.id, manager_user, reason="Supplier closed")

    assert po.status == "CANCELLED"
    assert po.invoice_upload_token is None
    assert po.invoice_upload_token_expires_at is None
    assert po.notes == "Rush order\n\nCancelled: Supplier closed"


@pytest.mark.parametrize("status", ["PENDING_APPROVAL", "INVOICED", "CANCELLED"])
@pytest.mark.asyncio
async def test_cancel_refused_outside_cancellable_states(session, manager_user, status):
    queue_results(session, result_with(make_po(status)))

    with pytest.raises(HTTPException) as exc_info:
        await cancel_purchase_order(session, uuid.uuid4(), manager_user)

    assert exc_info.value.status_code == 409
    assert _error_code(exc_info) == "INVALID_STATE_TRANSITION"


@pytest.mark.asyncio
async def test_allocation_skips_number_taken_by_manual_po(session):
    # Counter at 2, but someone typed in PO-00003 by hand
    counter = MagicMock(value=2)
    queue_results(
        session,
        result_with(),              # set_lock_timeout
        result_with(counter),       # counter row -> 3
        result_with(uuid.uuid4()),  # PO-00003 exists
        result_with(),              # set_lock_timeout
        result_with(counter),       # counter row -> 4
        result_with(None),          # PO-00004 is free
    )

    po_number = await allocate_po_number(session, uuid.UUID(ORG_ID))

    assert po_number == "PO-00004"
    assert counter.value == 4


@pytest.mark.asyncio
async def test_auto_numbering_recovers_after_manual_number_ahead_of_counter(session, manager_user):
    counter = MagicMock(value=0)
    queue_results(
        session,
        result_with(),
        result_with(counter),
        result_with(uuid.uuid4()),  # PO-00001 was entered manually
        result_with(),
        result_with(counter),
        result_with(None),
    )
    data = PurchaseOrderCreate(
        title="Paper",
        supplier_name="Paper Co",
        line_items=[{"description": "A4", "quantity": 10, "unit_price": "3.50"}],
    )
    calc = calculate_tax(data.line_items, "EXCLUSIVE", Decimal("0"))
    snapshot = TaxSnapshot(rate=Decimal("0"), tax_rate_id=None, calculation=calc)

    po, _ = await create_purchase_order(session, data, manager_user, "DRAFT", snapshot)

    assert po.po_number == "PO-00002"


@pytest.mark.asyncio
async def test_allocation_gives_up_after_too_many_taken_numbers(session):
    taken = [f"PO-{n:05d}" for n in range(1, MAX_PO_NUMBER_SKIPS + 1)]
    queue_results(session, *[result_with(uuid.uuid4()) for _ in taken])

    with patch(
        "poflow.services.purchase_order_service.generate_po_number",
        AsyncMock(side_effect=taken),
    ):
        with pytest.raises(HTTPException) as exc_info:
            await allocate_po_number(session, uuid.UUID(ORG_ID))

    assert exc_info.value.status_code == 409
    assert _error_code(exc_info) == "PO_NUMBER_TAKEN"
