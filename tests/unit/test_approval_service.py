"""
Unit tests for poflow/services/approval_service.py

Tests: requires_approval (threshold, admin auto-approve), direct creation
gate, submit_for_approval, resubmission, approve/deny transitions and
their conflict paths, the deny then resubmit cycle, audit trail assembly.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException

from poflow.models.approval import ApprovalAction, ApprovalRequest
from poflow.schemas.purchase_order import PurchaseOrderCreate
from poflow.services.approval_service import (
    approve,
    create_purchase_order,
    deny,
    get_audit_trail,
    list_pending,
    requires_approval,
    resubmit_for_approval,
    submit_for_approval,
)
from tests.factories import (
    ADMIN_ID,
    added,
    make_approval_request,
    make_org,
    make_po,
    make_user,
    queue_results,
    result_with,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _po_data(unit_price: str = "100.00", **overrides) -> PurchaseOrderCreate:
    data = {
        "title": "Office chairs",
        "supplier_name": "Chairs R Us",
        "tax_mode": "EXCLUSIVE",
        "tax_rate": Decimal("20"),
        "line_items": [{"description": "Chair", "quantity": 1, "unit_price": unit_price}],
    }
    data.update(overrides)
    return PurchaseOrderCreate(**data)


def _error_code(exc_info) -> str:
    return exc_info.value.detail["error"]["code"]


# ---------------------------------------------------------------------------
# requires_approval
# ---------------------------------------------------------------------------


def test_below_threshold_needs_no_approval():
    assert requires_approval(make_org("50.00"), "MANAGER", Decimal("49.99")) is False


def test_threshold_is_inclusive():
    assert requires_approval(make_org("50.00"), "MANAGER", Decimal("50.00")) is True


def test_admin_auto_approves_when_enabled():
    org = make_org("50.00", auto_approve_admin=True)
    assert requires_approval(org, "ADMIN", Decimal("10000")) is False
    assert requires_approval(org, "SUPER_ADMIN", Decimal("10000")) is False


def test_admin_needs_approval_when_auto_approve_disabled():
    org = make_org("50.00", auto_approve_admin=False)
    assert requires_approval(org, "ADMIN", Decimal("50.00")) is True


# ---------------------------------------------------------------------------
# create_purchase_order (direct)
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_direct_send_over_threshold_is_refused(session, manager_user):
    queue_results(session, result_with(make_org("50.00")))

    with pytest.raises(HTTPException) as exc_info:
        await create_purchase_order(session, _po_data("100.00"), "SENT", manager_user)

    assert exc_info.value.status_code == 403
    assert _error_code(exc_info) == "APPROVAL_REQUIRED"
    session.add.assert_not_called()


@pytest.mark.asyncio
async def test_direct_send_by_auto_approving_admin(session, admin_user):
    queue_results(session, result_with(make_org("50.00", auto_approve_admin=True)))

    po, line_items = await create_purchase_order(
        session, _po_data("100.00", po_number="PO-MANUAL"), "SENT", admin_user
    )

    assert po.status == "SENT"
    assert po.po_number == "PO-MANUAL"
    assert po.subtotal_amount == Decimal("100.00")
    assert po.tax_amount == Decimal("20.00")
    assert po.total_amount == Decimal("120.00")
    assert [li.line_number for li in line_items] == [1]


@pytest.mark.asyncio
async def test_draft_never_checks_threshold(session, manager_user):
    # No organization lookup; the only query is the PO number allocation
    counter = MagicMock(value=0)
    queue_results(session, result_with(), result_with(counter))

    po, _ = await create_purchase_order(session, _po_data("9999.00"), "DRAFT", manager_user)

    assert po.status == "DRAFT"
    assert po.po_number == "PO-00001"


# ---------------------------------------------------------------------------
# submit_for_approval
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_submit_creates_pending_po_request_and_action(session, manager_user):
    approver = make_user("ADMIN", ADMIN_ID)
    counter = MagicMock(value=4)
    queue_results(
        session,
        result_with(approver),  # validate_approver
        result_with(),          # set_lock_timeout
        result_with(counter),   # counter row
    )

    result = await submit_for_approval(session, _po_data("100.00"), approver.id, manager_user)

    assert result.purchase_order.status == "PENDING_APPROVAL"
    assert result.purchase_order.po_number == "PO-00005"
    assert result.approver is approver

    request = result.approval_request
    assert request.status == "PENDING"
    assert request.amount == Decimal("100.00")
    assert request.approver_id == approver.id
    assert str(request.requester_id) == manager_user["user_id"]

    actions = added(session, ApprovalAction)
    assert len(actions) == 1
    assert actions[0].action == "SUBMITTED"
    assert actions[0].approval_request_id == request.id


@pytest.mark.asyncio
async def test_submit_rejects_non_admin_approver(session, manager_user):
    queue_results(session, result_with(None))

    with pytest.raises(HTTPException) as exc_info:
        await submit_for_approval(session, _po_data(), uuid.uuid4(), manager_user)

    assert exc_info.value.status_code == 400
    assert _error_code(exc_info) == "INVALID_APPROVER"
    session.add.assert_not_called()


# ---------------------------------------------------------------------------
# resubmit_for_approval
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_resubmit_replaces_previous_request(session, manager_user):
    po = make_po("DRAFT")
    previous = make_approval_request(po, status="DENIED")
    approver = make_user("ADMIN", ADMIN_ID)
    queue_results(
        session,
        result_with(),          # set_lock_timeout
        result_with(po),        # locked PO
        result_with(approver),  # validate_approver
        result_with(previous),  # live request
        result_with(many=[]),   # line items
    )

    result = await resubmit_for_approval(session, po.id, approver.id, manager_user, now=NOW)

    assert previous.deleted_at == NOW
    assert po.status == "PENDING_APPROVAL"
    assert result.approval_request is not previous
    assert result.approval_request.status == "PENDING"
    requests = added(session, ApprovalRequest)
    assert requests == [result.approval_request]


@pytest.mark.asyncio
async def test_resubmit_requires_draft(session, manager_user):
    po = make_po("PENDING_APPROVAL")
    queue_results(session, result_with(), result_with(po))

    with pytest.raises(HTTPException) as exc_info:
        await resubmit_for_approval(session, po.id, uuid.uuid4(), manager_user)

    assert exc_info.value.status_code == 409
    assert _error_code(exc_info) == "INVALID_STATE_TRANSITION"


# ---------------------------------------------------------------------------
# approve / deny
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_approve_sends_po(session, admin_user):
    po = make_po("PENDING_APPROVAL")
    request = make_approval_request(po)
    requester = make_user("MANAGER")
    queue_results(
        session,
        result_with(),           # set_lock_timeout
        result_with(request),    # locked request
        result_with(po),         # locked PO
        result_with(requester),  # requester for the notification
    )

    result = await approve(session, request.id, admin_user, now=NOW)

    assert request.status == "APPROVED"
    assert request.decided_at == NOW
    assert str(request.approver_id) == admin_user["user_id"]
    assert po.status == "SENT"
    assert result.requester is requester
    actions = added(session, ApprovalAction)
    assert [a.action for a in actions] == ["APPROVED"]


@pytest.mark.asyncio
async def test_manager_cannot_decide(session, manager_user):
    with pytest.raises(HTTPException) as exc_info:
        await approve(session, uuid.uuid4(), manager_user)

    assert exc_info.value.status_code == 403
    session.execute.assert_not_called()


@pytest.mark.asyncio
async def test_second_decision_conflicts(session, admin_user):
    request = make_approval_request(status="APPROVED")
    queue_results(session, result_with(), result_with(request))

    with pytest.raises(HTTPException) as exc_info:
        await deny(session, request.id, admin_user, reason="too late")

    assert exc_info.value.status_code == 409
    assert _error_code(exc_info) == "APPROVAL_ALREADY_PROCESSED"
    assert exc_info.value.detail["error"]["message"] == "This request has already been approved"
    session.add.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_request_is_not_found(session, admin_user):
    queue_results(session, result_with(), result_with(None))

    with pytest.raises(HTTPException) as exc_info:
        await approve(session, uuid.uuid4(), admin_user)

    assert exc_info.value.status_code == 404
    assert _error_code(exc_info) == "APPROVAL_NOT_FOUND"


@pytest.mark.asyncio
async def test_deny_returns_po_to_draft_with_reason(session, admin_user):
    po = make_po("PENDING_APPROVAL")
    request = make_approval_request(po)
    queue_results(
        session,
        result_with(),
        result_with(request),
        result_with(po),
        result_with(make_user("MANAGER")),
    )

    await deny(session, request.id, admin_user, reason="  Over budget  ", now=NOW)

    assert request.status == "DENIED"
    assert request.reason == "Over budget"
    assert po.status == "DRAFT"
    actions = added(session, ApprovalAction)
    assert actions[0].action == "DENIED"
    assert actions[0].reason == "Over budget"


@pytest.mark.asyncio
async def test_deny_then_resubmit_sequence(session, manager_user, admin_user):
    approver = make_user("ADMIN", ADMIN_ID)
    queue_results(
        session,
        result_with(approver),         # validate_approver
        result_with(),                 # set_lock_timeout
        result_with(MagicMock(value=0)),
        result_with(None),             # PO-00001 is free
    )
    submitted = await submit_for_approval(session, _po_data("100.00"), approver.id, manager_user)
    po = submitted.purchase_order
    first_request = submitted.approval_request
    statuses = [po.status]

    queue_results(
        session,
        result_with(),
        result_with(first_request),
        result_with(po),
        result_with(make_user("MANAGER")),
    )
    await deny(session, first_request.id, admin_user, reason="Wrong supplier", now=NOW)
    statuses.append(po.status)

    queue_results(
        session,
        result_with(),
        result_with(po),
        result_with(approver),
        result_with(first_request),
        result_with(many=[]),
    )
    resubmitted = await resubmit_for_approval(session, po.id, approver.id, manager_user, now=NOW)
    statuses.append(po.status)

    assert statuses == ["PENDING_APPROVAL", "DRAFT", "PENDING_APPROVAL"]
    assert first_request.status == "DENIED"
    assert first_request.deleted_at == NOW
    assert resubmitted.approval_request.status == "PENDING"
    assert resubmitted.approval_request.purchase_order_id == po.id
    actions = added(session, ApprovalAction)
    assert [a.action for a in actions] == ["SUBMITTED", "DENIED", "SUBMITTED"]
    assert [a.approval_request_id for a in actions] == [
        first_request.id,
        first_request.id,
        resubmitted.approval_request.id,
    ]


@pytest.mark.asyncio
async def test_deny_blank_reason_is_stored_as_none(session, admin_user):
    po = make_po("PENDING_APPROVAL")
    request = make_approval_request(po)
    queue_results(session, result_with(), result_with(request), result_with(po), result_with())

    await deny(session, request.id, admin_user, reason="   ")

    assert request.reason is None


# ---------------------------------------------------------------------------
# audit trail / pending list
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_audit_trail_without_request(session, admin_user):
    po = make_po("DRAFT")
    queue_results(session, result_with(po), result_with(many=[]))

    trail = await get_audit_trail(session, po.id, admin_user["organization_id"])

    assert trail.has_approval_request is False
    assert trail.entries == []


@pytest.mark.asyncio
async def test_audit_trail_uses_live_request_and_keeps_history(session, admin_user):
    po = make_po("PENDING_APPROVAL")
    old = make_approval_request(po, status="DENIED")
    old.deleted_at = NOW
    live = make_approval_request(po)
    requester = make_user("MANAGER")
    requester.id = live.requester_id
    approver = make_user("ADMIN")
    approver.id = live.approver_id

    rows = [(MagicMock(action=a), requester) for a in ("SUBMITTED", "DENIED", "SUBMITTED")]
    queue_results(
        session,
        result_with(po),
        result_with(many=[old, live]),
        result_with(rows=rows),
        result_with(many=[requester, approver]),
    )

    trail = await get_audit_trail(session, po.id, admin_user["organization_id"])

    assert trail.has_approval_request is True
    assert trail.approval_request is live
    assert trail.requester is requester
    assert trail.approver is approver
    assert [e.action.action for e in trail.entries] == ["SUBMITTED", "DENIED", "SUBMITTED"]


@pytest.mark.asyncio
async def test_list_pending(session, admin_user):
    po = make_po("PENDING_APPROVAL")
    request = make_approval_request(po)
    requester = make_user("MANAGER")
    queue_results(session, result_with(rows=[(request, po, requester)]))

    pending = await list_pending(session, admin_user["organization_id"])

    assert len(pending) == 1
    assert pending[0].approval_request is request
    assert pending[0].purchase_order is po
