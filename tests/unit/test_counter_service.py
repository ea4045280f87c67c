"""
Unit tests for poflow/services/counter_service.py

Tests: increment of an existing counter, first allocation, insert race
retry, PO number formatting.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from poflow.models.counter import Counter
from poflow.services.counter_service import (
    PO_COUNTER,
    allocate_next_value,
    format_po_number,
    generate_po_number,
    next_value,
)
from tests.factories import ORG_ID, added, mock_session, queue_results, result_with

ORG = uuid.UUID(ORG_ID)


def _counter(value: int):
    c = MagicMock()
    c.value = value
    return c


@pytest.mark.asyncio
async def test_increments_existing_counter():
    session = mock_session()
    counter = _counter(41)
    # 1. set_lock_timeout, 2. SELECT ... FOR UPDATE
    queue_results(session, result_with(), result_with(counter))

    value = await next_value(session, ORG, PO_COUNTER)

    assert value == 42
    assert counter.value == 42
    session.flush.assert_awaited()


@pytest.mark.asyncio
async def test_first_allocation_inserts_row_with_value_one():
    session = mock_session()
    queue_results(session, result_with(), result_with(None))

    value = await next_value(session, ORG, PO_COUNTER)

    assert value == 1
    rows = added(session, Counter)
    assert len(rows) == 1
    assert rows[0].value == 1
    assert rows[0].organization_id == ORG
    assert rows[0].name == PO_COUNTER
    session.begin_nested.assert_called_once()


@pytest.mark.asyncio
async def test_insert_race_retries_and_increments_winner_row():
    session = mock_session()
    winner = _counter(1)
    queue_results(
        session,
        result_with(),        # set_lock_timeout
        result_with(None),    # no row yet
        result_with(winner),  # retry finds the row the other transaction inserted
    )
    nested = session.begin_nested.return_value
    nested.__aexit__ = AsyncMock(
        side_effect=[IntegrityError("INSERT", {}, Exception("duplicate key")), False]
    )

    with patch("poflow.services.counter_service.wait_exponential", return_value=lambda rs: 0):
        value = await next_value(session, ORG, PO_COUNTER)

    assert value == 2
    assert winner.value == 2


@pytest.mark.asyncio
async def test_generate_po_number_formats_value():
    session = mock_session()
    queue_results(session, result_with(), result_with(_counter(6)))

    po_number = await generate_po_number(session, ORG)

    assert po_number == "PO-00007"


def test_format_po_number_defaults():
    assert format_po_number(1) == "PO-00001"
    assert format_po_number(123456) == "PO-123456"


def test_format_po_number_custom_prefix_and_padding():
    assert format_po_number(12, prefix="ACME", padding=3) == "ACME-012"


@pytest.mark.asyncio
async def test_allocate_next_value_retries_lock_timeouts():
    lock_timeout = OperationalError("SELECT", {}, Exception("lock timeout"))
    session = MagicMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    tx = session.begin.return_value
    tx.__aenter__ = AsyncMock(return_value=tx)
    tx.__aexit__ = AsyncMock(return_value=False)
    session_factory = MagicMock(return_value=session)
    with patch("poflow.services.counter_service.AsyncSessionLocal", session_factory), patch(
        "poflow.services.counter_service.next_value", AsyncMock(side_effect=[lock_timeout, 7])
    ) as allocate, patch(
        "poflow.services.counter_service.wait_exponential", return_value=lambda rs: 0
    ):
        value = await allocate_next_value(ORG, PO_COUNTER)

    assert value == 7
    assert allocate.await_count == 2
    # One short transaction per attempt
    assert session_factory.call_count == 2
