"""
Counter service: gapless per-organization sequences (PO numbers).

next_value() runs in the caller's session: the counter row stays locked
(SELECT ... FOR UPDATE) until the caller's transaction ends, so two
concurrent allocations for the same organization serialize, and a value is
only consumed if the write that uses it commits.
"""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
import structlog

from poflow.config import settings
from poflow.database import AsyncSessionLocal, set_lock_timeout
from poflow.models.counter import Counter

logger = structlog.get_logger()

PO_COUNTER = "po_number"
MAX_ATTEMPTS = 5


class _CounterInsertRace(Exception):
    """Another transaction created the counter row between our read and insert."""


async def _lock_and_increment(
    session: AsyncSession, organization_id: uuid.UUID, counter_name: str
) -> int:
    result = await session.execute(
        select(Counter)
        .where(
            Counter.organization_id == organization_id,
            Counter.name == counter_name,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    counter = result.scalar_one_or_none()

    if counter is not None:
        counter.value = counter.value + 1
        await session.flush()
        return counter.value

    # First allocation for this (organization, name). The SAVEPOINT keeps a
    # unique violation from poisoning the caller's transaction.
    try:
        async with session.begin_nested():
            session.add(
                Counter(organization_id=organization_id, name=counter_name, value=1)
            )
    except IntegrityError as exc:
        logger.info(
            "counter_insert_race",
            organization_id=str(organization_id),
            counter=counter_name,
        )
        raise _CounterInsertRace(str(exc)) from exc
    return 1


async def next_value(
    session: AsyncSession, organization_id: uuid.UUID, counter_name: str
) -> int:
    """Atomically increment and return the counter. Starts at 1."""
    await set_lock_timeout(session)

    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(_CounterInsertRace),
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.05, max=1),
        reraise=True,
    ):
        with attempt:
            value = await _lock_and_increment(session, organization_id, counter_name)

    logger.debug(
        "counter_incremented",
        organization_id=str(organization_id),
        counter=counter_name,
        value=value,
    )
    return value


async def allocate_next_value(organization_id: uuid.UUID, counter_name: str) -> int:
    """
    Allocate a value in a short transaction of its own.

    Unlike next_value() the value is committed immediately, so it can be
    lost if the caller later fails. Lock timeouts are retried with backoff.
    """
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type((OperationalError, DBAPIError)),
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.1, max=2),
        reraise=True,
    ):
        with attempt:
            async with AsyncSessionLocal() as session:
                async with session.begin():
                    value = await next_value(session, organization_id, counter_name)
    return value


def format_po_number(
    value: int,
    prefix: Optional[str] = None,
    padding: Optional[int] = None,
) -> str:
    prefix = settings.PO_NUMBER_PREFIX if prefix is None else prefix
    padding = settings.PO_NUMBER_PADDING if padding is None else padding
    return f"{prefix}-{str(value).zfill(padding)}"


async def generate_po_number(
    session: AsyncSession,
    organization_id: uuid.UUID,
    prefix: Optional[str] = None,
    padding: Optional[int] = None,
) -> str:
    """Next PO number for the organization, e.g. PO-00001."""
    value = await next_value(session, organization_id, PO_COUNTER)
    return format_po_number(value, prefix, padding)
