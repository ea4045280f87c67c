"""
Organization settings, membership roles and the tax-rate catalog.

All functions use the caller's session (no commit). get_db() auto-commits.
"""

import uuid
from decimal import Decimal

from fastapi import HTTPException, status as http_status
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from poflow.database import set_lock_timeout
from poflow.middleware.authorization import ADMIN_ROLES, ROLE_ORDER, role_rank
from poflow.models.organization import Organization
from poflow.models.purchase_order import PurchaseOrder
from poflow.models.tax_rate import TaxRate
from poflow.models.user import User
from poflow.services.approval_service import get_organization
from poflow.services.purchase_order_service import as_uuid
from poflow.services.tax_service import quantize_money

logger = structlog.get_logger()


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": {"code": code, "message": message}},
    )


async def update_approval_settings(
    session: AsyncSession,
    organization_id,
    approval_threshold: Decimal,
    auto_approve_admin: bool,
) -> Organization:
    org = await get_organization(session, organization_id)
    org.approval_threshold = quantize_money(approval_threshold)
    org.auto_approve_admin = auto_approve_admin
    await session.flush()
    logger.info(
        "approval_settings_updated",
        organization_id=str(org.id),
        approval_threshold=str(org.approval_threshold),
        auto_approve_admin=auto_approve_admin,
    )
    return org


async def list_approvers(session: AsyncSession, organization_id) -> list[User]:
    """Active admins of the organization, i.e. valid approver choices."""
    result = await session.execute(
        select(User)
        .where(
            User.organization_id == as_uuid(organization_id),
            User.role.in_(ADMIN_ROLES),
            User.is_active == True,  # noqa: E712
        )
        .order_by(User.name, User.email)
    )
    return list(result.scalars().all())


async def change_user_role(
    session: AsyncSession,
    target_user_id,
    new_role: str,
    current_user: dict,
) -> User:
    """
    Change a member's role.

    Only SUPER_ADMIN may grant SUPER_ADMIN or touch an existing SUPER_ADMIN,
    nobody may change their own role, and the last admin cannot be demoted.
    """
    if role_rank(new_role) < 0:
        raise _error(
            http_status.HTTP_400_BAD_REQUEST,
            "VALIDATION_ERROR",
            f"Invalid role. Must be one of {', '.join(ROLE_ORDER)}",
        )
    actor_role = current_user["role"]
    if new_role == "SUPER_ADMIN" and actor_role != "SUPER_ADMIN":
        raise _error(
            http_status.HTTP_403_FORBIDDEN,
            "ROLE_CHANGE_FORBIDDEN",
            "Only Super Admins can assign the Super Admin role",
        )

    organization_id = as_uuid(current_user["organization_id"])
    target_id = as_uuid(target_user_id)
    if str(target_id) == current_user["user_id"]:
        raise _error(
            http_status.HTTP_400_BAD_REQUEST,
            "ROLE_CHANGE_FORBIDDEN",
            "You cannot change your own role",
        )

    await set_lock_timeout(session)
    # Lock every admin row so two concurrent demotions cannot both pass the count
    result = await session.execute(
        select(User)
        .where(
            User.organization_id == organization_id,
            User.role.in_(ADMIN_ROLES),
        )
        .with_for_update()
    )
    admins = list(result.scalars().all())

    result = await session.execute(
        select(User).where(User.id == target_id, User.organization_id == organization_id)
    )
    target = result.scalar_one_or_none()
    if not target:
        raise _error(http_status.HTTP_404_NOT_FOUND, "USER_NOT_FOUND", "User not found")

    if target.role == "SUPER_ADMIN" and actor_role != "SUPER_ADMIN":
        raise _error(
            http_status.HTTP_403_FORBIDDEN,
            "ROLE_CHANGE_FORBIDDEN",
            "Only Super Admins can modify Super Admin roles",
        )

    if target.role in ADMIN_ROLES and new_role not in ADMIN_ROLES and len(admins) <= 1:
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "LAST_ADMIN",
            "Cannot change the role of the last administrator. At least one admin must remain.",
        )

    old_role = target.role
    target.role = new_role
    await session.flush()
    logger.info(
        "user_role_changed",
        target_user_id=str(target.id),
        old_role=old_role,
        new_role=new_role,
        changed_by=current_user["user_id"],
    )
    return target


async def list_tax_rates(
    session: AsyncSession, organization_id, include_inactive: bool = False
) -> list[TaxRate]:
    q = select(TaxRate).where(TaxRate.organization_id == as_uuid(organization_id))
    if not include_inactive:
        q = q.where(TaxRate.is_active == True)  # noqa: E712
    result = await session.execute(q.order_by(TaxRate.name))
    return list(result.scalars().all())


async def create_tax_rate(
    session: AsyncSession,
    organization_id,
    name: str,
    rate: Decimal,
    is_default: bool = False,
) -> TaxRate:
    organization_id = as_uuid(organization_id)
    if is_default:
        # Only one default per organization
        await _clear_default(session, organization_id)
    entry = TaxRate(
        id=uuid.uuid4(),
        organization_id=organization_id,
        name=name,
        rate=quantize_money(rate),
        is_default=is_default,
        is_active=True,
    )
    session.add(entry)
    try:
        await session.flush()
    except IntegrityError:
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "TAX_RATE_EXISTS",
            f"A tax rate named '{name}' already exists",
        )
    logger.info("tax_rate_created", tax_rate_id=str(entry.id), rate=str(entry.rate))
    return entry


async def _clear_default(session: AsyncSession, organization_id: uuid.UUID, keep_id=None):
    q = update(TaxRate).where(
        TaxRate.organization_id == organization_id,
        TaxRate.is_default == True,  # noqa: E712
    )
    if keep_id is not None:
        q = q.where(TaxRate.id != keep_id)
    await session.execute(q.values(is_default=False))


async def get_tax_rate(session: AsyncSession, tax_rate_id, organization_id) -> TaxRate:
    result = await session.execute(
        select(TaxRate).where(
            TaxRate.id == as_uuid(tax_rate_id),
            TaxRate.organization_id == as_uuid(organization_id),
        )
    )
    entry = result.scalar_one_or_none()
    if not entry:
        raise _error(http_status.HTTP_404_NOT_FOUND, "TAX_RATE_NOT_FOUND", "Tax rate not found")
    return entry


async def update_tax_rate(
    session: AsyncSession,
    tax_rate_id,
    organization_id,
    changes: dict,
) -> TaxRate:
    """
    Apply a partial update to a catalog entry.

    Purchase orders keep the rate they were created with, so editing or
    deactivating an entry never changes existing totals. An inactive entry
    cannot stay the default.
    """
    entry = await get_tax_rate(session, tax_rate_id, organization_id)

    if "name" in changes and changes["name"] is not None:
        entry.name = changes["name"]
    if "rate" in changes and changes["rate"] is not None:
        entry.rate = quantize_money(changes["rate"])
    if changes.get("is_active") is not None:
        entry.is_active = changes["is_active"]
    if changes.get("is_default") is not None:
        if changes["is_default"] and not entry.is_default:
            await _clear_default(session, entry.organization_id, keep_id=entry.id)
        entry.is_default = changes["is_default"]
    if not entry.is_active:
        entry.is_default = False

    try:
        await session.flush()
    except IntegrityError:
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "TAX_RATE_EXISTS",
            f"A tax rate named '{entry.name}' already exists",
        )
    logger.info(
        "tax_rate_updated",
        tax_rate_id=str(entry.id),
        fields=sorted(k for k, v in changes.items() if v is not None),
    )
    return entry


async def delete_tax_rate(session: AsyncSession, tax_rate_id, organization_id) -> None:
    """Remove an unused entry. Entries referenced by a PO must be deactivated instead."""
    entry = await get_tax_rate(session, tax_rate_id, organization_id)
    in_use = (
        await session.execute(
            select(func.count(PurchaseOrder.id)).where(PurchaseOrder.tax_rate_id == entry.id)
        )
    ).scalar() or 0
    if in_use:
        raise _error(
            http_status.HTTP_409_CONFLICT,
            "TAX_RATE_IN_USE",
            f"Tax rate is used by {in_use} purchase order(s); deactivate it instead",
        )
    await session.delete(entry)
    await session.flush()
    logger.info("tax_rate_deleted", tax_rate_id=str(entry.id))
