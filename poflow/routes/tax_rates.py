import uuid
from typing import List

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from poflow.database import get_db
from poflow.middleware.auth import get_current_user
from poflow.middleware.authorization import require_permission
from poflow.models.tax_rate import TaxRate
from poflow.schemas.tax_rate import TaxRateCreate, TaxRateResponse, TaxRateUpdate
from poflow.services import organization_service

router = APIRouter()


def _to_response(t: TaxRate) -> TaxRateResponse:
    return TaxRateResponse(
        id=str(t.id),
        name=t.name,
        rate=t.rate,
        is_default=bool(t.is_default),
        is_active=bool(t.is_active),
    )


@router.get("", response_model=List[TaxRateResponse])
async def list_tax_rates(
    include_inactive: bool = Query(False),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rates = await organization_service.list_tax_rates(
        db, current_user["organization_id"], include_inactive
    )
    return [_to_response(t) for t in rates]


@router.post("", response_model=TaxRateResponse, status_code=201)
async def create_tax_rate(
    body: TaxRateCreate,
    current_user: dict = Depends(require_permission("can_manage_organization")),
    db: AsyncSession = Depends(get_db),
):
    entry = await organization_service.create_tax_rate(
        db, current_user["organization_id"], body.name, body.rate, body.is_default
    )
    return _to_response(entry)


@router.patch("/{tax_rate_id}", response_model=TaxRateResponse)
async def update_tax_rate(
    tax_rate_id: uuid.UUID,
    body: TaxRateUpdate,
    current_user: dict = Depends(require_permission("can_manage_organization")),
    db: AsyncSession = Depends(get_db),
):
    entry = await organization_service.update_tax_rate(
        db, tax_rate_id, current_user["organization_id"], body.model_dump(exclude_unset=True)
    )
    return _to_response(entry)


@router.delete("/{tax_rate_id}", status_code=204)
async def delete_tax_rate(
    tax_rate_id: uuid.UUID,
    current_user: dict = Depends(require_permission("can_manage_organization")),
    db: AsyncSession = Depends(get_db),
):
    await organization_service.delete_tax_rate(db, tax_rate_id, current_user["organization_id"])
    return Response(status_code=204)
