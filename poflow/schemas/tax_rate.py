from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class TaxRateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    rate: Decimal = Field(..., ge=0, le=100, decimal_places=2)
    is_default: bool = False


class TaxRateUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    rate: Optional[Decimal] = Field(None, ge=0, le=100, decimal_places=2)
    is_default: Optional[bool] = None
    is_active: Optional[bool] = None


class TaxRateResponse(BaseModel):
    id: str
    name: str
    rate: Decimal
    is_default: bool
    is_active: bool
