from decimal import Decimal

from pydantic import BaseModel, Field


class ApprovalSettings(BaseModel):
    approval_threshold: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    auto_approve_admin: bool
