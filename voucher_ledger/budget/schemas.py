from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field


class FundAllocationUpdate(BaseModel):
    allocated_amount: Decimal = Field(ge=Decimal("0"))
    name: str | None = None


class FundAllocationRead(BaseModel):
    fund_ref: str
    name: str | None
    allocated_amount: Decimal
    reserved_amount: Decimal
    spent_amount: Decimal
    remaining_amount: Decimal
