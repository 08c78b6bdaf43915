from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Index, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from voucher_ledger.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


RESERVATION_STATUSES = ("RESERVED", "SPENT", "RELEASED")


class FundAllocation(Base):
    __tablename__ = "budget_funds"

    fund_ref: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    allocated_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (CheckConstraint("allocated_amount >= 0", name="ck_budget_funds_allocated_nonnegative"),)


class BudgetReservation(Base):
    __tablename__ = "budget_reservations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    fund_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    voucher_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="RESERVED")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('RESERVED', 'SPENT', 'RELEASED')", name="ck_budget_reservations_status"),
        Index("ix_budget_reservations_fund_status", "fund_ref", "status"),
        Index("ix_budget_reservations_voucher", "voucher_id"),
    )
