from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from voucher_ledger.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StagingTransaction(Base):
    """Imported grid row waiting to be grouped by doc_no into a voucher."""

    __tablename__ = "staging_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trx_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    doc_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    debit_acc: Mapped[str | None] = mapped_column(String(32), nullable=True)
    credit_acc: Mapped[str | None] = mapped_column(String(32), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str | None] = mapped_column(String(16), nullable=True)
    partner_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    project_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (Index("ix_staging_transactions_doc_no", "doc_no"),)
