from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from voucher_ledger.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PeriodLock(Base):
    __tablename__ = "period_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[int] = mapped_column(Integer, nullable=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=utcnow)
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("fiscal_year", "period", name="uq_period_locks_year_period"),
        CheckConstraint("period BETWEEN 1 AND 12", name="ck_period_locks_period_range"),
    )


class LockWatermark(Base):
    """Single-row table; the row with ``id == 1`` holds the active "locked until" date."""

    __tablename__ = "period_lock_watermark"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    locked_until: Mapped[date | None] = mapped_column(Date(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
