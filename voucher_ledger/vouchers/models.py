from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from voucher_ledger.core.database import Base
from voucher_ledger.errors import ImmutableRecordError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


VOUCHER_STATUSES = ("DRAFT", "POSTED", "VOIDED")

# doc_no prefix per voucher type
VOUCHER_TYPE_PREFIXES: dict[str, str] = {
    "GENERAL": "PK",
    "CASH_IN": "PT",
    "CASH_OUT": "PC",
    "BANK_IN": "BC",
    "BANK_OUT": "BN",
    "PURCHASE": "PN",
    "SALE": "PX",
    "CLOSING": "KC",
    "ALLOCATION": "PB",
    "DEPRECIATION": "KH",
    "REVALUATION": "DG",
    "ADJUSTMENT": "DC",
}


class Voucher(Base):
    __tablename__ = "vouchers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    doc_no: Mapped[str] = mapped_column(String(64), nullable=False)
    doc_date: Mapped[date] = mapped_column(Date(), nullable=False)
    post_date: Mapped[date] = mapped_column(Date(), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="GENERAL")
    currency: Mapped[str] = mapped_column(String(16), nullable=False, default="VND")
    fx_rate: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("1"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")
    org_doc_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    org_doc_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    posted_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    items: Mapped[list[VoucherItem]] = relationship(
        "VoucherItem",
        back_populates="voucher",
        cascade="all, delete-orphan",
        order_by="VoucherItem.line_no",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("doc_no", name="uq_vouchers_doc_no"),
        CheckConstraint("status IN ('DRAFT', 'POSTED', 'VOIDED')", name="ck_vouchers_status"),
        CheckConstraint("fx_rate > 0", name="ck_vouchers_fx_rate_positive"),
        Index("ix_vouchers_doc_date", "doc_date"),
        Index("ix_vouchers_type_status", "type", "status"),
    )


class VoucherItem(Base):
    __tablename__ = "voucher_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    voucher_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("vouchers.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    debit_acc: Mapped[str | None] = mapped_column(String(32), nullable=True)
    credit_acc: Mapped[str | None] = mapped_column(String(32), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    partner_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    project_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contract_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    item_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sub_item_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    fund_source_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dimensions_json: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)

    voucher: Mapped[Voucher] = relationship("Voucher", back_populates="items")

    __table_args__ = (
        UniqueConstraint("voucher_id", "line_no", name="uq_voucher_items_line_no"),
        CheckConstraint("amount >= 0", name="ck_voucher_items_amount_nonnegative"),
    )


class GeneralLedgerEntry(Base):
    __tablename__ = "general_ledger"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    trx_date: Mapped[date] = mapped_column(Date(), nullable=False)
    posted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    doc_no: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    account_code: Mapped[str] = mapped_column(String(32), nullable=False)
    reciprocal_acc: Mapped[str | None] = mapped_column(String(32), nullable=True)
    debit_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    credit_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    voucher_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("vouchers.id", ondelete="RESTRICT"),
        nullable=False,
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    partner_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    project_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    item_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sub_item_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)

    __table_args__ = (
        CheckConstraint("debit_amount >= 0", name="ck_general_ledger_debit_nonnegative"),
        CheckConstraint("credit_amount >= 0", name="ck_general_ledger_credit_nonnegative"),
        CheckConstraint(
            "((debit_amount > 0 AND credit_amount = 0) OR (credit_amount > 0 AND debit_amount = 0))",
            name="ck_general_ledger_single_sided",
        ),
        Index("ix_general_ledger_voucher", "voucher_id"),
        Index("ix_general_ledger_account_date", "account_code", "trx_date"),
    )


class DocumentSequence(Base):
    __tablename__ = "document_sequences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    voucher_type: Mapped[str] = mapped_column(String(32), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    current_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("voucher_type", "fiscal_year", name="uq_document_sequences_scope"),)


@event.listens_for(GeneralLedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise ImmutableRecordError(GeneralLedgerEntry.__tablename__)
