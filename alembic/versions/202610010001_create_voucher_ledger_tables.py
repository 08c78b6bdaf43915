"""create voucher ledger tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "vouchers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("doc_no", sa.String(length=64), nullable=False),
        sa.Column("doc_date", sa.Date(), nullable=False),
        sa.Column("post_date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("fx_rate", sa.Numeric(18, 6), nullable=False, server_default="1"),
        sa.Column("total_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="DRAFT"),
        sa.Column("org_doc_no", sa.String(length=64), nullable=True),
        sa.Column("org_doc_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("posted_by", sa.String(length=255), nullable=True),
        sa.Column("voided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voided_by", sa.String(length=255), nullable=True),
        sa.Column("void_reason", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("doc_no", name="uq_vouchers_doc_no"),
        sa.CheckConstraint("status IN ('DRAFT', 'POSTED', 'VOIDED')", name="ck_vouchers_status"),
        sa.CheckConstraint("fx_rate > 0", name="ck_vouchers_fx_rate_positive"),
    )
    op.create_index("ix_vouchers_doc_date", "vouchers", ["doc_date"])
    op.create_index("ix_vouchers_type_status", "vouchers", ["type", "status"])

    op.create_table(
        "voucher_items",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("voucher_id", sa.Uuid(), nullable=False),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("debit_acc", sa.String(length=32), nullable=True),
        sa.Column("credit_acc", sa.String(length=32), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("partner_code", sa.String(length=64), nullable=True),
        sa.Column("project_code", sa.String(length=64), nullable=True),
        sa.Column("contract_code", sa.String(length=64), nullable=True),
        sa.Column("item_code", sa.String(length=64), nullable=True),
        sa.Column("sub_item_code", sa.String(length=64), nullable=True),
        sa.Column("fund_source_id", sa.String(length=64), nullable=True),
        sa.Column("dimensions_json", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["voucher_id"], ["vouchers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("voucher_id", "line_no", name="uq_voucher_items_line_no"),
        sa.CheckConstraint("amount >= 0", name="ck_voucher_items_amount_nonnegative"),
    )

    op.create_table(
        "general_ledger",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("trx_date", sa.Date(), nullable=False),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("doc_no", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("account_code", sa.String(length=32), nullable=False),
        sa.Column("reciprocal_acc", sa.String(length=32), nullable=True),
        sa.Column("debit_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("credit_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("voucher_id", sa.Uuid(), nullable=False),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("partner_code", sa.String(length=64), nullable=True),
        sa.Column("project_code", sa.String(length=64), nullable=True),
        sa.Column("item_code", sa.String(length=64), nullable=True),
        sa.Column("sub_item_code", sa.String(length=64), nullable=True),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.ForeignKeyConstraint(["voucher_id"], ["vouchers.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("debit_amount >= 0", name="ck_general_ledger_debit_nonnegative"),
        sa.CheckConstraint("credit_amount >= 0", name="ck_general_ledger_credit_nonnegative"),
        sa.CheckConstraint(
            "((debit_amount > 0 AND credit_amount = 0) OR (credit_amount > 0 AND debit_amount = 0))",
            name="ck_general_ledger_single_sided",
        ),
    )
    op.create_index("ix_general_ledger_voucher", "general_ledger", ["voucher_id"])
    op.create_index("ix_general_ledger_account_date", "general_ledger", ["account_code", "trx_date"])

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("voucher_type", sa.String(length=32), nullable=False),
        sa.Column("fiscal_year", sa.Integer(), nullable=False),
        sa.Column("current_value", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("voucher_type", "fiscal_year", name="uq_document_sequences_scope"),
    )

    op.create_table(
        "period_locks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("fiscal_year", sa.Integer(), nullable=False),
        sa.Column("period", sa.Integer(), nullable=False),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("fiscal_year", "period", name="uq_period_locks_year_period"),
        sa.CheckConstraint("period BETWEEN 1 AND 12", name="ck_period_locks_period_range"),
    )

    op.create_table(
        "period_lock_watermark",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("locked_until", sa.Date(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "audit_entries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("doc_no", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("changed_fields", sa.JSON(), nullable=True),
        sa.Column("actor", sa.String(length=255), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("checksum", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_entries_entity", "audit_entries", ["entity_type", "entity_id"])
    op.create_index("ix_audit_entries_timestamp", "audit_entries", ["timestamp"])

    op.create_table(
        "budget_funds",
        sa.Column("fund_ref", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("allocated_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint("fund_ref"),
        sa.CheckConstraint("allocated_amount >= 0", name="ck_budget_funds_allocated_nonnegative"),
    )

    op.create_table(
        "budget_reservations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("fund_ref", sa.String(length=64), nullable=False),
        sa.Column("voucher_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="RESERVED"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("status IN ('RESERVED', 'SPENT', 'RELEASED')", name="ck_budget_reservations_status"),
    )
    op.create_index("ix_budget_reservations_fund_status", "budget_reservations", ["fund_ref", "status"])
    op.create_index("ix_budget_reservations_voucher", "budget_reservations", ["voucher_id"])

    op.create_table(
        "staging_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("trx_date", sa.Date(), nullable=True),
        sa.Column("doc_no", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("debit_acc", sa.String(length=32), nullable=True),
        sa.Column("credit_acc", sa.String(length=32), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=16), nullable=True),
        sa.Column("partner_code", sa.String(length=64), nullable=True),
        sa.Column("project_code", sa.String(length=64), nullable=True),
        sa.Column("is_valid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("error_log", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_staging_transactions_doc_no", "staging_transactions", ["doc_no"])


def downgrade() -> None:
    op.drop_index("ix_staging_transactions_doc_no", table_name="staging_transactions")
    op.drop_table("staging_transactions")
    op.drop_index("ix_budget_reservations_voucher", table_name="budget_reservations")
    op.drop_index("ix_budget_reservations_fund_status", table_name="budget_reservations")
    op.drop_table("budget_reservations")
    op.drop_table("budget_funds")
    op.drop_index("ix_audit_entries_timestamp", table_name="audit_entries")
    op.drop_index("ix_audit_entries_entity", table_name="audit_entries")
    op.drop_table("audit_entries")
    op.drop_table("period_lock_watermark")
    op.drop_table("period_locks")
    op.drop_table("document_sequences")
    op.drop_index("ix_general_ledger_account_date", table_name="general_ledger")
    op.drop_index("ix_general_ledger_voucher", table_name="general_ledger")
    op.drop_table("general_ledger")
    op.drop_table("voucher_items")
    op.drop_index("ix_vouchers_type_status", table_name="vouchers")
    op.drop_index("ix_vouchers_doc_date", table_name="vouchers")
    op.drop_table("vouchers")
