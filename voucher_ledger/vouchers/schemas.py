from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


VoucherType = Literal[
    "GENERAL",
    "CASH_IN",
    "CASH_OUT",
    "BANK_IN",
    "BANK_OUT",
    "PURCHASE",
    "SALE",
    "CLOSING",
    "ALLOCATION",
    "DEPRECIATION",
    "REVALUATION",
    "ADJUSTMENT",
]
VoucherStatus = Literal["DRAFT", "POSTED", "VOIDED"]


class VoucherLineInput(BaseModel):
    """Canonical line shape. Client spellings of the account fields are accepted here and nowhere else."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    description: str | None = None
    debit_acc: str | None = Field(
        default=None,
        validation_alias=AliasChoices("debit_acc", "debitAcc", "debit_account", "tkNo"),
    )
    credit_acc: str | None = Field(
        default=None,
        validation_alias=AliasChoices("credit_acc", "creditAcc", "credit_account", "tkCo"),
    )
    amount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    partner_code: str | None = Field(default=None, validation_alias=AliasChoices("partner_code", "partnerCode"))
    project_code: str | None = Field(default=None, validation_alias=AliasChoices("project_code", "projectCode"))
    contract_code: str | None = Field(default=None, validation_alias=AliasChoices("contract_code", "contractCode"))
    item_code: str | None = Field(default=None, validation_alias=AliasChoices("item_code", "itemCode"))
    sub_item_code: str | None = Field(default=None, validation_alias=AliasChoices("sub_item_code", "subItemCode"))
    fund_source_id: str | None = Field(default=None, validation_alias=AliasChoices("fund_source_id", "fundSourceId"))
    dimensions_json: dict[str, Any] | None = Field(default=None, validation_alias=AliasChoices("dimensions_json", "dimensions"))

    @field_validator(
        "description",
        "debit_acc",
        "credit_acc",
        "partner_code",
        "project_code",
        "contract_code",
        "item_code",
        "sub_item_code",
        "fund_source_id",
        mode="after",
    )
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        return value or None

    def is_blank(self) -> bool:
        return not self.debit_acc and not self.credit_acc and self.amount == 0 and not self.description


class VoucherUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    id: UUID | None = None
    doc_no: str | None = Field(default=None, max_length=64, validation_alias=AliasChoices("doc_no", "docNo"))
    doc_date: date = Field(validation_alias=AliasChoices("doc_date", "docDate"))
    post_date: date | None = Field(default=None, validation_alias=AliasChoices("post_date", "postDate"))
    description: str | None = None
    type: VoucherType = "GENERAL"
    currency: str | None = Field(default=None, max_length=16)
    fx_rate: Decimal = Field(default=Decimal("1"), gt=Decimal("0"), validation_alias=AliasChoices("fx_rate", "fxRate"))
    org_doc_no: str | None = Field(default=None, validation_alias=AliasChoices("org_doc_no", "orgDocNo"))
    org_doc_date: date | None = Field(default=None, validation_alias=AliasChoices("org_doc_date", "orgDocDate"))
    lines: list[VoucherLineInput] = Field(default_factory=list, validation_alias=AliasChoices("lines", "items"))

    @model_validator(mode="after")
    def _default_post_date(self) -> VoucherUpsert:
        if self.post_date is None:
            self.post_date = self.doc_date
        if not self.doc_no:
            self.doc_no = None
        return self

    @property
    def effective_post_date(self) -> date:
        return self.post_date or self.doc_date


class BalanceCheckRequest(BaseModel):
    lines: list[VoucherLineInput] = Field(default_factory=list, validation_alias=AliasChoices("lines", "items"))


class BalanceReportRead(BaseModel):
    status: Literal["empty", "incomplete", "unbalanced", "balanced"]
    is_balanced: bool
    can_save: bool
    total_debit: Decimal
    total_credit: Decimal
    difference: Decimal
    on_balance_sheet_lines: int
    off_balance_sheet_lines: int
    has_off_balance_items: bool
    incomplete_lines: list[int]
    message: str


class VoucherLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    line_no: int
    description: str | None
    debit_acc: str | None
    credit_acc: str | None
    amount: Decimal
    partner_code: str | None
    project_code: str | None
    contract_code: str | None
    item_code: str | None
    sub_item_code: str | None
    fund_source_id: str | None
    dimensions_json: dict[str, Any] | None


class VoucherRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    doc_no: str
    doc_date: date
    post_date: date
    description: str | None
    type: str
    currency: str
    fx_rate: Decimal
    total_amount: Decimal
    status: VoucherStatus
    org_doc_no: str | None
    org_doc_date: date | None
    created_at: datetime
    created_by: str
    updated_at: datetime | None
    updated_by: str | None
    posted_at: datetime | None
    posted_by: str | None
    voided_at: datetime | None
    voided_by: str | None
    void_reason: str | None
    lines: list[VoucherLineRead] = Field(default_factory=list, validation_alias=AliasChoices("lines", "items"))


class VoucherSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    doc_no: str
    doc_date: date
    post_date: date
    description: str | None
    type: str
    currency: str
    total_amount: Decimal
    status: VoucherStatus


class VoucherListRead(BaseModel):
    items: list[VoucherSummaryRead]
    total: int
    page: int
    page_size: int


class VoucherVoidRequest(BaseModel):
    reason: str = ""


class VoucherDuplicateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_doc_no: str | None = Field(default=None, max_length=64, validation_alias=AliasChoices("new_doc_no", "newDocNo"))


class NextDocNoRead(BaseModel):
    voucher_type: VoucherType
    fiscal_year: int
    doc_no: str


class LedgerEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    trx_date: date
    posted_at: datetime
    doc_no: str
    description: str | None
    account_code: str
    reciprocal_acc: str | None
    debit_amount: Decimal
    credit_amount: Decimal
    voucher_id: UUID
    line_no: int
    partner_code: str | None
    project_code: str | None
    item_code: str | None
    sub_item_code: str | None
    currency: str


class PostResultRead(BaseModel):
    voucher: VoucherRead
    ledger_entries: list[LedgerEntryRead]


class TrialBalanceRow(BaseModel):
    account_code: str
    debit_total: Decimal
    credit_total: Decimal
    balance: Decimal


class TrialBalanceRead(BaseModel):
    from_date: date | None
    to_date: date | None
    rows: list[TrialBalanceRow]
    total_debit: Decimal
    total_credit: Decimal


class VoucherStatsBucket(BaseModel):
    key: str
    count: int
    total_amount: Decimal


class VoucherStatsRead(BaseModel):
    from_date: date | None
    to_date: date | None
    total_count: int
    by_type: list[VoucherStatsBucket]
    by_status: list[VoucherStatsBucket]
