from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class StagingRowInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    trx_date: date | None = Field(default=None, validation_alias=AliasChoices("trx_date", "trxDate"))
    doc_no: str | None = Field(default=None, max_length=64, validation_alias=AliasChoices("doc_no", "docNo"))
    description: str | None = None
    debit_acc: str | None = Field(default=None, validation_alias=AliasChoices("debit_acc", "debitAcc", "tkNo"))
    credit_acc: str | None = Field(default=None, validation_alias=AliasChoices("credit_acc", "creditAcc", "tkCo"))
    amount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    currency: str | None = Field(default=None, max_length=16)
    partner_code: str | None = Field(default=None, validation_alias=AliasChoices("partner_code", "partnerCode"))
    project_code: str | None = Field(default=None, validation_alias=AliasChoices("project_code", "projectCode"))

    @field_validator("doc_no", "description", "debit_acc", "credit_acc", "currency", "partner_code", "project_code")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        return value or None


class StagingImportRequest(BaseModel):
    rows: list[StagingRowInput] = Field(default_factory=list, validation_alias=AliasChoices("rows", "data"))


class StagingRowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    trx_date: date | None
    doc_no: str | None
    description: str | None
    debit_acc: str | None
    credit_acc: str | None
    amount: Decimal
    currency: str | None
    partner_code: str | None
    project_code: str | None
    is_valid: bool
    error_log: str | None
    created_at: datetime


class StagingListRead(BaseModel):
    items: list[StagingRowRead]
    total: int


class StagingImportRead(BaseModel):
    imported: int
    valid: int
    invalid: int


class StagingPostedRead(BaseModel):
    doc_no: str
    voucher_id: UUID


class StagingFailedRead(BaseModel):
    doc_no: str
    code: str
    message: str
    voucher_id: UUID | None = None


class StagingPostRead(BaseModel):
    posted: list[StagingPostedRead]
    failed: list[StagingFailedRead]


class StagingClearRead(BaseModel):
    deleted: int
