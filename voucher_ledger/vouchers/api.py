from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Body, Depends, Query, Response, status
from sqlalchemy.orm import Session

from voucher_ledger.core.auth import get_actor
from voucher_ledger.core.context import Actor
from voucher_ledger.core.database import get_db
from voucher_ledger.vouchers.poster import ledger_poster
from voucher_ledger.vouchers.schemas import (
    BalanceCheckRequest,
    BalanceReportRead,
    LedgerEntryRead,
    NextDocNoRead,
    PostResultRead,
    TrialBalanceRead,
    VoucherDuplicateRequest,
    VoucherListRead,
    VoucherRead,
    VoucherStatsRead,
    VoucherType,
    VoucherUpsert,
    VoucherVoidRequest,
)
from voucher_ledger.vouchers.service import voucher_service

router = APIRouter(prefix="/vouchers", tags=["vouchers"])
ledger_router = APIRouter(prefix="/ledger", tags=["ledger"])


@router.get("", response_model=VoucherListRead)
def list_vouchers(
    voucher_type: str | None = Query(default=None, alias="type"),
    voucher_status: str | None = Query(default=None, alias="status"),
    from_date: date | None = Query(default=None, alias="fromDate"),
    to_date: date | None = Query(default=None, alias="toDate"),
    search: str | None = Query(default=None),
    page: int = Query(default=1),
    page_size: int = Query(default=50, alias="pageSize"),
    db: Session = Depends(get_db),
) -> VoucherListRead:
    return voucher_service.list_vouchers(
        db,
        voucher_type=voucher_type,
        status=voucher_status,
        from_date=from_date,
        to_date=to_date,
        search=search,
        page=page,
        page_size=page_size,
    )


@router.get("/stats", response_model=VoucherStatsRead)
def voucher_stats(
    from_date: date | None = Query(default=None, alias="fromDate"),
    to_date: date | None = Query(default=None, alias="toDate"),
    db: Session = Depends(get_db),
) -> VoucherStatsRead:
    return voucher_service.voucher_stats(db, from_date=from_date, to_date=to_date)


@router.post("/balance-check", response_model=BalanceReportRead)
def balance_check(payload: BalanceCheckRequest) -> BalanceReportRead:
    report = voucher_service.check_balance(payload.lines)
    return BalanceReportRead.model_validate(report.as_dict())


@router.get("/next-doc-no/{voucher_type}", response_model=NextDocNoRead)
def next_doc_no(
    voucher_type: VoucherType,
    year: int | None = Query(default=None, ge=1900, le=9999),
    db: Session = Depends(get_db),
) -> NextDocNoRead:
    return voucher_service.next_doc_no(db, voucher_type, year)


@router.get("/{voucher_id}", response_model=VoucherRead)
def get_voucher(voucher_id: uuid.UUID, db: Session = Depends(get_db)) -> VoucherRead:
    return VoucherRead.model_validate(voucher_service.get_voucher(db, voucher_id))


@router.post("", response_model=VoucherRead, status_code=status.HTTP_201_CREATED)
def save_voucher(
    payload: VoucherUpsert,
    response: Response,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> VoucherRead:
    voucher, created = voucher_service.upsert(db, payload, actor)
    if not created:
        response.status_code = status.HTTP_200_OK
    return VoucherRead.model_validate(voucher)


@router.post("/{voucher_id}/post", response_model=PostResultRead)
def post_voucher(
    voucher_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> PostResultRead:
    result = voucher_service.post(db, voucher_id, actor)
    voucher = voucher_service.get_voucher(db, voucher_id)
    return PostResultRead(
        voucher=VoucherRead.model_validate(voucher),
        ledger_entries=[LedgerEntryRead.model_validate(entry) for entry in result.entries],
    )


@router.post("/{voucher_id}/void", response_model=VoucherRead)
def void_voucher(
    voucher_id: uuid.UUID,
    payload: VoucherVoidRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> VoucherRead:
    voucher_service.void(db, voucher_id, payload.reason if payload is not None else "", actor)
    return VoucherRead.model_validate(voucher_service.get_voucher(db, voucher_id))


@router.post("/{voucher_id}/duplicate", response_model=VoucherRead, status_code=status.HTTP_201_CREATED)
def duplicate_voucher(
    voucher_id: uuid.UUID,
    payload: VoucherDuplicateRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> VoucherRead:
    copy = voucher_service.duplicate(db, voucher_id, payload.new_doc_no if payload is not None else None, actor)
    return VoucherRead.model_validate(voucher_service.get_voucher(db, copy.id))


@router.delete("/{voucher_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_voucher(
    voucher_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> Response:
    voucher_service.delete(db, voucher_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{voucher_id}/ledger-entries", response_model=list[LedgerEntryRead])
def voucher_ledger_entries(voucher_id: uuid.UUID, db: Session = Depends(get_db)) -> list[LedgerEntryRead]:
    return [LedgerEntryRead.model_validate(entry) for entry in ledger_poster.ledger_entries(db, voucher_id)]


@ledger_router.get("/trial-balance", response_model=TrialBalanceRead)
def trial_balance(
    from_date: date | None = Query(default=None, alias="fromDate"),
    to_date: date | None = Query(default=None, alias="toDate"),
    db: Session = Depends(get_db),
) -> TrialBalanceRead:
    return ledger_poster.trial_balance(db, from_date=from_date, to_date=to_date)
