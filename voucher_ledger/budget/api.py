from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from voucher_ledger.budget.schemas import FundAllocationRead, FundAllocationUpdate
from voucher_ledger.budget.service import budget_fund_service
from voucher_ledger.core.auth import get_actor
from voucher_ledger.core.context import Actor
from voucher_ledger.core.database import get_db
from voucher_ledger.core.rbac import require_permissions

router = APIRouter(prefix="/budget", tags=["budget"])

BUDGET_MANAGE_PERMISSION = "ledger.budget.manage"


@router.get("/funds/{fund_ref}", response_model=FundAllocationRead)
def get_fund(fund_ref: str, db: Session = Depends(get_db)) -> FundAllocationRead:
    return budget_fund_service.get_fund(db, fund_ref)


@router.put(
    "/funds/{fund_ref}",
    response_model=FundAllocationRead,
    dependencies=[Depends(require_permissions(BUDGET_MANAGE_PERMISSION))],
)
def put_fund(
    fund_ref: str,
    payload: FundAllocationUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> FundAllocationRead:
    return budget_fund_service.upsert_fund(db, fund_ref, payload, actor)
