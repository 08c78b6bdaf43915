from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from voucher_ledger.core.auth import get_actor
from voucher_ledger.core.context import Actor
from voucher_ledger.core.database import get_db
from voucher_ledger.core.rbac import require_permissions
from voucher_ledger.periods.schemas import (
    LockStatusRead,
    PeriodLockListRead,
    PeriodLockRead,
    WatermarkRead,
    WatermarkUpdate,
)
from voucher_ledger.periods.service import period_lock_service

router = APIRouter(prefix="/period-locks", tags=["period-locks"])

PERIODS_MANAGE_PERMISSION = "ledger.periods.manage"


@router.get("", response_model=PeriodLockListRead)
def list_period_locks(
    fiscal_year: int | None = Query(default=None, alias="fiscalYear"),
    db: Session = Depends(get_db),
) -> PeriodLockListRead:
    return period_lock_service.list_locks(db, fiscal_year)


@router.get("/check", response_model=LockStatusRead)
def check_period_lock(
    effective_date: date = Query(alias="date"),
    db: Session = Depends(get_db),
) -> LockStatusRead:
    lock_status = period_lock_service.check_lock(db, effective_date)
    # release the shared row lock taken by the check
    db.rollback()
    return LockStatusRead(date=effective_date, locked=lock_status.locked, locked_until=lock_status.locked_until)


@router.put(
    "/watermark",
    response_model=WatermarkRead,
    dependencies=[Depends(require_permissions(PERIODS_MANAGE_PERMISSION))],
)
def set_watermark(
    payload: WatermarkUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> WatermarkRead:
    return period_lock_service.set_watermark(db, payload.locked_until, actor)


@router.put(
    "/{fiscal_year}/{period}",
    response_model=PeriodLockRead,
    dependencies=[Depends(require_permissions(PERIODS_MANAGE_PERMISSION))],
)
def lock_period(
    fiscal_year: int,
    period: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> PeriodLockRead:
    return period_lock_service.lock_period(db, fiscal_year, period, actor)


@router.delete(
    "/{fiscal_year}/{period}",
    response_model=PeriodLockRead,
    dependencies=[Depends(require_permissions(PERIODS_MANAGE_PERMISSION))],
)
def unlock_period(
    fiscal_year: int,
    period: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> PeriodLockRead:
    return period_lock_service.unlock_period(db, fiscal_year, period, actor)
