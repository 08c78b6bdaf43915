from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from voucher_ledger.core.auth import get_actor
from voucher_ledger.core.context import Actor
from voucher_ledger.core.database import get_db
from voucher_ledger.staging.schemas import (
    StagingClearRead,
    StagingImportRead,
    StagingImportRequest,
    StagingListRead,
    StagingPostRead,
)
from voucher_ledger.staging.service import MAX_LISTED_ROWS, staging_service

router = APIRouter(prefix="/staging", tags=["staging"])


@router.get("", response_model=StagingListRead)
def list_staging_rows(
    limit: int = Query(default=MAX_LISTED_ROWS, ge=1, le=MAX_LISTED_ROWS),
    db: Session = Depends(get_db),
) -> StagingListRead:
    return staging_service.list_rows(db, limit)


@router.post("/import", response_model=StagingImportRead)
def import_staging_rows(
    payload: StagingImportRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> StagingImportRead:
    return staging_service.import_rows(db, payload.rows, actor)


@router.post("/post", response_model=StagingPostRead)
def post_staging_rows(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> StagingPostRead:
    return staging_service.post_valid_rows(db, actor)


@router.delete("", response_model=StagingClearRead)
def clear_staging_rows(db: Session = Depends(get_db)) -> StagingClearRead:
    return StagingClearRead(deleted=staging_service.clear(db))
