from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from voucher_ledger.audit.schemas import AuditEntryRead, AuditVerifyRead
from voucher_ledger.audit.service import audit_query_service
from voucher_ledger.core.database import get_db

router = APIRouter(prefix="/audit-entries", tags=["audit"])


@router.get("", response_model=list[AuditEntryRead])
def list_audit_entries(
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[AuditEntryRead]:
    return audit_query_service.list_entries(
        db,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        limit=limit,
    )


@router.get("/{entry_id}/verify", response_model=AuditVerifyRead)
def verify_audit_entry(entry_id: uuid.UUID, db: Session = Depends(get_db)) -> AuditVerifyRead:
    return audit_query_service.verify_entry(db, entry_id)
