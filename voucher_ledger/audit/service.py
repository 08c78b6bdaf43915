from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from voucher_ledger.audit.models import AuditEntry
from voucher_ledger.audit.recorder import verify
from voucher_ledger.audit.schemas import AuditEntryRead, AuditVerifyRead
from voucher_ledger.errors import NotFoundError


@dataclass(slots=True)
class AuditQueryService:
    default_limit: int = 100

    def list_entries(
        self,
        session: Session,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        action: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntryRead]:
        stmt = select(AuditEntry)
        if entity_type is not None:
            stmt = stmt.where(AuditEntry.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(AuditEntry.entity_id == entity_id)
        if action is not None:
            stmt = stmt.where(AuditEntry.action == action.upper())
        stmt = stmt.order_by(AuditEntry.timestamp.desc()).limit(limit or self.default_limit)
        return [AuditEntryRead.model_validate(row) for row in session.scalars(stmt).all()]

    def verify_entry(self, session: Session, entry_id: uuid.UUID) -> AuditVerifyRead:
        entry = session.get(AuditEntry, entry_id)
        if entry is None:
            raise NotFoundError("audit entry", entry_id)
        return AuditVerifyRead(id=entry.id, valid=verify(entry), checksum=entry.checksum)


audit_query_service = AuditQueryService()
