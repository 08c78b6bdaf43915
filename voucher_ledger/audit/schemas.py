from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class AuditEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: str
    doc_no: str | None
    action: str
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    changed_fields: list[str] | None
    actor: str
    ip_address: str | None
    user_agent: str | None
    correlation_id: str | None
    amount: Decimal | None
    timestamp: datetime
    checksum: str


class AuditVerifyRead(BaseModel):
    id: UUID
    valid: bool
    checksum: str
