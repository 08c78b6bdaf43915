from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from voucher_ledger.context import get_correlation_id
from voucher_ledger.core.events import event_bus

VOUCHER_CREATED = "voucher.created"
VOUCHER_UPDATED = "voucher.updated"
VOUCHER_POSTED = "voucher.posted"
VOUCHER_VOIDED = "voucher.voided"
VOUCHER_DUPLICATED = "voucher.duplicated"
VOUCHER_DELETED = "voucher.deleted"


def publish(event_type: str, payload: dict[str, Any], *, correlation_id: str | None = None) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "correlation_id": correlation_id or get_correlation_id(),
        "payload": payload,
    }
    event_bus.publish(event_type, envelope)
    return envelope
