from __future__ import annotations

from typing import Any

from voucher_ledger.audit.recorder import DbAuditSink
from voucher_ledger.core.celery_app import celery_app


@celery_app.task(name="voucher_ledger.audit.write_entry", autoretry_for=(Exception,), retry_backoff=True, max_retries=5)
def write_entry(payload: dict[str, Any]) -> str:
    DbAuditSink().write(None, payload)
    return str(payload["id"])
