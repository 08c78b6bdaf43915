"""Post-commit audit trail.

Services call :meth:`AuditRecorder.record` only after their transaction has
committed. Recording is fire-and-forget: a failing sink is logged and counted,
never raised back into the financial mutation.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session

from voucher_ledger.audit.models import AuditEntry
from voucher_ledger.context import get_correlation_id
from voucher_ledger.core.config import get_settings
from voucher_ledger.core.context import Actor
from voucher_ledger.metrics import observe_audit_write_failure

logger = logging.getLogger("voucher_ledger.audit")

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = frozenset(
    {
        "password",
        "token",
        "secret",
        "api_key",
        "apikey",
        "authorization",
        "access_token",
        "refresh_token",
    }
)

Bind = Engine | Connection


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditRecord:
    entity_type: str
    entity_id: str
    action: str
    actor: Actor
    old_values: Mapping[str, Any] | None = None
    new_values: Mapping[str, Any] | None = None
    doc_no: str | None = None
    amount: Decimal | None = None
    timestamp: datetime = field(default_factory=utcnow)


def to_jsonable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def sanitize(value: Any) -> Any:
    """Replace sensitive keys (any depth, case-insensitive) with a redaction marker."""
    if isinstance(value, Mapping):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else sanitize(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [sanitize(item) for item in value]
    return value


def detect_changed_fields(old_values: Mapping[str, Any] | None, new_values: Mapping[str, Any] | None) -> list[str]:
    old = old_values or {}
    new = new_values or {}
    keys = set(old) | set(new)
    return sorted(
        key
        for key in keys
        if json.dumps(old.get(key), sort_keys=True, default=str) != json.dumps(new.get(key), sort_keys=True, default=str)
    )


def _canonical_timestamp(value: datetime) -> str:
    # some drivers hand back naive datetimes for timezone-aware columns
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def compute_checksum(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str,
    timestamp: datetime,
    old_values: Any,
    new_values: Any,
) -> str:
    content = json.dumps(
        {
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "actor": actor,
            "timestamp": _canonical_timestamp(timestamp),
            "old_values": old_values,
            "new_values": new_values,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def verify(entry: AuditEntry) -> bool:
    expected = compute_checksum(
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        action=entry.action,
        actor=entry.actor,
        timestamp=entry.timestamp,
        old_values=entry.old_values,
        new_values=entry.new_values,
    )
    return expected == entry.checksum


def build_payload(record: AuditRecord) -> dict[str, Any]:
    """Serializable row payload: redacted values, changed fields and checksum."""
    old_values = sanitize(to_jsonable(record.old_values)) if record.old_values is not None else None
    new_values = sanitize(to_jsonable(record.new_values)) if record.new_values is not None else None
    actor = record.actor
    checksum = compute_checksum(
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        action=record.action,
        actor=actor.user_id,
        timestamp=record.timestamp,
        old_values=old_values,
        new_values=new_values,
    )
    return {
        "id": str(uuid.uuid4()),
        "entity_type": record.entity_type,
        "entity_id": record.entity_id,
        "doc_no": record.doc_no,
        "action": record.action,
        "old_values": old_values,
        "new_values": new_values,
        "changed_fields": detect_changed_fields(old_values, new_values),
        "actor": actor.user_id,
        "ip_address": actor.ip_address,
        "user_agent": actor.user_agent,
        "correlation_id": actor.correlation_id or get_correlation_id(),
        "amount": None if record.amount is None else str(record.amount),
        "timestamp": record.timestamp.isoformat(),
        "checksum": checksum,
    }


def entry_from_payload(payload: Mapping[str, Any]) -> AuditEntry:
    data = dict(payload)
    data["id"] = uuid.UUID(str(data["id"]))
    data["timestamp"] = datetime.fromisoformat(str(data["timestamp"]))
    if data.get("amount") is not None:
        data["amount"] = Decimal(str(data["amount"]))
    return AuditEntry(**data)


class AuditSink(Protocol):
    def write(self, bind: Bind | None, payload: Mapping[str, Any]) -> None: ...


class DbAuditSink:
    """Writes ``audit_entries`` in its own session so the caller's transaction is untouched."""

    def write(self, bind: Bind | None, payload: Mapping[str, Any]) -> None:
        if bind is None:
            from voucher_ledger.core.database import SessionLocal

            session = SessionLocal()
        else:
            session = Session(bind=bind)
        try:
            session.add(entry_from_payload(payload))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


class CeleryAuditSink:
    def write(self, bind: Bind | None, payload: Mapping[str, Any]) -> None:
        from voucher_ledger.audit.tasks import write_entry

        write_entry.delay(dict(payload))


class AuditRecorder:
    def __init__(self, sink: AuditSink | None = None, *, dispatch: str | None = None) -> None:
        self._sink = sink
        self._dispatch = dispatch
        self._executor: ThreadPoolExecutor | None = None

    @property
    def dispatch(self) -> str:
        return (self._dispatch or get_settings().audit_dispatch).lower()

    @property
    def sink(self) -> AuditSink:
        if self._sink is not None:
            return self._sink
        if self.dispatch == "celery":
            return CeleryAuditSink()
        return DbAuditSink()

    def record(self, bind: Bind | None, record: AuditRecord) -> None:
        try:
            payload = build_payload(record)
        except Exception as exc:
            self._on_failure(record.entity_type, record.entity_id, record.action, exc)
            return

        if self.dispatch == "background":
            executor = self._get_executor()
            executor.submit(self._write, bind, payload)
            return
        self._write(bind, payload)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            workers = max(1, get_settings().audit_background_workers)
            self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="audit")
        return self._executor

    def _write(self, bind: Bind | None, payload: Mapping[str, Any]) -> None:
        try:
            self.sink.write(bind, payload)
        except Exception as exc:
            self._on_failure(str(payload.get("entity_type")), str(payload.get("entity_id")), str(payload.get("action")), exc)

    def _on_failure(self, entity_type: str, entity_id: str, action: str, exc: Exception) -> None:
        observe_audit_write_failure(entity_type)
        logger.error(
            "audit.write_failed",
            exc_info=exc,
            extra={"entity_type": entity_type, "entity_id": entity_id, "action": action, "error": str(exc)[:500]},
        )


audit_recorder = AuditRecorder()
