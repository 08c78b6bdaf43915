from __future__ import annotations

import logging
from collections.abc import Generator, Mapping
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import voucher_ledger.models  # noqa: F401
from voucher_ledger.audit.models import AuditEntry
from voucher_ledger.audit.recorder import (
    REDACTED,
    AuditRecord,
    AuditRecorder,
    CeleryAuditSink,
    DbAuditSink,
    build_payload,
    compute_checksum,
    detect_changed_fields,
    sanitize,
    verify,
)
from voucher_ledger.context import reset_correlation_id, set_correlation_id
from voucher_ledger.core.context import Actor
from voucher_ledger.core.database import Base
from voucher_ledger.errors import ImmutableRecordError


class RecordingSink:
    def __init__(self) -> None:
        self.payloads: list[dict[str, Any]] = []

    def write(self, bind: Any, payload: Mapping[str, Any]) -> None:
        self.payloads.append(dict(payload))


class FailingSink:
    def write(self, bind: Any, payload: Mapping[str, Any]) -> None:
        raise ConnectionError("audit store down")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _record(**overrides: Any) -> AuditRecord:
    values: dict[str, Any] = {
        "entity_type": "voucher",
        "entity_id": "0b7f7d52-6f1c-4d1c-9a51-0d7c1b0f2a11",
        "action": "UPDATE",
        "actor": Actor(user_id="accountant-1", ip_address="10.1.1.1", user_agent="pytest"),
        "old_values": {"description": "before", "total_amount": Decimal("100.00")},
        "new_values": {"description": "after", "total_amount": Decimal("100.00")},
        "doc_no": "PK202400001",
        "amount": Decimal("100.00"),
    }
    values.update(overrides)
    return AuditRecord(**values)


def test_sanitize_redacts_sensitive_keys_at_any_depth() -> None:
    cleaned = sanitize(
        {
            "Password": "hunter2",
            "profile": {"api_key": "abc", "name": "Lan"},
            "tokens": [{"access_token": "t1"}, {"note": "ok"}],
            "Authorization": "Bearer x",
        }
    )

    assert cleaned == {
        "Password": REDACTED,
        "profile": {"api_key": REDACTED, "name": "Lan"},
        "tokens": [{"access_token": REDACTED}, {"note": "ok"}],
        "Authorization": REDACTED,
    }


def test_detect_changed_fields() -> None:
    assert detect_changed_fields({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4}) == ["b", "c"]
    assert detect_changed_fields(None, {"a": 1}) == ["a"]
    assert detect_changed_fields({"a": [1, 2]}, {"a": [1, 2]}) == []


def test_build_payload_serializes_and_checksums() -> None:
    payload = build_payload(_record(new_values={"description": "after", "secret": "s3"}))

    assert payload["changed_fields"] == ["description", "secret", "total_amount"]
    assert payload["new_values"]["secret"] == REDACTED
    assert payload["old_values"]["total_amount"] == "100.00"
    assert payload["amount"] == "100.00"
    assert payload["actor"] == "accountant-1"
    assert payload["ip_address"] == "10.1.1.1"
    assert len(payload["checksum"]) == 64


def test_checksum_is_stable_and_sensitive_to_content() -> None:
    timestamp = datetime(2024, 3, 15, 8, 30, tzinfo=timezone.utc)
    base = {
        "entity_type": "voucher",
        "entity_id": "v-1",
        "action": "POST",
        "actor": "accountant-1",
        "timestamp": timestamp,
        "old_values": {"status": "DRAFT"},
        "new_values": {"status": "POSTED"},
    }

    assert compute_checksum(**base) == compute_checksum(**base)
    assert compute_checksum(**base) == compute_checksum(**{**base, "timestamp": timestamp.replace(tzinfo=None)})
    assert compute_checksum(**base) != compute_checksum(**{**base, "actor": "someone-else"})


def test_correlation_id_falls_back_to_context() -> None:
    token = set_correlation_id("corr-from-context")
    try:
        payload = build_payload(_record())
    finally:
        reset_correlation_id(token)

    assert payload["correlation_id"] == "corr-from-context"


def test_db_sink_persists_verifiable_entry(db_session: Session) -> None:
    recorder = AuditRecorder(DbAuditSink(), dispatch="sync")

    recorder.record(db_session.get_bind(), _record())

    entry = db_session.scalars(select(AuditEntry)).one()
    assert entry.action == "UPDATE"
    assert entry.doc_no == "PK202400001"
    assert entry.changed_fields == ["description"]
    assert verify(entry)


def test_tampered_entry_fails_verification(db_session: Session) -> None:
    AuditRecorder(DbAuditSink(), dispatch="sync").record(db_session.get_bind(), _record())
    entry = db_session.scalars(select(AuditEntry)).one()

    db_session.expunge(entry)
    entry.new_values = {"description": "rewritten"}

    assert not verify(entry)


def test_audit_rows_are_immutable(db_session: Session) -> None:
    AuditRecorder(DbAuditSink(), dispatch="sync").record(db_session.get_bind(), _record())
    entry = db_session.scalars(select(AuditEntry)).one()

    entry.action = "DELETE"
    with pytest.raises(ImmutableRecordError):
        db_session.flush()
    db_session.rollback()


def test_failing_sink_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR, logger="voucher_ledger.audit")
    recorder = AuditRecorder(FailingSink(), dispatch="sync")

    recorder.record(None, _record())

    failures = [record for record in caplog.records if record.getMessage() == "audit.write_failed"]
    assert failures
    assert getattr(failures[0], "entity_type", None) == "voucher"
    assert getattr(failures[0], "action", None) == "UPDATE"


def test_background_dispatch_writes_off_thread() -> None:
    sink = RecordingSink()
    recorder = AuditRecorder(sink, dispatch="background")

    recorder.record(None, _record(action="CREATE"))
    recorder.record(None, _record(action="POST"))
    recorder.shutdown()

    assert sorted(payload["action"] for payload in sink.payloads) == ["CREATE", "POST"]


def test_celery_dispatch_enqueues_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    from voucher_ledger.audit import tasks

    queued: list[dict[str, Any]] = []
    monkeypatch.setattr(tasks.write_entry, "delay", lambda payload: queued.append(payload))
    recorder = AuditRecorder(dispatch="celery")

    assert isinstance(recorder.sink, CeleryAuditSink)
    recorder.record(None, _record(action="POST"))

    assert len(queued) == 1
    assert queued[0]["action"] == "POST"
    assert queued[0]["timestamp"].endswith("+00:00")
