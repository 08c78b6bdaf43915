from __future__ import annotations

from collections.abc import Generator, Mapping
from datetime import date
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import voucher_ledger.models  # noqa: F401
from voucher_ledger.audit.recorder import AuditRecorder
from voucher_ledger.core.context import Actor
from voucher_ledger.core.database import Base
from voucher_ledger.errors import NotFoundError, PeriodLockedError, ValidationError
from voucher_ledger.periods.service import PeriodLockService, month_end


class RecordingSink:
    def __init__(self) -> None:
        self.payloads: list[dict[str, Any]] = []

    def write(self, bind: Any, payload: Mapping[str, Any]) -> None:
        self.payloads.append(dict(payload))


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


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def service(sink: RecordingSink) -> PeriodLockService:
    return PeriodLockService(recorder=AuditRecorder(sink, dispatch="sync"))


@pytest.fixture()
def actor() -> Actor:
    return Actor(user_id="controller-1", roles=["ledger.periods.manage"])


def test_nothing_locked_by_default(db_session: Session, service: PeriodLockService) -> None:
    status = service.check_lock(db_session, date(2024, 1, 15))

    assert not status.locked
    assert status.locked_until is None
    service.ensure_unlocked(db_session, date(2024, 1, 15))


def test_watermark_locks_dates_on_or_before_it(
    db_session: Session,
    service: PeriodLockService,
    actor: Actor,
) -> None:
    service.set_watermark(db_session, date(2024, 1, 31), actor)

    assert service.check_lock(db_session, date(2024, 1, 31)).locked
    assert not service.check_lock(db_session, date(2024, 2, 1)).locked

    with pytest.raises(PeriodLockedError) as exc_info:
        service.ensure_unlocked(db_session, date(2024, 1, 15))
    assert exc_info.value.locked_until == date(2024, 1, 31)
    assert exc_info.value.status_code == 403
    assert exc_info.value.details == {"date": "2024-01-15", "locked_until": "2024-01-31"}


def test_cleared_watermark_unlocks(db_session: Session, service: PeriodLockService, actor: Actor) -> None:
    service.set_watermark(db_session, date(2024, 1, 31), actor)
    watermark = service.set_watermark(db_session, None, actor)

    assert watermark.locked_until is None
    assert not service.check_lock(db_session, date(2024, 1, 15)).locked


def test_month_lock_reports_month_end(db_session: Session, service: PeriodLockService, actor: Actor) -> None:
    service.lock_period(db_session, 2024, 2, actor)

    status = service.check_lock(db_session, date(2024, 2, 10))
    assert status.locked
    assert status.locked_until == date(2024, 2, 29)
    assert not service.check_lock(db_session, date(2024, 3, 1)).locked


def test_watermark_wins_over_month_lock(db_session: Session, service: PeriodLockService, actor: Actor) -> None:
    service.lock_period(db_session, 2024, 1, actor)
    service.set_watermark(db_session, date(2024, 3, 31), actor)

    status = service.check_lock(db_session, date(2024, 1, 10))
    assert status.locked_until == date(2024, 3, 31)


def test_lock_period_is_idempotent(db_session: Session, service: PeriodLockService, actor: Actor) -> None:
    first = service.lock_period(db_session, 2024, 5, actor)
    second = service.lock_period(db_session, 2024, 5, actor)

    assert first.is_locked and second.is_locked
    listed = service.list_locks(db_session, 2024)
    assert [(row.fiscal_year, row.period) for row in listed.periods] == [(2024, 5)]


def test_unlock_period(
    db_session: Session,
    service: PeriodLockService,
    actor: Actor,
    sink: RecordingSink,
) -> None:
    service.lock_period(db_session, 2024, 6, actor)
    unlocked = service.unlock_period(db_session, 2024, 6, actor)

    assert not unlocked.is_locked
    assert not service.check_lock(db_session, date(2024, 6, 15)).locked
    assert [payload["action"] for payload in sink.payloads] == ["LOCK", "UNLOCK"]
    assert all(payload["entity_type"] == "period_lock" for payload in sink.payloads)
    assert sink.payloads[-1]["entity_id"] == "2024-06"
    assert sink.payloads[-1]["changed_fields"] == ["is_locked"]


def test_unlock_unknown_period_is_not_found(db_session: Session, service: PeriodLockService, actor: Actor) -> None:
    with pytest.raises(NotFoundError):
        service.unlock_period(db_session, 2024, 7, actor)


def test_invalid_period_rejected(db_session: Session, service: PeriodLockService, actor: Actor) -> None:
    with pytest.raises(ValidationError):
        service.lock_period(db_session, 2024, 13, actor)


def test_watermark_change_is_audited(
    db_session: Session,
    service: PeriodLockService,
    actor: Actor,
    sink: RecordingSink,
) -> None:
    service.set_watermark(db_session, date(2024, 1, 31), actor)

    payload = sink.payloads[-1]
    assert payload["action"] == "WATERMARK"
    assert payload["actor"] == "controller-1"
    assert payload["old_values"] == {"locked_until": None}
    assert payload["new_values"] == {"locked_until": "2024-01-31"}


def test_month_end_handles_leap_years() -> None:
    assert month_end(2023, 2) == date(2023, 2, 28)
    assert month_end(2024, 2) == date(2024, 2, 29)
    assert month_end(2024, 12) == date(2024, 12, 31)
