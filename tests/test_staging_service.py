from __future__ import annotations

from collections.abc import Generator
from datetime import date
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import voucher_ledger.models  # noqa: F401
from voucher_ledger.audit.recorder import AuditRecorder, DbAuditSink
from voucher_ledger.budget.gate import NullBudgetGate
from voucher_ledger.core.context import Actor
from voucher_ledger.core.database import Base
from voucher_ledger.errors import ValidationError
from voucher_ledger.periods.service import PeriodLockService
from voucher_ledger.staging.models import StagingTransaction
from voucher_ledger.staging.schemas import StagingRowInput
from voucher_ledger.staging.service import StagingService
from voucher_ledger.vouchers.models import GeneralLedgerEntry, Voucher
from voucher_ledger.vouchers.poster import LedgerPoster
from voucher_ledger.vouchers.service import VoucherService


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
def guard() -> PeriodLockService:
    return PeriodLockService(recorder=AuditRecorder(DbAuditSink(), dispatch="sync"))


@pytest.fixture()
def staging(guard: PeriodLockService) -> StagingService:
    recorder = AuditRecorder(DbAuditSink(), dispatch="sync")
    gate = NullBudgetGate()
    poster = LedgerPoster(period_guard=guard, recorder=recorder, budget_gate=gate)
    vouchers = VoucherService(poster=poster, period_guard=guard, recorder=recorder, budget_gate=gate)
    return StagingService(vouchers=vouchers)


@pytest.fixture()
def actor() -> Actor:
    return Actor(user_id="accountant-1", roles=["user"], correlation_id="corr-staging-1")


def _row(**overrides: Any) -> StagingRowInput:
    values: dict[str, Any] = {
        "trxDate": "2024-05-02",
        "docNo": "IMP-001",
        "description": "Imported sale",
        "tkNo": "1111",
        "tkCo": "511",
        "amount": "250000",
    }
    values.update(overrides)
    return StagingRowInput.model_validate(values)


def _staged(session: Session) -> list[StagingTransaction]:
    return list(session.scalars(select(StagingTransaction).order_by(StagingTransaction.id)))


def test_import_flags_rows_with_missing_fields(db_session: Session, staging: StagingService, actor: Actor) -> None:
    result = staging.import_rows(
        db_session,
        [_row(), _row(docNo=""), _row(tkCo=None, trxDate=None)],
        actor,
    )

    assert (result.imported, result.valid, result.invalid) == (3, 1, 2)
    rows = {row.error_log: row for row in _staged(db_session)}
    assert rows[None].is_valid is True
    assert rows["missing doc_no"].is_valid is False
    assert rows["missing trx_date; missing credit_acc"].created_by == "accountant-1"

    listed = staging.list_rows(db_session)
    assert listed.total == 3
    assert len(listed.items) == 3


def test_post_groups_rows_by_doc_no_into_posted_vouchers(
    db_session: Session, staging: StagingService, actor: Actor
) -> None:
    staging.import_rows(
        db_session,
        [
            _row(docNo="IMP-001", amount="100"),
            _row(docNo="IMP-001", tkNo="131", amount="50"),
            _row(docNo="IMP-002", tkNo="642", tkCo="1111", amount="75"),
            _row(docNo=None),
        ],
        actor,
    )

    result = staging.post_valid_rows(db_session, actor)

    assert [item.doc_no for item in result.posted] == ["IMP-001", "IMP-002"]
    assert result.failed == []
    first = db_session.get(Voucher, result.posted[0].voucher_id)
    assert first is not None
    assert first.status == "POSTED"
    assert first.doc_date == date(2024, 5, 2)
    assert first.total_amount == Decimal("150")
    assert [(item.debit_acc, item.amount) for item in first.items] == [("1111", Decimal("100")), ("131", Decimal("50"))]
    assert db_session.scalar(select(func.count()).select_from(GeneralLedgerEntry)) == 6

    remaining = _staged(db_session)
    assert len(remaining) == 1
    assert remaining[0].is_valid is False


def test_failed_create_keeps_rows_with_error(db_session: Session, staging: StagingService, actor: Actor) -> None:
    staging.import_rows(db_session, [_row(docNo="IMP-001")], actor)
    staging.post_valid_rows(db_session, actor)
    staging.import_rows(db_session, [_row(docNo="IMP-001", amount="9")], actor)

    result = staging.post_valid_rows(db_session, actor)

    assert result.posted == []
    assert [(item.doc_no, item.code) for item in result.failed] == [("IMP-001", "DOC_NO_CONFLICT")]
    (row,) = _staged(db_session)
    assert row.is_valid is False
    assert row.error_log is not None and row.error_log.startswith("DOC_NO_CONFLICT")
    assert db_session.scalar(select(func.count()).select_from(Voucher)) == 1


def test_locked_period_blocks_the_group_not_the_batch(
    db_session: Session, staging: StagingService, guard: PeriodLockService, actor: Actor
) -> None:
    guard.lock_period(db_session, 2024, 1, actor)
    staging.import_rows(
        db_session,
        [_row(docNo="OLD-1", trxDate="2024-01-20"), _row(docNo="NEW-1", trxDate="2024-02-03")],
        actor,
    )

    result = staging.post_valid_rows(db_session, actor)

    assert [item.doc_no for item in result.posted] == ["NEW-1"]
    assert [(item.doc_no, item.code, item.voucher_id) for item in result.failed] == [("OLD-1", "PERIOD_LOCKED", None)]
    (row,) = _staged(db_session)
    assert row.doc_no == "OLD-1"
    assert row.error_log is not None and "locked" in row.error_log


def test_post_without_valid_rows_is_rejected(db_session: Session, staging: StagingService, actor: Actor) -> None:
    staging.import_rows(db_session, [_row(tkNo="")], actor)

    with pytest.raises(ValidationError) as exc_info:
        staging.post_valid_rows(db_session, actor)

    assert exc_info.value.code == "STAGING_EMPTY"


def test_clear_removes_every_row(db_session: Session, staging: StagingService, actor: Actor) -> None:
    staging.import_rows(db_session, [_row(), _row(docNo="")], actor)

    assert staging.clear(db_session) == 2
    assert _staged(db_session) == []
