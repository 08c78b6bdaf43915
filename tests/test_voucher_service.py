from __future__ import annotations

import logging
from collections.abc import Generator, Mapping
from datetime import date
from decimal import Decimal
from typing import Any

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import voucher_ledger.models  # noqa: F401
from voucher_ledger.audit.models import AuditEntry
from voucher_ledger.audit.recorder import AuditRecorder, DbAuditSink, verify
from voucher_ledger.budget.gate import NullBudgetGate
from voucher_ledger.core.context import Actor
from voucher_ledger.core.database import Base
from voucher_ledger.errors import (
    BalanceError,
    NotFoundError,
    PeriodLockedError,
    StateConflictError,
    ValidationError,
)
from voucher_ledger.periods.service import PeriodLockService
from voucher_ledger.vouchers.models import GeneralLedgerEntry, Voucher, VoucherItem
from voucher_ledger.vouchers.poster import LedgerPoster
from voucher_ledger.vouchers.schemas import VoucherLineInput, VoucherUpsert
from voucher_ledger.vouchers.sequence import format_doc_no
from voucher_ledger.vouchers.service import VoucherService


class FailingSink:
    def write(self, bind: Any, payload: Mapping[str, Any]) -> None:
        raise RuntimeError("audit store unavailable")


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


def _build_service(recorder: AuditRecorder) -> VoucherService:
    guard = PeriodLockService(recorder=recorder)
    gate = NullBudgetGate()
    poster = LedgerPoster(period_guard=guard, recorder=recorder, budget_gate=gate)
    return VoucherService(poster=poster, period_guard=guard, recorder=recorder, budget_gate=gate)


@pytest.fixture()
def service() -> VoucherService:
    return _build_service(AuditRecorder(DbAuditSink(), dispatch="sync"))


@pytest.fixture()
def actor() -> Actor:
    return Actor(
        user_id="accountant-1",
        roles=["user"],
        ip_address="10.0.0.8",
        user_agent="pytest",
        correlation_id="corr-svc-1",
    )


def _dto(**overrides: Any) -> VoucherUpsert:
    values: dict[str, Any] = {
        "doc_date": "2024-03-15",
        "description": "Office supplies",
        "lines": [{"debit_acc": "642", "credit_acc": "1111", "amount": "450000"}],
    }
    values.update(overrides)
    return VoucherUpsert.model_validate(values)


def _audit_entries(session: Session, entity_id: str) -> list[AuditEntry]:
    return list(
        session.scalars(
            select(AuditEntry).where(AuditEntry.entity_id == entity_id).order_by(AuditEntry.timestamp.asc())
        ).all()
    )


def test_create_allocates_doc_no_per_type_and_year(db_session: Session, service: VoucherService, actor: Actor) -> None:
    first = service.create(db_session, _dto(), actor)
    second = service.create(db_session, _dto(), actor)
    cash = service.create(db_session, _dto(type="CASH_IN"), actor)
    next_year = service.create(db_session, _dto(doc_date="2025-01-02"), actor)

    assert first.doc_no == "PK202400001"
    assert second.doc_no == "PK202400002"
    assert cash.doc_no == "PT202400001"
    assert next_year.doc_no == "PK202500001"


def test_create_persists_draft_with_canonical_lines(db_session: Session, service: VoucherService, actor: Actor) -> None:
    voucher = service.create(
        db_session,
        _dto(
            post_date="2024-03-20",
            currency="USD",
            lines=[
                {"tkNo": "642", "tkCo": "1111", "amount": "450000", "projectCode": "PRJ-1"},
                {"description": "", "amount": "0"},
                {"debitAcc": "133", "creditAcc": "1111", "amount": "45000"},
            ],
        ),
        actor,
    )

    assert voucher.status == "DRAFT"
    assert voucher.post_date == date(2024, 3, 20)
    assert voucher.currency == "USD"
    assert voucher.total_amount == Decimal("495000")
    assert voucher.created_by == "accountant-1"
    assert [(item.line_no, item.debit_acc, item.credit_acc, item.project_code) for item in voucher.items] == [
        (1, "642", "1111", "PRJ-1"),
        (2, "133", "1111", None),
    ]
    assert db_session.scalar(select(func.count()).select_from(GeneralLedgerEntry)) == 0


def test_create_defaults_post_date_and_currency(db_session: Session, service: VoucherService, actor: Actor) -> None:
    voucher = service.create(db_session, _dto(), actor)

    assert voucher.post_date == voucher.doc_date
    assert voucher.currency == "VND"


def test_create_rejects_unbalanced_lines(db_session: Session, service: VoucherService, actor: Actor) -> None:
    with pytest.raises(BalanceError) as exc_info:
        service.create(db_session, _dto(lines=[{"debit_acc": "111", "amount": "1000000"}]), actor)

    assert exc_info.value.code == "INCOMPLETE_LINES"
    assert exc_info.value.details["incomplete_lines"] == [0]
    assert db_session.scalar(select(func.count()).select_from(Voucher)) == 0


def test_create_rejects_empty_voucher(db_session: Session, service: VoucherService, actor: Actor) -> None:
    with pytest.raises(BalanceError) as exc_info:
        service.create(db_session, _dto(lines=[]), actor)

    assert exc_info.value.code == "EMPTY_VOUCHER"


def test_off_balance_line_must_be_single_entry(db_session: Session, service: VoucherService, actor: Actor) -> None:
    with pytest.raises(ValidationError):
        service.create(db_session, _dto(lines=[{"debit_acc": "007", "credit_acc": "1111", "amount": "10"}]), actor)


def test_manual_doc_no_collision_is_rejected(db_session: Session, service: VoucherService, actor: Actor) -> None:
    service.create(db_session, _dto(doc_no="HD-0001"), actor)

    with pytest.raises(StateConflictError) as exc_info:
        service.create(db_session, _dto(doc_no="HD-0001"), actor)

    assert exc_info.value.code == "DOC_NO_CONFLICT"


def test_allocation_skips_manually_taken_numbers(db_session: Session, service: VoucherService, actor: Actor) -> None:
    service.create(db_session, _dto(doc_no=format_doc_no("GENERAL", 2024, 1)), actor)

    voucher = service.create(db_session, _dto(), actor)

    assert voucher.doc_no == "PK202400002"


def test_next_doc_no_previews_without_consuming(db_session: Session, service: VoucherService, actor: Actor) -> None:
    assert service.next_doc_no(db_session, "GENERAL", 2024).doc_no == "PK202400001"
    assert service.next_doc_no(db_session, "GENERAL", 2024).doc_no == "PK202400001"

    service.create(db_session, _dto(doc_no=format_doc_no("GENERAL", 2024, 1)), actor)
    preview = service.next_doc_no(db_session, "GENERAL", 2024)
    assert preview.doc_no == "PK202400002"

    voucher = service.create(db_session, _dto(), actor)
    assert voucher.doc_no == preview.doc_no
    assert service.next_doc_no(db_session, "CASH_IN", 2024).doc_no == "PT202400001"


def test_update_replaces_lines_and_recomputes_total(db_session: Session, service: VoucherService, actor: Actor) -> None:
    voucher = service.create(db_session, _dto(), actor)

    updated = service.update(
        db_session,
        voucher.id,
        _dto(
            description="Office supplies (corrected)",
            lines=[
                {"debit_acc": "642", "credit_acc": "1111", "amount": "400000"},
                {"debit_acc": "133", "credit_acc": "1111", "amount": "40000"},
            ],
        ),
        actor,
    )

    assert updated.doc_no == voucher.doc_no
    assert updated.description == "Office supplies (corrected)"
    assert updated.total_amount == Decimal("440000")
    assert [item.amount for item in updated.items] == [Decimal("400000"), Decimal("40000")]
    assert updated.updated_by == "accountant-1"
    assert db_session.scalar(select(func.count()).select_from(VoucherItem)) == 2


def test_upsert_routes_on_id(db_session: Session, service: VoucherService, actor: Actor) -> None:
    created, was_created = service.upsert(db_session, _dto(), actor)
    updated, was_created_again = service.upsert(db_session, _dto(id=str(created.id), description="Edited"), actor)

    assert was_created is True
    assert was_created_again is False
    assert updated.id == created.id
    assert updated.description == "Edited"


def test_update_posted_voucher_is_rejected(db_session: Session, service: VoucherService, actor: Actor) -> None:
    voucher = service.create(db_session, _dto(), actor)
    service.post(db_session, voucher.id, actor)

    with pytest.raises(StateConflictError) as exc_info:
        service.update(db_session, voucher.id, _dto(description="late edit"), actor)

    assert exc_info.value.code == "INVALID_TRANSITION"


def test_update_checks_old_and_new_post_date(db_session: Session, service: VoucherService, actor: Actor) -> None:
    voucher = service.create(db_session, _dto(doc_date="2024-01-10"), actor)
    service.period_guard.set_watermark(db_session, date(2024, 1, 31), actor)

    with pytest.raises(PeriodLockedError):
        service.update(db_session, voucher.id, _dto(doc_date="2024-02-10"), actor)

    assert service.get_voucher(db_session, voucher.id).doc_date == date(2024, 1, 10)


def test_update_unknown_voucher_is_not_found(db_session: Session, service: VoucherService, actor: Actor) -> None:
    voucher = service.create(db_session, _dto(), actor)
    service.delete(db_session, voucher.id, actor)

    with pytest.raises(NotFoundError):
        service.update(db_session, voucher.id, _dto(), actor)


def test_delete_draft_removes_voucher_and_lines(db_session: Session, service: VoucherService, actor: Actor) -> None:
    voucher = service.create(db_session, _dto(), actor)

    service.delete(db_session, voucher.id, actor)

    assert db_session.scalar(select(func.count()).select_from(Voucher)) == 0
    assert db_session.scalar(select(func.count()).select_from(VoucherItem)) == 0


def test_delete_posted_voucher_requires_void(db_session: Session, service: VoucherService, actor: Actor) -> None:
    voucher = service.create(db_session, _dto(), actor)
    service.post(db_session, voucher.id, actor)

    with pytest.raises(StateConflictError) as exc_info:
        service.delete(db_session, voucher.id, actor)

    assert "void" in exc_info.value.message


def test_delete_voided_voucher_is_rejected(db_session: Session, service: VoucherService, actor: Actor) -> None:
    voucher = service.create(db_session, _dto(), actor)
    service.post(db_session, voucher.id, actor)
    service.void(db_session, voucher.id, "entered twice by mistake", actor)

    with pytest.raises(StateConflictError):
        service.delete(db_session, voucher.id, actor)

    assert service.get_voucher(db_session, voucher.id).status == "VOIDED"


def test_list_filters_and_paginates(db_session: Session, service: VoucherService, actor: Actor) -> None:
    first = service.create(db_session, _dto(doc_date="2024-03-01", description="Rent March"), actor)
    service.create(db_session, _dto(doc_date="2024-03-02", description="Rent April"), actor)
    service.create(db_session, _dto(doc_date="2024-03-03", type="CASH_OUT", description="Fuel"), actor)
    service.post(db_session, first.id, actor)

    everything = service.list_vouchers(db_session)
    assert everything.total == 3
    assert [item.doc_date for item in everything.items] == [date(2024, 3, 3), date(2024, 3, 2), date(2024, 3, 1)]

    rent = service.list_vouchers(db_session, search="rent")
    assert rent.total == 2

    posted = service.list_vouchers(db_session, status="posted")
    assert [item.id for item in posted.items] == [first.id]

    cash_out = service.list_vouchers(db_session, voucher_type="CASH_OUT")
    assert [item.doc_no for item in cash_out.items] == ["PC202400001"]

    window = service.list_vouchers(db_session, from_date=date(2024, 3, 2), to_date=date(2024, 3, 2))
    assert window.total == 1

    paged = service.list_vouchers(db_session, page=2, page_size=2)
    assert paged.total == 3
    assert len(paged.items) == 1


def test_list_rejects_bad_pagination_and_ranges(db_session: Session, service: VoucherService) -> None:
    with pytest.raises(ValidationError):
        service.list_vouchers(db_session, page=0)
    with pytest.raises(ValidationError):
        service.list_vouchers(db_session, page_size=501)
    with pytest.raises(ValidationError):
        service.list_vouchers(db_session, from_date=date(2024, 2, 1), to_date=date(2024, 1, 1))


def test_voucher_stats_by_type_and_status(db_session: Session, service: VoucherService, actor: Actor) -> None:
    first = service.create(db_session, _dto(), actor)
    service.create(db_session, _dto(), actor)
    service.create(db_session, _dto(type="CASH_OUT"), actor)
    service.post(db_session, first.id, actor)

    stats = service.voucher_stats(db_session)

    assert stats.total_count == 3
    assert {bucket.key: bucket.count for bucket in stats.by_type} == {"CASH_OUT": 1, "GENERAL": 2}
    assert {bucket.key: bucket.count for bucket in stats.by_status} == {"DRAFT": 2, "POSTED": 1}
    assert {bucket.key: bucket.total_amount for bucket in stats.by_type}["GENERAL"] == Decimal("900000")


def test_check_balance_ignores_blank_lines(service: VoucherService) -> None:
    report = service.check_balance(
        [
            VoucherLineInput(debit_acc="642", credit_acc="1111", amount=Decimal("10")),
            VoucherLineInput(),
        ]
    )

    assert report.status == "balanced"
    assert report.on_balance_sheet_lines == 1


def test_lifecycle_writes_verifiable_audit_trail(db_session: Session, service: VoucherService, actor: Actor) -> None:
    voucher = service.create(db_session, _dto(), actor)
    service.update(
        db_session,
        voucher.id,
        _dto(lines=[{"debit_acc": "642", "credit_acc": "1111", "amount": "500000"}]),
        actor,
    )
    service.post(db_session, voucher.id, actor)
    service.void(db_session, voucher.id, "wrong expense account", actor)

    entries = _audit_entries(db_session, str(voucher.id))
    assert [entry.action for entry in entries] == ["CREATE", "UPDATE", "POST", "VOID"]
    assert all(entry.actor == "accountant-1" for entry in entries)
    assert all(entry.ip_address == "10.0.0.8" for entry in entries)
    assert all(entry.correlation_id == "corr-svc-1" for entry in entries)
    assert all(verify(entry) for entry in entries)

    create_entry, update_entry, post_entry, void_entry = entries
    assert create_entry.old_values is None
    assert update_entry.amount == Decimal("500000")
    assert "total_amount" in (update_entry.changed_fields or [])
    assert post_entry.changed_fields is not None and "status" in post_entry.changed_fields
    assert void_entry.new_values is not None
    assert void_entry.new_values["void_reason"] == "wrong expense account"


def test_delete_is_audited_with_previous_values(db_session: Session, service: VoucherService, actor: Actor) -> None:
    voucher = service.create(db_session, _dto(), actor)
    service.delete(db_session, voucher.id, actor)

    entries = _audit_entries(db_session, str(voucher.id))
    assert [entry.action for entry in entries] == ["CREATE", "DELETE"]
    assert entries[-1].new_values is None
    assert entries[-1].old_values is not None
    assert entries[-1].old_values["doc_no"] == voucher.doc_no


def test_audit_failure_never_breaks_the_mutation(
    db_session: Session,
    actor: Actor,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.ERROR)
    service = _build_service(AuditRecorder(FailingSink(), dispatch="sync"))
    failures_before = REGISTRY.get_sample_value("audit_write_failures_total", {"entity_type": "voucher"}) or 0.0

    voucher = service.create(db_session, _dto(), actor)
    service.post(db_session, voucher.id, actor)

    assert service.get_voucher(db_session, voucher.id).status == "POSTED"
    failures_after = REGISTRY.get_sample_value("audit_write_failures_total", {"entity_type": "voucher"}) or 0.0
    assert failures_after - failures_before == 2
    assert any(record.getMessage() == "audit.write_failed" for record in caplog.records)
