"""Ledger posting: the only writer of ``general_ledger`` rows.

Every operation here runs as one session transaction. Preconditions are read
inside that transaction, the voucher status flips through a conditional
UPDATE, and nothing is committed unless every step succeeded. Audit entries
and domain events follow the commit.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from voucher_ledger import events
from voucher_ledger.audit.recorder import AuditRecord, AuditRecorder, audit_recorder
from voucher_ledger.budget.gate import BudgetGate, get_budget_gate, reserve_for_voucher
from voucher_ledger.core.context import Actor
from voucher_ledger.errors import (
    BalanceError,
    InternalError,
    LedgerError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from voucher_ledger.metrics import (
    observe_ledger_rows_removed,
    observe_ledger_rows_written,
    observe_post_duration,
    observe_post_failure,
    observe_voucher_transition,
)
from voucher_ledger.otel import ledger_span
from voucher_ledger.periods.service import PeriodLockService, period_lock_service
from voucher_ledger.vouchers.balance import evaluate, evaluate_entries, is_off_balance_line
from voucher_ledger.vouchers.models import GeneralLedgerEntry, Voucher, VoucherItem
from voucher_ledger.vouchers.schemas import TrialBalanceRead, TrialBalanceRow
from voucher_ledger.vouchers.sequence import DocumentSequenceAllocator, document_sequence_allocator

logger = logging.getLogger("voucher_ledger.poster")

AUDIT_ENTITY = "voucher"
MIN_VOID_REASON_LENGTH = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class LedgerRowDraft:
    account_code: str
    reciprocal_acc: str | None
    debit_amount: Decimal
    credit_amount: Decimal
    line_no: int
    description: str | None
    partner_code: str | None = None
    project_code: str | None = None
    item_code: str | None = None
    sub_item_code: str | None = None


@dataclass(slots=True)
class PostResult:
    voucher: Voucher
    entries: list[GeneralLedgerEntry]


def fan_out(voucher: Voucher) -> list[LedgerRowDraft]:
    """One debit row and one credit row per line; off-balance lines yield a single row."""
    rows: list[LedgerRowDraft] = []
    zero = Decimal("0")
    for item in voucher.items:
        amount = Decimal(item.amount or 0)
        if amount <= 0:
            continue
        common = {
            "line_no": item.line_no,
            "description": item.description or voucher.description,
            "partner_code": item.partner_code,
            "project_code": item.project_code,
            "item_code": item.item_code,
            "sub_item_code": item.sub_item_code,
        }
        if is_off_balance_line(item):
            if item.debit_acc:
                rows.append(LedgerRowDraft(item.debit_acc, None, amount, zero, **common))
            else:
                rows.append(LedgerRowDraft(item.credit_acc or "", None, zero, amount, **common))
            continue
        if item.debit_acc:
            rows.append(LedgerRowDraft(item.debit_acc, item.credit_acc, amount, zero, **common))
        if item.credit_acc:
            rows.append(LedgerRowDraft(item.credit_acc, item.debit_acc, zero, amount, **common))
    return rows


def voucher_snapshot(voucher: Voucher) -> dict[str, Any]:
    return {
        "doc_no": voucher.doc_no,
        "doc_date": voucher.doc_date,
        "post_date": voucher.post_date,
        "description": voucher.description,
        "type": voucher.type,
        "currency": voucher.currency,
        "fx_rate": voucher.fx_rate,
        "total_amount": voucher.total_amount,
        "status": voucher.status,
        "org_doc_no": voucher.org_doc_no,
        "org_doc_date": voucher.org_doc_date,
        "lines": [
            {
                "line_no": item.line_no,
                "description": item.description,
                "debit_acc": item.debit_acc,
                "credit_acc": item.credit_acc,
                "amount": item.amount,
                "partner_code": item.partner_code,
                "project_code": item.project_code,
                "contract_code": item.contract_code,
                "item_code": item.item_code,
                "sub_item_code": item.sub_item_code,
                "fund_source_id": item.fund_source_id,
                "dimensions_json": item.dimensions_json,
            }
            for item in voucher.items
        ],
    }


def lock_voucher(session: Session, voucher_id: uuid.UUID) -> Voucher:
    """Row-locks the voucher header, then reloads it and its current lines.

    Mutations that read lines (post, update, delete) take this lock first so a
    concurrent writer cannot swap the lines between the checks and the writes.
    """
    voucher = session.get(Voucher, voucher_id, with_for_update=True, populate_existing=True)
    if voucher is None:
        raise NotFoundError("voucher", voucher_id)
    session.refresh(voucher, attribute_names=["items"])
    return voucher


def integrity_error_to_ledger_error(exc: IntegrityError) -> LedgerError:
    if "doc_no" in str(exc.orig):
        return StateConflictError("doc_no already exists", code="DOC_NO_CONFLICT")
    return InternalError("database constraint violated")


@dataclass(slots=True)
class LedgerPoster:
    period_guard: PeriodLockService = field(default_factory=lambda: period_lock_service)
    recorder: AuditRecorder = field(default_factory=lambda: audit_recorder)
    sequence: DocumentSequenceAllocator = field(default_factory=lambda: document_sequence_allocator)
    budget_gate: BudgetGate | None = None

    def gate(self) -> BudgetGate:
        return self.budget_gate if self.budget_gate is not None else get_budget_gate()

    def post(self, session: Session, voucher_id: uuid.UUID, actor: Actor) -> PostResult:
        started = time.perf_counter()
        with ledger_span("ledger.post", voucher_id=voucher_id, actor=actor.user_id) as span:
            try:
                voucher = lock_voucher(session, voucher_id)
                if voucher.status != "DRAFT":
                    raise self._transition_error(voucher, "post")
                before = voucher_snapshot(voucher)

                report = evaluate(voucher.items)
                if not report.is_balanced:
                    raise BalanceError(report)
                self.period_guard.ensure_unlocked(session, voucher.post_date)

                posted_at = utcnow()
                result = session.execute(
                    update(Voucher)
                    .where(Voucher.id == voucher_id, Voucher.status == "DRAFT")
                    .values(status="POSTED", posted_at=posted_at, posted_by=actor.user_id)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise StateConflictError("voucher was posted by a concurrent request", code="ALREADY_POSTED")

                drafts = fan_out(voucher)
                check = evaluate_entries(drafts)
                if not check.is_balanced:
                    raise BalanceError(check)

                entries = [
                    GeneralLedgerEntry(
                        trx_date=voucher.post_date,
                        posted_at=posted_at,
                        doc_no=voucher.doc_no,
                        currency=voucher.currency,
                        voucher_id=voucher.id,
                        account_code=draft.account_code,
                        reciprocal_acc=draft.reciprocal_acc,
                        debit_amount=draft.debit_amount,
                        credit_amount=draft.credit_amount,
                        line_no=draft.line_no,
                        description=draft.description,
                        partner_code=draft.partner_code,
                        project_code=draft.project_code,
                        item_code=draft.item_code,
                        sub_item_code=draft.sub_item_code,
                    )
                    for draft in drafts
                ]
                session.add_all(entries)
                self.gate().confirm(session, voucher.id, voucher.items)
                session.commit()
            except LedgerError as exc:
                session.rollback()
                observe_post_failure(exc.code.lower())
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                observe_post_failure("db_error")
                logger.exception("voucher.post_failed", extra={"voucher_id": str(voucher_id), "error": str(exc)[:500]})
                raise InternalError("posting transaction failed and was rolled back") from exc
            span.set_attribute("ledger.rows", len(entries))

        session.refresh(voucher)
        after = voucher_snapshot(voucher)
        observe_post_duration(time.perf_counter() - started)
        observe_voucher_transition("post")
        observe_ledger_rows_written(len(entries))
        logger.info(
            "voucher.posted",
            extra={"voucher_id": str(voucher.id), "doc_no": voucher.doc_no, "ledger_rows": len(entries), "actor": actor.user_id},
        )
        self._audit(session, actor, voucher, "POST", before, after)
        events.publish(
            events.VOUCHER_POSTED,
            {"voucher_id": str(voucher.id), "doc_no": voucher.doc_no, "ledger_rows": len(entries)},
            correlation_id=actor.correlation_id,
        )
        return PostResult(voucher=voucher, entries=entries)

    def void(self, session: Session, voucher_id: uuid.UUID, reason: str, actor: Actor) -> Voucher:
        cleaned_reason = (reason or "").strip()
        with ledger_span("ledger.void", voucher_id=voucher_id, actor=actor.user_id):
            try:
                if len(cleaned_reason) < MIN_VOID_REASON_LENGTH:
                    raise ValidationError(
                        f"void reason must be at least {MIN_VOID_REASON_LENGTH} characters",
                        details={"min_length": MIN_VOID_REASON_LENGTH},
                    )
                voucher = lock_voucher(session, voucher_id)
                if voucher.status != "POSTED":
                    raise self._transition_error(voucher, "void")
                before = voucher_snapshot(voucher)
                self.period_guard.ensure_unlocked(session, voucher.post_date)

                result = session.execute(
                    update(Voucher)
                    .where(Voucher.id == voucher_id, Voucher.status == "POSTED")
                    .values(
                        status="VOIDED",
                        voided_at=utcnow(),
                        voided_by=actor.user_id,
                        void_reason=cleaned_reason,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise StateConflictError("voucher was changed by a concurrent request")

                removed = session.execute(
                    delete(GeneralLedgerEntry)
                    .where(GeneralLedgerEntry.voucher_id == voucher_id)
                    .execution_options(synchronize_session=False)
                ).rowcount
                self.gate().release(session, voucher.id)
                session.commit()
            except LedgerError as exc:
                session.rollback()
                observe_post_failure(exc.code.lower())
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                observe_post_failure("db_error")
                logger.exception("voucher.void_failed", extra={"voucher_id": str(voucher_id), "error": str(exc)[:500]})
                raise InternalError("void transaction failed and was rolled back") from exc

        session.refresh(voucher)
        observe_voucher_transition("void")
        observe_ledger_rows_removed(removed or 0)
        logger.info(
            "voucher.voided",
            extra={"voucher_id": str(voucher.id), "doc_no": voucher.doc_no, "ledger_rows": removed, "actor": actor.user_id},
        )
        after = voucher_snapshot(voucher)
        after["void_reason"] = cleaned_reason
        self._audit(session, actor, voucher, "VOID", before, after)
        events.publish(
            events.VOUCHER_VOIDED,
            {"voucher_id": str(voucher.id), "doc_no": voucher.doc_no, "reason": cleaned_reason},
            correlation_id=actor.correlation_id,
        )
        return voucher

    def duplicate(
        self,
        session: Session,
        voucher_id: uuid.UUID,
        new_doc_no: str | None,
        actor: Actor,
    ) -> Voucher:
        with ledger_span("ledger.duplicate", voucher_id=voucher_id, actor=actor.user_id):
            try:
                source = self._load(session, voucher_id)
                self.period_guard.ensure_unlocked(session, source.post_date)

                doc_no = (new_doc_no or "").strip()
                if doc_no:
                    if self.sequence.doc_no_exists(session, doc_no):
                        raise StateConflictError(f"doc_no '{doc_no}' already exists", code="DOC_NO_CONFLICT")
                else:
                    doc_no = self.sequence.next_free_doc_no(session, source.type, source.doc_date.year)

                copy = Voucher(
                    doc_no=doc_no,
                    doc_date=source.doc_date,
                    post_date=source.post_date,
                    description=source.description,
                    type=source.type,
                    currency=source.currency,
                    fx_rate=source.fx_rate,
                    total_amount=source.total_amount,
                    status="DRAFT",
                    org_doc_no=source.org_doc_no,
                    org_doc_date=source.org_doc_date,
                    created_by=actor.user_id,
                )
                copy.items = [
                    VoucherItem(
                        line_no=item.line_no,
                        description=item.description,
                        debit_acc=item.debit_acc,
                        credit_acc=item.credit_acc,
                        amount=item.amount,
                        partner_code=item.partner_code,
                        project_code=item.project_code,
                        contract_code=item.contract_code,
                        item_code=item.item_code,
                        sub_item_code=item.sub_item_code,
                        fund_source_id=item.fund_source_id,
                        dimensions_json=dict(item.dimensions_json) if item.dimensions_json else None,
                    )
                    for item in source.items
                ]
                session.add(copy)
                session.flush()
                reserve_for_voucher(self.gate(), session, copy.id, copy.items)
                session.commit()
            except LedgerError:
                session.rollback()
                raise
            except IntegrityError as exc:
                session.rollback()
                raise integrity_error_to_ledger_error(exc) from exc
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("voucher.duplicate_failed", extra={"voucher_id": str(voucher_id), "error": str(exc)[:500]})
                raise InternalError("duplicate transaction failed and was rolled back") from exc

        session.refresh(copy)
        observe_voucher_transition("duplicate")
        logger.info(
            "voucher.duplicated",
            extra={"voucher_id": str(copy.id), "doc_no": copy.doc_no, "actor": actor.user_id},
        )
        after = voucher_snapshot(copy)
        after["duplicated_from"] = str(voucher_id)
        self._audit(session, actor, copy, "DUPLICATE", None, after)
        events.publish(
            events.VOUCHER_DUPLICATED,
            {"voucher_id": str(copy.id), "doc_no": copy.doc_no, "source_id": str(voucher_id)},
            correlation_id=actor.correlation_id,
        )
        return copy

    def ledger_entries(self, session: Session, voucher_id: uuid.UUID) -> list[GeneralLedgerEntry]:
        if session.get(Voucher, voucher_id) is None:
            raise NotFoundError("voucher", voucher_id)
        stmt = (
            select(GeneralLedgerEntry)
            .where(GeneralLedgerEntry.voucher_id == voucher_id)
            .order_by(GeneralLedgerEntry.line_no.asc(), GeneralLedgerEntry.credit_amount.asc())
        )
        return list(session.scalars(stmt).all())

    def trial_balance(
        self,
        session: Session,
        *,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> TrialBalanceRead:
        stmt = select(
            GeneralLedgerEntry.account_code,
            func.coalesce(func.sum(GeneralLedgerEntry.debit_amount), 0),
            func.coalesce(func.sum(GeneralLedgerEntry.credit_amount), 0),
        )
        if from_date is not None:
            stmt = stmt.where(GeneralLedgerEntry.trx_date >= from_date)
        if to_date is not None:
            stmt = stmt.where(GeneralLedgerEntry.trx_date <= to_date)
        stmt = stmt.group_by(GeneralLedgerEntry.account_code).order_by(GeneralLedgerEntry.account_code.asc())

        rows: list[TrialBalanceRow] = []
        total_debit = Decimal("0")
        total_credit = Decimal("0")
        for account_code, debit, credit in session.execute(stmt).all():
            debit_total = Decimal(debit or 0)
            credit_total = Decimal(credit or 0)
            rows.append(
                TrialBalanceRow(
                    account_code=account_code,
                    debit_total=debit_total,
                    credit_total=credit_total,
                    balance=debit_total - credit_total,
                )
            )
            total_debit += debit_total
            total_credit += credit_total
        return TrialBalanceRead(
            from_date=from_date,
            to_date=to_date,
            rows=rows,
            total_debit=total_debit,
            total_credit=total_credit,
        )

    def _load(self, session: Session, voucher_id: uuid.UUID) -> Voucher:
        voucher = session.get(Voucher, voucher_id)
        if voucher is None:
            raise NotFoundError("voucher", voucher_id)
        return voucher

    def _transition_error(self, voucher: Voucher, action: str) -> StateConflictError:
        if action == "post" and voucher.status == "POSTED":
            return StateConflictError("voucher is already posted", code="ALREADY_POSTED")
        return StateConflictError(
            f"cannot {action} a voucher in status {voucher.status}",
            details={"status": voucher.status, "action": action},
        )

    def _audit(
        self,
        session: Session,
        actor: Actor,
        voucher: Voucher,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        self.recorder.record(
            session.get_bind(),
            AuditRecord(
                entity_type=AUDIT_ENTITY,
                entity_id=str(voucher.id),
                action=action,
                actor=actor,
                old_values=before,
                new_values=after,
                doc_no=voucher.doc_no,
                amount=voucher.total_amount,
            ),
        )


ledger_poster = LedgerPoster()
