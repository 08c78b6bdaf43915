from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from voucher_ledger import events
from voucher_ledger.audit.recorder import AuditRecord, AuditRecorder, audit_recorder
from voucher_ledger.budget.gate import BudgetGate, get_budget_gate, reserve_for_voucher
from voucher_ledger.core.config import get_settings
from voucher_ledger.core.context import Actor
from voucher_ledger.errors import (
    BalanceError,
    InternalError,
    LedgerError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from voucher_ledger.metrics import observe_voucher_transition
from voucher_ledger.periods.service import PeriodLockService, period_lock_service
from voucher_ledger.vouchers.balance import BalanceReport, evaluate, is_off_balance_account
from voucher_ledger.vouchers.models import Voucher, VoucherItem
from voucher_ledger.vouchers.poster import (
    LedgerPoster,
    PostResult,
    integrity_error_to_ledger_error,
    ledger_poster,
    lock_voucher,
    voucher_snapshot,
)
from voucher_ledger.vouchers.schemas import (
    NextDocNoRead,
    VoucherLineInput,
    VoucherListRead,
    VoucherStatsBucket,
    VoucherStatsRead,
    VoucherSummaryRead,
    VoucherUpsert,
)
from voucher_ledger.vouchers.sequence import DocumentSequenceAllocator, document_sequence_allocator

logger = logging.getLogger("voucher_ledger.vouchers")

AUDIT_ENTITY = "voucher"
MAX_PAGE_SIZE = 500


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_lines(lines: list[VoucherLineInput]) -> list[VoucherLineInput]:
    return [line for line in lines if not line.is_blank()]


def _check_off_balance_single_entry(lines: list[VoucherLineInput]) -> None:
    offending = [
        index
        for index, line in enumerate(lines)
        if (is_off_balance_account(line.debit_acc) or is_off_balance_account(line.credit_acc))
        and line.debit_acc
        and line.credit_acc
    ]
    if offending:
        raise ValidationError(
            "off-balance-sheet lines must carry a single account",
            details={"lines": offending},
        )


def validate_lines(lines: list[VoucherLineInput]) -> BalanceReport:
    _check_off_balance_single_entry(lines)
    report = evaluate(lines)
    if not report.is_balanced:
        raise BalanceError(report)
    return report


def _build_items(lines: list[VoucherLineInput]) -> list[VoucherItem]:
    return [
        VoucherItem(
            line_no=index,
            description=line.description,
            debit_acc=line.debit_acc,
            credit_acc=line.credit_acc,
            amount=line.amount,
            partner_code=line.partner_code,
            project_code=line.project_code,
            contract_code=line.contract_code,
            item_code=line.item_code,
            sub_item_code=line.sub_item_code,
            fund_source_id=line.fund_source_id,
            dimensions_json=line.dimensions_json,
        )
        for index, line in enumerate(lines, start=1)
    ]


def _total_amount(lines: list[VoucherLineInput]) -> Decimal:
    return sum((line.amount for line in lines), Decimal("0"))


@dataclass(slots=True)
class VoucherService:
    poster: LedgerPoster = field(default_factory=lambda: ledger_poster)
    period_guard: PeriodLockService = field(default_factory=lambda: period_lock_service)
    recorder: AuditRecorder = field(default_factory=lambda: audit_recorder)
    sequence: DocumentSequenceAllocator = field(default_factory=lambda: document_sequence_allocator)
    budget_gate: BudgetGate | None = None

    def gate(self) -> BudgetGate:
        return self.budget_gate if self.budget_gate is not None else get_budget_gate()

    def list_vouchers(
        self,
        session: Session,
        *,
        voucher_type: str | None = None,
        status: str | None = None,
        from_date: date | None = None,
        to_date: date | None = None,
        search: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> VoucherListRead:
        if page < 1 or page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValidationError("invalid pagination", details={"page": page, "page_size": page_size})
        if from_date is not None and to_date is not None and from_date > to_date:
            raise ValidationError("from_date must not be after to_date")

        stmt: Select[tuple[Voucher]] = select(Voucher)
        if voucher_type is not None:
            stmt = stmt.where(Voucher.type == voucher_type)
        if status is not None:
            stmt = stmt.where(Voucher.status == status.upper())
        if from_date is not None:
            stmt = stmt.where(Voucher.doc_date >= from_date)
        if to_date is not None:
            stmt = stmt.where(Voucher.doc_date <= to_date)
        if search:
            pattern = f"%{search.strip()}%"
            stmt = stmt.where(or_(Voucher.doc_no.ilike(pattern), Voucher.description.ilike(pattern)))

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = session.scalars(
            stmt.order_by(Voucher.doc_date.desc(), Voucher.doc_no.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return VoucherListRead(
            items=[VoucherSummaryRead.model_validate(row) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    def get_voucher(self, session: Session, voucher_id: uuid.UUID) -> Voucher:
        voucher = session.scalar(
            select(Voucher).where(Voucher.id == voucher_id).options(selectinload(Voucher.items))
        )
        if voucher is None:
            raise NotFoundError("voucher", voucher_id)
        return voucher

    def check_balance(self, lines: list[VoucherLineInput]) -> BalanceReport:
        return evaluate(normalize_lines(lines))

    def next_doc_no(self, session: Session, voucher_type: str, fiscal_year: int | None = None) -> NextDocNoRead:
        year = fiscal_year if fiscal_year is not None else date.today().year
        doc_no = self.sequence.peek_doc_no(session, voucher_type, year)
        return NextDocNoRead(voucher_type=voucher_type, fiscal_year=year, doc_no=doc_no)

    def create(self, session: Session, dto: VoucherUpsert, actor: Actor) -> Voucher:
        lines = normalize_lines(dto.lines)
        try:
            validate_lines(lines)
            self.period_guard.ensure_unlocked(session, dto.effective_post_date)

            doc_no = dto.doc_no
            if doc_no:
                if self.sequence.doc_no_exists(session, doc_no):
                    raise StateConflictError(f"doc_no '{doc_no}' already exists", code="DOC_NO_CONFLICT")
            else:
                doc_no = self.sequence.next_free_doc_no(session, dto.type, dto.doc_date.year)

            voucher = Voucher(
                doc_no=doc_no,
                doc_date=dto.doc_date,
                post_date=dto.effective_post_date,
                description=dto.description,
                type=dto.type,
                currency=dto.currency or get_settings().default_currency,
                fx_rate=dto.fx_rate,
                total_amount=_total_amount(lines),
                status="DRAFT",
                org_doc_no=dto.org_doc_no,
                org_doc_date=dto.org_doc_date,
                created_by=actor.user_id,
            )
            voucher.items = _build_items(lines)
            session.add(voucher)
            session.flush()
            reserve_for_voucher(self.gate(), session, voucher.id, voucher.items)
            session.commit()
        except LedgerError:
            session.rollback()
            raise
        except IntegrityError as exc:
            session.rollback()
            raise integrity_error_to_ledger_error(exc) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("voucher.create_failed", extra={"error": str(exc)[:500]})
            raise InternalError("voucher could not be saved") from exc

        voucher = self.get_voucher(session, voucher.id)
        observe_voucher_transition("create")
        logger.info(
            "voucher.created",
            extra={"voucher_id": str(voucher.id), "doc_no": voucher.doc_no, "voucher_type": voucher.type, "actor": actor.user_id},
        )
        self._audit(session, actor, voucher, "CREATE", None, voucher_snapshot(voucher))
        events.publish(
            events.VOUCHER_CREATED,
            {"voucher_id": str(voucher.id), "doc_no": voucher.doc_no},
            correlation_id=actor.correlation_id,
        )
        return voucher

    def update(self, session: Session, voucher_id: uuid.UUID, dto: VoucherUpsert, actor: Actor) -> Voucher:
        lines = normalize_lines(dto.lines)
        try:
            voucher = lock_voucher(session, voucher_id)
            if voucher.status != "DRAFT":
                raise StateConflictError(
                    f"cannot update a voucher in status {voucher.status}",
                    details={"status": voucher.status, "action": "update"},
                )
            before = voucher_snapshot(voucher)
            validate_lines(lines)
            self.period_guard.ensure_unlocked(session, voucher.post_date, dto.effective_post_date)

            if dto.doc_no and dto.doc_no != voucher.doc_no:
                if self.sequence.doc_no_exists(session, dto.doc_no):
                    raise StateConflictError(f"doc_no '{dto.doc_no}' already exists", code="DOC_NO_CONFLICT")
                voucher.doc_no = dto.doc_no

            voucher.doc_date = dto.doc_date
            voucher.post_date = dto.effective_post_date
            voucher.description = dto.description
            voucher.type = dto.type
            voucher.currency = dto.currency or voucher.currency
            voucher.fx_rate = dto.fx_rate
            voucher.org_doc_no = dto.org_doc_no
            voucher.org_doc_date = dto.org_doc_date
            voucher.total_amount = _total_amount(lines)
            voucher.updated_at = utcnow()
            voucher.updated_by = actor.user_id

            voucher.items.clear()
            session.flush()
            voucher.items.extend(_build_items(lines))
            session.flush()

            gate = self.gate()
            gate.release(session, voucher.id)
            reserve_for_voucher(gate, session, voucher.id, voucher.items)
            session.commit()
        except LedgerError:
            session.rollback()
            raise
        except IntegrityError as exc:
            session.rollback()
            raise integrity_error_to_ledger_error(exc) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("voucher.update_failed", extra={"voucher_id": str(voucher_id), "error": str(exc)[:500]})
            raise InternalError("voucher could not be saved") from exc

        voucher = self.get_voucher(session, voucher_id)
        observe_voucher_transition("update")
        logger.info("voucher.updated", extra={"voucher_id": str(voucher.id), "doc_no": voucher.doc_no, "actor": actor.user_id})
        self._audit(session, actor, voucher, "UPDATE", before, voucher_snapshot(voucher))
        events.publish(
            events.VOUCHER_UPDATED,
            {"voucher_id": str(voucher.id), "doc_no": voucher.doc_no},
            correlation_id=actor.correlation_id,
        )
        return voucher

    def upsert(self, session: Session, dto: VoucherUpsert, actor: Actor) -> tuple[Voucher, bool]:
        """Returns the saved voucher and whether it was newly created."""
        if dto.id is not None:
            return self.update(session, dto.id, dto, actor), False
        return self.create(session, dto, actor), True

    def post(self, session: Session, voucher_id: uuid.UUID, actor: Actor) -> PostResult:
        return self.poster.post(session, voucher_id, actor)

    def void(self, session: Session, voucher_id: uuid.UUID, reason: str, actor: Actor) -> Voucher:
        return self.poster.void(session, voucher_id, reason, actor)

    def duplicate(self, session: Session, voucher_id: uuid.UUID, new_doc_no: str | None, actor: Actor) -> Voucher:
        return self.poster.duplicate(session, voucher_id, new_doc_no, actor)

    def delete(self, session: Session, voucher_id: uuid.UUID, actor: Actor) -> None:
        try:
            voucher = lock_voucher(session, voucher_id)
            if voucher.status == "POSTED":
                raise StateConflictError(
                    "posted vouchers cannot be deleted; void the voucher first",
                    details={"status": voucher.status, "action": "delete"},
                )
            if voucher.status != "DRAFT":
                raise StateConflictError(
                    f"cannot delete a voucher in status {voucher.status}",
                    details={"status": voucher.status, "action": "delete"},
                )
            self.period_guard.ensure_unlocked(session, voucher.post_date)
            before = voucher_snapshot(voucher)
            doc_no = voucher.doc_no
            total_amount = voucher.total_amount

            self.gate().release(session, voucher.id)
            session.delete(voucher)
            session.commit()
        except LedgerError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("voucher.delete_failed", extra={"voucher_id": str(voucher_id), "error": str(exc)[:500]})
            raise InternalError("voucher could not be deleted") from exc

        observe_voucher_transition("delete")
        logger.info("voucher.deleted", extra={"voucher_id": str(voucher_id), "doc_no": doc_no, "actor": actor.user_id})
        self.recorder.record(
            session.get_bind(),
            AuditRecord(
                entity_type=AUDIT_ENTITY,
                entity_id=str(voucher_id),
                action="DELETE",
                actor=actor,
                old_values=before,
                new_values=None,
                doc_no=doc_no,
                amount=total_amount,
            ),
        )
        events.publish(
            events.VOUCHER_DELETED,
            {"voucher_id": str(voucher_id), "doc_no": doc_no},
            correlation_id=actor.correlation_id,
        )

    def voucher_stats(
        self,
        session: Session,
        *,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> VoucherStatsRead:
        if from_date is not None and to_date is not None and from_date > to_date:
            raise ValidationError("from_date must not be after to_date")

        filters: list[Any] = []
        if from_date is not None:
            filters.append(Voucher.doc_date >= from_date)
        if to_date is not None:
            filters.append(Voucher.doc_date <= to_date)

        def buckets(column: Any) -> list[VoucherStatsBucket]:
            rows = session.execute(
                select(column, func.count(Voucher.id), func.coalesce(func.sum(Voucher.total_amount), 0))
                .where(*filters)
                .group_by(column)
                .order_by(column)
            ).all()
            return [
                VoucherStatsBucket(key=str(key), count=int(count), total_amount=Decimal(total or 0))
                for key, count, total in rows
            ]

        by_type = buckets(Voucher.type)
        by_status = buckets(Voucher.status)
        return VoucherStatsRead(
            from_date=from_date,
            to_date=to_date,
            total_count=sum(bucket.count for bucket in by_status),
            by_type=by_type,
            by_status=by_status,
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


voucher_service = VoucherService()
