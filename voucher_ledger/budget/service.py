from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from voucher_ledger.audit.recorder import AuditRecord, AuditRecorder, audit_recorder
from voucher_ledger.budget.models import BudgetReservation, FundAllocation
from voucher_ledger.budget.schemas import FundAllocationRead, FundAllocationUpdate
from voucher_ledger.core.context import Actor
from voucher_ledger.errors import NotFoundError


@dataclass(slots=True)
class BudgetFundService:
    recorder: AuditRecorder = field(default_factory=lambda: audit_recorder)

    def get_fund(self, session: Session, fund_ref: str) -> FundAllocationRead:
        fund = session.get(FundAllocation, fund_ref)
        if fund is None:
            raise NotFoundError("budget fund", fund_ref)
        return self._to_read(session, fund)

    def upsert_fund(self, session: Session, fund_ref: str, dto: FundAllocationUpdate, actor: Actor) -> FundAllocationRead:
        try:
            fund = session.scalar(select(FundAllocation).where(FundAllocation.fund_ref == fund_ref).with_for_update())
            before = None if fund is None else {"allocated_amount": fund.allocated_amount, "name": fund.name}
            if fund is None:
                fund = FundAllocation(fund_ref=fund_ref)
                session.add(fund)
            fund.allocated_amount = dto.allocated_amount
            if dto.name is not None:
                fund.name = dto.name
            fund.updated_at = datetime.now(timezone.utc)
            fund.updated_by = actor.user_id
            session.commit()
        except Exception:
            session.rollback()
            raise

        session.refresh(fund)
        self.recorder.record(
            session.get_bind(),
            AuditRecord(
                entity_type="budget_fund",
                entity_id=fund_ref,
                action="ALLOCATE",
                actor=actor,
                old_values=before,
                new_values={"allocated_amount": fund.allocated_amount, "name": fund.name},
                amount=fund.allocated_amount,
            ),
        )
        return self._to_read(session, fund)

    def _to_read(self, session: Session, fund: FundAllocation) -> FundAllocationRead:
        rows = session.execute(
            select(BudgetReservation.status, func.coalesce(func.sum(BudgetReservation.amount), 0))
            .where(BudgetReservation.fund_ref == fund.fund_ref)
            .group_by(BudgetReservation.status)
        ).all()
        sums = {status: Decimal(total or 0) for status, total in rows}
        reserved = sums.get("RESERVED", Decimal("0"))
        spent = sums.get("SPENT", Decimal("0"))
        allocated = Decimal(fund.allocated_amount)
        return FundAllocationRead(
            fund_ref=fund.fund_ref,
            name=fund.name,
            allocated_amount=allocated,
            reserved_amount=reserved,
            spent_amount=spent,
            remaining_amount=allocated - reserved - spent,
        )


budget_fund_service = BudgetFundService()
