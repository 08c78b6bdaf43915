"""Budget reservation gate.

Gate calls participate in the caller's transaction: they flush but never
commit, so a rejected reservation or a later failure leaves nothing behind.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from voucher_ledger.budget.models import BudgetReservation, FundAllocation
from voucher_ledger.core.config import get_settings
from voucher_ledger.errors import InsufficientBudgetError
from voucher_ledger.metrics import observe_budget_rejection

logger = logging.getLogger("voucher_ledger.budget")

ZERO = Decimal("0")


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    allowed: bool
    remaining: Decimal | None = None


class FundedLine(Protocol):
    fund_source_id: str | None
    amount: Decimal


class BudgetGate(Protocol):
    def check_and_reserve(
        self,
        session: Session,
        fund_ref: str,
        amount: Decimal,
        voucher_id: uuid.UUID,
    ) -> BudgetDecision: ...

    def confirm(self, session: Session, voucher_id: uuid.UUID, lines: Iterable[FundedLine]) -> None: ...

    def release(self, session: Session, voucher_id: uuid.UUID) -> None: ...


class NullBudgetGate:
    def check_and_reserve(
        self,
        session: Session,
        fund_ref: str,
        amount: Decimal,
        voucher_id: uuid.UUID,
    ) -> BudgetDecision:
        return BudgetDecision(allowed=True)

    def confirm(self, session: Session, voucher_id: uuid.UUID, lines: Iterable[FundedLine]) -> None:
        return None

    def release(self, session: Session, voucher_id: uuid.UUID) -> None:
        return None


class DbBudgetGate:
    """Remaining = allocated - reserved - spent, computed under a row lock on the fund."""

    def remaining(self, session: Session, fund: FundAllocation) -> Decimal:
        used = session.scalar(
            select(func.coalesce(func.sum(BudgetReservation.amount), 0)).where(
                BudgetReservation.fund_ref == fund.fund_ref,
                BudgetReservation.status.in_(("RESERVED", "SPENT")),
            )
        )
        return Decimal(fund.allocated_amount) - Decimal(used or 0)

    def check_and_reserve(
        self,
        session: Session,
        fund_ref: str,
        amount: Decimal,
        voucher_id: uuid.UUID,
    ) -> BudgetDecision:
        fund = session.scalar(select(FundAllocation).where(FundAllocation.fund_ref == fund_ref).with_for_update())
        if fund is None:
            return BudgetDecision(allowed=False, remaining=ZERO)

        remaining = self.remaining(session, fund)
        if amount > remaining:
            return BudgetDecision(allowed=False, remaining=remaining)

        session.add(BudgetReservation(fund_ref=fund_ref, voucher_id=voucher_id, amount=amount, status="RESERVED"))
        session.flush()
        return BudgetDecision(allowed=True, remaining=remaining - amount)

    def confirm(self, session: Session, voucher_id: uuid.UUID, lines: Iterable[FundedLine]) -> None:
        """Spends the voucher's reservations, first re-reserving any fund whose held
        amount no longer matches the lines being posted."""
        needed = fund_amounts(lines)
        held: dict[str, list[BudgetReservation]] = {}
        for reservation in self._reservations(session, voucher_id, ("RESERVED",)):
            held.setdefault(reservation.fund_ref, []).append(reservation)

        for fund_ref in sorted(set(needed) | set(held)):
            reservations = held.get(fund_ref, [])
            amount = needed.get(fund_ref, ZERO)
            if sum((Decimal(r.amount) for r in reservations), ZERO) == amount:
                continue
            for reservation in reservations:
                reservation.status = "RELEASED"
            session.flush()
            if amount > 0:
                reserve_fund(self, session, voucher_id, fund_ref, amount)

        for reservation in self._reservations(session, voucher_id, ("RESERVED",)):
            reservation.status = "SPENT"
        session.flush()

    def release(self, session: Session, voucher_id: uuid.UUID) -> None:
        for reservation in self._reservations(session, voucher_id, ("RESERVED", "SPENT")):
            reservation.status = "RELEASED"
        session.flush()

    def _reservations(
        self,
        session: Session,
        voucher_id: uuid.UUID,
        statuses: tuple[str, ...],
    ) -> list[BudgetReservation]:
        return list(
            session.scalars(
                select(BudgetReservation).where(
                    BudgetReservation.voucher_id == voucher_id,
                    BudgetReservation.status.in_(statuses),
                )
            ).all()
        )


def fund_amounts(lines: Iterable[FundedLine]) -> dict[str, Decimal]:
    """Sum line amounts per referenced fund; lines without a fund are ignored."""
    totals: dict[str, Decimal] = {}
    for line in lines:
        if not line.fund_source_id:
            continue
        amount = Decimal(line.amount or 0)
        if amount <= 0:
            continue
        totals[line.fund_source_id] = totals.get(line.fund_source_id, ZERO) + amount
    return totals


def reserve_for_voucher(
    gate: BudgetGate,
    session: Session,
    voucher_id: uuid.UUID,
    lines: Iterable[FundedLine],
) -> None:
    # sorted so concurrent reservations lock fund rows in the same order
    for fund_ref, amount in sorted(fund_amounts(lines).items()):
        reserve_fund(gate, session, voucher_id, fund_ref, amount)


def reserve_fund(
    gate: BudgetGate,
    session: Session,
    voucher_id: uuid.UUID,
    fund_ref: str,
    amount: Decimal,
) -> None:
    decision = gate.check_and_reserve(session, fund_ref, amount, voucher_id)
    if not decision.allowed:
        observe_budget_rejection()
        remaining = decision.remaining if decision.remaining is not None else ZERO
        logger.info(
            "budget.rejected",
            extra={"fund_ref": fund_ref, "voucher_id": str(voucher_id), "reason": "insufficient_budget"},
        )
        raise InsufficientBudgetError(fund_ref, amount, remaining)


def get_budget_gate() -> BudgetGate:
    backend = get_settings().budget_gate_backend.lower()
    if backend == "db":
        return DbBudgetGate()
    return NullBudgetGate()
