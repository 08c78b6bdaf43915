"""Double-entry balance evaluation for voucher lines and journal rows.

Both entry points are pure: they never raise for bad input and never touch the
database. Callers inspect :attr:`BalanceReport.status` and decide what to do.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal, Protocol

TOLERANCE = Decimal("0.01")
ZERO = Decimal("0")

BalanceStatus = Literal["empty", "incomplete", "unbalanced", "balanced"]


class BalanceLine(Protocol):
    debit_acc: str | None
    credit_acc: str | None
    amount: Decimal
    description: str | None


class JournalRow(Protocol):
    account_code: str
    debit_amount: Decimal
    credit_amount: Decimal


@dataclass(frozen=True, slots=True)
class BalanceReport:
    status: BalanceStatus
    total_debit: Decimal = ZERO
    total_credit: Decimal = ZERO
    difference: Decimal = ZERO
    on_balance_sheet_lines: int = 0
    off_balance_sheet_lines: int = 0
    incomplete_lines: tuple[int, ...] = field(default_factory=tuple)
    message: str = ""

    @property
    def is_balanced(self) -> bool:
        return self.status == "balanced"

    @property
    def can_save(self) -> bool:
        return self.status == "balanced"

    @property
    def has_off_balance_items(self) -> bool:
        return self.off_balance_sheet_lines > 0

    def as_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "is_balanced": self.is_balanced,
            "can_save": self.can_save,
            "total_debit": self.total_debit,
            "total_credit": self.total_credit,
            "difference": self.difference,
            "on_balance_sheet_lines": self.on_balance_sheet_lines,
            "off_balance_sheet_lines": self.off_balance_sheet_lines,
            "has_off_balance_items": self.has_off_balance_items,
            "incomplete_lines": list(self.incomplete_lines),
            "message": self.message,
        }


def is_off_balance_account(account_code: str | None) -> bool:
    """Off-balance-sheet accounts (001..009 and friends) start with ``0``."""
    return bool(account_code) and account_code.startswith("0")  # type: ignore[union-attr]


def is_off_balance_line(line: BalanceLine) -> bool:
    return is_off_balance_account(line.debit_acc) or is_off_balance_account(line.credit_acc)


def evaluate(lines: Iterable[BalanceLine]) -> BalanceReport:
    total_debit = ZERO
    total_credit = ZERO
    on_balance = 0
    off_balance = 0
    incomplete: list[int] = []

    for index, line in enumerate(lines):
        amount = Decimal(line.amount or 0)
        debit_acc = line.debit_acc or ""
        credit_acc = line.credit_acc or ""

        if not debit_acc and not credit_acc and amount == 0 and not line.description:
            continue

        if is_off_balance_account(debit_acc) or is_off_balance_account(credit_acc):
            off_balance += 1
            continue

        if debit_acc and credit_acc:
            total_debit += amount
            total_credit += amount
            on_balance += 1
        elif debit_acc or credit_acc or amount > 0:
            # partial totals are still reported so the outstanding side is visible
            incomplete.append(index)
            if debit_acc:
                total_debit += amount
            if credit_acc:
                total_credit += amount

    return _build_report(total_debit, total_credit, on_balance, off_balance, incomplete)


def evaluate_entries(entries: Iterable[JournalRow]) -> BalanceReport:
    """Same rules applied to single-sided journal rows such as a posting fan-out."""
    total_debit = ZERO
    total_credit = ZERO
    on_balance = 0
    off_balance = 0
    incomplete: list[int] = []

    for index, entry in enumerate(entries):
        debit = Decimal(entry.debit_amount or 0)
        credit = Decimal(entry.credit_amount or 0)
        if is_off_balance_account(entry.account_code):
            off_balance += 1
            continue
        if not entry.account_code:
            if debit > 0 or credit > 0:
                incomplete.append(index)
            continue
        total_debit += debit
        total_credit += credit
        on_balance += 1

    return _build_report(total_debit, total_credit, on_balance, off_balance, incomplete)


def _build_report(
    total_debit: Decimal,
    total_credit: Decimal,
    on_balance: int,
    off_balance: int,
    incomplete: list[int],
) -> BalanceReport:
    difference = abs(total_debit - total_credit)

    status: BalanceStatus
    if on_balance == 0 and off_balance == 0 and not incomplete:
        status = "empty"
        message = "No valid entries"
    elif incomplete:
        status = "incomplete"
        message = f"{len(incomplete)} line(s) missing a debit or credit account"
    elif difference > TOLERANCE:
        status = "unbalanced"
        message = f"Difference: {difference}"
    else:
        status = "balanced"
        message = f"Balanced ({on_balance} entries)" if on_balance > 0 else "Off-balance entries only"

    if off_balance > 0:
        message += f" | {off_balance} off-balance"

    return BalanceReport(
        status=status,
        total_debit=total_debit,
        total_credit=total_credit,
        difference=difference,
        on_balance_sheet_lines=on_balance,
        off_balance_sheet_lines=off_balance,
        incomplete_lines=tuple(incomplete),
        message=message,
    )
