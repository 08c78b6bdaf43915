from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from voucher_ledger.vouchers.balance import BalanceReport


class LedgerError(Exception):
    """Base class for domain errors that map onto a stable HTTP status and code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class ValidationError(LedgerError):
    status_code = 400
    code = "VALIDATION_ERROR"


class PermissionDeniedError(LedgerError):
    status_code = 403
    code = "FORBIDDEN"


class PeriodLockedError(LedgerError):
    """Raised when an effective date falls on or before a locked boundary. Never bypassed."""

    status_code = 403
    code = "PERIOD_LOCKED"

    def __init__(self, effective_date: date, locked_until: date) -> None:
        self.effective_date = effective_date
        self.locked_until = locked_until
        super().__init__(
            f"accounting period is locked until {locked_until.isoformat()}",
            details={"date": effective_date.isoformat(), "locked_until": locked_until.isoformat()},
        )


class NotFoundError(LedgerError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any = None) -> None:
        self.resource = resource
        self.identifier = identifier
        message = f"{resource} '{identifier}' not found" if identifier is not None else f"{resource} not found"
        super().__init__(message, details={"resource": resource, "id": None if identifier is None else str(identifier)})


class StateConflictError(LedgerError):
    """Invalid lifecycle transition; usually means the client view is stale."""

    status_code = 409
    code = "INVALID_TRANSITION"


class BalanceError(LedgerError):
    status_code = 422
    code = "UNBALANCED"

    _codes = {
        "empty": "EMPTY_VOUCHER",
        "incomplete": "INCOMPLETE_LINES",
        "unbalanced": "UNBALANCED",
    }

    def __init__(self, report: BalanceReport) -> None:
        self.report = report
        super().__init__(
            report.message,
            code=self._codes.get(report.status, "UNBALANCED"),
            details={
                "status": report.status,
                "total_debit": str(report.total_debit),
                "total_credit": str(report.total_credit),
                "difference": str(report.difference),
                "incomplete_lines": list(report.incomplete_lines),
            },
        )


class InsufficientBudgetError(LedgerError):
    status_code = 422
    code = "INSUFFICIENT_BUDGET"

    def __init__(self, fund_ref: str, requested: Decimal, remaining: Decimal) -> None:
        self.fund_ref = fund_ref
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"fund '{fund_ref}' has {remaining} remaining, {requested} requested",
            details={"fund_ref": fund_ref, "requested": str(requested), "remaining": str(remaining)},
        )


class InternalError(LedgerError):
    """Unexpected transaction failure. The transaction has been rolled back in full."""

    status_code = 500
    code = "INTERNAL_ERROR"


class ImmutableRecordError(InternalError):
    def __init__(self, table: str) -> None:
        super().__init__(f"{table} rows are append-only and cannot be modified", details={"table": table})
