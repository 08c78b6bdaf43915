from voucher_ledger.audit.models import AuditEntry
from voucher_ledger.budget.models import BudgetReservation, FundAllocation
from voucher_ledger.periods.models import LockWatermark, PeriodLock
from voucher_ledger.staging.models import StagingTransaction
from voucher_ledger.vouchers.models import DocumentSequence, GeneralLedgerEntry, Voucher, VoucherItem

__all__ = [
    "AuditEntry",
    "BudgetReservation",
    "DocumentSequence",
    "FundAllocation",
    "GeneralLedgerEntry",
    "LockWatermark",
    "PeriodLock",
    "StagingTransaction",
    "Voucher",
    "VoucherItem",
]
