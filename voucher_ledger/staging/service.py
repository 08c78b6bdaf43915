from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from voucher_ledger.core.context import Actor
from voucher_ledger.errors import LedgerError, ValidationError
from voucher_ledger.staging.models import StagingTransaction
from voucher_ledger.staging.schemas import (
    StagingFailedRead,
    StagingImportRead,
    StagingListRead,
    StagingPostedRead,
    StagingPostRead,
    StagingRowInput,
    StagingRowRead,
)
from voucher_ledger.vouchers.schemas import VoucherLineInput, VoucherUpsert
from voucher_ledger.vouchers.service import VoucherService, voucher_service

logger = logging.getLogger("voucher_ledger.staging")

MAX_LISTED_ROWS = 500


def row_errors(row: StagingRowInput) -> list[str]:
    errors = []
    if not row.doc_no:
        errors.append("missing doc_no")
    if row.trx_date is None:
        errors.append("missing trx_date")
    if not row.debit_acc:
        errors.append("missing debit_acc")
    if not row.credit_acc:
        errors.append("missing credit_acc")
    return errors


def _voucher_payload(rows: list[StagingTransaction]) -> VoucherUpsert:
    head = rows[0]
    return VoucherUpsert(
        doc_no=head.doc_no,
        doc_date=head.trx_date,
        description=head.description,
        type="GENERAL",
        currency=head.currency,
        lines=[
            VoucherLineInput(
                description=row.description,
                debit_acc=row.debit_acc,
                credit_acc=row.credit_acc,
                amount=row.amount,
                partner_code=row.partner_code,
                project_code=row.project_code,
            )
            for row in rows
        ],
    )


@dataclass(slots=True)
class StagingService:
    """Turns imported grid rows into posted vouchers, one voucher per doc_no.

    Each group is created and posted on its own, so one bad group does not hold
    back the rest of the batch.
    """

    vouchers: VoucherService = field(default_factory=lambda: voucher_service)

    def list_rows(self, session: Session, limit: int = MAX_LISTED_ROWS) -> StagingListRead:
        total = session.scalar(select(func.count()).select_from(StagingTransaction)) or 0
        rows = session.scalars(
            select(StagingTransaction)
            .order_by(StagingTransaction.id.desc())
            .limit(min(limit, MAX_LISTED_ROWS))
        ).all()
        return StagingListRead(items=[StagingRowRead.model_validate(row) for row in rows], total=total)

    def import_rows(self, session: Session, rows: list[StagingRowInput], actor: Actor) -> StagingImportRead:
        invalid = 0
        for row in rows:
            errors = row_errors(row)
            if errors:
                invalid += 1
            session.add(
                StagingTransaction(
                    trx_date=row.trx_date,
                    doc_no=row.doc_no,
                    description=row.description,
                    debit_acc=row.debit_acc,
                    credit_acc=row.credit_acc,
                    amount=row.amount,
                    currency=row.currency,
                    partner_code=row.partner_code,
                    project_code=row.project_code,
                    is_valid=not errors,
                    error_log="; ".join(errors) or None,
                    created_by=actor.user_id,
                )
            )
        session.commit()
        logger.info(
            "staging.imported",
            extra={"rows": len(rows), "invalid": invalid, "actor": actor.user_id},
        )
        return StagingImportRead(imported=len(rows), valid=len(rows) - invalid, invalid=invalid)

    def post_valid_rows(self, session: Session, actor: Actor) -> StagingPostRead:
        groups: dict[str, list[int]] = {}
        for row in session.scalars(
            select(StagingTransaction)
            .where(StagingTransaction.is_valid.is_(True))
            .order_by(StagingTransaction.id)
        ):
            groups.setdefault(row.doc_no, []).append(row.id)
        if not groups:
            raise ValidationError("no valid staging rows to post", code="STAGING_EMPTY")

        posted: list[StagingPostedRead] = []
        failed: list[StagingFailedRead] = []
        for doc_no, row_ids in groups.items():
            rows = self._rows(session, row_ids)
            try:
                voucher = self.vouchers.create(session, _voucher_payload(rows), actor)
            except LedgerError as exc:
                self._mark_invalid(session, row_ids, f"{exc.code}: {exc.message}")
                failed.append(StagingFailedRead(doc_no=doc_no, code=exc.code, message=exc.message))
                continue

            voucher_id = voucher.id
            # the draft voucher now owns the lines
            self._remove(session, row_ids)
            try:
                self.vouchers.post(session, voucher_id, actor)
            except LedgerError as exc:
                failed.append(
                    StagingFailedRead(doc_no=doc_no, code=exc.code, message=exc.message, voucher_id=voucher_id)
                )
                continue
            posted.append(StagingPostedRead(doc_no=doc_no, voucher_id=voucher_id))

        logger.info(
            "staging.posted",
            extra={"posted": len(posted), "failed": len(failed), "actor": actor.user_id},
        )
        return StagingPostRead(posted=posted, failed=failed)

    def clear(self, session: Session) -> int:
        deleted = session.execute(delete(StagingTransaction)).rowcount or 0
        session.commit()
        return deleted

    def _rows(self, session: Session, row_ids: list[int]) -> list[StagingTransaction]:
        by_id = {
            row.id: row
            for row in session.scalars(select(StagingTransaction).where(StagingTransaction.id.in_(row_ids)))
        }
        return [by_id[row_id] for row_id in row_ids]

    def _mark_invalid(self, session: Session, row_ids: list[int], message: str) -> None:
        for row in self._rows(session, row_ids):
            row.is_valid = False
            row.error_log = message
        session.commit()

    def _remove(self, session: Session, row_ids: list[int]) -> None:
        session.execute(delete(StagingTransaction).where(StagingTransaction.id.in_(row_ids)))
        session.commit()


staging_service = StagingService()
