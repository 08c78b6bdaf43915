from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from voucher_ledger.errors import StateConflictError, ValidationError
from voucher_ledger.vouchers.models import VOUCHER_TYPE_PREFIXES, DocumentSequence, Voucher

logger = logging.getLogger("voucher_ledger.sequence")

SEQUENCE_WIDTH = 5
MAX_SKIPPED_NUMBERS = 1000


def format_doc_no(voucher_type: str, fiscal_year: int, value: int) -> str:
    prefix = VOUCHER_TYPE_PREFIXES.get(voucher_type)
    if prefix is None:
        raise ValidationError(f"unknown voucher type '{voucher_type}'", details={"type": voucher_type})
    return f"{prefix}{fiscal_year}{value:0{SEQUENCE_WIDTH}d}"


@dataclass(slots=True)
class DocumentSequenceAllocator:
    """Allocates doc_no values from a locked counter row per (voucher type, fiscal year).

    Never commits: the increment becomes visible with the caller's insert, and a
    rollback hands the number back.
    """

    def next_value(self, session: Session, voucher_type: str, fiscal_year: int) -> int:
        counter = self._locked_counter(session, voucher_type, fiscal_year)
        if counter is None:
            savepoint = session.begin_nested()
            try:
                counter = DocumentSequence(voucher_type=voucher_type, fiscal_year=fiscal_year, current_value=1)
                session.add(counter)
                session.flush()
                savepoint.commit()
                return 1
            except IntegrityError:
                # another transaction created the counter first
                savepoint.rollback()
                logger.debug("sequence.counter_race_retry", extra={"voucher_type": voucher_type, "fiscal_year": fiscal_year})
                counter = self._locked_counter(session, voucher_type, fiscal_year)
                if counter is None:
                    raise

        counter.current_value += 1
        session.flush()
        return counter.current_value

    def next_doc_no(self, session: Session, voucher_type: str, fiscal_year: int) -> str:
        if voucher_type not in VOUCHER_TYPE_PREFIXES:
            raise ValidationError(f"unknown voucher type '{voucher_type}'", details={"type": voucher_type})
        return format_doc_no(voucher_type, fiscal_year, self.next_value(session, voucher_type, fiscal_year))

    def doc_no_exists(self, session: Session, doc_no: str) -> bool:
        return session.scalar(select(Voucher.id).where(Voucher.doc_no == doc_no).limit(1)) is not None

    def next_free_doc_no(self, session: Session, voucher_type: str, fiscal_year: int) -> str:
        """Skips numbers already taken by manually entered doc_no values."""
        for _ in range(MAX_SKIPPED_NUMBERS):
            doc_no = self.next_doc_no(session, voucher_type, fiscal_year)
            if not self.doc_no_exists(session, doc_no):
                return doc_no
        raise StateConflictError(
            f"no free doc_no for {voucher_type} {fiscal_year}",
            code="DOC_NO_CONFLICT",
        )

    def peek_doc_no(self, session: Session, voucher_type: str, fiscal_year: int) -> str:
        """Next doc_no a create would receive. Reads only; the counter is not advanced."""
        current = session.scalar(
            select(DocumentSequence.current_value).where(
                DocumentSequence.voucher_type == voucher_type,
                DocumentSequence.fiscal_year == fiscal_year,
            )
        )
        value = (current or 0) + 1
        for _ in range(MAX_SKIPPED_NUMBERS):
            doc_no = format_doc_no(voucher_type, fiscal_year, value)
            if not self.doc_no_exists(session, doc_no):
                return doc_no
            value += 1
        raise StateConflictError(
            f"no free doc_no for {voucher_type} {fiscal_year}",
            code="DOC_NO_CONFLICT",
        )

    def _locked_counter(self, session: Session, voucher_type: str, fiscal_year: int) -> DocumentSequence | None:
        return session.execute(
            select(DocumentSequence)
            .where(DocumentSequence.voucher_type == voucher_type, DocumentSequence.fiscal_year == fiscal_year)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()


document_sequence_allocator = DocumentSequenceAllocator()
