"""Period lock guard and lock administration.

A date is locked when it falls on or before the watermark, or when the
calendar month it belongs to has a locked ``PeriodLock`` row.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from voucher_ledger.audit.recorder import AuditRecord, AuditRecorder, audit_recorder
from voucher_ledger.core.context import Actor
from voucher_ledger.errors import NotFoundError, PeriodLockedError, ValidationError
from voucher_ledger.periods.models import LockWatermark, PeriodLock
from voucher_ledger.periods.schemas import PeriodLockListRead, PeriodLockRead, WatermarkRead

logger = logging.getLogger("voucher_ledger.periods")

WATERMARK_ROW_ID = 1
AUDIT_ENTITY = "period_lock"


@dataclass(frozen=True, slots=True)
class LockStatus:
    locked: bool
    locked_until: date | None = None


def month_end(year: int, period: int) -> date:
    return date(year, period, calendar.monthrange(year, period)[1])


def _validate_period(year: int, period: int) -> None:
    if not 1 <= period <= 12:
        raise ValidationError("period must be between 1 and 12", details={"period": period})
    if not 1900 <= year <= 9999:
        raise ValidationError("fiscal year is out of range", details={"fiscal_year": year})


@dataclass(slots=True)
class PeriodLockService:
    recorder: AuditRecorder = field(default_factory=lambda: audit_recorder)

    def check_lock(self, session: Session, effective_date: date, *, for_update: bool = False) -> LockStatus:
        """Reads take a shared row lock so a concurrent lock change waits for in-flight postings."""
        watermark = session.scalar(
            select(LockWatermark)
            .where(LockWatermark.id == WATERMARK_ROW_ID)
            .with_for_update(read=not for_update)
        )
        if watermark is not None and watermark.locked_until is not None and effective_date <= watermark.locked_until:
            return LockStatus(locked=True, locked_until=watermark.locked_until)

        period_lock = session.scalar(
            select(PeriodLock)
            .where(
                PeriodLock.fiscal_year == effective_date.year,
                PeriodLock.period == effective_date.month,
            )
            .with_for_update(read=not for_update)
        )
        if period_lock is not None and period_lock.is_locked:
            return LockStatus(locked=True, locked_until=month_end(effective_date.year, effective_date.month))
        return LockStatus(locked=False)

    def ensure_unlocked(self, session: Session, *dates: date | None) -> None:
        for effective_date in dates:
            if effective_date is None:
                continue
            status = self.check_lock(session, effective_date)
            if status.locked and status.locked_until is not None:
                logger.info(
                    "period.locked_rejected",
                    extra={
                        "reason": "period_locked",
                        "effective_date": effective_date.isoformat(),
                        "locked_until": status.locked_until.isoformat(),
                    },
                )
                raise PeriodLockedError(effective_date, status.locked_until)

    def get_watermark(self, session: Session) -> WatermarkRead:
        watermark = session.get(LockWatermark, WATERMARK_ROW_ID)
        if watermark is None:
            return WatermarkRead(locked_until=None)
        return WatermarkRead(
            locked_until=watermark.locked_until,
            updated_at=watermark.updated_at,
            updated_by=watermark.updated_by,
        )

    def list_locks(self, session: Session, fiscal_year: int | None = None) -> PeriodLockListRead:
        stmt = select(PeriodLock)
        if fiscal_year is not None:
            stmt = stmt.where(PeriodLock.fiscal_year == fiscal_year)
        rows = session.scalars(stmt.order_by(PeriodLock.fiscal_year.asc(), PeriodLock.period.asc())).all()
        return PeriodLockListRead(
            watermark=self.get_watermark(session),
            periods=[PeriodLockRead.model_validate(row) for row in rows],
        )

    def lock_period(self, session: Session, fiscal_year: int, period: int, actor: Actor) -> PeriodLockRead:
        _validate_period(fiscal_year, period)
        try:
            row = self._get_period_for_update(session, fiscal_year, period)
            before = None if row is None else {"is_locked": row.is_locked}
            if row is None:
                row = PeriodLock(fiscal_year=fiscal_year, period=period)
                session.add(row)
            row.is_locked = True
            row.locked_at = datetime.now(timezone.utc)
            row.locked_by = actor.user_id
            session.commit()
        except Exception:
            session.rollback()
            raise

        session.refresh(row)
        self._audit(session, actor, "LOCK", f"{fiscal_year}-{period:02d}", before, {"is_locked": True})
        logger.info("period.locked", extra={"fiscal_year": fiscal_year, "period": period, "actor": actor.user_id})
        return PeriodLockRead.model_validate(row)

    def unlock_period(self, session: Session, fiscal_year: int, period: int, actor: Actor) -> PeriodLockRead:
        _validate_period(fiscal_year, period)
        try:
            row = self._get_period_for_update(session, fiscal_year, period)
            if row is None:
                raise NotFoundError("period lock", f"{fiscal_year}-{period:02d}")
            before = {"is_locked": row.is_locked}
            row.is_locked = False
            row.locked_at = None
            row.locked_by = actor.user_id
            session.commit()
        except Exception:
            session.rollback()
            raise

        session.refresh(row)
        self._audit(session, actor, "UNLOCK", f"{fiscal_year}-{period:02d}", before, {"is_locked": False})
        logger.info("period.unlocked", extra={"fiscal_year": fiscal_year, "period": period, "actor": actor.user_id})
        return PeriodLockRead.model_validate(row)

    def set_watermark(self, session: Session, locked_until: date | None, actor: Actor) -> WatermarkRead:
        try:
            watermark = session.scalar(
                select(LockWatermark).where(LockWatermark.id == WATERMARK_ROW_ID).with_for_update()
            )
            previous = None if watermark is None else watermark.locked_until
            if watermark is None:
                watermark = LockWatermark(id=WATERMARK_ROW_ID)
                session.add(watermark)
            watermark.locked_until = locked_until
            watermark.updated_at = datetime.now(timezone.utc)
            watermark.updated_by = actor.user_id
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._audit(
            session,
            actor,
            "WATERMARK",
            "watermark",
            {"locked_until": previous},
            {"locked_until": locked_until},
        )
        logger.info("period.watermark_set", extra={"actor": actor.user_id, "locked_until": str(locked_until)})
        return self.get_watermark(session)

    def _get_period_for_update(self, session: Session, fiscal_year: int, period: int) -> PeriodLock | None:
        return session.scalar(
            select(PeriodLock)
            .where(PeriodLock.fiscal_year == fiscal_year, PeriodLock.period == period)
            .with_for_update()
        )

    def _audit(
        self,
        session: Session,
        actor: Actor,
        action: str,
        entity_id: str,
        before: dict[str, object] | None,
        after: dict[str, object] | None,
    ) -> None:
        self.recorder.record(
            session.get_bind(),
            AuditRecord(
                entity_type=AUDIT_ENTITY,
                entity_id=entity_id,
                action=action,
                actor=actor,
                old_values=before,
                new_values=after,
            ),
        )


period_lock_service = PeriodLockService()
