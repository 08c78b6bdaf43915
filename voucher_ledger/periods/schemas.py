from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field


class LockStatusRead(BaseModel):
    date: date
    locked: bool
    locked_until: date | None = None


class PeriodLockRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    fiscal_year: int
    period: int
    is_locked: bool
    locked_at: datetime | None
    locked_by: str | None


class WatermarkRead(BaseModel):
    locked_until: date | None
    updated_at: datetime | None = None
    updated_by: str | None = None


class WatermarkUpdate(BaseModel):
    locked_until: date | None = Field(default=None)


class PeriodLockListRead(BaseModel):
    watermark: WatermarkRead
    periods: list[PeriodLockRead]
