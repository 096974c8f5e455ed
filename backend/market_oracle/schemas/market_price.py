from __future__ import annotations

import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PricePoint(BaseModel):
    """One cached observation, as returned by the read side."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: Optional[str] = None
    commodity: str
    market: str
    county: str
    retail: float
    wholesale: float
    date: dt.date = Field(validation_alias="price_date")
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None


class PriceFilters(BaseModel):
    """AND-combined equality/range filters; absent fields are not applied."""

    model_config = ConfigDict(frozen=True)

    commodity: Optional[str] = None
    market: Optional[str] = None
    county: Optional[str] = None
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    limit: Optional[int] = Field(None, gt=0)

    def matches(self, point: PricePoint) -> bool:
        if self.commodity is not None and point.commodity != self.commodity:
            return False
        if self.market is not None and point.market != self.market:
            return False
        if self.county is not None and point.county != self.county:
            return False
        if self.start_date is not None and point.date < self.start_date:
            return False
        if self.end_date is not None and point.date > self.end_date:
            return False
        return True


class PriceAverage(BaseModel):
    retail: float
    wholesale: float
    count: int


class SyncSummary(BaseModel):
    success: int = 0
    skipped: int = 0
    errors: int = 0

    def __add__(self, other: "SyncSummary") -> "SyncSummary":
        return SyncSummary(
            success=self.success + other.success,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
        )

    @property
    def failed(self) -> bool:
        """True when the run produced nothing but errors (the UI shows cached data)."""
        return self.errors > 0 and self.success == 0
