from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator

PriceType = Literal["retail", "wholesale"]


class PredictionRequest(BaseModel):
    """Body of ``POST /predict``; one request per (commodity, market, pricetype)."""

    date: str
    admin1: str
    market: str
    commodity: str
    pricetype: PriceType
    previous_month_price: float = Field(gt=0)

    @field_validator("date")
    @classmethod
    def _iso_day(cls, value: str) -> str:
        return dt.date.fromisoformat(value).isoformat()

    @field_validator("admin1", "market", "commodity")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class PredictionResult(BaseModel):
    request: PredictionRequest
    # None means the service answered but gave no usable price
    price: Optional[float] = None
    unit: Optional[str] = None
    confidence_pct: Optional[float] = None
    lower_bound: Optional[float] = None
    upper_bound: Optional[float] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def has_price(self) -> bool:
        return self.price is not None
