from __future__ import annotations

import datetime as dt
from typing import List, Literal

from pydantic import BaseModel, Field

Trend = Literal["up", "down", "flat"]
Recommendation = Literal["best", "good", "avoid"]
Severity = Literal["low", "medium", "high"]


class MarketRanking(BaseModel):
    market: str
    county: str | None = None
    commodity: str
    avg_price: float
    observations: int


class CropPrice(BaseModel):
    commodity: str
    name: str
    price: float
    unit: str = "per kg"
    change: float
    trend: Trend
    last_updated: dt.date


class PriceTableRow(BaseModel):
    id: str
    crop: str
    market: str
    retail: float
    wholesale: float
    change7d: float
    change30d: float
    sparkline: List[float] = Field(default_factory=list)
    recommendation: Recommendation
    latest_date: dt.date


class PriceAlert(BaseModel):
    id: str
    commodity: str
    market: str
    pricetype: Literal["retail", "wholesale"]
    severity: Severity
    reason: str
    change_pct: float
    window: Literal["7d", "30d"]


class MarketRecommendation(BaseModel):
    crop: str
    market: str
    basis: Literal["retail", "wholesale"] = "wholesale"
    expected_gain: float
    explanation: str


class PriceTable(BaseModel):
    rows: List[PriceTableRow] = Field(default_factory=list)
    alerts: List[PriceAlert] = Field(default_factory=list)
    recommendations: List[MarketRecommendation] = Field(default_factory=list)
