# market_oracle/utils/numeric.py
from __future__ import annotations

import math
from typing import Iterable, Optional, Union

Number = Union[int, float]


def coerce_float(value) -> Optional[float]:
    """
    Best-effort float conversion that returns None when the value cannot be parsed.
    """
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def positive_price(value) -> Optional[float]:
    """
    Return ``value`` as a float when it is a real number, finite and > 0; otherwise None.
    Booleans and numeric strings are rejected: prices must arrive as JSON numbers.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    price = float(value)
    if not math.isfinite(price) or price <= 0:
        return None
    return price


def percent_change(latest: Number, baseline: Number) -> float:
    """Change of ``latest`` relative to ``baseline`` in percent; 0 for a missing baseline."""
    if not baseline or baseline <= 0:
        return 0.0
    return (float(latest) - float(baseline)) / float(baseline) * 100.0


def mean(values: Iterable[Number]) -> float:
    items = [float(v) for v in values]
    if not items:
        return 0.0
    return sum(items) / len(items)


__all__ = ["coerce_float", "mean", "percent_change", "positive_price"]
