# market_oracle/services/price_insights.py
"""
Read-only views derived from the price cache: bucketed history, market
ranking, the crop price feed and the per-market price table with alerts.

Everything here goes through ``MarketPriceQuery`` and therefore degrades to
empty results exactly like it does.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Literal, Optional, Sequence

import pandas as pd

from market_oracle.schemas.insights import (
    CropPrice,
    MarketRanking,
    MarketRecommendation,
    PriceAlert,
    PriceTable,
    PriceTableRow,
)
from market_oracle.schemas.market_price import PriceFilters
from market_oracle.services.normalizer import SUPPORTED_MARKETS, normalize_market, normalize_market_key, supported_commodities
from market_oracle.services.price_query import MarketPriceQuery
from market_oracle.utils.numeric import percent_change

Period = Literal["daily", "weekly", "monthly"]

HISTORY_WINDOWS: Dict[str, pd.DateOffset] = {
    "daily": pd.DateOffset(days=30),
    "weekly": pd.DateOffset(weeks=12),
    "monthly": pd.DateOffset(months=12),
}
HISTORY_LIMIT = 1000
TABLE_WINDOW_DAYS = 30
TABLE_LIMIT = 200
RANKING_TOP = 10

TREND_BAND_PCT = 2.0
# (threshold, severity), checked from the top
ALERT_LEVELS = ((35.0, "high"), (20.0, "medium"), (10.0, "low"))
DISTANCE_PENALTY = 5.0

_KNOWN_MARKET_NAMES = {m.name for m in SUPPORTED_MARKETS}


def _today() -> date:
    return datetime.now(timezone.utc).date()


def compute_trend(current: float, previous: float, band: float = TREND_BAND_PCT) -> str:
    change = percent_change(current, previous)
    if change > band:
        return "up"
    if change < -band:
        return "down"
    return "flat"


def recommendation_bucket(change: float) -> str:
    if change >= 8:
        return "best"
    if change >= -4:
        return "good"
    return "avoid"


def alert_severity(value: float) -> Optional[str]:
    for threshold, severity in ALERT_LEVELS:
        if value > threshold:
            return severity
    return None


def _bucket(dates: pd.Series, period: str) -> pd.Series:
    stamps = pd.to_datetime(dates)
    if period == "weekly":
        return stamps.dt.to_period("W-SUN").dt.start_time
    if period == "monthly":
        return stamps.dt.to_period("M").dt.start_time
    return stamps.dt.normalize()


def price_history(
    query: MarketPriceQuery,
    commodities: Sequence[str] | None = None,
    period: Period = "daily",
    end: date | None = None,
) -> List[dict]:
    """
    Retail history per commodity, one row per day/week/month:
    ``{"date": "2026-10-12", "Tomatoes": 48, "Kale": 30}``, oldest first.
    """
    if period not in HISTORY_WINDOWS:
        raise ValueError(f"Unknown period {period!r}; expected daily, weekly or monthly")
    end = end or _today()
    start = (pd.Timestamp(end) - HISTORY_WINDOWS[period]).date()
    commodities = list(commodities or [c.label for c in supported_commodities()])

    records = []
    for commodity in commodities:
        filters = PriceFilters(commodity=commodity, start_date=start, end_date=end, limit=HISTORY_LIMIT)
        records.extend(
            {"date": point.date, "commodity": commodity, "retail": point.retail} for point in query.query(filters)
        )
    if not records:
        return []

    frame = pd.DataFrame.from_records(records)
    frame["bucket"] = _bucket(frame["date"], period)
    table = frame.groupby(["bucket", "commodity"])["retail"].mean().unstack("commodity").sort_index()

    rows: List[dict] = []
    for bucket, values in table.iterrows():
        row: dict = {"date": bucket.date().isoformat()}
        for commodity, value in values.items():
            if pd.notna(value):
                row[commodity] = round(float(value))
        rows.append(row)
    return rows


def rank_markets(query: MarketPriceQuery, commodity: str | None = None, limit: int = 100) -> List[MarketRanking]:
    """Markets by average retail price, highest first."""
    points = query.query(PriceFilters(commodity=commodity, limit=limit))
    if not points:
        return []
    frame = pd.DataFrame.from_records(
        [{"market": p.market, "county": p.county, "commodity": p.commodity, "retail": p.retail} for p in points]
    )
    grouped = frame.groupby("market", sort=False).agg(
        county=("county", "first"),
        commodity=("commodity", "first"),
        avg_price=("retail", "mean"),
        observations=("retail", "size"),
    )
    grouped = grouped.sort_values("avg_price", ascending=False, kind="stable").head(RANKING_TOP)
    return [
        MarketRanking(
            market=market,
            county=row["county"] or None,
            commodity=row["commodity"],
            avg_price=round(float(row["avg_price"])),
            observations=int(row["observations"]),
        )
        for market, row in grouped.iterrows()
    ]


def crop_price_feed(query: MarketPriceQuery, today: date | None = None) -> List[CropPrice]:
    """Latest retail price per commodity with its change against the previous week."""
    today = today or _today()
    week_start = today - timedelta(days=7)
    feed: List[CropPrice] = []
    for commodity in supported_commodities():
        latest = query.latest(commodity.label)
        if latest is None:
            continue
        previous = query.query(
            PriceFilters(
                commodity=commodity.label,
                start_date=week_start - timedelta(days=7),
                end_date=week_start,
                limit=1,
            )
        )
        current = latest.retail
        baseline = previous[0].retail if previous and previous[0].retail > 0 else current
        change = percent_change(current, baseline)
        feed.append(
            CropPrice(
                commodity=commodity.label,
                name=commodity.label.title(),
                price=round(current),
                change=round(change, 1),
                trend="up" if change >= 0 else "down",
                last_updated=latest.date,
            )
        )
    return sorted(feed, key=lambda item: item.price, reverse=True)


def _daily_series(query: MarketPriceQuery, crop: str, market: str, today: date) -> pd.DataFrame:
    points = query.query(
        PriceFilters(
            commodity=crop,
            market=market,
            start_date=today - timedelta(days=TABLE_WINDOW_DAYS),
            end_date=today,
            limit=TABLE_LIMIT,
        )
    )
    if not points:
        return pd.DataFrame(columns=["retail", "wholesale"])
    frame = pd.DataFrame.from_records(
        [{"date": p.date, "retail": p.retail, "wholesale": p.wholesale} for p in points]
    )
    return frame.groupby("date")[["retail", "wholesale"]].mean().sort_index()


def _market_is_known(market: str) -> bool:
    return market in _KNOWN_MARKET_NAMES or normalize_market(market) is not None


def market_table(
    query: MarketPriceQuery,
    crops: Iterable[str],
    markets: Iterable[str],
    today: date | None = None,
) -> PriceTable:
    """
    Per (crop, market): latest prices, 7/30 day changes, a 7 point sparkline and a
    sell recommendation; plus movement alerts and the best wholesale market per crop.
    """
    today = today or _today()
    markets = list(markets)
    table = PriceTable()
    options: Dict[str, List[tuple[str, float]]] = {}

    for crop in crops:
        for market in markets:
            series = _daily_series(query, crop, market, today)
            if series.empty:
                continue
            latest = series.iloc[-1]
            last7 = series.tail(7)
            avg7_retail = float(last7["retail"].mean())
            change7_retail = percent_change(latest["retail"], avg7_retail)
            change30_retail = percent_change(latest["retail"], float(series["retail"].mean()))
            change7_wholesale = percent_change(latest["wholesale"], float(last7["wholesale"].mean()))

            id_base = f"{normalize_market_key(crop)}_{normalize_market_key(market)}"
            table.rows.append(
                PriceTableRow(
                    id=id_base,
                    crop=crop,
                    market=market,
                    retail=float(latest["retail"]),
                    wholesale=float(latest["wholesale"]),
                    change7d=change7_retail,
                    change30d=change30_retail,
                    sparkline=[float(v) for v in last7["retail"]],
                    recommendation=recommendation_bucket(change7_retail),
                    latest_date=series.index[-1],
                )
            )

            volatility = float(last7["retail"].std(ddof=0)) / avg7_retail * 100 if avg7_retail > 0 else 0.0
            if pd.isna(volatility):
                volatility = 0.0
            signals = (
                (abs(change7_retail), "retail", "7d"),
                (abs(change30_retail), "retail", "30d"),
                (abs(change7_wholesale), "wholesale", "7d"),
                (volatility, "retail", "7d"),
            )
            for value, pricetype, window in signals:
                severity = alert_severity(value)
                if severity is None:
                    continue
                table.alerts.append(
                    PriceAlert(
                        id=f"{id_base}_{pricetype}_{window}",
                        commodity=crop,
                        market=market,
                        pricetype=pricetype,
                        severity=severity,
                        reason=f"Price moved {value:.1f}% in {window}.",
                        change_pct=round(value, 2),
                        window=window,
                    )
                )

            penalty = 0.0 if _market_is_known(market) else DISTANCE_PENALTY
            options.setdefault(crop, []).append((market, float(latest["wholesale"]) - penalty))

    for crop, scored in options.items():
        ranked = sorted(scored, key=lambda item: item[1], reverse=True)
        best_market, best_score = ranked[0]
        runner_up = ranked[1] if len(ranked) > 1 else None
        gain = best_score - (runner_up[1] if runner_up else best_score)
        explanation = "Highest adjusted wholesale value"
        if runner_up:
            explanation += f", about KES {gain:.1f}/kg above {runner_up[0]}"
        table.recommendations.append(
            MarketRecommendation(
                crop=crop,
                market=best_market,
                expected_gain=round(gain, 2),
                explanation=explanation + ".",
            )
        )
    return table


__all__ = [
    "compute_trend",
    "crop_price_feed",
    "market_table",
    "price_history",
    "rank_markets",
    "recommendation_bucket",
]
