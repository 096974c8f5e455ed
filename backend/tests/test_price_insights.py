from __future__ import annotations

from datetime import date, timedelta

import pytest

from market_oracle.core.access import Caller
from market_oracle.services.price_insights import (
    alert_severity,
    compute_trend,
    crop_price_feed,
    market_table,
    price_history,
    rank_markets,
    recommendation_bucket,
)
from market_oracle.services.price_query import MarketPriceQuery

DAY = date(2026, 10, 18)  # a Sunday

COUNTIES = {"Nakuru Market": "Rift Valley", "Kisumu Market": "Nyanza", "Eldoret Market": "Rift Valley"}


def _put(store, caller, commodity, market, day, retail, wholesale):
    store.upsert(
        caller,
        commodity=commodity,
        market=market,
        county=COUNTIES.get(market, "Nairobi"),
        retail=retail,
        wholesale=wholesale,
        day=day,
    )


@pytest.fixture
def query(store, member):
    return MarketPriceQuery(store, member)


@pytest.mark.parametrize(
    "current, previous, trend",
    [(103, 100, "up"), (97, 100, "down"), (101, 100, "flat"), (50, 0, "flat")],
)
def test_compute_trend(current, previous, trend):
    assert compute_trend(current, previous) == trend


def test_recommendation_and_severity_buckets():
    assert recommendation_bucket(8) == "best"
    assert recommendation_bucket(-4) == "good"
    assert recommendation_bucket(-4.1) == "avoid"
    assert alert_severity(36) == "high"
    assert alert_severity(21) == "medium"
    assert alert_severity(10.5) == "low"
    assert alert_severity(10) is None


def test_history_daily_rows_per_day(store, member, query):
    _put(store, member, "Tomatoes", "Nakuru Market", DAY, 50.4, 40)
    _put(store, member, "Tomatoes", "Kisumu Market", DAY, 60.0, 45)
    _put(store, member, "Tomatoes", "Nakuru Market", DAY - timedelta(days=1), 44, 35)
    _put(store, member, "Kale", "Nakuru Market", DAY, 30, 24)

    rows = price_history(query, ["Tomatoes", "Kale"], "daily", end=DAY)

    assert rows == [
        {"date": "2026-10-17", "Tomatoes": 44},
        {"date": "2026-10-18", "Tomatoes": 55, "Kale": 30},
    ]


def test_history_weekly_and_monthly_buckets(store, member, query):
    _put(store, member, "Tomatoes", "Nakuru Market", DAY, 50, 40)
    _put(store, member, "Tomatoes", "Nakuru Market", date(2026, 10, 12), 40, 30)
    _put(store, member, "Tomatoes", "Nakuru Market", date(2026, 10, 11), 30, 24)
    _put(store, member, "Tomatoes", "Nakuru Market", date(2026, 9, 11), 20, 16)

    weekly = price_history(query, ["Tomatoes"], "weekly", end=DAY)
    assert weekly == [
        {"date": "2026-09-07", "Tomatoes": 20},
        {"date": "2026-10-05", "Tomatoes": 30},
        {"date": "2026-10-12", "Tomatoes": 45},
    ]

    monthly = price_history(query, ["Tomatoes"], "monthly", end=DAY)
    assert monthly == [
        {"date": "2026-09-01", "Tomatoes": 20},
        {"date": "2026-10-01", "Tomatoes": 40},
    ]


def test_history_rejects_unknown_period(query):
    with pytest.raises(ValueError):
        price_history(query, ["Tomatoes"], "hourly", end=DAY)


def test_history_is_empty_for_anonymous(store, member):
    _put(store, member, "Tomatoes", "Nakuru Market", DAY, 50, 40)
    assert price_history(MarketPriceQuery(store, Caller.anonymous()), end=DAY) == []


def test_rank_markets_by_average_retail(store, member, query):
    _put(store, member, "Tomatoes", "Nakuru Market", DAY, 50, 40)
    _put(store, member, "Tomatoes", "Nakuru Market", DAY - timedelta(days=1), 40, 32)
    _put(store, member, "Tomatoes", "Kisumu Market", DAY, 60, 48)
    _put(store, member, "Kale", "Eldoret Market", DAY, 99, 80)

    ranking = rank_markets(query, "Tomatoes")

    assert [(r.market, r.avg_price, r.observations) for r in ranking] == [
        ("Kisumu Market", 60, 1),
        ("Nakuru Market", 45, 2),
    ]
    assert ranking[0].county == "Nyanza"
    assert rank_markets(MarketPriceQuery(store, None), "Tomatoes") == []


def test_crop_price_feed_compares_with_previous_week(store, member, query):
    _put(store, member, "Tomatoes", "Nakuru Market", DAY, 50, 40)
    _put(store, member, "Tomatoes", "Nakuru Market", DAY - timedelta(days=7), 40, 32)
    _put(store, member, "Irish potato", "Nakuru Market", DAY - timedelta(days=1), 30, 24)

    feed = crop_price_feed(query, today=DAY)

    assert [item.commodity for item in feed] == ["Tomatoes", "Irish potato"]
    tomatoes, potatoes = feed
    assert tomatoes.change == 25.0
    assert tomatoes.trend == "up"
    assert tomatoes.last_updated == DAY
    assert potatoes.name == "Irish Potato"
    assert potatoes.change == 0.0


def test_market_table_rows_alerts_and_recommendations(store, member, query):
    for offset in range(1, 7):
        _put(store, member, "Tomatoes", "Nakuru Market", DAY - timedelta(days=offset), 40, 30)
    _put(store, member, "Tomatoes", "Nakuru Market", DAY, 60, 30)
    _put(store, member, "Tomatoes", "Kisumu Market", DAY, 50, 35)
    _put(store, member, "Tomatoes", "Eldoret Market", DAY, 50, 38)

    table = market_table(query, ["Tomatoes"], ["Nakuru Market", "Kisumu Market", "Eldoret Market", "Wakulima"], today=DAY)

    rows = {row.market: row for row in table.rows}
    assert set(rows) == {"Nakuru Market", "Kisumu Market", "Eldoret Market"}

    nakuru = rows["Nakuru Market"]
    assert nakuru.id == "tomatoes_nakuru-market"
    assert nakuru.retail == 60.0
    assert nakuru.change7d == pytest.approx(40.0)
    assert nakuru.recommendation == "best"
    assert nakuru.sparkline == [40.0] * 6 + [60.0]
    assert nakuru.latest_date == DAY
    assert rows["Kisumu Market"].recommendation == "good"

    alerts = {(a.pricetype, a.window, a.severity) for a in table.alerts if a.market == "Nakuru Market"}
    assert ("retail", "7d", "high") in alerts
    assert ("retail", "7d", "low") in alerts  # volatility
    assert not [a for a in table.alerts if a.pricetype == "wholesale"]
    assert not [a for a in table.alerts if a.market == "Kisumu Market"]

    (rec,) = table.recommendations
    assert rec.market == "Kisumu Market"
    # Eldoret is not a known market: 38 - 5 = 33
    assert rec.expected_gain == pytest.approx(2.0)
    assert "Eldoret Market" in rec.explanation
