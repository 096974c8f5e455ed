# market_oracle/routers/insights.py
from __future__ import annotations

from datetime import date
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query

from market_oracle.routers.deps import get_price_query
from market_oracle.schemas.common import fail, meta_now, ok
from market_oracle.services.normalizer import SUPPORTED_MARKETS, supported_commodities
from market_oracle.services.price_insights import crop_price_feed, market_table, price_history, rank_markets
from market_oracle.services.price_query import MarketPriceQuery

router = APIRouter(prefix="/api/market-prices", tags=["market-insights"])


@router.get("/history")
def history(
    period: Literal["daily", "weekly", "monthly"] = Query("daily"),
    commodity: Optional[List[str]] = Query(None),
    end: Optional[date] = Query(None),
    query: MarketPriceQuery = Depends(get_price_query),
):
    rows = price_history(query, commodity, period, end)
    return ok(data=rows, meta=meta_now(period=period, commodities=commodity))


@router.get("/markets/ranking")
def markets_ranking(
    commodity: Optional[str] = Query(None),
    query: MarketPriceQuery = Depends(get_price_query),
):
    ranking = rank_markets(query, commodity)
    return ok(data=[r.model_dump() for r in ranking], meta=meta_now(commodity=commodity))


@router.get("/feed")
def feed(query: MarketPriceQuery = Depends(get_price_query)):
    items = crop_price_feed(query)
    return ok(data=[i.model_dump(mode="json") for i in items], meta=meta_now())


@router.get("/table")
def table(
    crop: Optional[List[str]] = Query(None),
    market: Optional[List[str]] = Query(None),
    query: MarketPriceQuery = Depends(get_price_query),
):
    crops = crop or [c.label for c in supported_commodities()]
    markets = market or [m.name for m in SUPPORTED_MARKETS]
    if len(crops) * len(markets) > 100:
        return fail("TOO_MANY_PAIRS", "Ask for at most 100 crop/market combinations", status_code=422)
    result = market_table(query, crops, markets)
    return ok(data=result.model_dump(mode="json"), meta=meta_now(crops=crops, markets=markets))
