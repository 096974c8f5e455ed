# market_oracle/routers/market_prices.py
"""
Market price API.

Every route authenticates optionally: without a usable bearer token the caller
is anonymous and reads come back empty (``[]`` / ``null``) instead of 401.
"""
from __future__ import annotations

import asyncio
from datetime import date
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from starlette.concurrency import run_in_threadpool

from market_oracle.core.access import Caller
from market_oracle.core.errors import PredictionServiceNotConfigured
from market_oracle.core.security import caller_from_token, get_optional_caller
from market_oracle.db import session as db_session
from market_oracle.routers.deps import get_price_pipeline, get_price_query
from market_oracle.schemas.common import fail, meta_now, ok
from market_oracle.schemas.market_price import PriceFilters, PricePoint
from market_oracle.services.normalizer import (
    REGIONS,
    SUPPORTED_MARKETS,
    normalize_commodity,
    normalize_market,
    resolve_region,
    supported_commodities,
)
from market_oracle.services.pipeline import PricePipeline
from market_oracle.services.price_query import MarketPriceQuery

router = APIRouter(prefix="/api/market-prices", tags=["market-prices"])
logger = structlog.get_logger(__name__)

SYNC_FAILED_NOTICE = "sync failed, showing cached data"


def _filters(
    commodity: Optional[str] = Query(None),
    market: Optional[str] = Query(None),
    county: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    limit: Optional[int] = Query(None, gt=0, le=1000),
) -> PriceFilters:
    return PriceFilters(
        commodity=commodity,
        market=market,
        county=county,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
    )


@router.get("")
def list_prices(
    filters: PriceFilters = Depends(_filters),
    query: MarketPriceQuery = Depends(get_price_query),
):
    rows = query.query(filters)
    return ok(
        data=[p.model_dump(mode="json") for p in rows],
        meta=meta_now(commodity=filters.commodity, market=filters.market, count=len(rows)),
    )


@router.get("/latest")
def latest_price(
    commodity: str = Query(..., min_length=1),
    market: Optional[str] = Query(None),
    query: MarketPriceQuery = Depends(get_price_query),
):
    point = query.latest(commodity, market)
    return ok(
        data=point.model_dump(mode="json") if point else None,
        meta=meta_now(commodity=commodity, market=market),
    )


@router.get("/average")
def average_price(
    commodity: str = Query(..., min_length=1),
    since: Optional[date] = Query(None),
    query: MarketPriceQuery = Depends(get_price_query),
):
    avg = query.average(commodity, since)
    return ok(
        data=avg.model_dump() if avg else None,
        meta=meta_now(commodity=commodity, since=since.isoformat() if since else None),
    )


@router.post("/sync")
async def sync_prices(
    pipeline: PricePipeline = Depends(get_price_pipeline),
    caller: Caller = Depends(get_optional_caller),
):
    try:
        orchestrator = pipeline.orchestrator
    except PredictionServiceNotConfigured as exc:
        return fail("PREDICTION_SERVICE_NOT_CONFIGURED", str(exc), status_code=503)

    summary = await orchestrator.sync_all(caller)
    data = summary.model_dump()
    data["notice"] = SYNC_FAILED_NOTICE if summary.failed else None
    return ok(data=data, meta=meta_now())


@router.get("/vocabulary")
def vocabulary():
    data = {
        "commodities": [{"token": c.value, "label": c.label} for c in supported_commodities()],
        "markets": [
            {"name": m.name, "service_name": m.api_name, "county": resolve_region(m.api_name)} for m in SUPPORTED_MARKETS
        ],
        "regions": list(REGIONS),
    }
    return ok(data=data, meta=meta_now())


@router.get("/normalize")
def normalize(commodity: str = Query(...), market: Optional[str] = Query(None)):
    """Canonical forms of free-form names; unknown commodities answer 422."""
    crop = normalize_commodity(commodity)
    data = {"commodity": crop.value, "label": crop.label, "market": None, "county": None}
    if market:
        service_name = normalize_market(market)
        data["market"] = service_name
        data["county"] = resolve_region(service_name or market)
    return ok(data=data, meta=meta_now(commodity=commodity, market=market))


def _encode(snapshot: List[PricePoint]) -> list:
    return jsonable_encoder([p.model_dump(mode="json") for p in snapshot])


@router.websocket("/stream")
async def stream_prices(
    websocket: WebSocket,
    token: Optional[str] = None,
    commodity: Optional[str] = None,
    market: Optional[str] = None,
    county: Optional[str] = None,
):
    """Push the matching snapshot on connect and again after every matching change."""
    await websocket.accept()
    pipeline: PricePipeline = websocket.app.state.pipeline
    with db_session.SessionLocal() as db:
        caller = caller_from_token(token, db)

    loop = asyncio.get_running_loop()
    snapshots: asyncio.Queue[List[PricePoint]] = asyncio.Queue()

    def on_change(snapshot: List[PricePoint]) -> None:
        loop.call_soon_threadsafe(snapshots.put_nowait, snapshot)

    unsubscribe = await run_in_threadpool(
        pipeline.query(caller).subscribe,
        PriceFilters(commodity=commodity, market=market, county=county),
        on_change,
    )

    async def pump() -> None:
        while True:
            snapshot = await snapshots.get()
            await websocket.send_json(_encode(snapshot))

    async def drain() -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    tasks = {asyncio.create_task(pump()), asyncio.create_task(drain())}
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("price_stream.closed_with_error", error=repr(exc))
    finally:
        unsubscribe()
        logger.debug("price_stream.closed", subject=caller.subject)
