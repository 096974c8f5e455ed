# market_oracle/services/reconciler.py
"""
Refresh one (commodity, market, day) cache entry from the prediction service.

The previous month's cached price seeds both predictions; retail and wholesale
are requested concurrently and fail independently. A missing side is derived
from the other with a fixed ratio; when neither side yields a price the pair is
skipped and nothing is written. Cache reads and writes run in the threadpool so
a pass never holds the event loop.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional, Tuple, Union

import pandas as pd
import structlog
from starlette.concurrency import run_in_threadpool

from market_oracle.config import Settings, get_settings
from market_oracle.core.access import Caller
from market_oracle.core.errors import (
    AuthenticationRequired,
    CommodityUnavailable,
    PermissionDenied,
    PredictionServiceError,
    PriceStoreError,
)
from market_oracle.schemas.market_price import PricePoint, SyncSummary
from market_oracle.schemas.prediction import PredictionRequest, PriceType
from market_oracle.services.normalizer import (
    SUPPORTED_MARKETS,
    Commodity,
    Market,
    normalize_commodity,
    normalize_market,
    resolve_region,
)
from market_oracle.services.prediction_client import PredictionClient
from market_oracle.services.price_store import PriceStore
from market_oracle.utils.numeric import positive_price

logger = structlog.get_logger(__name__)


class ReconcileStatus(str, Enum):
    WRITTEN = "written"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(frozen=True)
class ReconcileOutcome:
    status: ReconcileStatus
    commodity: str
    market: str
    retail: Optional[float] = None
    wholesale: Optional[float] = None
    point: Optional[PricePoint] = None
    reason: Optional[str] = None

    def as_summary(self) -> SyncSummary:
        return SyncSummary(
            success=int(self.status is ReconcileStatus.WRITTEN),
            skipped=int(self.status is ReconcileStatus.SKIPPED),
            errors=int(self.status is ReconcileStatus.ERROR),
        )


def reconcile_prices(
    retail: Optional[float],
    wholesale: Optional[float],
    *,
    retail_ratio: float = 1.2,
    wholesale_ratio: float = 0.8,
) -> Optional[Tuple[float, float]]:
    """
    Complete a (retail, wholesale) pair from whatever was predicted.

    Only finite values > 0 count. Returns None when neither side is usable or
    the derived pair is not positive.
    """
    retail = positive_price(retail)
    wholesale = positive_price(wholesale)
    if retail is not None and wholesale is not None:
        return retail, wholesale
    if wholesale is not None:
        retail = positive_price(wholesale * retail_ratio)
    elif retail is not None:
        wholesale = positive_price(retail * wholesale_ratio)
    if retail is None or wholesale is None:
        return None
    return retail, wholesale


def resolve_supported_market(market: Union[Market, str]) -> Market:
    """Accept a ``Market``, a cache label ("Wakulima") or a service label / alias."""
    if isinstance(market, Market):
        return market
    for candidate in SUPPORTED_MARKETS:
        if candidate.name == market or candidate.api_name == market:
            return candidate
    api_name = normalize_market(market)
    if api_name:
        for candidate in SUPPORTED_MARKETS:
            if candidate.api_name == api_name:
                return candidate
        return Market(market, api_name)
    return Market(market, market)


def previous_month(day: date) -> date:
    return (pd.Timestamp(day) - pd.DateOffset(months=1)).date()


class CacheReconciler:
    def __init__(self, store: PriceStore, client: PredictionClient, *, settings: Settings | None = None):
        settings = settings or get_settings()
        self.store = store
        self.client = client
        self.seed_discount = settings.WHOLESALE_SEED_DISCOUNT
        self.retail_ratio = settings.DERIVED_RETAIL_RATIO
        self.wholesale_ratio = settings.DERIVED_WHOLESALE_RATIO
        self.default_seeds = dict(settings.DEFAULT_SEED_PRICES)

    async def seed_price(self, caller: Caller, commodity: Commodity, market: Market, as_of: date) -> float:
        """
        Previous month's cached retail price, falling back to wholesale and then to
        the per-commodity default. Access errors propagate.
        """
        try:
            previous = await run_in_threadpool(
                self.store.find_latest_before, caller, commodity.label, market.name, previous_month(as_of)
            )
        except PriceStoreError as exc:
            logger.warning("reconcile.seed_lookup_failed", commodity=commodity.label, market=market.name, error=str(exc))
            previous = None
        if previous is not None:
            for value in (previous.retail, previous.wholesale):
                seed = positive_price(value)
                if seed is not None:
                    return seed
        return float(self.default_seeds.get(commodity.value, 50.0))

    async def _predict(self, request: PredictionRequest) -> Optional[float]:
        result = await self.client.predict(request)
        return result.price

    async def reconcile_one(
        self,
        commodity: Union[Commodity, str],
        market: Union[Market, str],
        as_of: Union[date, datetime],
        *,
        caller: Caller,
    ) -> ReconcileOutcome:
        """
        Refresh the cache entry for one pair.

        ``AuthenticationRequired`` propagates so the caller can abandon the whole
        pass; every other failure is folded into the returned outcome.
        """
        if isinstance(as_of, datetime):
            as_of = as_of.date()
        crop = normalize_commodity(commodity)
        target = resolve_supported_market(market)
        region = resolve_region(target.api_name)
        log = logger.bind(commodity=crop.label, market=target.name, county=region, day=as_of.isoformat())

        seed = await self.seed_price(caller, crop, target, as_of)
        requests = {
            pricetype: PredictionRequest(
                date=as_of.isoformat(),
                admin1=region,
                market=target.api_name,
                commodity=crop.value,
                pricetype=pricetype,
                previous_month_price=price,
            )
            for pricetype, price in (("retail", seed), ("wholesale", seed * self.seed_discount))
        }
        results = await asyncio.gather(
            *(self._predict(req) for req in requests.values()),
            return_exceptions=True,
        )

        prices: dict[PriceType, Optional[float]] = {}
        for pricetype, result in zip(requests, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                self._log_prediction_failure(log, pricetype, result)
                prices[pricetype] = None
            else:
                prices[pricetype] = result

        pair = reconcile_prices(
            prices.get("retail"),
            prices.get("wholesale"),
            retail_ratio=self.retail_ratio,
            wholesale_ratio=self.wholesale_ratio,
        )
        if pair is None:
            log.info("reconcile.skipped", reason="no_price")
            return ReconcileOutcome(ReconcileStatus.SKIPPED, crop.label, target.name, reason="no usable price")

        retail, wholesale = pair
        try:
            point = await run_in_threadpool(
                self.store.upsert,
                caller,
                commodity=crop.label,
                market=target.name,
                county=region,
                retail=retail,
                wholesale=wholesale,
                day=as_of,
            )
        except AuthenticationRequired:
            raise
        except PermissionDenied as exc:
            log.warning("price_store.permission_denied", action="write", subject=exc.subject)
            return ReconcileOutcome(ReconcileStatus.ERROR, crop.label, target.name, retail, wholesale, reason=str(exc))
        except Exception as exc:
            log.exception("reconcile.upsert_failed")
            return ReconcileOutcome(ReconcileStatus.ERROR, crop.label, target.name, retail, wholesale, reason=str(exc))

        log.info("reconcile.written", retail=retail, wholesale=wholesale)
        return ReconcileOutcome(ReconcileStatus.WRITTEN, crop.label, target.name, retail, wholesale, point=point)

    @staticmethod
    def _log_prediction_failure(log, pricetype: str, exc: Exception) -> None:
        if isinstance(exc, CommodityUnavailable):
            log.debug("reconcile.commodity_unavailable", pricetype=pricetype)
        elif isinstance(exc, PredictionServiceError):
            log.warning("reconcile.prediction_failed", pricetype=pricetype, status=exc.status, body=exc.body)
        else:
            log.error("reconcile.prediction_crashed", pricetype=pricetype, error=repr(exc))


__all__ = [
    "CacheReconciler",
    "ReconcileOutcome",
    "ReconcileStatus",
    "previous_month",
    "reconcile_prices",
    "resolve_supported_market",
]
