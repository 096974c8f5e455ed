# market_oracle/services/price_query.py
"""
Read side of the price cache, bound to one caller.

Nothing here raises for expected conditions: a caller without read access, or a
store failure, yields ``[]`` / ``None`` and a log line instead.
"""
from __future__ import annotations

from datetime import date
from typing import Callable, List, Optional

import structlog

from market_oracle.core.access import Caller
from market_oracle.core.errors import AccessDenied, PriceStoreError
from market_oracle.schemas.market_price import PriceAverage, PriceFilters, PricePoint
from market_oracle.services.price_store import PriceStore
from market_oracle.utils.numeric import mean

logger = structlog.get_logger(__name__)

DEFAULT_AVERAGE_WINDOW = 100


def _noop() -> None:
    return None


class MarketPriceQuery:
    def __init__(self, store: PriceStore, caller: Optional[Caller], *, average_window: int = DEFAULT_AVERAGE_WINDOW):
        self.store = store
        self.caller = caller
        self.average_window = average_window

    def _degraded(self, op: str, exc: Exception) -> None:
        if isinstance(exc, AccessDenied):
            logger.info("price_query.access_denied", op=op, reason=type(exc).__name__)
        else:
            logger.warning("price_query.store_failed", op=op, error=str(exc))

    def query(self, filters: PriceFilters | None = None) -> List[PricePoint]:
        try:
            return self.store.find(self.caller, filters or PriceFilters())
        except (AccessDenied, PriceStoreError) as exc:
            self._degraded("query", exc)
            return []

    def subscribe(
        self,
        filters: PriceFilters | None,
        on_change: Callable[[List[PricePoint]], None],
    ) -> Callable[[], None]:
        """
        Deliver the current snapshot, then a new one on every matching change.
        Returns the unsubscribe callable; without access, one empty snapshot is
        delivered and the returned callable does nothing.
        """
        try:
            return self.store.watch(self.caller, filters or PriceFilters(), on_change)
        except (AccessDenied, PriceStoreError) as exc:
            self._degraded("subscribe", exc)
            on_change([])
            return _noop

    def latest(self, commodity: str, market: str | None = None) -> Optional[PricePoint]:
        rows = self.query(PriceFilters(commodity=commodity, market=market, limit=1))
        return rows[0] if rows else None

    def average(self, commodity: str, since: date | None = None) -> Optional[PriceAverage]:
        """Mean over the most recent ``average_window`` matching records."""
        rows = self.query(PriceFilters(commodity=commodity, start_date=since, limit=self.average_window))
        if not rows:
            return None
        return PriceAverage(
            retail=mean(r.retail for r in rows),
            wholesale=mean(r.wholesale for r in rows),
            count=len(rows),
        )


__all__ = ["MarketPriceQuery"]
