# market_oracle/services/price_store.py
"""
Cache store for market prices.

``PriceStore`` is the only code that touches the ``market_prices`` table. Every
public operation starts with the same capability check (``requires_access``),
and every committed upsert is published on a ``PriceChangeFeed`` so live
subscribers receive a fresh snapshot.
"""
from __future__ import annotations

import functools
import itertools
import threading
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from market_oracle.core.access import Action, Caller, check_access
from market_oracle.core.errors import PriceStoreError
from market_oracle.models.market_price import MarketPrice
from market_oracle.schemas.market_price import PriceFilters, PricePoint
from market_oracle.services.normalizer import price_key

logger = structlog.get_logger(__name__)

Snapshot = List[PricePoint]
SnapshotCallback = Callable[[Snapshot], None]

DEFAULT_SAFETY_CAP = 1000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def requires_access(action: Action):
    """Run the caller capability check before the wrapped store operation."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self: "PriceStore", caller: Optional[Caller], *args, **kwargs):
            check_access(caller, action)
            return func(self, caller, *args, **kwargs)

        return wrapper

    return decorator


@dataclass
class _Listener:
    filters: PriceFilters
    callback: SnapshotCallback


class PriceChangeFeed:
    """In-process change notifications for the price cache."""

    def __init__(self) -> None:
        self._listeners: Dict[int, _Listener] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def register(self, filters: PriceFilters, callback: SnapshotCallback) -> int:
        with self._lock:
            token = next(self._ids)
            self._listeners[token] = _Listener(filters, callback)
        return token

    def unregister(self, token: int) -> None:
        with self._lock:
            self._listeners.pop(token, None)

    def __len__(self) -> int:
        return len(self._listeners)

    def publish(self, changed: PricePoint, load: Callable[[PriceFilters], Snapshot]) -> None:
        with self._lock:
            listeners = [(token, item) for token, item in self._listeners.items() if item.filters.matches(changed)]
        for token, listener in listeners:
            try:
                listener.callback(load(listener.filters))
            except Exception:
                # a broken subscriber must never fail the writer
                logger.exception("price_feed.listener_failed", listener=token, key=changed.id)


class PriceStore:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        feed: PriceChangeFeed | None = None,
        safety_cap: int = DEFAULT_SAFETY_CAP,
    ):
        self._session_factory = session_factory
        self.feed = feed or PriceChangeFeed()
        self.safety_cap = safety_cap
        # SQLite shares one connection between worker threads; take turns on it.
        bind = getattr(session_factory, "kw", {}).get("bind")
        self._io_lock = threading.RLock() if bind is not None and bind.dialect.name == "sqlite" else nullcontext()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @requires_access("read")
    def get(self, caller: Caller, key: str) -> Optional[PricePoint]:
        with self._io_lock, self._session() as db:
            row = db.get(MarketPrice, key)
            return PricePoint.model_validate(row) if row is not None else None

    @requires_access("read")
    def find(self, caller: Caller, filters: PriceFilters) -> Snapshot:
        """Matching rows, newest day first, capped at ``safety_cap``."""
        return self._load(filters)

    @requires_access("read")
    def find_latest_before(
        self, caller: Caller, commodity: str, market: str, on_or_before: date
    ) -> Optional[PricePoint]:
        rows = self._load(PriceFilters(commodity=commodity, market=market, end_date=on_or_before, limit=1))
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @requires_access("write")
    def upsert(
        self,
        caller: Caller,
        *,
        commodity: str,
        market: str,
        county: str,
        retail: float,
        wholesale: float,
        day: date,
        now: datetime | None = None,
    ) -> PricePoint:
        """Insert or update the row for (commodity, market, day); ``created_at`` survives updates."""
        if isinstance(day, datetime):
            day = day.date()
        key = price_key(commodity, market, day)
        stamp = now or _utc_now()
        try:
            with self._io_lock, self._session() as db:
                rec = db.get(MarketPrice, key)
                if rec is None:
                    rec = MarketPrice(id=key, created_at=stamp)
                    db.add(rec)
                rec.commodity = commodity
                rec.market = market
                rec.county = county
                rec.retail = float(retail)
                rec.wholesale = float(wholesale)
                rec.price_date = day
                rec.updated_at = stamp
                if rec.created_at is None:
                    rec.created_at = stamp
                db.commit()
                db.refresh(rec)
                point = PricePoint.model_validate(rec)
        except SQLAlchemyError as exc:
            raise PriceStoreError(f"Failed to write market price {key}: {exc}") from exc

        logger.debug("price_store.upserted", key=key, retail=point.retail, wholesale=point.wholesale)
        self.feed.publish(point, self._load)
        return point

    # ------------------------------------------------------------------
    # Live queries
    # ------------------------------------------------------------------

    @requires_access("read")
    def watch(self, caller: Caller, filters: PriceFilters, callback: SnapshotCallback) -> Callable[[], None]:
        """
        Deliver the current snapshot now and a fresh one after every matching change.
        The returned callable stops delivery; calling it more than once is harmless.
        """
        token = self.feed.register(filters, callback)
        try:
            callback(self._load(filters))
        except BaseException:
            self.feed.unregister(token)
            raise

        def unsubscribe() -> None:
            self.feed.unregister(token)

        return unsubscribe

    # ------------------------------------------------------------------

    def _session(self) -> Session:
        return self._session_factory()

    def _load(self, filters: PriceFilters) -> Snapshot:
        conds = []
        if filters.commodity is not None:
            conds.append(MarketPrice.commodity == filters.commodity)
        if filters.market is not None:
            conds.append(MarketPrice.market == filters.market)
        if filters.county is not None:
            conds.append(MarketPrice.county == filters.county)
        if filters.start_date is not None:
            conds.append(MarketPrice.price_date >= filters.start_date)
        if filters.end_date is not None:
            conds.append(MarketPrice.price_date <= filters.end_date)

        limit = min(filters.limit or self.safety_cap, self.safety_cap)
        stmt = (
            select(MarketPrice)
            .where(*conds)
            .order_by(MarketPrice.price_date.desc(), MarketPrice.updated_at.desc())
            .limit(limit)
        )
        try:
            with self._io_lock, self._session() as db:
                rows = db.execute(stmt).scalars().all()
                return [PricePoint.model_validate(r) for r in rows]
        except SQLAlchemyError as exc:
            raise PriceStoreError(f"Failed to read market prices: {exc}") from exc


__all__ = ["PriceChangeFeed", "PriceStore", "requires_access"]
