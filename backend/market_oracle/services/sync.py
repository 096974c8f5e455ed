# market_oracle/services/sync.py
"""
Whole-cache sync pass: every supported commodity x every supported market.

At most one pass runs per ``SyncCoordinator`` and a new pass is refused until
the cooldown after the previous completed pass has elapsed. Refused passes
return an all-zero summary and make no network calls.
"""
from __future__ import annotations

import asyncio
import threading
import time
from datetime import date, datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

import structlog

from market_oracle.config import Settings, get_settings
from market_oracle.core.access import Caller
from market_oracle.core.errors import AuthenticationRequired
from market_oracle.observability.metrics import SYNC_PAIRS, SYNC_RUNS
from market_oracle.schemas.market_price import SyncSummary
from market_oracle.services.normalizer import SUPPORTED_MARKETS, Commodity, Market, supported_commodities
from market_oracle.services.reconciler import CacheReconciler

logger = structlog.get_logger(__name__)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class SyncCoordinator:
    """In-flight guard plus cooldown, anchored on when the last pass completed."""

    def __init__(self, cooldown_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._last_completed_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @property
    def last_completed_at(self) -> Optional[float]:
        return self._last_completed_at

    def cooling_down(self) -> bool:
        if self._last_completed_at is None:
            return False
        return self._clock() - self._last_completed_at < self.cooldown_seconds

    def try_begin(self) -> bool:
        if not self._lock.acquire(blocking=False):
            return False
        if self.cooling_down():
            self._lock.release()
            return False
        return True

    def finish(self) -> None:
        self._last_completed_at = self._clock()
        self._lock.release()


class SyncOrchestrator:
    def __init__(
        self,
        reconciler: CacheReconciler,
        coordinator: SyncCoordinator,
        *,
        max_concurrency: int = 4,
        commodities: Optional[Sequence[Commodity]] = None,
        markets: Optional[Sequence[Market]] = None,
        today: Callable[[], date] = _utc_today,
    ):
        self.reconciler = reconciler
        self.coordinator = coordinator
        self.max_concurrency = max(1, max_concurrency)
        self.commodities = tuple(commodities or supported_commodities())
        self.markets = tuple(markets or SUPPORTED_MARKETS)
        self._today = today
        self._current: Optional["asyncio.Task[SyncSummary]"] = None

    @property
    def current_pass(self) -> Optional["asyncio.Task[SyncSummary]"]:
        return self._current

    @classmethod
    def from_settings(
        cls,
        reconciler: CacheReconciler,
        coordinator: SyncCoordinator | None = None,
        settings: Settings | None = None,
        **kwargs,
    ) -> "SyncOrchestrator":
        settings = settings or get_settings()
        coordinator = coordinator or SyncCoordinator(settings.SYNC_COOLDOWN_SECONDS)
        return cls(reconciler, coordinator, max_concurrency=settings.SYNC_MAX_CONCURRENCY, **kwargs)

    def pairs(self) -> Iterable[tuple[Commodity, Market]]:
        for commodity in self.commodities:
            for market in self.markets:
                yield commodity, market

    async def sync_all(self, caller: Optional[Caller]) -> SyncSummary:
        """
        Run one pass and return its counts; never raises for expected conditions.

        Cancelling the caller abandons the wait, not the pass: the pass keeps
        running on its own task and the in-flight guard is released only when
        its last pair finishes.
        """
        if caller is None or not caller.authenticated:
            logger.info("sync.skipped_unauthenticated")
            SYNC_RUNS.labels(result="unauthenticated").inc()
            return SyncSummary()

        if not self.coordinator.try_begin():
            event = "sync.skipped_in_flight" if self.coordinator.running else "sync.skipped_cooldown"
            logger.info(event, subject=caller.subject)
            SYNC_RUNS.labels(result="refused").inc()
            return SyncSummary()

        try:
            self._current = asyncio.create_task(self._pass(caller, self._today()))
        except BaseException:
            self.coordinator.finish()
            raise
        return await asyncio.shield(self._current)

    async def _pass(self, caller: Caller, as_of: date) -> SyncSummary:
        started = time.perf_counter()
        try:
            summary = await self._run(caller, as_of)
        finally:
            self.coordinator.finish()

        result = "failed" if summary.failed else "completed"
        SYNC_RUNS.labels(result=result).inc()
        logger.info(
            f"sync.{result}",
            subject=caller.subject,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            **summary.model_dump(),
        )
        return summary

    async def _run(self, caller: Caller, as_of: date) -> SyncSummary:
        gate = asyncio.Semaphore(self.max_concurrency)
        aborted = asyncio.Event()

        async def one(commodity: Commodity, market: Market) -> SyncSummary:
            async with gate:
                if aborted.is_set():
                    return SyncSummary()
                try:
                    outcome = await self.reconciler.reconcile_one(commodity, market, as_of, caller=caller)
                except AuthenticationRequired:
                    aborted.set()
                    return SyncSummary()
                except Exception:
                    logger.exception("sync.pair_failed", commodity=commodity.label, market=market.name)
                    SYNC_PAIRS.labels(outcome="error").inc()
                    return SyncSummary(errors=1)
                SYNC_PAIRS.labels(outcome=outcome.status.value).inc()
                return outcome.as_summary()

        tasks = [asyncio.create_task(one(c, m)) for c, m in self.pairs()]
        results = await asyncio.gather(*tasks)
        if aborted.is_set():
            logger.warning("sync.aborted_unauthenticated", subject=caller.subject)
            return SyncSummary()
        total = SyncSummary()
        for item in results:
            total = total + item
        return total


__all__ = ["SyncCoordinator", "SyncOrchestrator"]
