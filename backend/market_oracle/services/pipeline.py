# market_oracle/services/pipeline.py
"""
Process-wide wiring of the price pipeline: one store, one change feed, one
sync coordinator and, once configured, one prediction client.

The HTTP app and the scheduler share the default instance from ``get_pipeline``.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from market_oracle.config import Settings, get_settings
from market_oracle.core.access import Caller
from market_oracle.services.prediction_client import PredictionClient
from market_oracle.services.price_query import MarketPriceQuery
from market_oracle.services.price_store import PriceChangeFeed, PriceStore
from market_oracle.services.reconciler import CacheReconciler
from market_oracle.services.sync import SyncCoordinator, SyncOrchestrator


class PricePipeline:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: Settings | None = None,
        *,
        client: PredictionClient | None = None,
        coordinator: SyncCoordinator | None = None,
    ):
        self.settings = settings or get_settings()
        self.feed = PriceChangeFeed()
        self.store = PriceStore(session_factory, feed=self.feed, safety_cap=self.settings.QUERY_SAFETY_CAP)
        self.coordinator = coordinator or SyncCoordinator(self.settings.SYNC_COOLDOWN_SECONDS)
        self._client = client
        self._orchestrator: Optional[SyncOrchestrator] = None

    @property
    def client(self) -> PredictionClient:
        """Built on first use; raises ``PredictionServiceNotConfigured`` without MARKET_API_URL."""
        if self._client is None:
            self._client = PredictionClient.from_settings(self.settings)
        return self._client

    @property
    def orchestrator(self) -> SyncOrchestrator:
        if self._orchestrator is None:
            reconciler = CacheReconciler(self.store, self.client, settings=self.settings)
            self._orchestrator = SyncOrchestrator.from_settings(reconciler, self.coordinator, self.settings)
        return self._orchestrator

    def query(self, caller: Optional[Caller]) -> MarketPriceQuery:
        return MarketPriceQuery(self.store, caller, average_window=self.settings.AVERAGE_WINDOW)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


@lru_cache
def get_pipeline() -> PricePipeline:
    from market_oracle.db import session as db_session  # pylint: disable=import-outside-toplevel

    return PricePipeline(db_session.get_sessionmaker())


__all__ = ["PricePipeline", "get_pipeline"]
