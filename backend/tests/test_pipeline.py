from __future__ import annotations

import pytest

from market_oracle.config import Settings
from market_oracle.core.access import Caller
from market_oracle.core.errors import PredictionServiceNotConfigured
from market_oracle.services.pipeline import PricePipeline


def test_unconfigured_pipeline_still_serves_reads(session_factory, member):
    pipeline = PricePipeline(session_factory, Settings(ENV="test", MARKET_API_URL=None))
    assert pipeline.query(member).query() == []
    with pytest.raises(PredictionServiceNotConfigured):
        pipeline.orchestrator


@pytest.mark.anyio
async def test_configured_pipeline_wires_one_orchestrator(session_factory):
    settings = Settings(ENV="test", MARKET_API_URL="https://oracle.example.com", SYNC_COOLDOWN_SECONDS=5)
    pipeline = PricePipeline(session_factory, settings)

    orchestrator = pipeline.orchestrator
    assert orchestrator is pipeline.orchestrator
    assert orchestrator.coordinator is pipeline.coordinator
    assert pipeline.coordinator.cooldown_seconds == 5
    assert orchestrator.reconciler.store is pipeline.store

    await pipeline.aclose()


def test_query_uses_configured_average_window(session_factory):
    pipeline = PricePipeline(session_factory, Settings(ENV="test", AVERAGE_WINDOW=7))
    assert pipeline.query(Caller.anonymous()).average_window == 7
