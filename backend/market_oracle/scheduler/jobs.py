from __future__ import annotations

import structlog

from market_oracle.core.access import Caller
from market_oracle.core.errors import PredictionServiceNotConfigured
from market_oracle.observability.instrument import log_job
from market_oracle.schemas.market_price import SyncSummary
from market_oracle.services.pipeline import get_pipeline

logger = structlog.get_logger(__name__)


@log_job("market-price-sync")
async def run_market_price_sync() -> SyncSummary:
    """
    Daily refresh of every commodity x market pair, run as the scheduler identity.

    An unconfigured prediction service is logged and skipped so the job keeps its
    schedule; the sync cooldown also applies to scheduled runs.
    """
    pipeline = get_pipeline()
    try:
        orchestrator = pipeline.orchestrator
    except PredictionServiceNotConfigured as exc:
        logger.warning("market_sync_job.not_configured", error=str(exc))
        return SyncSummary()
    return await orchestrator.sync_all(Caller.system())
