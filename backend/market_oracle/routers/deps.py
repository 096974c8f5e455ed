# market_oracle/routers/deps.py
from __future__ import annotations

from fastapi import Depends, Request

from market_oracle.core.access import Caller
from market_oracle.core.security import get_optional_caller
from market_oracle.services.pipeline import PricePipeline
from market_oracle.services.price_query import MarketPriceQuery


def get_price_pipeline(request: Request) -> PricePipeline:
    return request.app.state.pipeline


def get_price_query(
    pipeline: PricePipeline = Depends(get_price_pipeline),
    caller: Caller = Depends(get_optional_caller),
) -> MarketPriceQuery:
    return pipeline.query(caller)
