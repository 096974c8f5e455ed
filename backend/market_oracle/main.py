# market_oracle/main.py
from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware

from market_oracle import __version__
from market_oracle.config import get_settings
from market_oracle.core.errors import UnmappedMarket, UnsupportedCommodity
from market_oracle.db.session import init_db
from market_oracle.observability.logging import configure_logging
from market_oracle.observability.metrics import router as observability_router
from market_oracle.observability.middleware import register_request_middleware, unhandled_exception_handler
from market_oracle.routers.auth import router as auth_router
from market_oracle.routers.health import router as health_router
from market_oracle.routers.insights import router as insights_router
from market_oracle.routers.market_prices import router as market_prices_router
from market_oracle.scheduler.setup import init_scheduler, shutdown_scheduler
from market_oracle.schemas.common import fail
from market_oracle.services.pipeline import get_pipeline

configure_logging()
logger = structlog.get_logger(__name__)


def _unsupported_commodity_handler(request: Request, exc: UnsupportedCommodity):
    return fail("UNSUPPORTED_COMMODITY", str(exc), status_code=422, details={"commodity": exc.commodity})


def _unmapped_market_handler(request: Request, exc: UnmappedMarket):
    return fail("UNMAPPED_MARKET", str(exc), status_code=422, details={"market": exc.market})


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Market Oracle", version=__version__)
    app.state.pipeline = get_pipeline()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400,
    )

    if settings.TRUSTED_HOSTS:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.TRUSTED_HOSTS)

    if settings.FORCE_HTTPS:
        app.add_middleware(HTTPSRedirectMiddleware)

    register_request_middleware(app)
    app.add_exception_handler(UnsupportedCommodity, _unsupported_commodity_handler)
    app.add_exception_handler(UnmappedMarket, _unmapped_market_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.on_event("startup")
    async def _startup() -> None:
        init_db()
        await init_scheduler(app)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await shutdown_scheduler()
        await app.state.pipeline.aclose()

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(observability_router)
    app.include_router(market_prices_router)
    app.include_router(insights_router)

    return app


app = create_app()
