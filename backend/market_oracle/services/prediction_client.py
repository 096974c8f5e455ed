# market_oracle/services/prediction_client.py
"""
Client for the external price prediction endpoint (``POST /predict``).

One call per (commodity, market, pricetype). A 400 answer means the service
does not know the commodity; the client then short-circuits that commodity
for a while instead of sending requests that are bound to fail.
"""
from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from market_oracle.config import Settings, get_settings
from market_oracle.core.errors import (
    CommodityUnavailable,
    PredictionServiceError,
    PredictionServiceNotConfigured,
)
from market_oracle.observability.metrics import PREDICTION_REQUESTS
from market_oracle.schemas.prediction import PredictionRequest, PredictionResult
from market_oracle.services.normalizer import normalize_commodity
from market_oracle.utils.numeric import coerce_float, positive_price

logger = structlog.get_logger(__name__)

# Checked in order; the pricetype-named field ("retail"/"wholesale") comes last.
PRICE_FIELDS = ("prediction_per_kg", "predicted_price")


def build_predict_url(base_url: str | None) -> str:
    """Normalize the configured base URL so it points at the ``/predict`` endpoint."""
    url = (base_url or "").strip()
    if not url:
        raise PredictionServiceNotConfigured()
    url = url.rstrip("/")
    if "/predict" not in url:
        url = f"{url}/predict"
    return url


def extract_price(payload: Dict[str, Any], pricetype: str) -> Optional[float]:
    """First usable price among the known response fields, or None."""
    for name in (*PRICE_FIELDS, pricetype):
        if name not in payload:
            continue
        price = positive_price(payload[name])
        if price is not None:
            return price
    return None


class CommodityBreaker:
    """
    Remembers commodities the service rejected, each for ``ttl_seconds``.
    A non-positive TTL keeps entries until ``reset()``.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._tripped: Dict[str, float] = {}

    def trip(self, commodity: str) -> None:
        self._tripped[commodity] = self._clock()

    def is_open(self, commodity: str) -> bool:
        tripped_at = self._tripped.get(commodity)
        if tripped_at is None:
            return False
        if self.ttl_seconds > 0 and self._clock() - tripped_at >= self.ttl_seconds:
            del self._tripped[commodity]
            return False
        return True

    def reset(self) -> None:
        self._tripped.clear()

    def __contains__(self, commodity: str) -> bool:
        return self.is_open(commodity)


class PredictionClient:
    def __init__(
        self,
        base_url: str | None,
        *,
        timeout: float = 20.0,
        breaker: CommodityBreaker | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.url = build_predict_url(base_url)
        self.breaker = breaker or CommodityBreaker(ttl_seconds=0)
        self._timeout = timeout
        self._http = http_client
        self._owns_http = http_client is None

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs) -> "PredictionClient":
        settings = settings or get_settings()
        return cls(
            settings.MARKET_API_URL,
            timeout=settings.MARKET_API_TIMEOUT_SECONDS,
            breaker=CommodityBreaker(settings.PREDICT_UNSUPPORTED_TTL_SECONDS),
            **kwargs,
        )

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> "PredictionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def predict(self, request: PredictionRequest) -> PredictionResult:
        """
        Ask the service for one price.

        Raises ``CommodityUnavailable`` without any network call when the commodity was
        rejected earlier, and ``PredictionServiceError`` for non-2xx answers or transport
        failures. A 2xx answer without a usable price is not an error: ``result.price`` is None.
        """
        commodity = normalize_commodity(request.commodity).value
        if commodity in self.breaker:
            PREDICTION_REQUESTS.labels(pricetype=request.pricetype, outcome="short_circuit").inc()
            raise CommodityUnavailable(commodity)

        body = request.model_copy(update={"commodity": commodity}).model_dump()
        log = logger.bind(
            commodity=commodity,
            market=request.market,
            pricetype=request.pricetype,
        )
        log.debug("prediction.request", payload=body)

        try:
            response = await self._client().post(self.url, json=body)
        except httpx.HTTPError as exc:
            PREDICTION_REQUESTS.labels(pricetype=request.pricetype, outcome="transport_error").inc()
            log.warning("prediction.unreachable", error=str(exc))
            raise PredictionServiceError(None, str(exc)) from exc

        if not response.is_success:
            detail: Any
            try:
                detail = response.json()
            except ValueError:
                detail = response.text
            PREDICTION_REQUESTS.labels(pricetype=request.pricetype, outcome=str(response.status_code)).inc()
            log.warning("prediction.request_failed", status=response.status_code, body=detail)
            if response.status_code == 400:
                self.breaker.trip(commodity)
                log.warning("prediction.commodity_marked_unsupported")
            raise PredictionServiceError(response.status_code, detail)

        try:
            payload = response.json()
        except ValueError as exc:
            PREDICTION_REQUESTS.labels(pricetype=request.pricetype, outcome="bad_payload").inc()
            raise PredictionServiceError(response.status_code, response.text, "Predict API returned invalid JSON") from exc
        if not isinstance(payload, dict):
            payload = {}

        price = extract_price(payload, request.pricetype)
        unit = payload.get("unit")
        PREDICTION_REQUESTS.labels(pricetype=request.pricetype, outcome="ok" if price else "empty").inc()
        log.debug("prediction.response", price=price)
        return PredictionResult(
            request=request,
            price=price,
            unit=unit if isinstance(unit, str) else None,
            confidence_pct=coerce_float(payload.get("confidence_pct")),
            lower_bound=coerce_float(payload.get("lower_bound")),
            upper_bound=coerce_float(payload.get("upper_bound")),
            raw=payload,
        )


__all__ = [
    "CommodityBreaker",
    "PRICE_FIELDS",
    "PredictionClient",
    "build_predict_url",
    "extract_price",
]
