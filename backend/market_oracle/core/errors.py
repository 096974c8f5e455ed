# market_oracle/core/errors.py
from __future__ import annotations

from typing import Any


class MarketOracleError(Exception):
    """Base class for every error raised by the market price pipeline."""


class UnsupportedCommodity(MarketOracleError, ValueError):
    def __init__(self, commodity: str):
        self.commodity = commodity
        super().__init__(
            f"Unsupported commodity {commodity!r}. "
            "Expected one of: tomatoes, onion, potatoes, kale, cabbage"
        )


class UnmappedMarket(MarketOracleError, ValueError):
    def __init__(self, market: str):
        self.market = market
        super().__init__(
            f"No region mapping for market {market!r}. Expected one of: Nairobi, Mombasa, Kisumu, Nakuru"
        )


class PredictionServiceNotConfigured(MarketOracleError, RuntimeError):
    def __init__(self) -> None:
        super().__init__("MARKET_API_URL is not set; the prediction service cannot be reached.")


class PredictionServiceError(MarketOracleError):
    """The prediction endpoint answered with a non-success status or could not be reached."""

    def __init__(self, status: int | None, body: Any = None, message: str | None = None):
        self.status = status
        self.body = body
        if message is None:
            message = (
                f"Predict API error {status}: {body}" if status is not None else f"Predict API unreachable: {body}"
            )
        super().__init__(message)


class CommodityUnavailable(MarketOracleError):
    """The commodity was rejected by the service earlier and is short-circuited."""

    def __init__(self, commodity: str):
        self.commodity = commodity
        super().__init__(f"Commodity {commodity!r} marked unsupported by the prediction service")


class AccessDenied(MarketOracleError):
    pass


class AuthenticationRequired(AccessDenied):
    def __init__(self, action: str = "read"):
        self.action = action
        super().__init__(f"Login required to {action} cached market prices.")


class PermissionDenied(AccessDenied):
    def __init__(self, action: str = "read", subject: str | None = None):
        self.action = action
        self.subject = subject
        super().__init__(f"{subject or 'caller'} is not allowed to {action} cached market prices.")


class PriceStoreError(MarketOracleError):
    pass
