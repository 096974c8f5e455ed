# market_oracle/services/normalizer.py
"""
Vocabulary of the market price pipeline.

Free-form commodity and market names from callers are mapped onto the small
closed sets understood by the prediction service and used inside cache keys.
Every function here is pure.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Union

from market_oracle.core.errors import UnmappedMarket, UnsupportedCommodity


class Commodity(str, Enum):
    """Prediction-service token; ``label`` is the display form stored in the cache."""

    TOMATOES = "tomatoes"
    ONION = "onion"
    POTATOES = "potatoes"
    KALE = "kale"
    CABBAGE = "cabbage"

    @property
    def label(self) -> str:
        return _COMMODITY_LABELS[self]


_COMMODITY_LABELS: Dict[Commodity, str] = {
    Commodity.TOMATOES: "Tomatoes",
    Commodity.ONION: "Onions",
    Commodity.POTATOES: "Irish potato",
    Commodity.KALE: "Kale",
    Commodity.CABBAGE: "Cabbage",
}

# Substring -> commodity; first hit wins, so order matters.
_COMMODITY_PATTERNS = (
    ("potato", Commodity.POTATOES),
    ("onion", Commodity.ONION),
    ("tomato", Commodity.TOMATOES),
    ("kale", Commodity.KALE),
    ("cabbage", Commodity.CABBAGE),
)

REGIONS = ("Central", "Coast", "Eastern", "Nairobi", "North Eastern", "Nyanza", "Rift Valley")

_CITY_REGIONS = (
    ("nairobi", "Nairobi"),
    ("mombasa", "Coast"),
    ("kisumu", "Nyanza"),
    ("nakuru", "Rift Valley"),
)


class Market(NamedTuple):
    name: str  # cache display label
    api_name: str  # prediction-service display label


SUPPORTED_MARKETS: tuple[Market, ...] = (
    Market("Wakulima", "Wakulima (Nairobi)"),
    # Marikiti is unknown to the service; Dandora is the closest Nairobi market it knows.
    Market("Marikiti (Nairobi)", "Dandora (Nairobi)"),
    Market("Mombasa Market", "Kongowea (Mombasa)"),
    Market("Kisumu Market", "Kisumu"),
    Market("Nakuru Market", "Nakuru"),
)

SERVICE_MARKETS_BY_REGION: Dict[str, List[str]] = {
    "Nairobi": ["Wakulima (Nairobi)", "Dandora (Nairobi)"],
    "Coast": ["Kongowea (Mombasa)"],
    "Nyanza": ["Kisumu"],
    "Rift Valley": ["Nakuru"],
    "Central": ["Nakuru"],
    "Eastern": ["Nakuru"],
    "North Eastern": ["Nakuru"],
}

MARKET_ALIASES: Dict[str, str] = {
    "wakulima": "Wakulima (Nairobi)",
    "wakulima (nairobi)": "Wakulima (Nairobi)",
    "dandora": "Dandora (Nairobi)",
    "marikiti": "Dandora (Nairobi)",
    "marikiti (nairobi)": "Dandora (Nairobi)",
    "dandora (nairobi)": "Dandora (Nairobi)",
    "kongowea": "Kongowea (Mombasa)",
    "kongowea (mombasa)": "Kongowea (Mombasa)",
    "mombasa market": "Kongowea (Mombasa)",
    "kisumu": "Kisumu",
    "kisumu market": "Kisumu",
    "nakuru": "Nakuru",
    "nakuru market": "Nakuru",
}

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_NON_KEY_CHARS = re.compile(r"[^A-Za-z0-9_]")


def normalize_commodity(text: str) -> Commodity:
    """Map a free-form commodity name ("Irish Potato", "tomato") onto a supported commodity."""
    if isinstance(text, Commodity):
        return text
    normalized = (text or "").strip().lower()
    if normalized:
        for needle, commodity in _COMMODITY_PATTERNS:
            if needle in normalized:
                return commodity
    raise UnsupportedCommodity(text)


def supported_commodities() -> List[Commodity]:
    return list(Commodity)


def resolve_region(market_label: str) -> str:
    """Region (admin1) of a market, from the city its label mentions."""
    normalized = (market_label or "").lower()
    for city, region in _CITY_REGIONS:
        if city in normalized:
            return region
    raise UnmappedMarket(market_label)


def normalize_market_key(label: str) -> str:
    """Slug used inside identifiers: "Wakulima (Nairobi)" -> "wakulima-nairobi"."""
    return _NON_ALNUM.sub("-", (label or "").lower()).strip("-")


def normalize_market(text: str, region: Optional[str] = None) -> Optional[str]:
    """Prediction-service label for a free-form market name, or None when unknown."""
    key = (text or "").strip().lower()
    if not key:
        return None
    alias = MARKET_ALIASES.get(key)
    if alias:
        return alias
    for candidate in supported_markets(region):
        if candidate.lower() == key:
            return candidate
    return None


def supported_markets(region: Optional[str] = None) -> List[str]:
    """Prediction-service market labels, optionally restricted to one region."""
    if region and region in SERVICE_MARKETS_BY_REGION:
        return list(SERVICE_MARKETS_BY_REGION[region])
    seen: Dict[str, None] = {}
    for labels in SERVICE_MARKETS_BY_REGION.values():
        for label in labels:
            seen.setdefault(label, None)
    return list(seen)


def price_key(commodity: str, market: str, day: Union[date, datetime]) -> str:
    """
    Composite cache key for (commodity, market, day); time of day is discarded.

    The key keeps the cache labels as written ("Nakuru Market" -> "Nakuru_Market")
    so stored ids stay readable; ``normalize_market_key`` slugs are for the ids
    of derived view rows only.
    """
    if isinstance(day, datetime):
        day = day.date()
    return _NON_KEY_CHARS.sub("_", f"{commodity}_{market}_{day.isoformat()}")


__all__ = [
    "Commodity",
    "Market",
    "MARKET_ALIASES",
    "REGIONS",
    "SUPPORTED_MARKETS",
    "normalize_commodity",
    "normalize_market",
    "normalize_market_key",
    "price_key",
    "resolve_region",
    "supported_commodities",
    "supported_markets",
]
