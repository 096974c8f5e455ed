"""Market Oracle: market price sync and cache service."""

__version__ = "0.3.0"
