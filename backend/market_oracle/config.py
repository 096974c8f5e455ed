# backend/market_oracle/config.py
from functools import lru_cache
from typing import Dict, List
import secrets

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # environment: "dev" for running the app locally, "test" for pytest
    ENV: str = "dev"

    DATABASE_URL: str | None = None
    TEST_DATABASE_URL: str | None = None
    DB_APP_ROLE: str | None = None
    DB_REQUIRE_SSL: bool = True

    # --- Auth / JWT ---
    JWT_SECRET: str | None = Field(None, description="JWT signing secret. Must be set outside dev/test.")
    JWT_ALG: str = "HS256"
    JWT_ACCESS_MIN: int = 30
    JWT_REFRESH_DAYS: int = 7

    # --- HTTP ---
    FORCE_HTTPS: bool = False
    TRUSTED_HOSTS: List[str] = Field(
        default_factory=lambda: [
            "localhost",
            "127.0.0.1",
            "testserver",
            "test",
        ]
    )
    CORS_ORIGINS: List[str] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    )

    # --- Prediction service ---
    # No default on purpose: the client refuses to start without it.
    MARKET_API_URL: str | None = None
    MARKET_API_TIMEOUT_SECONDS: float = 20.0
    # How long a commodity rejected with HTTP 400 stays short-circuited (<= 0: until restart).
    PREDICT_UNSUPPORTED_TTL_SECONDS: float = 6 * 60 * 60

    # --- Sync pipeline ---
    SYNC_COOLDOWN_SECONDS: float = 60.0
    SYNC_MAX_CONCURRENCY: int = Field(4, ge=1)
    WHOLESALE_SEED_DISCOUNT: float = 0.85
    DERIVED_RETAIL_RATIO: float = 1.2
    DERIVED_WHOLESALE_RATIO: float = 0.8
    DEFAULT_SEED_PRICES: Dict[str, float] = Field(
        default_factory=lambda: {
            "tomatoes": 50.0,
            "onion": 60.0,
            "potatoes": 40.0,
            "kale": 45.0,
            "cabbage": 35.0,
        }
    )

    # --- Read side ---
    AVERAGE_WINDOW: int = 100
    QUERY_SAFETY_CAP: int = 1000

    # --- Scheduler ---
    SCHEDULER_ENABLED: bool = True
    # IANA timezone name used by APScheduler (e.g., "UTC", "Africa/Nairobi").
    SCHEDULER_TZ: str = "UTC"
    # Optional dedicated job store URL. If None, DATABASE_URL is used.
    SCHEDULER_DB_URL: str | None = None
    MARKET_SYNC_HOUR: int = 6
    MARKET_SYNC_MINUTE: int = 0

    LOG_LEVEL: str = "INFO"

    @model_validator(mode="after")
    def _check_jwt_secret(self):
        # In dev/test, auto-generate an ephemeral secret if none provided to avoid committing secrets.
        if self.ENV in ("dev", "test"):
            if not self.JWT_SECRET:
                self.JWT_SECRET = secrets.token_urlsafe(32)
            return self
        if not self.JWT_SECRET:
            raise ValueError("JWT_SECRET must be set via environment for non-dev/test environments.")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
