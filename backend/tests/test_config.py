from __future__ import annotations

import pytest
from pydantic import ValidationError

from market_oracle.config import Settings


def test_dev_and_test_generate_a_jwt_secret():
    assert Settings(ENV="dev", JWT_SECRET=None).JWT_SECRET
    assert Settings(ENV="test", JWT_SECRET=None).JWT_SECRET


def test_other_envs_require_a_jwt_secret():
    with pytest.raises(ValidationError):
        Settings(ENV="prod", JWT_SECRET=None)


def test_pipeline_defaults():
    s = Settings(ENV="test")
    assert s.SYNC_COOLDOWN_SECONDS == 60.0
    assert s.WHOLESALE_SEED_DISCOUNT == 0.85
    assert (s.DERIVED_RETAIL_RATIO, s.DERIVED_WHOLESALE_RATIO) == (1.2, 0.8)
    assert set(s.DEFAULT_SEED_PRICES) == {"tomatoes", "onion", "potatoes", "kale", "cabbage"}


def test_prediction_url_comes_from_env(monkeypatch):
    monkeypatch.setenv("MARKET_API_URL", "https://oracle.example.com")
    monkeypatch.setenv("SYNC_COOLDOWN_SECONDS", "5")
    s = Settings(ENV="test")
    assert s.MARKET_API_URL == "https://oracle.example.com"
    assert s.SYNC_COOLDOWN_SECONDS == 5.0


def test_sync_concurrency_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(ENV="test", SYNC_MAX_CONCURRENCY=0)
