import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend/ is importable as the top-level "market_oracle" package even when pytest runs from repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Ensure the application runs in test/sqlite mode *before* importing any app modules
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_DB_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test_secret")
os.environ.setdefault("JWT_ALG", "HS256")
os.environ.setdefault("JWT_ACCESS_MIN", "30")
os.environ.setdefault("JWT_REFRESH_DAYS", "7")

# Import the DB session module first so we can patch it before the app is imported
import market_oracle.db.session as app_db_session  # noqa: E402

# --- Use a single in-memory SQLite DB for the whole test session ---
ENGINE = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    future=True,
)
SessionTesting = sessionmaker(bind=ENGINE, autocommit=False, autoflush=False, expire_on_commit=False, future=True)

# --- Ensure tests and app code share the SAME in-memory engine/sessionmaker ---
setattr(app_db_session, "ENGINE", ENGINE)
setattr(app_db_session, "engine", ENGINE)
app_db_session.SessionLocal = SessionTesting
app_db_session.get_sessionmaker = lambda: SessionTesting  # type: ignore

import market_oracle.db as app_db_pkg  # noqa: E402

setattr(app_db_pkg, "ENGINE", ENGINE)
setattr(app_db_pkg, "engine", ENGINE)
app_db_pkg.SessionLocal = SessionTesting

from market_oracle.core.access import Caller  # noqa: E402
from market_oracle.core.security import hash_password  # noqa: E402
from market_oracle.db.base import Base  # noqa: E402
from market_oracle.db.session import get_db  # noqa: E402
from market_oracle.main import app  # noqa: E402
from market_oracle.models.user import User  # noqa: E402
from market_oracle.services.pipeline import PricePipeline  # noqa: E402
from market_oracle.services.price_store import PriceStore  # noqa: E402

from _helpers import auth_headers  # noqa: E402

DEMO_USERS = (
    ("demo@example.com", "demo123", "member", True),
    ("viewer@example.com", "viewer123", "viewer", True),
    ("disabled@example.com", "disabled123", "member", False),
)


# bcrypt is slow; hash once per session
_PASSWORD_HASHES = {email: hash_password(password) for email, password, _, _ in DEMO_USERS}


def _create_test_schema() -> None:
    Base.metadata.drop_all(bind=ENGINE)
    Base.metadata.create_all(bind=ENGINE)
    with SessionTesting() as s:
        for email, _, role, active in DEMO_USERS:
            s.add(User(email=email, password_hash=_PASSWORD_HASHES[email], role=role, is_active=active))
        s.commit()


# Ensure schema exists even for modules that instantiate TestClient at import time
_create_test_schema()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def _db_engine():
    yield ENGINE


@pytest.fixture(scope="session")
def session_factory(_db_engine):
    yield SessionTesting


@pytest.fixture(scope="function")
def reset_db(_db_engine):
    _create_test_schema()

    def _override_get_db_for_all_tests():
        _session = SessionTesting()
        try:
            yield _session
        finally:
            _session.close()

    app.dependency_overrides[get_db] = _override_get_db_for_all_tests
    yield
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture(scope="function")
def db(session_factory, reset_db):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(autouse=True)
def pipeline(reset_db):
    """A fresh pipeline per test so cooldowns and subscriptions never leak between tests."""
    previous = app.state.pipeline
    fresh = PricePipeline(SessionTesting)
    app.state.pipeline = fresh
    try:
        yield fresh
    finally:
        app.state.pipeline = previous


@pytest.fixture
def store(pipeline) -> PriceStore:
    return pipeline.store


@pytest.fixture
def member() -> Caller:
    return Caller(subject="demo@example.com", role="member")


@pytest.fixture
def viewer() -> Caller:
    return Caller(subject="viewer@example.com", role="viewer")


@pytest.fixture(scope="function")
def client(db):
    with TestClient(app, headers=auth_headers()) as c:
        yield c


@pytest.fixture(scope="function")
def anon_client(db):
    with TestClient(app) as c:
        yield c
