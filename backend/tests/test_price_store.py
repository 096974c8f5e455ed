from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from market_oracle.core.access import Caller
from market_oracle.core.errors import AuthenticationRequired, PermissionDenied, PriceStoreError
from market_oracle.schemas.market_price import PriceFilters
from market_oracle.services.price_store import PriceChangeFeed, PriceStore

DAY = date(2026, 10, 18)


def _put(store, caller, *, commodity="Tomatoes", market="Nakuru Market", county="Rift Valley", retail=50.0,
         wholesale=40.0, day=DAY, now=None):
    return store.upsert(
        caller,
        commodity=commodity,
        market=market,
        county=county,
        retail=retail,
        wholesale=wholesale,
        day=day,
        now=now,
    )


def test_upsert_creates_then_updates_same_key(store, member):
    first_at = datetime(2026, 10, 18, 6, 0, tzinfo=timezone.utc)
    second_at = first_at + timedelta(hours=2)

    created = _put(store, member, now=first_at)
    updated = _put(store, member, retail=55.0, now=second_at)

    assert created.id == updated.id == "Tomatoes_Nakuru_Market_2026_10_18"
    rows = store.find(member, PriceFilters(commodity="Tomatoes"))
    assert len(rows) == 1
    assert rows[0].retail == 55.0
    assert rows[0].created_at.replace(tzinfo=None) == first_at.replace(tzinfo=None)
    assert rows[0].updated_at.replace(tzinfo=None) == second_at.replace(tzinfo=None)


def test_get_by_key(store, member):
    point = _put(store, member)
    assert store.get(member, point.id).retail == 50.0
    assert store.get(member, "missing") is None


def test_find_filters_are_exact_and_sorted_newest_first(store, member):
    for offset in range(3):
        _put(store, member, day=DAY - timedelta(days=offset), retail=50.0 + offset)
    _put(store, member, market="Kisumu Market", county="Nyanza")
    _put(store, member, commodity="Kale")

    rows = store.find(member, PriceFilters(commodity="Tomatoes", market="Nakuru Market"))
    assert [r.date for r in rows] == [DAY, DAY - timedelta(days=1), DAY - timedelta(days=2)]

    assert store.find(member, PriceFilters(commodity="tomatoes")) == []
    assert len(store.find(member, PriceFilters(county="Nyanza"))) == 1
    assert len(store.find(member, PriceFilters(start_date=DAY - timedelta(days=1), end_date=DAY - timedelta(days=1)))) == 1
    assert len(store.find(member, PriceFilters(commodity="Tomatoes", limit=2))) == 2
    assert len(store.find(member, PriceFilters())) == 5


def test_find_honours_the_safety_cap(session_factory, member):
    capped = PriceStore(session_factory, safety_cap=2)
    for offset in range(4):
        _put(capped, member, day=DAY - timedelta(days=offset))
    assert len(capped.find(member, PriceFilters())) == 2
    assert len(capped.find(member, PriceFilters(limit=50))) == 2


def test_find_latest_before(store, member):
    _put(store, member, day=date(2026, 9, 10), retail=41.0)
    _put(store, member, day=date(2026, 9, 20), retail=44.0)
    _put(store, member, day=date(2026, 10, 10), retail=48.0)

    hit = store.find_latest_before(member, "Tomatoes", "Nakuru Market", date(2026, 9, 18))
    assert hit.retail == 41.0
    assert store.find_latest_before(member, "Tomatoes", "Nakuru Market", date(2026, 9, 1)) is None


@pytest.mark.parametrize("caller", [None, Caller.anonymous()])
def test_unauthenticated_callers_are_rejected(store, caller):
    with pytest.raises(AuthenticationRequired):
        store.find(caller, PriceFilters())
    with pytest.raises(AuthenticationRequired):
        _put(store, caller)


def test_viewer_reads_but_cannot_write(store, member, viewer):
    _put(store, member)
    assert len(store.find(viewer, PriceFilters())) == 1
    with pytest.raises(PermissionDenied) as excinfo:
        _put(store, viewer)
    assert excinfo.value.action == "write"


def test_inactive_caller_cannot_read(store):
    ghost = Caller(subject="disabled@example.com", active=False)
    with pytest.raises(PermissionDenied):
        store.find(ghost, PriceFilters())


def test_watch_delivers_initial_and_matching_changes(store, member):
    seen = []
    unsubscribe = store.watch(member, PriceFilters(commodity="Tomatoes"), seen.append)
    assert seen == [[]]

    _put(store, member)
    _put(store, member, commodity="Kale")  # does not match, no delivery
    assert len(seen) == 2
    assert [p.commodity for p in seen[1]] == ["Tomatoes"]

    unsubscribe()
    unsubscribe()
    _put(store, member, retail=70.0)
    assert len(seen) == 2
    assert len(store.feed) == 0


def test_failing_listener_does_not_break_writers(store, member):
    def boom(snapshot):
        if snapshot:
            raise RuntimeError("listener bug")

    store.watch(member, PriceFilters(), boom)
    point = _put(store, member)
    assert point.retail == 50.0


def test_feed_only_notifies_matching_listeners():
    feed = PriceChangeFeed()
    hits = []
    feed.register(PriceFilters(market="Kisumu Market"), hits.append)
    token = feed.register(PriceFilters(), hits.append)
    feed.unregister(token)
    feed.unregister(token)
    assert len(feed) == 1


def test_database_errors_are_wrapped(member):
    class BrokenSession:
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def execute(self, *args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

    broken = PriceStore(lambda: BrokenSession())
    with pytest.raises(PriceStoreError):
        broken.find(member, PriceFilters())


def test_watch_unregisters_when_the_first_delivery_raises(store, member):
    def broken(snapshot):
        raise ValueError("subscriber bug")

    with pytest.raises(ValueError):
        store.watch(member, PriceFilters(), broken)
    assert len(store.feed) == 0

    _put(store, member)
