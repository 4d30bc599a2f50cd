"""
Read cache tests.

Verifies:
- Entries expire after their TTL
- Writing a new entry prunes every expired one
- Store invalidation only drops that store's entries
"""

import pytest

from backoffice.services import cache_service
from backoffice.services.cache_service import TTLCache


class FakeClock:

    def __init__(self):
        self.now = 1000.0

    def monotonic(self):
        return self.now


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(cache_service, "time", fake)
    return fake


class TestTTLCache:

    def test_entry_expires(self, clock):
        cache = TTLCache()
        cache.set((1, "overview"), {"total": 3}, 15)
        assert cache.get((1, "overview")) == {"total": 3}

        clock.now += 15
        assert cache.get((1, "overview")) is None
        assert len(cache) == 0

    def test_set_prunes_expired_keys(self, clock):
        cache = TTLCache()
        for q in ("cola", "water", "beer"):
            cache.set((1, "ap_supplier_summary", q), {"q": q}, 15)
        assert len(cache) == 3

        # Distinct free-text keys are never read again; the next write sweeps them
        clock.now += 20
        cache.set((1, "ap_supplier_summary", "juice"), {"q": "juice"}, 15)
        assert len(cache) == 1
        assert cache.get((1, "ap_supplier_summary", "juice")) == {"q": "juice"}

    def test_set_keeps_live_keys(self, clock):
        cache = TTLCache()
        cache.set((1, "a"), "old", 10)
        clock.now += 5
        cache.set((1, "b"), "new", 10)
        assert len(cache) == 2

    def test_invalidate_store(self, clock):
        cache = TTLCache()
        cache.set((1, "a"), "one", 15)
        cache.set((2, "a"), "two", 15)
        assert cache.invalidate_store(1) == 1
        assert cache.get((1, "a")) is None
        assert cache.get((2, "a")) == "two"
