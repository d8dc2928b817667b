"""Tests for RequestCache and TTLCache."""

from contentsync.core.cache import RequestCache, TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestRequestCache:
    """Tests for the per-request cache."""

    def test_get_set(self):
        cache = RequestCache()
        assert cache.get("a") is None
        assert cache.get("a", 5) == 5
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert "a" in cache

    def test_invalidate_one_and_all(self):
        cache = RequestCache()
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        assert "a" not in cache
        assert cache.get("b") == 2
        cache.invalidate()
        assert "b" not in cache

    def test_stores_falsy_values(self):
        cache = RequestCache()
        cache.set("none", None)
        assert "none" in cache


class TestTTLCache:
    """Tests for the expiring cache."""

    def test_entry_expires(self):
        clock = FakeClock()
        cache = TTLCache(default_ttl=10, clock=clock)
        cache.set("k", "v")
        clock.now += 9
        assert cache.get("k") == "v"
        clock.now += 1
        assert cache.get("k") is None

    def test_explicit_ttl(self):
        clock = FakeClock()
        cache = TTLCache(default_ttl=10, clock=clock)
        cache.set("k", "v", ttl=100)
        clock.now += 50
        assert cache.get("k") == "v"

    def test_invalidate(self):
        cache = TTLCache()
        cache.set("k", "v")
        cache.set("j", "w")
        cache.invalidate("k")
        assert cache.get("k", "gone") == "gone"
        cache.invalidate()
        assert cache.get("j") is None
