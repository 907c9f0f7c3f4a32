"""TTL cache used for entitlement snapshots."""
from blacklink.services.ttl_cache import TTLCache


class TestTTLCache:
    def test_hit_inside_window(self, clock):
        cache = TTLCache(300, clock=clock)
        cache.set("u1", "snapshot")
        clock.advance(299)
        assert cache.get("u1") == "snapshot"

    def test_miss_after_expiry(self, clock):
        cache = TTLCache(300, clock=clock)
        cache.set("u1", "snapshot")
        clock.advance(300)
        assert cache.get("u1") is None
        assert len(cache) == 0

    def test_single_entry_evicts_previous_key(self, clock):
        cache = TTLCache(300, clock=clock)
        cache.set("u1", "a")
        cache.set("u2", "b")
        assert cache.get("u1") is None
        assert cache.get("u2") == "b"

    def test_larger_capacity_evicts_oldest(self, clock):
        cache = TTLCache(300, max_entries=2, clock=clock)
        cache.set("u1", "a")
        cache.set("u2", "b")
        cache.set("u3", "c")
        assert cache.get("u1") is None
        assert cache.get("u2") == "b"
        assert cache.get("u3") == "c"

    def test_invalidate(self, clock):
        cache = TTLCache(300, max_entries=3, clock=clock)
        cache.set("u1", "a")
        cache.set("u2", "b")
        cache.invalidate("u1")
        assert cache.get("u1") is None
        assert cache.get("u2") == "b"
        cache.invalidate()
        assert len(cache) == 0

    def test_per_entry_ttl_override(self, clock):
        cache = TTLCache(300, clock=clock)
        cache.set("u1", "a", ttl_seconds=10)
        clock.advance(11)
        assert cache.get("u1") is None
