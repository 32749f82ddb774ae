"""Tests for the in-process cache used without Redis."""

from kokoru.storage.redis_cache import MemoryCache


async def test_set_get_and_expiry(cache, clock):
    await cache.set("plant:1", "juniper", ex=10)

    assert await cache.get("plant:1") == "juniper"
    clock.advance(10)
    assert await cache.get("plant:1") is None
    assert await cache.exists("plant:1") is False


async def test_ttl_reports_missing_and_persistent_keys(cache):
    await cache.set("persistent", "1")

    assert await cache.ttl("missing") == -2
    assert await cache.ttl("persistent") == -1


async def test_incr_with_window_sets_expiry_once(cache, clock):
    assert await cache.incr_with_window("attempts", 60) == 1
    clock.advance(30)
    assert await cache.incr_with_window("attempts", 60) == 2
    assert await cache.ttl("attempts") == 30
    clock.advance(30)
    assert await cache.incr_with_window("attempts", 60) == 1


async def test_delete_counts_only_live_keys(cache, clock):
    await cache.set("a", "1")
    await cache.set("b", "1", ex=1)
    clock.advance(2)

    assert await cache.delete("a", "b", "c") == 1


async def test_scan_iter_matches_glob(cache):
    await cache.set("session:1", "x")
    await cache.set("session:2", "y")
    await cache.set("token:refresh:1", "z")

    keys = [key async for key in cache.scan_iter("session:*")]

    assert sorted(keys) == ["session:1", "session:2"]


async def test_close_clears_state():
    cache = MemoryCache()
    await cache.set("k", "v")
    await cache.close()

    assert await cache.get("k") is None
