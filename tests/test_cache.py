"""
Tests for the recommendation cache
"""

import pytest

from shelfcast.storage.cache import CacheConfig, CacheManager, recommendation_key


@pytest.fixture
def cache(clock):
    return CacheManager(CacheConfig(default_ttl_s=60, max_items=10), clock=clock)


def test_recommendation_key():
    assert recommendation_key("u1", "homepage", "auto", 10) == "rec_u1_homepage_auto_10"


@pytest.mark.asyncio
async def test_entries_expire_with_the_clock(cache, clock):
    await cache.set("rec_u1_homepage_auto_10", {"items": [1, 2]})
    assert await cache.get("rec_u1_homepage_auto_10") == {"items": [1, 2]}

    clock.advance(61)
    assert await cache.get("rec_u1_homepage_auto_10") is None
    assert cache.get_stats()["hits"] == 1
    assert cache.get_stats()["misses"] == 1


@pytest.mark.asyncio
async def test_zero_ttl_never_expires(cache, clock):
    await cache.set("pinned", "value", ttl=0)
    clock.advance(10_000)
    assert await cache.get("pinned") == "value"


@pytest.mark.asyncio
async def test_values_are_copied(cache):
    value = {"items": [1]}
    await cache.set("k", value)
    value["items"].append(2)

    fetched = await cache.get("k")
    fetched["items"].append(3)

    assert await cache.get("k") == {"items": [1]}


@pytest.mark.asyncio
async def test_invalidate_user_cache_only_touches_that_user(cache):
    await cache.set(recommendation_key("u1", "homepage", "auto", 10), "a", user_id="u1")
    await cache.set(recommendation_key("u1", "trending", "auto", 5), "b", user_id="u1")
    await cache.set(recommendation_key("u10", "homepage", "auto", 10), "c", user_id="u10")

    assert await cache.invalidate_user_cache("u1") == 2
    assert await cache.get(recommendation_key("u10", "homepage", "auto", 10)) == "c"
    assert cache.get_stats()["invalidations"] == 2


@pytest.mark.asyncio
async def test_underscored_user_ids_do_not_share_entries(cache):
    # "rec_u1_x_homepage..." also starts with "rec_u1_"
    await cache.set(recommendation_key("u1", "homepage", "auto", 10), "mine", user_id="u1")
    await cache.set(recommendation_key("u1_x", "homepage", "auto", 10), "theirs", user_id="u1_x")

    assert await cache.invalidate_user_cache("u1") == 1
    assert await cache.get(recommendation_key("u1_x", "homepage", "auto", 10)) == "theirs"

    await cache.delete(recommendation_key("u1_x", "homepage", "auto", 10))
    assert cache.user_keys == {}


@pytest.mark.asyncio
async def test_lru_eviction(cache, clock):
    for i in range(10):
        await cache.set(f"k{i}", i)
        clock.advance(1)

    await cache.get("k0")
    await cache.set("k10", 10)

    assert cache.get_stats()["size"] == 10
    assert await cache.get("k0") == 0
    assert await cache.get("k1") is None


@pytest.mark.asyncio
async def test_disabled_cache_stores_nothing(clock):
    cache = CacheManager(CacheConfig(enabled=False), clock=clock)
    await cache.set("k", 1)
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_ping_and_clear(cache):
    await cache.set("k", 1)
    assert await cache.ping() is True

    await cache.close()
    assert cache.get_stats()["size"] == 0


@pytest.mark.asyncio
async def test_delete_and_clear_stats(cache):
    await cache.set("k", 1)
    await cache.get("k")
    await cache.delete("k")

    assert await cache.get("k") is None
    assert cache.get_stats()["hits"] == 1

    cache.clear_stats()
    assert cache.get_stats()["total_requests"] == 0
