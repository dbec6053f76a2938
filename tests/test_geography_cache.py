import asyncio

import pytest
from unittest.mock import AsyncMock

from bulk_add.geography_cache import GeographyCache, normalize_postal_code
from bulk_add.models import GeographyEntry

WEST_VILLAGE = GeographyEntry(city_id=1, city_name="New York", neighborhood_id=3, neighborhood_name="West Village")


def test_normalize_postal_code():
    assert normalize_postal_code("10014") == "10014"
    assert normalize_postal_code("10014-1234") == "10014"
    assert normalize_postal_code(" NY 11249 ") == "11249"
    assert normalize_postal_code("123") is None
    assert normalize_postal_code(None) is None


@pytest.mark.asyncio
async def test_second_lookup_hits_cache():
    lookup = AsyncMock(return_value=WEST_VILLAGE)
    cache = GeographyCache(lookup)

    first = await cache.lookup("10014")
    second = await cache.lookup("10014-0001")

    assert first == second == WEST_VILLAGE
    lookup.assert_awaited_once_with("10014")
    assert cache.get("10014") == WEST_VILLAGE
    assert "10014" in cache
    assert cache.hits == 1
    assert cache.misses == 1


@pytest.mark.asyncio
async def test_negative_results_are_cached():
    lookup = AsyncMock(return_value=None)
    cache = GeographyCache(lookup)

    assert await cache.lookup("99999") is None
    assert await cache.lookup("99999") is None

    assert lookup.await_count == 1
    assert "99999" in cache


@pytest.mark.asyncio
async def test_concurrent_lookups_share_one_call():
    async def slow_lookup(code):
        await asyncio.sleep(0.01)
        return WEST_VILLAGE

    lookup = AsyncMock(side_effect=slow_lookup)
    cache = GeographyCache(lookup)

    results = await asyncio.gather(*[cache.lookup("10014") for _ in range(5)])

    assert all(result == WEST_VILLAGE for result in results)
    assert lookup.await_count == 1


@pytest.mark.asyncio
async def test_failures_are_not_cached():
    lookup = AsyncMock(side_effect=[RuntimeError("service down"), WEST_VILLAGE])
    cache = GeographyCache(lookup)

    with pytest.raises(RuntimeError):
        await cache.lookup("10014")
    assert "10014" not in cache

    assert await cache.lookup("10014") == WEST_VILLAGE
    assert lookup.await_count == 2


@pytest.mark.asyncio
async def test_unusable_code_never_reaches_service():
    lookup = AsyncMock()
    cache = GeographyCache(lookup)

    assert await cache.lookup("12") is None
    lookup.assert_not_awaited()


@pytest.mark.asyncio
async def test_clear_resets_entries():
    lookup = AsyncMock(return_value=WEST_VILLAGE)
    cache = GeographyCache(lookup)
    await cache.lookup("10014")

    cache.clear()

    assert len(cache) == 0
    await cache.lookup("10014")
    assert lookup.await_count == 2
