from __future__ import annotations

import pytest

from quotepolicy.persistence.cache import TTLCache


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_entries_expire_after_ttl() -> None:
    clock = _Clock()
    cache = TTLCache(30, clock=clock)
    await cache.set("platform", {"version": 1})
    assert await cache.get("platform") == {"version": 1}

    clock.now += 30
    assert await cache.get("platform") is None


@pytest.mark.asyncio
async def test_invalidate_single_key_and_all() -> None:
    cache = TTLCache(30, clock=_Clock())
    await cache.set("a", 1)
    await cache.set("b", 2)

    cache.invalidate("a")
    assert await cache.get("a") is None
    assert await cache.get("b") == 2

    cache.invalidate()
    assert await cache.get("b") is None


@pytest.mark.asyncio
async def test_zero_ttl_disables_cache() -> None:
    cache = TTLCache(0)
    assert not cache.enabled
    await cache.set("a", 1)
    assert await cache.get("a") is None
