from __future__ import annotations

import asyncio

import pytest

from meridian.app.cache.service import ResultCache, fingerprint_payload
from retrieval_fakes import ManualClock


def test_fingerprint_is_order_independent() -> None:
    first = fingerprint_payload({"text": "a", "sources": ["x", "y"], "k": 1})
    second = fingerprint_payload({"k": 1, "sources": ["x", "y"], "text": "a"})

    assert first == second
    assert first != fingerprint_payload({"text": "b", "sources": ["x", "y"], "k": 1})


def test_entries_expire_after_ttl(clock: ManualClock) -> None:
    cache: ResultCache[str] = ResultCache(ttl_seconds=180.0, clock=clock)
    cache.put("fp", "value")

    clock.advance(179.0)
    assert cache.get("fp") == "value"
    clock.advance(1.0)
    assert cache.get("fp") is None

    stats = cache.stats()
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.expirations == 1


def test_oldest_expiring_entry_is_evicted(clock: ManualClock) -> None:
    cache: ResultCache[str] = ResultCache(max_entries=2, clock=clock)
    cache.put("a", "1")
    clock.advance(1.0)
    cache.put("b", "2")
    clock.advance(1.0)
    cache.put("c", "3")

    assert cache.get("a") is None
    assert cache.get("b") == "2"
    assert cache.get("c") == "3"
    assert cache.stats().evictions == 1


def test_clear_drops_all_entries(clock: ManualClock) -> None:
    cache: ResultCache[str] = ResultCache(clock=clock)
    cache.put("a", "1")
    cache.put("b", "2")

    assert cache.clear() == 2
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_concurrent_identical_requests_share_one_computation() -> None:
    cache: ResultCache[str] = ResultCache()
    calls = 0
    release = asyncio.Event()

    async def compute() -> str:
        nonlocal calls
        calls += 1
        await release.wait()
        return "shared"

    tasks = [
        asyncio.create_task(cache.get_or_compute("fp", compute)) for _ in range(5)
    ]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*tasks)

    assert calls == 1
    assert [value for value, _shared in results] == ["shared"] * 5
    assert sorted(shared for _value, shared in results) == [False] + [True] * 4
    assert cache.stats().coalesced == 4


@pytest.mark.asyncio
async def test_failed_leader_propagates_and_caches_nothing() -> None:
    cache: ResultCache[str] = ResultCache()
    release = asyncio.Event()

    async def compute() -> str:
        await release.wait()
        raise RuntimeError("backend exploded")

    leader = asyncio.create_task(cache.get_or_compute("fp", compute))
    await asyncio.sleep(0)
    follower = asyncio.create_task(cache.get_or_compute("fp", compute))
    await asyncio.sleep(0)
    release.set()

    with pytest.raises(RuntimeError):
        await leader
    with pytest.raises(RuntimeError):
        await follower
    assert len(cache) == 0
    assert cache.stats().in_flight == 0


@pytest.mark.asyncio
async def test_should_store_controls_caching() -> None:
    cache: ResultCache[list[str]] = ResultCache()

    async def compute() -> list[str]:
        return []

    value, shared = await cache.get_or_compute(
        "fp", compute, should_store=lambda rows: bool(rows)
    )

    assert value == []
    assert shared is False
    assert cache.get("fp") is None
