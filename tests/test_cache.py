"""
EmbeddingCache Tests

TTL expiry, capacity eviction and single-flight behaviour.
"""

import asyncio

import pytest

from ragstream.core.errors import TransientEmbeddingError
from ragstream.embeddings.cache import EmbeddingCache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_make_key_depends_on_provider_model_and_text():
    key = EmbeddingCache.make_key("openai", "ada", "hello")
    assert key.startswith("openai:ada:")
    assert key == EmbeddingCache.make_key("openai", "ada", "hello")
    assert key != EmbeddingCache.make_key("openai", "ada", "hello!")
    assert key != EmbeddingCache.make_key("ollama", "ada", "hello")
    assert key != EmbeddingCache.make_key("openai", "other", "hello")


def test_get_returns_copy():
    cache = EmbeddingCache()
    cache.set("k", [1.0, 2.0])

    vector = cache.get("k")
    vector.append(3.0)

    assert cache.get("k") == [1.0, 2.0]


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = EmbeddingCache(ttl_seconds=10, clock=clock)
    cache.set("k", [1.0])

    clock.now += 9
    assert cache.get("k") == [1.0]

    clock.now += 1
    assert cache.get("k") is None
    assert len(cache) == 0


def test_oldest_entries_are_evicted_at_capacity():
    clock = FakeClock()
    cache = EmbeddingCache(max_entries=10, clock=clock)
    for i in range(10):
        clock.now += 1
        cache.set(f"k{i}", [float(i)])

    cache.set("new", [99.0])

    assert len(cache) == 10
    assert cache.get("k0") is None
    assert cache.get("k1") == [1.0]
    assert cache.get("new") == [99.0]


def test_clear_by_model():
    cache = EmbeddingCache()
    cache.set(EmbeddingCache.make_key("openai", "a", "x"), [1.0])
    cache.set(EmbeddingCache.make_key("openai", "b", "x"), [2.0])

    assert cache.clear("a") == 1
    assert len(cache) == 1
    assert cache.clear() == 1
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_factory_call():
    cache = EmbeddingCache()
    calls = 0
    release = asyncio.Event()

    async def factory():
        nonlocal calls
        calls += 1
        await release.wait()
        return [0.5, 0.5]

    tasks = [asyncio.create_task(cache.get_or_create("k", factory)) for _ in range(5)]
    await asyncio.sleep(0)
    assert cache.in_flight("k")

    release.set()
    results = await asyncio.gather(*tasks)

    assert calls == 1
    assert all(r == [0.5, 0.5] for r in results)
    assert not cache.in_flight("k")
    assert cache.get("k") == [0.5, 0.5]


@pytest.mark.asyncio
async def test_failure_reaches_every_waiter_and_is_not_cached():
    cache = EmbeddingCache()
    release = asyncio.Event()

    async def failing():
        await release.wait()
        raise RuntimeError("provider down")

    tasks = [asyncio.create_task(cache.get_or_create("k", failing)) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert all(isinstance(r, RuntimeError) for r in results)
    assert cache.get("k") is None
    assert not cache.in_flight("k")

    async def succeeding():
        return [1.0]

    assert await cache.get_or_create("k", succeeding) == [1.0]


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_call():
    cache = EmbeddingCache()
    release = asyncio.Event()

    async def factory():
        await release.wait()
        return [2.0]

    leader = asyncio.create_task(cache.get_or_create("k", factory))
    await asyncio.sleep(0)
    waiter = asyncio.create_task(cache.get_or_create("k", factory))
    await asyncio.sleep(0)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    release.set()
    assert await leader == [2.0]


@pytest.mark.asyncio
async def test_cancelled_leader_leaves_nothing_cached():
    cache = EmbeddingCache()

    async def never():
        await asyncio.Event().wait()
        return [1.0]

    leader = asyncio.create_task(cache.get_or_create("k", never))
    await asyncio.sleep(0)
    waiter = asyncio.create_task(cache.get_or_create("k", never))
    await asyncio.sleep(0)

    leader.cancel()
    leader_result, waiter_result = await asyncio.gather(
        leader, waiter, return_exceptions=True
    )

    assert isinstance(leader_result, asyncio.CancelledError)
    # The waiter was never cancelled itself; it sees an ordinary failure.
    assert isinstance(waiter_result, TransientEmbeddingError)
    assert not waiter.cancelled()
    assert cache.get("k") is None
    assert not cache.in_flight("k")
