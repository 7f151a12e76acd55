"""Tests for the request-coalescing cache."""

import asyncio
import gc
from dataclasses import dataclass

import pytest

from pageflow.core.cache import RequestCoalescingCache


@dataclass
class Result:
    status: str
    value: int = 0


class FakeTimer:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def counting_factory(result: Result, gate: asyncio.Event | None = None):
    calls = {"count": 0}

    async def factory() -> Result:
        calls["count"] += 1
        if gate is not None:
            await gate.wait()
        return result

    return factory, calls


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_factory_run():
    """Test N concurrent resolves invoke the factory exactly once."""
    cache = RequestCoalescingCache()
    gate = asyncio.Event()
    factory, calls = counting_factory(Result("ready", 1), gate)

    tasks = [asyncio.create_task(cache.resolve("summary:24h", factory)) for _ in range(10)]
    await asyncio.sleep(0)
    assert cache.in_flight_count() == 1

    gate.set()
    results = await asyncio.gather(*tasks)

    assert calls["count"] == 1
    assert all(result is results[0] for result in results)
    assert cache.in_flight_count() == 0


@pytest.mark.asyncio
async def test_ready_result_is_served_from_cache():
    """Test a ready result is reused without calling the factory again."""
    cache = RequestCoalescingCache()
    factory, calls = counting_factory(Result("ready"))
    other, other_calls = counting_factory(Result("ready", 2))

    first = await cache.resolve("key", factory)
    second = await cache.resolve("key", other)

    assert second is first
    assert calls["count"] == 1
    assert other_calls["count"] == 0
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_error_result_is_not_cached():
    """Test the next caller retries after an error result."""
    cache = RequestCoalescingCache()
    failing, _ = counting_factory(Result("error"))
    retry, retry_calls = counting_factory(Result("ready", 2))

    assert (await cache.resolve("key", failing)).status == "error"
    result = await cache.resolve("key", retry)

    assert retry_calls["count"] == 1
    assert result.value == 2


@pytest.mark.asyncio
async def test_disabled_result_is_not_cached():
    """Test disabled results are recomputed on every call."""
    cache = RequestCoalescingCache()
    factory, calls = counting_factory(Result("disabled"))

    await cache.resolve("key", factory)
    await cache.resolve("key", factory)

    assert calls["count"] == 2
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_entries_expire_after_ttl():
    """Test an expired entry triggers a fresh resolution."""
    timer = FakeTimer()
    cache = RequestCoalescingCache(ttl=300, timer=timer)
    factory, calls = counting_factory(Result("ready"))

    await cache.resolve("key", factory)
    timer.now = 299
    await cache.resolve("key", factory)
    assert calls["count"] == 1

    timer.now = 301
    await cache.resolve("key", factory)
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_least_recently_used_entry_is_evicted():
    """Test the cache stays within its capacity."""
    cache = RequestCoalescingCache(maxsize=2)
    for key in ("a", "b", "c"):
        factory, _ = counting_factory(Result("ready"))
        await cache.resolve(key, factory)

    assert len(cache) == 2
    assert cache.get("a") is None
    assert cache.get("c") is not None


@pytest.mark.asyncio
async def test_exception_reaches_every_waiter_and_clears_in_flight():
    """Test a raising factory settles all callers and allows a retry."""
    cache = RequestCoalescingCache()
    gate = asyncio.Event()
    calls = {"count": 0}

    async def exploding() -> Result:
        calls["count"] += 1
        await gate.wait()
        raise RuntimeError("upstream exploded")

    tasks = [asyncio.create_task(cache.resolve("key", exploding)) for _ in range(3)]
    await asyncio.sleep(0)
    gate.set()
    outcomes = await asyncio.gather(*tasks, return_exceptions=True)

    assert calls["count"] == 1
    assert all(isinstance(outcome, RuntimeError) for outcome in outcomes)
    assert cache.in_flight_count() == 0

    factory, retry_calls = counting_factory(Result("ready"))
    await cache.resolve("key", factory)
    assert retry_calls["count"] == 1


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_run():
    """Test a running resolution completes even if its first caller goes away."""
    cache = RequestCoalescingCache()
    gate = asyncio.Event()
    factory, calls = counting_factory(Result("ready", 7), gate)

    first = asyncio.create_task(cache.resolve("key", factory))
    await asyncio.sleep(0)
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first

    late, late_calls = counting_factory(Result("ready", 8))
    second = asyncio.create_task(cache.resolve("key", late))
    await asyncio.sleep(0)
    gate.set()

    assert (await second).value == 7
    assert calls["count"] == 1
    assert late_calls["count"] == 0


@pytest.mark.asyncio
async def test_custom_cacheability_predicate():
    """Test the cacheability rule can be replaced."""
    cache = RequestCoalescingCache(is_cacheable=lambda value: value.value > 0)
    factory, calls = counting_factory(Result("whatever", 1))

    await cache.resolve("key", factory)
    await cache.resolve("key", factory)
    assert calls["count"] == 1

    cache.invalidate("key")
    await cache.resolve("key", factory)
    assert calls["count"] == 2

    cache.clear()
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_failure_after_every_caller_left_is_retrieved():
    """Test a shared failure nobody awaits is not reported as never retrieved."""
    loop = asyncio.get_running_loop()
    reported: list[dict] = []
    loop.set_exception_handler(lambda _loop, context: reported.append(context))

    cache = RequestCoalescingCache()
    gate = asyncio.Event()

    async def exploding() -> Result:
        await gate.wait()
        raise RuntimeError("upstream exploded")

    try:
        only = asyncio.create_task(cache.resolve("key", exploding))
        await asyncio.sleep(0)
        only.cancel()
        with pytest.raises(asyncio.CancelledError):
            await only

        gate.set()
        for _ in range(5):
            await asyncio.sleep(0)
        assert cache.in_flight_count() == 0

        del only
        gc.collect()
    finally:
        loop.set_exception_handler(None)

    assert not [c for c in reported if "never retrieved" in c.get("message", "")]

    factory, calls = counting_factory(Result("ready"))
    assert (await cache.resolve("key", factory)).status == "ready"
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_per_call_cacheability_rule():
    """Test one call can cache values the cache-wide rule would skip."""
    cache = RequestCoalescingCache()
    factory, calls = counting_factory(Result("raw", 3))

    await cache.resolve("key", factory, is_cacheable=lambda value: value.value > 0)
    await cache.resolve("key", factory, is_cacheable=lambda value: value.value > 0)
    assert calls["count"] == 1

    other, other_calls = counting_factory(Result("raw", 4))
    await cache.resolve("other", other)
    await cache.resolve("other", other)
    assert other_calls["count"] == 2
