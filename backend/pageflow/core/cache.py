"""Request-coalescing TTL cache for expensive upstream resolutions.

One instance is created per process (see ``pageflow.main``) and handed to
every resolver. For a given key the cache serves, in order:

1. a fresh cached value,
2. the task of a resolution that is already running,
3. a new resolution, registered as in-flight before the event loop can
   switch to another caller.

Steps 1-3 contain no ``await`` before the registration, so on the asyncio
event loop they are atomic and ``factory`` runs at most once per key for any
number of concurrent callers. The cache is not thread-safe; share it only
between coroutines of a single event loop.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Generic, TypeVar

from cachetools import TTLCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ENTRIES = 16
DEFAULT_TTL_SECONDS = 5 * 60


def is_ready_result(value: Any) -> bool:
    """Cache only results that resolved successfully."""
    return getattr(value, "status", None) == "ready"


class RequestCoalescingCache(Generic[T]):
    """Bounded LRU + TTL cache with in-flight request deduplication."""

    def __init__(
        self,
        maxsize: int = DEFAULT_MAX_ENTRIES,
        ttl: float = DEFAULT_TTL_SECONDS,
        *,
        is_cacheable: Callable[[T], bool] = is_ready_result,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._in_flight: dict[Hashable, asyncio.Task[T]] = {}
        self._is_cacheable = is_cacheable

    def __len__(self) -> int:
        return len(self._entries)

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def get(self, key: Hashable) -> T | None:
        """Return the cached value for ``key`` if present and unexpired."""
        return self._entries.get(key)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    async def resolve(
        self,
        key: Hashable,
        factory: Callable[[], Awaitable[T]],
        *,
        is_cacheable: Callable[[T], bool] | None = None,
    ) -> T:
        """Return the value for ``key``, invoking ``factory`` at most once.

        Every caller that arrives while a resolution is running receives the
        same result (or the same exception). A caller being cancelled does
        not cancel the shared resolution. ``is_cacheable`` overrides the
        cache-wide rule for values produced by this call's ``factory``.
        """
        cached = self._entries.get(key)
        if cached is not None:
            logger.debug("Cache hit for %s", key)
            return cached

        task = self._in_flight.get(key)
        if task is None:
            logger.debug("Cache miss for %s, starting resolution", key)
            task = asyncio.ensure_future(self._run(key, factory, is_cacheable or self._is_cacheable))
            task.add_done_callback(_retrieve_exception)
            self._in_flight[key] = task
        else:
            logger.debug("Joining in-flight resolution for %s", key)

        return await asyncio.shield(task)

    async def _run(
        self,
        key: Hashable,
        factory: Callable[[], Awaitable[T]],
        is_cacheable: Callable[[T], bool],
    ) -> T:
        try:
            value = await factory()
            if is_cacheable(value):
                self._entries[key] = value
            else:
                logger.debug("Result for %s not cacheable, next caller will retry", key)
            return value
        finally:
            self._in_flight.pop(key, None)


def _retrieve_exception(task: asyncio.Task) -> None:
    # Every waiter may have been cancelled; mark the failure as seen so
    # asyncio does not report it as never retrieved.
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Shared resolution failed: %r", task.exception())
