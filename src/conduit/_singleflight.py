"""Async single-flight cache.

Concurrent callers asking for the same key converge on one computation: the
first caller runs the factory, the rest await its Future. Successful values
are cached until :meth:`SingleFlight.clear`; failures are not cached.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

K = TypeVar("K")
T = TypeVar("T")


def consume_future_exception(fut: asyncio.Future[Any]) -> None:
    """Avoid 'Future exception was never retrieved' for coordination futures."""
    if fut.cancelled():
        return
    _ = fut.exception()


class SingleFlight(Generic[K, T]):
    """Keyed cache whose misses are computed at most once at a time."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._values: dict[K, T] = {}
        self._inflight: dict[K, asyncio.Future[T]] = {}

    def get(self, key: K) -> T | None:
        return self._values.get(key)

    def values(self) -> list[T]:
        return list(self._values.values())

    def clear(self) -> None:
        self._values.clear()

    async def do(self, key: K, work: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value for *key*, computing it once if missing."""
        cached = self._values.get(key)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._values.get(key)
            if cached is not None:
                return cached
            fut = self._inflight.get(key)
            creator = fut is None
            if fut is None:
                fut = asyncio.get_running_loop().create_future()
                fut.add_done_callback(consume_future_exception)
                self._inflight[key] = fut

        if not creator:
            return await asyncio.shield(fut)

        try:
            value = await work()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            raise
        else:
            self._values[key] = value
            fut.set_result(value)
            return value
        finally:
            async with self._lock:
                self._inflight.pop(key, None)
