"""
Request coalescing for cache misses.

When several consumers miss the cache for the same key at once, only the
first one starts the fetch-and-store producer. Every caller, the first
included, queues on the key's in-flight slot and receives the producer's
outcome, success or failure, in the order it arrived.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from imgcache.logging import get_logger
from imgcache.types import CacheKey

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class InFlightRequest(Generic[T]):
    """A running producer and the callers waiting on it."""

    key: CacheKey
    started_at: float
    waiters: list[asyncio.Future[T]] = field(default_factory=list)
    task: asyncio.Future[T] | None = None


def settle_waiters(
    waiters: list[asyncio.Future[Any]],
    result: Any = None,
    exc: BaseException | None = None,
) -> None:
    """Deliver one outcome to every pending waiter, in enqueue order.

    Waiters that were cancelled meanwhile are skipped. A cancelled producer
    cancels its waiters, since there is no result to hand them.
    """
    for waiter in waiters:
        if waiter.done():
            continue
        if exc is None:
            waiter.set_result(result)
        elif isinstance(exc, asyncio.CancelledError):
            waiter.cancel()
        else:
            waiter.set_exception(exc)


class RequestCoalescer(Generic[T]):
    """Guarantees at most one in-flight producer per key.

    The producer runs in its own task, so a caller that stops waiting (the
    first one included) never aborts a fetch the others are waiting on.
    The in-flight table belongs to the instance; independent caches use
    independent coalescers.
    """

    def __init__(self) -> None:
        self._in_flight: dict[CacheKey, InFlightRequest[T]] = {}

    def in_flight(self, key: CacheKey) -> bool:
        return key in self._in_flight

    def pending_keys(self) -> list[CacheKey]:
        return list(self._in_flight)

    def waiter_count(self, key: CacheKey) -> int:
        """Number of callers waiting on the running producer for key."""
        slot = self._in_flight.get(key)
        return len(slot.waiters) if slot else 0

    async def coalesce(self, key: CacheKey, producer: Callable[[], Awaitable[T]]) -> T:
        """Run producer for key unless one is already running, then share its outcome.

        Args:
            key: Cache key the producer fills.
            producer: Zero-argument coroutine function; called at most once
                per in-flight slot.

        Returns:
            The producer's result.

        Raises:
            Whatever the producer raised, re-raised in every coalesced caller.
            The slot is cleared either way, so the next call starts fresh.
        """
        loop = asyncio.get_running_loop()

        slot = self._in_flight.get(key)
        if slot is None:
            slot = InFlightRequest(
                key=key, started_at=loop.time(), task=asyncio.ensure_future(producer())
            )
            self._in_flight[key] = slot
            slot.task.add_done_callback(lambda task: self._settle(slot, task))
        else:
            logger.debug("Joined in-flight request", key=key[:12], waiters=len(slot.waiters) + 1)

        waiter: asyncio.Future[T] = loop.create_future()
        slot.waiters.append(waiter)
        return await waiter

    def _settle(self, slot: InFlightRequest[T], task: asyncio.Future[T]) -> None:
        # Removal and notification happen with no await in between: a new
        # caller either joined this slot already or will start a new one.
        if self._in_flight.get(slot.key) is slot:
            del self._in_flight[slot.key]

        if task.cancelled():
            exc: BaseException | None = asyncio.CancelledError()
        else:
            exc = task.exception()

        elapsed = asyncio.get_running_loop().time() - slot.started_at
        logger.debug(
            "Settled in-flight request",
            key=slot.key[:12],
            waiters=len(slot.waiters),
            failed=exc is not None,
            elapsed_s=round(elapsed, 3),
        )
        settle_waiters(slot.waiters, result=task.result() if exc is None else None, exc=exc)
