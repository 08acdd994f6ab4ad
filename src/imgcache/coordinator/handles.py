"""
Reference-counted handles over cached image bytes.

A handle is an object URL (``blob:imgcache/<id>``) naming bytes held in an
ObjectURLRegistry. Consumers borrow handles; HandleLifecycle alone decides
when one is revoked, which happens as soon as the last borrower releases it.

All table mutations happen between suspension points, so the event loop
never observes a count that is half-updated.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from imgcache.coordinator.coalescer import settle_waiters
from imgcache.exceptions import LifecycleMisuseError, NotFoundError
from imgcache.logging import get_logger
from imgcache.types import CachedImage, CacheKey, generate_id

logger = get_logger(__name__)

HANDLE_SCHEME = "blob:"
HANDLE_PREFIX = f"{HANDLE_SCHEME}imgcache/"

ImageLoader = Callable[[], Awaitable[CachedImage]]


def is_handle(ref: str) -> bool:
    """Check whether a reference already points at cached bytes."""
    return ref[: len(HANDLE_SCHEME)].lower() == HANDLE_SCHEME


class ObjectURLRegistry:
    """In-process equivalent of URL.createObjectURL / URL.revokeObjectURL."""

    def __init__(self) -> None:
        self._objects: dict[str, CachedImage] = {}

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, url: object) -> bool:
        return url in self._objects

    def create_object_url(self, image: CachedImage) -> str:
        url = f"{HANDLE_PREFIX}{generate_id()}"
        self._objects[url] = image
        return url

    def revoke_object_url(self, url: str) -> None:
        """Drop the bytes behind url. Unknown URLs are ignored."""
        self._objects.pop(url, None)

    def resolve(self, url: str) -> CachedImage | None:
        return self._objects.get(url)


@dataclass
class _LiveHandle:
    key: CacheKey
    url: str
    refcount: int


@dataclass
class _PendingHandle:
    key: CacheKey
    waiters: list[asyncio.Future[str]] = field(default_factory=list)
    task: asyncio.Future[CachedImage] | None = None


class HandleLifecycle:
    """Issues handles and reference-counts them across concurrent consumers.

    Usage:
        handle = await lifecycle.acquire(key, loader)
        ...  # bind to a consumer
        lifecycle.release(handle)  # once the consumer is done with it
    """

    def __init__(self, registry: ObjectURLRegistry | None = None) -> None:
        self.registry = registry if registry is not None else ObjectURLRegistry()
        self._live: dict[CacheKey, _LiveHandle] = {}
        self._by_url: dict[str, _LiveHandle] = {}
        self._pending: dict[CacheKey, _PendingHandle] = {}

    async def acquire(self, key: CacheKey, loader: ImageLoader) -> str:
        """Get a handle for key, creating it from loader() if none is live.

        Concurrent acquires for a key whose handle is still being created
        wait for that creation and share its handle. The loader runs in its
        own task, so cancelling one acquirer leaves the others unaffected.

        Raises:
            Whatever loader() raises; every concurrent acquirer for the key
            receives the same error and no handle is created.
        """
        live = self._live.get(key)
        if live is not None:
            live.refcount += 1
            return live.url

        pending = self._pending.get(key)
        if pending is None:
            pending = _PendingHandle(key, task=asyncio.ensure_future(loader()))
            self._pending[key] = pending
            pending.task.add_done_callback(lambda task: self._create(pending, task))

        return await self._join(pending)

    def _create(self, pending: _PendingHandle, task: asyncio.Future[CachedImage]) -> None:
        del self._pending[pending.key]

        if task.cancelled():
            settle_waiters(pending.waiters, exc=asyncio.CancelledError())
            return
        exc = task.exception()
        if exc is not None:
            settle_waiters(pending.waiters, exc=exc)
            return

        waiters = [w for w in pending.waiters if not w.done()]
        if not waiters:
            logger.debug("Every acquirer gave up, no handle created", key=pending.key[:12])
            return

        url = self.registry.create_object_url(task.result())
        live = _LiveHandle(key=pending.key, url=url, refcount=len(waiters))
        self._live[pending.key] = live
        self._by_url[url] = live
        for waiter in waiters:
            waiter.set_result(url)

        logger.debug("Created handle", key=pending.key[:12], refcount=live.refcount)

    async def _join(self, pending: _PendingHandle) -> str:
        waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        pending.waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            # Counted already but the caller will never see the handle
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                self.release(waiter.result())
            raise

    def release(self, handle: str) -> None:
        """Drop one reference; revoke the handle when none remain.

        Raises:
            LifecycleMisuseError: If handle is not live (never issued,
                already revoked, or released more times than acquired).
        """
        live = self._by_url.get(handle)
        if live is None:
            raise LifecycleMisuseError(
                "Release of a handle that is not live", {"handle": handle}
            )

        live.refcount -= 1
        if live.refcount == 0:
            del self._live[live.key]
            del self._by_url[handle]
            self.registry.revoke_object_url(handle)
            logger.debug("Revoked handle", key=live.key[:12])

    def resolve(self, handle: str) -> CachedImage:
        """Read the bytes behind a live handle.

        Raises:
            NotFoundError: If the handle has been revoked or never existed.
        """
        image = self.registry.resolve(handle) if handle in self._by_url else None
        if image is None:
            raise NotFoundError("Handle is not live", {"handle": handle, "part": "handle"})
        return image

    def refcount(self, key: CacheKey) -> int:
        live = self._live.get(key)
        return live.refcount if live else 0

    def live_handles(self) -> dict[str, int]:
        """Map of live handle -> reference count."""
        return {url: live.refcount for url, live in self._by_url.items()}

    def revoke_all(self) -> int:
        """Revoke every live handle regardless of count (shutdown path).

        Returns:
            Number of handles revoked.
        """
        leaked = list(self._by_url.values())
        for live in leaked:
            logger.warning(
                "Revoking handle still in use",
                key=live.key[:12],
                refcount=live.refcount,
            )
            self.registry.revoke_object_url(live.url)
        self._live.clear()
        self._by_url.clear()
        return len(leaked)
