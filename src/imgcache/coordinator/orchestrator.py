"""
Orchestrator wiring discovery, the cache, coalescing and handles together.

For every discovered element:
1. Skip it if it already points at a handle
2. If the image is cached, acquire a handle and bind it
3. Otherwise fetch and store it (coalesced per key), then acquire and bind
4. Release the handle once the element reports it is done with it

Failures are logged and passed to the error callback. The element then keeps
its original network reference.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Iterable

from imgcache.cache.store import ImageCache
from imgcache.coordinator.coalescer import RequestCoalescer
from imgcache.coordinator.discovery import ElementDiscovery, ImageElement
from imgcache.coordinator.handles import is_handle
from imgcache.exceptions import ImgCacheError, LifecycleMisuseError
from imgcache.logging import get_logger, log_context
from imgcache.retrieval.fetch import ImageFetcher
from imgcache.types import EntryMetadata

logger = get_logger(__name__)

ErrorCallback = Callable[[Exception, str], None]

# Response headers recorded next to the blob
KEPT_HEADERS = ("content-type", "content-length", "etag", "last-modified", "cache-control")


class ImageCacheOrchestrator:
    """Serves discovered images from the cache, fetching them on a miss."""

    def __init__(
        self,
        cache: ImageCache,
        fetcher: ImageFetcher,
        coalescer: RequestCoalescer[EntryMetadata | None] | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            cache: Cache to serve from and store into.
            fetcher: Fetcher used on a cache miss.
            coalescer: Coalescer for concurrent misses; a private one is
                created if omitted.
            on_error: Called with (error, url) for every failure.
        """
        self.cache = cache
        self.fetcher = fetcher
        self.coalescer = coalescer if coalescer is not None else RequestCoalescer()
        self.handles = cache.handles
        self.on_error = on_error
        self._discovery: ElementDiscovery | None = None
        self._tasks: set[asyncio.Task] = set()

    def attach(self, discovery: ElementDiscovery) -> None:
        """Process the elements already present and subscribe to new ones.

        Must be called from a running event loop.
        """
        self._discovery = discovery
        self.schedule(discovery.existing())
        discovery.on("added", self.schedule)
        discovery.on("changed", self.schedule)

    def detach(self) -> None:
        if self._discovery is not None:
            self._discovery.off("added", self.schedule)
            self._discovery.off("changed", self.schedule)
            self._discovery = None

    def schedule(self, elements: Iterable[ImageElement]) -> list[asyncio.Task]:
        """Start cache_image() for each element as a background task."""
        loop = asyncio.get_running_loop()
        tasks = []
        for element in elements:
            task = loop.create_task(self.cache_image(element))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def drain(self) -> None:
        """Wait until every scheduled task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Unsubscribe from discovery and wait for pending work."""
        self.detach()
        await self.drain()

    async def cache_images(self, elements: Iterable[ImageElement]) -> list[str | None]:
        """Process elements concurrently and return the bound handles."""
        return list(await asyncio.gather(*(self.cache_image(e) for e in elements)))

    async def cache_image(self, element: ImageElement) -> str | None:
        """Bind element to a cached copy of its image.

        Returns:
            The bound handle, or None if the element was skipped or failed.
        """
        ref = element.src
        if is_handle(ref):
            return None

        key = self.cache.key_for(ref)
        with log_context(operation="cache_image", cache_key=key):
            try:
                if not await self.cache.exists(ref):
                    await self.coalescer.coalesce(key, lambda: self._fetch_and_store(ref))
                handle = await self.cache.get_handle(ref)
            except Exception as exc:
                self._report(exc, ref)
                return None

            if element.src != ref:
                # Reference changed while we were working; the change event
                # schedules its own pass.
                self.handles.release(handle)
                logger.debug("Element changed before bind", url=ref[:80])
                return None

            element.bind(handle, self._releaser(handle, ref))
            logger.debug("Bound cached image", url=ref[:80])
            return handle

    async def _fetch_and_store(self, ref: str) -> EntryMetadata | None:
        # A previous coalesced fetch may have finished since exists() ran
        if await self.cache.exists(ref):
            return None

        async with self.fetcher.fetch(ref) as response:
            headers = {k: v for k, v in response.headers.items() if k.lower() in KEPT_HEADERS}
            return await self.cache.put_stream(
                ref, response.stream, response.content_type, headers=headers
            )

    def _releaser(self, handle: str, ref: str) -> Callable[[], None]:
        def release() -> None:
            try:
                self.handles.release(handle)
            except LifecycleMisuseError as exc:
                self._report(exc, ref)

        return release

    def _report(self, exc: Exception, ref: str) -> None:
        if isinstance(exc, ImgCacheError):
            logger.error("Caching image failed", url=ref[:80], error=str(exc))
        else:
            logger.exception("Unexpected error caching image", url=ref[:80])

        if self.on_error is not None:
            try:
                self.on_error(exc, ref)
            except Exception:
                logger.exception("Error callback failed", url=ref[:80])
