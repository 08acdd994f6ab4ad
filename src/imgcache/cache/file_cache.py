"""
Blob storage backends.

- FileBlobStore: content stored as files under {blobs_dir}/{key[:2]}/{key}
  - Writes go to a temporary sibling and are renamed into place, so a
    partially written blob never shows up in exists()
  - Blocking filesystem calls run in a worker thread
- InMemoryBlobStore: dict-backed store for tests and throwaway caches
"""

from __future__ import annotations

import asyncio
import os
import re
from datetime import datetime
from pathlib import Path
from typing import IO, Any, AsyncIterable, AsyncIterator, Callable, TypeVar

from imgcache.cache.base import BlobStore
from imgcache.exceptions import InvalidInputError, NotFoundError, StorageError
from imgcache.logging import get_logger
from imgcache.types import BlobInfo, CacheKey, generate_id, utc_now

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

T = TypeVar("T")

_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]{0,254}$")


def _check_key(key: CacheKey) -> None:
    if not isinstance(key, str) or not _SAFE_KEY_RE.match(key):
        raise InvalidInputError("Invalid blob key", {"key": key})


class FileBlobStore(BlobStore):
    """Filesystem blob store.

    Uses the first 2 chars of the key as a subdirectory for better
    filesystem performance.
    """

    def __init__(self, blobs_dir: str | Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        """Initialize the store.

        Args:
            blobs_dir: Directory that holds the blob files.
            chunk_size: Size of the chunks yielded by read_stream().
        """
        self.blobs_dir = Path(blobs_dir)
        self.chunk_size = chunk_size

    def _get_blob_path(self, key: CacheKey) -> Path:
        _check_key(key)
        return self.blobs_dir / key[:2] / key

    async def _fs(self, key: CacheKey, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking filesystem call in a worker thread.

        OSError from the call is raised as StorageError.
        """
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except OSError as e:
            raise StorageError(
                f"Blob {operation} failed",
                {"key": key, "part": "blob", "operation": operation, "error": str(e)},
            ) from e

    async def exists(self, key: CacheKey) -> bool:
        path = self._get_blob_path(key)
        return await self._fs(key, "read", path.is_file)

    async def write_stream(
        self, key: CacheKey, chunks: AsyncIterable[bytes]
    ) -> BlobInfo:
        path = self._get_blob_path(key)
        tmp_path = path.with_name(f".{path.name}.{generate_id()}.tmp")
        size = 0

        await self._fs(key, "write", path.parent.mkdir, parents=True, exist_ok=True)
        handle: IO[bytes] | None = await self._fs(key, "write", open, tmp_path, "wb")

        try:
            async for chunk in chunks:
                await self._fs(key, "write", handle.write, chunk)
                size += len(chunk)

            await self._fs(key, "write", handle.close)
            handle = None
            await self._fs(key, "write", os.replace, tmp_path, path)
        except BaseException:
            # Storage, source or cancellation failures leave nothing behind
            await self._discard(handle, tmp_path)
            raise

        logger.debug("Stored blob", key=key[:12], size=size)
        return BlobInfo(key=key, size=size, stored_at=utc_now())

    async def _discard(self, handle: IO[bytes] | None, tmp_path: Path) -> None:
        if handle is not None:
            handle.close()
        try:
            await asyncio.to_thread(tmp_path.unlink, missing_ok=True)
        except OSError:
            logger.warning("Could not remove temporary blob", path=str(tmp_path))

    async def read_stream(self, key: CacheKey) -> AsyncIterator[bytes]:
        path = self._get_blob_path(key)
        try:
            handle = await asyncio.to_thread(open, path, "rb")
        except FileNotFoundError as e:
            raise NotFoundError("Blob not found", {"key": key, "part": "blob"}) from e
        except OSError as e:
            raise StorageError(
                "Blob read failed",
                {"key": key, "part": "blob", "operation": "read", "error": str(e)},
            ) from e

        try:
            while True:
                chunk = await self._fs(key, "read", handle.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()

    async def remove(self, key: CacheKey) -> None:
        path = self._get_blob_path(key)
        await self._fs(key, "remove", path.unlink, missing_ok=True)
        logger.debug("Removed blob", key=key[:12])


class InMemoryBlobStore(BlobStore):
    """Dict-backed blob store."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size
        self._blobs: dict[CacheKey, tuple[bytes, datetime]] = {}

    def __len__(self) -> int:
        return len(self._blobs)

    async def exists(self, key: CacheKey) -> bool:
        return key in self._blobs

    async def write_stream(
        self, key: CacheKey, chunks: AsyncIterable[bytes]
    ) -> BlobInfo:
        parts = [chunk async for chunk in chunks]
        data = b"".join(parts)
        stored_at = utc_now()
        self._blobs[key] = (data, stored_at)
        return BlobInfo(key=key, size=len(data), stored_at=stored_at)

    async def read_stream(self, key: CacheKey) -> AsyncIterator[bytes]:
        entry = self._blobs.get(key)
        if entry is None:
            raise NotFoundError("Blob not found", {"key": key, "part": "blob"})
        data = entry[0]
        for offset in range(0, len(data), self.chunk_size):
            yield data[offset : offset + self.chunk_size]

    async def remove(self, key: CacheKey) -> None:
        self._blobs.pop(key, None)
