"""
Base classes for the two stores behind the cache.

- BlobStore: raw image bytes by key, with streaming read/write
- MetadataStore: small JSON-serializable records by key

The cache treats them as independently failable; reconciling the two is
ImageCache's job, not the backends'.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterable, AsyncIterator

from imgcache.types import BlobInfo, CacheKey


class BlobStore(ABC):
    """Abstract interface for blob storage backends."""

    @abstractmethod
    async def exists(self, key: CacheKey) -> bool:
        """Check if a completely written blob exists for key."""
        ...

    @abstractmethod
    async def write_stream(
        self, key: CacheKey, chunks: AsyncIterable[bytes]
    ) -> BlobInfo:
        """Consume chunks and store them under key.

        The blob must not be visible to exists() or read_stream() until the
        whole sequence has been written.

        Raises:
            StorageError: If the backend write fails.
        """
        ...

    @abstractmethod
    def read_stream(self, key: CacheKey) -> AsyncIterator[bytes]:
        """Return a lazy, single-use iterator over the blob's bytes.

        Raises:
            NotFoundError: If no blob exists for key (on first iteration).
            StorageError: If the backend read fails.
        """
        ...

    @abstractmethod
    async def remove(self, key: CacheKey) -> None:
        """Remove the blob for key. Removing a missing blob is not an error.

        Raises:
            StorageError: If the backend delete fails.
        """
        ...

    async def write(self, key: CacheKey, data: bytes) -> BlobInfo:
        """Store a complete payload."""
        return await self.write_stream(key, iter_bytes(data))

    async def close(self) -> None:
        """Release backend resources."""
        return None


class MetadataStore(ABC):
    """Abstract interface for metadata storage backends."""

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Get the record for key, or None if absent."""
        ...

    @abstractmethod
    async def put(self, key: str, value: dict[str, Any]) -> None:
        """Store a record, replacing any existing one."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete the record for key. Returns whether one existed."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None


async def iter_bytes(data: bytes) -> AsyncIterator[bytes]:
    """Wrap a complete payload as a one-chunk stream."""
    yield data
