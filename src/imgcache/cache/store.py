"""
Image cache composing key derivation, blob storage and metadata storage.

Consistency policy for the two stores:
- put writes the blob first and the metadata second. If the metadata write
  fails the blob stays stored and the error is raised to the caller.
- Readers tolerate a blob without metadata: the content type then comes
  from the URL extension, or falls back to application/octet-stream.
- remove always attempts both deletes and raises the first failure.
- exists() looks at the blob store only.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, Callable

from imgcache.cache.base import BlobStore, MetadataStore, iter_bytes
from imgcache.cache.content_types import guess_content_type
from imgcache.cache.file_cache import FileBlobStore
from imgcache.cache.keys import derive_key
from imgcache.cache.kv_cache import SQLiteMetadataStore
from imgcache.config import Settings, get_settings
from imgcache.coordinator.handles import HandleLifecycle
from imgcache.exceptions import InvalidInputError, NotFoundError, StorageError
from imgcache.logging import get_logger, log_context
from imgcache.types import (
    DEFAULT_CONTENT_TYPE,
    CachedImage,
    CacheKey,
    EntryMetadata,
)

logger = get_logger(__name__)

DEFAULT_METADATA_PREFIX = "meta!"


class ImageCache:
    """Get/put/remove/exists and handle issuing for cached images.

    Every operation takes a resource reference (the image URL) and derives
    the cache key itself.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        metadata_store: MetadataStore,
        handles: HandleLifecycle | None = None,
        key_fn: Callable[[str], CacheKey] | None = None,
        metadata_prefix: str = DEFAULT_METADATA_PREFIX,
    ) -> None:
        """Initialize the cache.

        Args:
            blob_store: Backend for image bytes.
            metadata_store: Backend for content type and header records.
            handles: Handle lifecycle to issue handles from. A private one
                is created if omitted.
            key_fn: Replaces derive_key() for mapping URLs to keys.
            metadata_prefix: Prefix for metadata keys.
        """
        self.blob_store = blob_store
        self.metadata_store = metadata_store
        self.handles = handles if handles is not None else HandleLifecycle()
        self._key_fn = key_fn if callable(key_fn) else derive_key
        self._metadata_prefix = metadata_prefix

    @classmethod
    async def open(
        cls,
        settings: Settings | None = None,
        handles: HandleLifecycle | None = None,
    ) -> ImageCache:
        """Open the filesystem + SQLite cache described by settings."""
        settings = settings if settings is not None else get_settings()
        settings.ensure_directories()

        metadata_store = SQLiteMetadataStore(settings.metadata_db_path)
        await metadata_store.init()

        return cls(
            blob_store=FileBlobStore(settings.blobs_dir),
            metadata_store=metadata_store,
            handles=handles,
            metadata_prefix=settings.METADATA_KEY_PREFIX,
        )

    @classmethod
    async def open_dir(cls, cache_dir: str | Path) -> ImageCache:
        """Open a filesystem + SQLite cache rooted at cache_dir."""
        return await cls.open(Settings(CACHE_DIR=Path(cache_dir)))

    async def close(self) -> None:
        """Close both stores."""
        await self.blob_store.close()
        await self.metadata_store.close()

    async def __aenter__(self) -> ImageCache:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def key_for(self, ref: str) -> CacheKey:
        """Cache key for a resource reference."""
        return self._key_fn(ref)

    def _meta_key(self, key: CacheKey) -> str:
        return f"{self._metadata_prefix}{key}"

    async def exists(self, ref: str) -> bool:
        """Check if a blob is stored for ref. Metadata is not consulted."""
        return await self.blob_store.exists(self.key_for(ref))

    def read_stream(self, ref: str) -> AsyncIterator[bytes]:
        """Stream the stored bytes for ref.

        Raises:
            NotFoundError: If nothing is stored for ref.
        """
        return self.blob_store.read_stream(self.key_for(ref))

    async def get_metadata(self, ref: str) -> EntryMetadata | None:
        """Get the stored metadata record for ref, if any."""
        record = await self.metadata_store.get(self._meta_key(self.key_for(ref)))
        return EntryMetadata.from_record(record) if record else None

    async def get(self, ref: str) -> CachedImage:
        """Read a cached image and resolve its content type.

        The URL extension wins over stored metadata; stored metadata is
        only read when the extension gives no answer.

        Raises:
            NotFoundError: If nothing is stored for ref.
        """
        key = self.key_for(ref)

        with log_context(operation="get", cache_key=key):
            parts = [chunk async for chunk in self.blob_store.read_stream(key)]
            data = b"".join(parts)

            content_type = guess_content_type(ref)
            if content_type is None:
                content_type = await self._stored_content_type(key)

        return CachedImage(data=data, content_type=content_type or DEFAULT_CONTENT_TYPE)

    async def _stored_content_type(self, key: CacheKey) -> str | None:
        try:
            record = await self.metadata_store.get(self._meta_key(key))
        except StorageError as e:
            logger.warning("Metadata unreadable, using fallback content type", error=str(e))
            return None

        if record is None:
            logger.debug("No metadata stored for blob")
            return None
        return record.get("content_type") or None

    async def put(
        self,
        ref: str,
        data: bytes,
        content_type: str | None,
        headers: dict[str, str] | None = None,
    ) -> EntryMetadata:
        """Store a complete image payload.

        Raises:
            InvalidInputError: If data is not a bytes-like payload.
            StorageError: If either write fails. A metadata failure leaves
                the blob stored.
        """
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise InvalidInputError(
                "Expected a bytes payload",
                {"url": ref, "type": type(data).__name__},
            )
        return await self.put_stream(ref, iter_bytes(bytes(data)), content_type, headers)

    async def put_stream(
        self,
        ref: str,
        chunks: AsyncIterable[bytes],
        content_type: str | None,
        headers: dict[str, str] | None = None,
    ) -> EntryMetadata:
        """Store an image from a byte stream (e.g. a network response body).

        Returns:
            Blob stats merged with the content type.
        """
        if content_type is not None and not isinstance(content_type, str):
            raise InvalidInputError(
                "Content type must be a string",
                {"url": ref, "type": type(content_type).__name__},
            )

        key = self.key_for(ref)

        with log_context(operation="put", cache_key=key):
            blob = await self.blob_store.write_stream(key, chunks)
            metadata = EntryMetadata.from_blob(blob, content_type or "", headers)

            try:
                await self.metadata_store.put(self._meta_key(key), metadata.to_record())
            except StorageError as e:
                e.context.setdefault("key", key)
                e.context.setdefault("part", "metadata")
                logger.error("Metadata write failed, blob kept", url=ref[:80], error=str(e))
                raise

            logger.info(
                "Cached image",
                url=ref[:80],
                size=metadata.size,
                content_type=metadata.content_type,
            )

        return metadata

    async def remove(self, ref: str) -> None:
        """Remove the blob and the metadata for ref.

        Both deletes are attempted even if the first fails.

        Raises:
            StorageError: The first failure, with context["part"] naming
                the store that failed.
        """
        key = self.key_for(ref)
        errors: list[StorageError] = []

        with log_context(operation="remove", cache_key=key):
            try:
                await self.blob_store.remove(key)
            except StorageError as e:
                e.context.setdefault("part", "blob")
                errors.append(e)

            try:
                await self.metadata_store.delete(self._meta_key(key))
            except StorageError as e:
                e.context.setdefault("part", "metadata")
                errors.append(e)

            if errors:
                for error in errors:
                    logger.error("Remove failed", url=ref[:80], error=str(error))
                raise errors[0]

            logger.info("Removed image", url=ref[:80])

    async def get_handle(self, ref: str) -> str:
        """Get a handle to the cached image for ref.

        Raises:
            NotFoundError: If nothing is stored for ref.
        """
        key = self.key_for(ref)
        if not await self.blob_store.exists(key):
            raise NotFoundError("Image is not cached", {"url": ref, "key": key})

        return await self.handles.acquire(key, lambda: self.get(ref))
