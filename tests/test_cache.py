"""
Tests for ImageCache: the composition of keys, blobs and metadata.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from imgcache.cache.file_cache import InMemoryBlobStore
from imgcache.cache.keys import derive_key
from imgcache.cache.kv_cache import InMemoryMetadataStore
from imgcache.cache.store import ImageCache
from imgcache.exceptions import InvalidInputError, NotFoundError, StorageError
from imgcache.types import DEFAULT_CONTENT_TYPE


TILE_URL = "http://tiles1.example.com/3/4/2"
PNG_URL = "http://example.com/images/logo.png"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class TestPutGet:
    """Round trips through put() and get()."""

    @pytest.mark.asyncio
    async def test_round_trip(self, memory_cache: ImageCache) -> None:
        await memory_cache.put(TILE_URL, PNG_BYTES, "image/png")
        image = await memory_cache.get(TILE_URL)

        assert image.data == PNG_BYTES
        assert image.content_type == "image/png"
        assert image.size == len(PNG_BYTES)

    @pytest.mark.asyncio
    async def test_put_returns_metadata(self, memory_cache: ImageCache) -> None:
        metadata = await memory_cache.put(
            TILE_URL, PNG_BYTES, "image/png", headers={"etag": '"v1"'}
        )

        assert metadata.key == derive_key(TILE_URL)
        assert metadata.size == len(PNG_BYTES)
        assert metadata.headers == {"etag": '"v1"'}

        stored = await memory_cache.get_metadata(TILE_URL)
        assert stored == metadata

    @pytest.mark.asyncio
    async def test_put_is_idempotent(self, memory_cache: ImageCache, blob_store: InMemoryBlobStore) -> None:
        await memory_cache.put(TILE_URL, PNG_BYTES, "image/png")
        await memory_cache.put(TILE_URL, PNG_BYTES, "image/png")

        assert len(blob_store) == 1
        image = await memory_cache.get(TILE_URL)
        assert image.data == PNG_BYTES

    @pytest.mark.asyncio
    async def test_overwrite_replaces_both_parts(self, memory_cache: ImageCache) -> None:
        await memory_cache.put(TILE_URL, b"old", "image/gif")
        await memory_cache.put(TILE_URL, b"new", "image/webp")

        image = await memory_cache.get(TILE_URL)
        assert image.data == b"new"
        assert image.content_type == "image/webp"

    @pytest.mark.asyncio
    async def test_extension_wins_over_metadata(
        self, memory_cache: ImageCache, metadata_store: InMemoryMetadataStore
    ) -> None:
        await memory_cache.put(PNG_URL, PNG_BYTES, "text/plain")

        with patch.object(metadata_store, "get", AsyncMock()) as meta_get:
            image = await memory_cache.get(PNG_URL)

        assert image.content_type == "image/png"
        meta_get.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_content_type_falls_back(self, memory_cache: ImageCache) -> None:
        await memory_cache.put(TILE_URL, PNG_BYTES, None)
        image = await memory_cache.get(TILE_URL)
        assert image.content_type == DEFAULT_CONTENT_TYPE

    @pytest.mark.asyncio
    async def test_get_missing_raises_not_found(self, memory_cache: ImageCache) -> None:
        with pytest.raises(NotFoundError):
            await memory_cache.get(TILE_URL)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", ["text", None, 42, [1, 2]])
    async def test_put_rejects_non_bytes(
        self, memory_cache: ImageCache, blob_store: InMemoryBlobStore, payload: object
    ) -> None:
        with pytest.raises(InvalidInputError):
            await memory_cache.put(TILE_URL, payload, "image/png")  # type: ignore[arg-type]
        assert len(blob_store) == 0

    @pytest.mark.asyncio
    async def test_put_rejects_non_string_content_type(self, memory_cache: ImageCache) -> None:
        with pytest.raises(InvalidInputError):
            await memory_cache.put(TILE_URL, PNG_BYTES, 123)  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_read_stream(self, memory_cache: ImageCache) -> None:
        await memory_cache.put(TILE_URL, PNG_BYTES, "image/png")
        parts = [chunk async for chunk in memory_cache.read_stream(TILE_URL)]

        # blob_store fixture uses 16 byte chunks
        assert len(parts) > 1
        assert b"".join(parts) == PNG_BYTES


class TestExists:
    """exists() and numbered subdomains."""

    @pytest.mark.asyncio
    async def test_numbered_subdomains_share_entry(self, memory_cache: ImageCache) -> None:
        await memory_cache.put("http://tiles1.example.com/a.png", PNG_BYTES, "image/png")

        assert await memory_cache.exists("http://tiles2.example.com/a.png")
        assert not await memory_cache.exists("http://tiles1.example.com/b.png")

    @pytest.mark.asyncio
    async def test_exists_ignores_metadata(
        self, memory_cache: ImageCache, metadata_store: InMemoryMetadataStore
    ) -> None:
        await memory_cache.put(TILE_URL, PNG_BYTES, "image/png")
        await metadata_store.delete(f"meta!{derive_key(TILE_URL)}")

        assert await memory_cache.exists(TILE_URL)


class TestPartialFailures:
    """Behaviour when one of the two stores fails."""

    @pytest.mark.asyncio
    async def test_metadata_write_failure_keeps_blob(
        self, memory_cache: ImageCache, metadata_store: InMemoryMetadataStore
    ) -> None:
        failing_put = AsyncMock(side_effect=StorageError("disk full"))

        with patch.object(metadata_store, "put", failing_put):
            with pytest.raises(StorageError) as exc_info:
                await memory_cache.put(TILE_URL, PNG_BYTES, "image/gif")

        assert exc_info.value.context["part"] == "metadata"
        assert exc_info.value.context["key"] == derive_key(TILE_URL)
        assert await memory_cache.exists(TILE_URL)

        # No metadata was stored, so the content type falls back
        image = await memory_cache.get(TILE_URL)
        assert image.data == PNG_BYTES
        assert image.content_type == DEFAULT_CONTENT_TYPE

    @pytest.mark.asyncio
    async def test_metadata_read_failure_uses_fallback(
        self, memory_cache: ImageCache, metadata_store: InMemoryMetadataStore
    ) -> None:
        await memory_cache.put(TILE_URL, PNG_BYTES, "image/gif")

        with patch.object(metadata_store, "get", AsyncMock(side_effect=StorageError("corrupt"))):
            image = await memory_cache.get(TILE_URL)

        assert image.data == PNG_BYTES
        assert image.content_type == DEFAULT_CONTENT_TYPE

    @pytest.mark.asyncio
    async def test_metadata_read_failure_with_extension(
        self, memory_cache: ImageCache, metadata_store: InMemoryMetadataStore
    ) -> None:
        await memory_cache.put(PNG_URL, PNG_BYTES, "image/png")

        with patch.object(metadata_store, "get", AsyncMock(side_effect=StorageError("corrupt"))):
            image = await memory_cache.get(PNG_URL)

        assert image.content_type == "image/png"

    @pytest.mark.asyncio
    async def test_remove_deletes_both_parts(
        self, memory_cache: ImageCache, blob_store: InMemoryBlobStore, metadata_store: InMemoryMetadataStore
    ) -> None:
        await memory_cache.put(TILE_URL, PNG_BYTES, "image/png")
        await memory_cache.remove(TILE_URL)

        assert not await memory_cache.exists(TILE_URL)
        assert len(blob_store) == 0
        assert len(metadata_store) == 0

    @pytest.mark.asyncio
    async def test_remove_missing_is_not_an_error(self, memory_cache: ImageCache) -> None:
        await memory_cache.remove(TILE_URL)

    @pytest.mark.asyncio
    async def test_remove_blob_failure_still_deletes_metadata(
        self, memory_cache: ImageCache, blob_store: InMemoryBlobStore, metadata_store: InMemoryMetadataStore
    ) -> None:
        await memory_cache.put(TILE_URL, PNG_BYTES, "image/png")

        with patch.object(blob_store, "remove", AsyncMock(side_effect=StorageError("busy"))):
            with pytest.raises(StorageError) as exc_info:
                await memory_cache.remove(TILE_URL)

        assert exc_info.value.context["part"] == "blob"
        assert len(metadata_store) == 0
        assert await memory_cache.exists(TILE_URL)

    @pytest.mark.asyncio
    async def test_remove_metadata_failure_reports_part(
        self, memory_cache: ImageCache, metadata_store: InMemoryMetadataStore
    ) -> None:
        await memory_cache.put(TILE_URL, PNG_BYTES, "image/png")

        with patch.object(metadata_store, "delete", AsyncMock(side_effect=StorageError("locked"))):
            with pytest.raises(StorageError) as exc_info:
                await memory_cache.remove(TILE_URL)

        assert exc_info.value.context["part"] == "metadata"
        assert not await memory_cache.exists(TILE_URL)

    @pytest.mark.asyncio
    async def test_remove_both_failing_raises_first(
        self, memory_cache: ImageCache, blob_store: InMemoryBlobStore, metadata_store: InMemoryMetadataStore
    ) -> None:
        with patch.object(blob_store, "remove", AsyncMock(side_effect=StorageError("blob"))), \
                patch.object(metadata_store, "delete", AsyncMock(side_effect=StorageError("meta"))) as delete:
            with pytest.raises(StorageError) as exc_info:
                await memory_cache.remove(TILE_URL)

        assert exc_info.value.message == "blob"
        delete.assert_awaited_once()


class TestHandles:
    """get_handle() through the cache."""

    @pytest.mark.asyncio
    async def test_get_handle_for_missing_entry(self, memory_cache: ImageCache) -> None:
        with pytest.raises(NotFoundError):
            await memory_cache.get_handle(TILE_URL)

    @pytest.mark.asyncio
    async def test_get_handle_resolves_to_bytes(self, memory_cache: ImageCache) -> None:
        await memory_cache.put(TILE_URL, PNG_BYTES, "image/png")
        handle = await memory_cache.get_handle(TILE_URL)

        assert handle.startswith("blob:imgcache/")
        image = memory_cache.handles.resolve(handle)
        assert image.data == PNG_BYTES
        assert image.content_type == "image/png"

    @pytest.mark.asyncio
    async def test_numbered_subdomains_share_handle(self, memory_cache: ImageCache) -> None:
        await memory_cache.put("http://tiles1.example.com/a.png", PNG_BYTES, "image/png")

        h1 = await memory_cache.get_handle("http://tiles1.example.com/a.png")
        h2 = await memory_cache.get_handle("http://tiles2.example.com/a.png")

        assert h1 == h2
        assert memory_cache.handles.refcount(derive_key("http://tiles1.example.com/a.png")) == 2


class TestCustomKeys:
    """key_fn and metadata_prefix options."""

    @pytest.mark.asyncio
    async def test_custom_key_fn(self, metadata_store: InMemoryMetadataStore) -> None:
        blobs = InMemoryBlobStore()
        cache = ImageCache(blobs, metadata_store, key_fn=lambda url: url.rsplit("/", 1)[-1])

        await cache.put("http://a.example.com/tile42", PNG_BYTES, "image/png")

        assert cache.key_for("http://b.example.com/tile42") == "tile42"
        assert await cache.exists("http://b.example.com/tile42")
        assert await metadata_store.get("meta!tile42") is not None

    @pytest.mark.asyncio
    async def test_non_callable_key_fn_ignored(self, metadata_store: InMemoryMetadataStore) -> None:
        cache = ImageCache(InMemoryBlobStore(), metadata_store, key_fn="nope")  # type: ignore[arg-type]
        assert cache.key_for(TILE_URL) == derive_key(TILE_URL)

    @pytest.mark.asyncio
    async def test_metadata_prefix(self, metadata_store: InMemoryMetadataStore) -> None:
        cache = ImageCache(InMemoryBlobStore(), metadata_store, metadata_prefix="img:")
        await cache.put(TILE_URL, PNG_BYTES, "image/png")

        assert await metadata_store.get(f"img:{derive_key(TILE_URL)}") is not None


class TestFileBackedCache:
    """ImageCache over FileBlobStore and SQLiteMetadataStore."""

    @pytest.mark.asyncio
    async def test_round_trip(self, file_cache: ImageCache) -> None:
        await file_cache.put(TILE_URL, PNG_BYTES, "image/png", headers={"etag": "abc"})

        image = await file_cache.get(TILE_URL)
        assert image.data == PNG_BYTES
        assert image.content_type == "image/png"

        metadata = await file_cache.get_metadata(TILE_URL)
        assert metadata is not None
        assert metadata.headers == {"etag": "abc"}

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, temp_dir: Path) -> None:
        async with await ImageCache.open_dir(temp_dir / "persist") as cache:
            await cache.put(TILE_URL, PNG_BYTES, "image/webp")

        async with await ImageCache.open_dir(temp_dir / "persist") as cache:
            assert await cache.exists("http://tiles9.example.com/3/4/2")
            image = await cache.get(TILE_URL)

        assert image.content_type == "image/webp"
        assert (temp_dir / "persist" / "metadata.db").exists()

    @pytest.mark.asyncio
    async def test_remove(self, file_cache: ImageCache) -> None:
        await file_cache.put(TILE_URL, PNG_BYTES, "image/png")
        await file_cache.remove(TILE_URL)

        assert not await file_cache.exists(TILE_URL)
        assert await file_cache.get_metadata(TILE_URL) is None
