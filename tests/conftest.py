"""
Pytest configuration and fixtures for image cache tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator, Callable, Generator
from unittest.mock import patch

import httpx
import pytest

from imgcache.cache.file_cache import InMemoryBlobStore
from imgcache.cache.kv_cache import InMemoryMetadataStore
from imgcache.cache.store import ImageCache
from imgcache.config import Settings, clear_settings_cache
from imgcache.coordinator.handles import HandleLifecycle, ObjectURLRegistry

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars(temp_dir: Path) -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "CACHE_DIR": str(temp_dir / "cache"),
        "METADATA_KEY_PREFIX": "meta!",
        "FETCH_TIMEOUT": "5.0",
        "FETCH_MAX_ATTEMPTS": "1",
        "MAX_CONTENT_SIZE": "1048576",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Generator[Settings, None, None]:
    """Provide a Settings instance with mock configuration."""
    clear_settings_cache()
    from imgcache.config import get_settings

    settings = get_settings()
    settings.ensure_directories()
    yield settings
    clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore(chunk_size=16)


@pytest.fixture
def metadata_store() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest.fixture
def registry() -> ObjectURLRegistry:
    return ObjectURLRegistry()


@pytest.fixture
def handles(registry: ObjectURLRegistry) -> HandleLifecycle:
    return HandleLifecycle(registry)


@pytest.fixture
def memory_cache(
    blob_store: InMemoryBlobStore,
    metadata_store: InMemoryMetadataStore,
    handles: HandleLifecycle,
) -> ImageCache:
    """An ImageCache over in-memory stores."""
    return ImageCache(blob_store, metadata_store, handles=handles)


@pytest.fixture
async def file_cache(temp_dir: Path) -> AsyncGenerator[ImageCache, None]:
    """An ImageCache over the filesystem and SQLite."""
    cache = await ImageCache.open_dir(temp_dir / "cache")
    yield cache
    await cache.close()


@pytest.fixture
def image_server() -> Callable[..., tuple[httpx.MockTransport, list[str]]]:
    """Build a mock HTTP transport serving images.

    Returns a factory taking the response body, status, content type and an
    optional asyncio.Event the handler waits on before answering. The
    factory returns (transport, requested_urls).
    """

    def factory(
        body: bytes = PNG_BYTES,
        status: int = 200,
        content_type: str = "image/png",
        gate=None,
    ) -> tuple[httpx.MockTransport, list[str]]:
        requested: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            if gate is not None:
                await gate.wait()
            return httpx.Response(status, content=body, headers={"content-type": content_type})

        return httpx.MockTransport(handler), requested

    return factory
