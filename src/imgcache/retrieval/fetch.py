"""
Image fetcher.

Opens an HTTP response for an image URL and exposes its body as a lazy byte
stream that can be piped straight into the cache.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from imgcache.config import get_settings
from imgcache.exceptions import NetworkError
from imgcache.logging import get_logger

logger = get_logger(__name__)


@dataclass
class FetchResponse:
    """An open response for an image URL."""

    url: str
    status: int
    headers: dict[str, str]
    content_type: str
    stream: AsyncIterator[bytes]


def parse_content_type(value: str | None) -> str:
    """Strip parameters from a content-type header ("image/png; q=1" -> "image/png")."""
    if not value:
        return ""
    return value.split(";", 1)[0].strip().lower()


class ImageFetcher:
    """Fetches images over HTTP.

    Features:
    - Lazy httpx.AsyncClient with redirects, timeout and User-Agent
    - Retries of connection-level failures while opening the response
    - Size guard on the streamed body
    """

    def __init__(
        self,
        timeout: float | None = None,
        max_attempts: int | None = None,
        max_content_size: int | None = None,
        user_agent: str | None = None,
        retry_wait: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the fetcher.

        Unset arguments come from settings.

        Args:
            timeout: Request timeout in seconds.
            max_attempts: Attempts at opening a response before giving up.
            max_content_size: Largest body accepted, in bytes.
            user_agent: User-Agent header value.
            retry_wait: Multiplier for the exponential wait between attempts.
            transport: Custom httpx transport (tests use httpx.MockTransport).
        """
        settings = get_settings()
        self.timeout = timeout if timeout is not None else settings.FETCH_TIMEOUT
        self.max_attempts = max_attempts if max_attempts is not None else settings.FETCH_MAX_ATTEMPTS
        self.max_content_size = (
            max_content_size if max_content_size is not None else settings.MAX_CONTENT_SIZE
        )
        self.user_agent = user_agent or settings.USER_AGENT
        self.retry_wait = retry_wait
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": self.user_agent, "Accept": "image/*,*/*;q=0.8"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> ImageFetcher:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _open(self, url: str) -> httpx.Response:
        client = await self._get_client()

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_wait, max=10),
                reraise=True,
            ):
                with attempt:
                    request = client.build_request("GET", url)
                    return await client.send(request, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(
                "Fetch failed",
                {"url": url, "error": f"{type(e).__name__}: {e}"},
            ) from e

    @asynccontextmanager
    async def fetch(self, url: str) -> AsyncIterator[FetchResponse]:
        """Open url and yield its response.

        The body stream is only valid inside the context.

        Raises:
            NetworkError: On transport failure, a non-2xx status or a body
                larger than max_content_size.
        """
        response = await self._open(url)
        try:
            if not response.is_success:
                raise NetworkError(
                    "Unexpected HTTP status",
                    {"url": url, "status_code": response.status_code},
                )

            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > self.max_content_size:
                raise NetworkError(
                    "Response exceeds maximum size",
                    {"url": url, "size": int(declared), "limit": self.max_content_size},
                )

            logger.debug("Fetching image", url=url[:80], status=response.status_code)
            yield FetchResponse(
                url=url,
                status=response.status_code,
                headers=dict(response.headers),
                content_type=parse_content_type(response.headers.get("content-type")),
                stream=self._iter_body(url, response),
            )
        finally:
            await response.aclose()

    async def _iter_body(self, url: str, response: httpx.Response) -> AsyncIterator[bytes]:
        received = 0
        try:
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > self.max_content_size:
                    raise NetworkError(
                        "Response exceeds maximum size",
                        {"url": url, "limit": self.max_content_size},
                    )
                yield chunk
        except httpx.HTTPError as e:
            raise NetworkError(
                "Fetch failed while reading body",
                {"url": url, "error": f"{type(e).__name__}: {e}"},
            ) from e

    async def fetch_bytes(self, url: str) -> tuple[bytes, str]:
        """Fetch a whole image.

        Returns:
            Tuple of (body bytes, content type).
        """
        async with self.fetch(url) as response:
            parts = [chunk async for chunk in response.stream]
            return b"".join(parts), response.content_type
