"""
Custom exception hierarchy for the image cache.

All exceptions inherit from ImgCacheError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class ImgCacheError(Exception):
    """Base exception for all image cache errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(ImgCacheError):
    """Raised when configuration is invalid or missing."""

    pass


class NotFoundError(ImgCacheError):
    """Raised when a blob, metadata record or handle does not exist.

    Context should include:
        - key: The cache key that was looked up
        - part: "blob", "metadata" or "handle"
    """

    pass


class StorageError(ImgCacheError):
    """Raised when a storage backend read, write or delete fails.

    Context should include:
        - key: The cache key being operated on
        - part: "blob" or "metadata"
        - operation: "read", "write" or "remove"
    """

    pass


class NetworkError(ImgCacheError):
    """Raised when fetching an image over the network fails.

    Context should include:
        - url: The URL that was being fetched
        - status_code: HTTP status code if applicable
    """

    pass


class InvalidInputError(ImgCacheError):
    """Raised when an operation receives a malformed argument.

    Examples:
        - put() called with a payload that is not bytes
    """

    pass


class LifecycleMisuseError(ImgCacheError):
    """Raised when a handle is released without a matching acquire.

    Covers double release, release of a revoked handle and release of a
    value that was never issued.
    """

    pass
