"""
Core types for the image cache.

This module defines the data structures shared by the stores, the cache and
the coordinator:
- CacheKey alias for the hex digest that indexes both stores
- Frozen dataclasses for stored state (BlobInfo, EntryMetadata, CachedImage)
- Helper functions for ID generation and timestamps
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from uuid6 import uuid7

# Lowercase hex SHA-256 of a canonical URL
CacheKey = str

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def generate_id(prefix: str = "") -> str:
    """Generate a time-ordered unique ID using UUID7.

    Args:
        prefix: Optional prefix for the ID (e.g., "h" for handles).

    Returns:
        A unique ID string, optionally prefixed.
    """
    uid = str(uuid7())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BlobInfo:
    """Stats reported by a blob store once a write completes."""

    key: CacheKey
    size: int
    stored_at: datetime


@dataclass(frozen=True)
class EntryMetadata:
    """Metadata recorded next to a blob.

    Blob stats merged with the content type (and any response headers kept)
    at put time. Serialized as a plain JSON object in the metadata store.
    """

    key: CacheKey
    size: int
    content_type: str
    stored_at: datetime
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_blob(
        cls,
        blob: BlobInfo,
        content_type: str,
        headers: dict[str, str] | None = None,
    ) -> EntryMetadata:
        """Merge blob store stats with the content type."""
        return cls(
            key=blob.key,
            size=blob.size,
            content_type=content_type,
            stored_at=blob.stored_at,
            headers=dict(headers or {}),
        )

    def to_record(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict for the metadata store."""
        return {
            "key": self.key,
            "size": self.size,
            "content_type": self.content_type,
            "stored_at": self.stored_at.isoformat(),
            "headers": self.headers,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> EntryMetadata:
        """Rebuild from a metadata store record."""
        return cls(
            key=record["key"],
            size=int(record.get("size", 0)),
            content_type=record.get("content_type") or "",
            stored_at=datetime.fromisoformat(record["stored_at"]),
            headers=dict(record.get("headers") or {}),
        )


@dataclass(frozen=True)
class CachedImage:
    """Bytes and resolved content type read back from the cache."""

    data: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.data)
