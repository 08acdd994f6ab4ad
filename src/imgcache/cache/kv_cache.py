"""
Key-value metadata stores.

- SQLiteMetadataStore: Async SQLite-backed store using aiosqlite
  - orjson serialization for record values
  - Single table keyed by the (prefixed) cache key
- InMemoryMetadataStore: Simple dict-based store for testing
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import aiosqlite
import orjson

from imgcache.cache.base import MetadataStore
from imgcache.exceptions import StorageError
from imgcache.logging import get_logger
from imgcache.types import utc_now

logger = get_logger(__name__)


class SQLiteMetadataStore(MetadataStore):
    """Metadata records in a SQLite database.

    Call init() before use and close() when done.
    """

    def __init__(self, db_path: str | Path) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Open the database and create the schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._db = await aiosqlite.connect(self.db_path)
            self._db.row_factory = aiosqlite.Row

            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                "Could not open metadata database",
                {"path": str(self.db_path), "error": str(e)},
            ) from e

        logger.info("Metadata store initialized", db_path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("SQLiteMetadataStore not initialized. Call init() first.")
        return self._db

    async def get(self, key: str) -> dict[str, Any] | None:
        db = self._conn()
        try:
            async with db.execute(
                "SELECT value FROM metadata WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(
                "Metadata read failed",
                {"key": key, "part": "metadata", "operation": "read", "error": str(e)},
            ) from e

        if not row:
            return None

        try:
            return orjson.loads(row["value"])
        except orjson.JSONDecodeError as e:
            raise StorageError(
                "Corrupt metadata record",
                {"key": key, "part": "metadata", "operation": "read"},
            ) from e

    async def put(self, key: str, value: dict[str, Any]) -> None:
        db = self._conn()
        try:
            payload = orjson.dumps(value).decode("utf-8")
        except TypeError as e:
            raise StorageError(
                "Metadata is not JSON-serializable",
                {"key": key, "part": "metadata", "operation": "write"},
            ) from e

        try:
            await db.execute(
                """
                INSERT INTO metadata (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, payload, utc_now().isoformat()),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                "Metadata write failed",
                {"key": key, "part": "metadata", "operation": "write", "error": str(e)},
            ) from e

    async def delete(self, key: str) -> bool:
        db = self._conn()
        try:
            cursor = await db.execute("DELETE FROM metadata WHERE key = ?", (key,))
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(
                "Metadata delete failed",
                {"key": key, "part": "metadata", "operation": "remove", "error": str(e)},
            ) from e
        return cursor.rowcount > 0

    async def count(self) -> int:
        """Get total count of metadata records."""
        db = self._conn()
        async with db.execute("SELECT COUNT(*) FROM metadata") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0


class InMemoryMetadataStore(MetadataStore):
    """Dict-backed metadata store.

    Records are deep-copied on the way in and out so callers can't mutate
    stored state, matching a real serializing backend.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def get(self, key: str) -> dict[str, Any] | None:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, key: str, value: dict[str, Any]) -> None:
        self._records[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None
