"""SQLite-backed key-value store with WAL mode."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

-- Application state, one JSON document per key
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value JSON NOT NULL,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""


class StorageError(RuntimeError):
    """Raised when the store is used before it is connected."""


class KeyValueStore(Protocol):
    """The get/set/remove contract the persistence adapters rely on."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def remove(self, key: str) -> None: ...


class Database:
    """Key-value store on SQLite.

    Values are stored as JSON documents. Writes are serialized with a lock so
    read-after-write order per key holds within one process.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Initialize database connection with WAL mode."""
        if self._connection is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            isolation_level=None,  # Autocommit mode, every statement stands alone
        )

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        self._connection.row_factory = aiosqlite.Row

        await self._init_schema()

        logger.info(f"Database connected: {self.db_path}")

    async def _init_schema(self) -> None:
        """Initialize database schema."""
        connection = self._require_connection()

        await connection.executescript(SCHEMA)

        async with connection.execute("SELECT MAX(version) FROM schema_version") as cursor:
            row = await cursor.fetchone()
            current_version = row[0] if row and row[0] else 0

        if current_version < SCHEMA_VERSION:
            await connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            logger.info(f"Schema updated to version {SCHEMA_VERSION}")

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StorageError("Database not connected")
        return self._connection

    async def get(self, key: str) -> Any | None:
        """Return the decoded value stored under ``key``, or None."""
        connection = self._require_connection()

        async with connection.execute("SELECT value FROM kv_store WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return None
        return json.loads(row["value"])

    async def set(self, key: str, value: Any) -> None:
        """Store ``value`` (JSON encodable) under ``key``."""
        connection = self._require_connection()
        payload = json.dumps(value)

        async with self._lock:
            await connection.execute(
                """INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP""",
                (key, payload),
            )

    async def remove(self, key: str) -> None:
        """Delete ``key``; missing keys are ignored."""
        connection = self._require_connection()

        async with self._lock:
            await connection.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    async def check_integrity(self) -> bool:
        """Check database integrity."""
        connection = self._require_connection()

        async with connection.execute("PRAGMA integrity_check") as cursor:
            row = await cursor.fetchone()
            is_ok = row is not None and row[0] == "ok"

        if not is_ok:
            logger.error("Database integrity check failed!")
        return is_ok

    async def get_size_mb(self) -> float:
        """Get database file size in MB."""
        if self.db_path.exists():
            return self.db_path.stat().st_size / (1024 * 1024)
        return 0.0

    async def backup(self, backup_dir: Path | None = None) -> Path:
        """Write a consistent snapshot of the database, WAL contents included."""
        connection = self._require_connection()
        backup_dir = backup_dir or self.db_path.parent / "backups"
        backup_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        backup_path = backup_dir / f"pomodoro_log_{timestamp}.db"

        async with self._lock:
            await connection.execute("VACUUM INTO ?", (str(backup_path),))
        logger.info(f"Database backed up to: {backup_path}")
        return backup_path


async def init_database(db_path: Path) -> Database:
    """Create and connect a database."""
    db = Database(db_path)
    await db.connect()
    return db
