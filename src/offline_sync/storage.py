"""
Local persistence for the offline sync engine.

A thin aiosqlite wrapper plus the engine's tables:

- ``engine_meta``: device identity and last sync timestamp
- ``sync_operations``: the pending operation queue
- ``drafts``: debounced editor drafts
"""

import aiosqlite
import asyncio
import json
import secrets
import string
from datetime import datetime
from pathlib import Path
from typing import Optional, Any, List, Dict, Iterable

from .timers import Clock, SystemClock, to_epoch_ms, from_epoch_ms
from .utils.logging import get_logger
from .utils.errors import PersistenceError


logger = get_logger("offline-sync.storage")

DEVICE_ID_KEY = "device_id"
LAST_SYNC_KEY = "last_sync_timestamp"
DRAFT_PREFIX = "offline_sync_draft_"

_BASE36 = string.digits + string.ascii_lowercase

SCHEMA = """
CREATE TABLE IF NOT EXISTS engine_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_operations (
    op_id TEXT PRIMARY KEY,
    sequence INTEGER NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    recorded_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_operations_order
    ON sync_operations(recorded_at, sequence);

CREATE TABLE IF NOT EXISTS drafts (
    draft_key TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    saved_at INTEGER NOT NULL
);
"""


def generate_device_id(now: datetime) -> str:
    """Mint ``device_<epoch-ms>_<8 base36 chars>``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"device_{to_epoch_ms(now)}_{suffix}"


class Database:
    """Async SQLite database wrapper."""

    def __init__(self, db_path: Path | str):
        """
        Initialize database wrapper.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open database connection."""
        if self._connection is None:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = await aiosqlite.connect(
                self.db_path,
                isolation_level=None  # Autocommit mode
            )
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def execute(self, sql: str, parameters: tuple = ()) -> None:
        async with self._lock:
            if not self._connection:
                await self.connect()
            await self._connection.execute(sql, parameters)

    async def executemany(self, sql: str, parameters: List[tuple]) -> None:
        async with self._lock:
            if not self._connection:
                await self.connect()
            await self._connection.executemany(sql, parameters)

    async def executescript(self, script: str) -> None:
        async with self._lock:
            if not self._connection:
                await self.connect()
            await self._connection.executescript(script)

    async def fetchone(self, sql: str, parameters: tuple = ()) -> Optional[tuple]:
        """
        Execute query and fetch one result.

        Args:
            sql: SQL query
            parameters: Query parameters

        Returns:
            Single row or None
        """
        async with self._lock:
            if not self._connection:
                await self.connect()
            async with self._connection.execute(sql, parameters) as cursor:
                return await cursor.fetchone()

    async def fetchall(self, sql: str, parameters: tuple = ()) -> List[tuple]:
        """
        Execute query and fetch all results.

        Args:
            sql: SQL query
            parameters: Query parameters

        Returns:
            List of rows
        """
        async with self._lock:
            if not self._connection:
                await self.connect()
            async with self._connection.execute(sql, parameters) as cursor:
                return list(await cursor.fetchall())

    @property
    def connection(self) -> Optional[aiosqlite.Connection]:
        """Get raw connection object."""
        return self._connection

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class SyncStore:
    """
    Engine tables on top of ``Database``.

    Every method raises ``PersistenceError`` on failure; callers decide
    whether that is fatal.
    """

    def __init__(self, database: Database):
        self.db = database

    @classmethod
    def open(cls, path: Path | str) -> "SyncStore":
        return cls(Database(path))

    async def initialize(self) -> None:
        """Connect and create the schema."""
        try:
            await self.db.connect()
            await self.db.executescript(SCHEMA)
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(f"Failed to open local store: {e}", cause=e) from e
        logger.info("store_initialized", path=str(self.db.db_path))

    async def close(self) -> None:
        await self.db.close()

    # Metadata

    async def get_meta(self, key: str) -> Optional[str]:
        try:
            row = await self.db.fetchone("SELECT value FROM engine_meta WHERE key = ?", (key,))
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to read {key}: {e}", cause=e) from e
        return row[0] if row else None

    async def set_meta(self, key: str, value: str) -> None:
        try:
            await self.db.execute(
                "INSERT INTO engine_meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value)
            )
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to write {key}: {e}", cause=e) from e

    async def get_or_create_device_id(self, clock: Optional[Clock] = None) -> str:
        """Read the installation's device id, minting it on first use."""
        device_id = await self.get_meta(DEVICE_ID_KEY)
        if device_id:
            return device_id

        device_id = generate_device_id((clock or SystemClock()).now())
        await self.set_meta(DEVICE_ID_KEY, device_id)
        logger.info("device_id_created", device_id=device_id)
        return device_id

    async def get_last_sync(self) -> Optional[datetime]:
        value = await self.get_meta(LAST_SYNC_KEY)
        return from_epoch_ms(int(value)) if value else None

    async def set_last_sync(self, timestamp: datetime) -> None:
        await self.set_meta(LAST_SYNC_KEY, str(to_epoch_ms(timestamp)))

    # Operation queue

    async def save_operation(self, row: Dict[str, Any]) -> None:
        try:
            await self.db.execute(
                "INSERT OR REPLACE INTO sync_operations "
                "(op_id, sequence, entity_type, entity_id, kind, payload, recorded_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    row["op_id"],
                    row["sequence"],
                    row["entity_type"],
                    row["entity_id"],
                    row["kind"],
                    json.dumps(row["payload"]),
                    row["recorded_at"],
                )
            )
        except (aiosqlite.Error, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to persist operation {row.get('op_id')}: {e}", cause=e) from e

    async def delete_operations(self, op_ids: Iterable[str]) -> None:
        params = [(op_id,) for op_id in op_ids]
        if not params:
            return
        try:
            await self.db.executemany("DELETE FROM sync_operations WHERE op_id = ?", params)
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to delete operations: {e}", cause=e) from e

    async def load_operations(self) -> List[Dict[str, Any]]:
        """Pending operations in recording order."""
        try:
            rows = await self.db.fetchall(
                "SELECT op_id, sequence, entity_type, entity_id, kind, payload, recorded_at "
                "FROM sync_operations ORDER BY recorded_at, sequence"
            )
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to load operations: {e}", cause=e) from e

        return [
            {
                "op_id": row[0],
                "sequence": row[1],
                "entity_type": row[2],
                "entity_id": row[3],
                "kind": row[4],
                "payload": json.loads(row[5]),
                "recorded_at": row[6],
            }
            for row in rows
        ]

    # Drafts

    @staticmethod
    def draft_key(scope_type: str, scope_id: Any) -> str:
        return f"{DRAFT_PREFIX}{scope_type}_{scope_id}"

    async def save_draft(self, key: str, content: str, saved_at: datetime) -> None:
        try:
            await self.db.execute(
                "INSERT INTO drafts (draft_key, content, saved_at) VALUES (?, ?, ?) "
                "ON CONFLICT(draft_key) DO UPDATE SET "
                "content = excluded.content, saved_at = excluded.saved_at",
                (key, content, to_epoch_ms(saved_at))
            )
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to save draft {key}: {e}", cause=e) from e

    async def load_draft(self, key: str) -> Optional[tuple]:
        """Return ``(content, saved_at)`` or None."""
        try:
            row = await self.db.fetchone(
                "SELECT content, saved_at FROM drafts WHERE draft_key = ?", (key,)
            )
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to load draft {key}: {e}", cause=e) from e
        if row is None:
            return None
        return row[0], from_epoch_ms(row[1])

    async def delete_draft(self, key: str) -> None:
        try:
            await self.db.execute("DELETE FROM drafts WHERE draft_key = ?", (key,))
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to delete draft {key}: {e}", cause=e) from e

    async def delete_all_drafts(self) -> int:
        try:
            row = await self.db.fetchone("SELECT COUNT(*) FROM drafts")
            await self.db.execute("DELETE FROM drafts")
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to clear drafts: {e}", cause=e) from e
        return row[0] if row else 0

    async def clear(self) -> None:
        """Wipe all local state, including the device identity."""
        try:
            await self.db.executescript(
                "DELETE FROM engine_meta; DELETE FROM sync_operations; DELETE FROM drafts;"
            )
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to clear local store: {e}", cause=e) from e
        logger.warning("local_store_cleared")


__all__ = [
    'Database',
    'SyncStore',
    'generate_device_id',
    'DRAFT_PREFIX',
]
