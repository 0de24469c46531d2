"""Async SQLite key-value store.

Uses ``aiosqlite`` for non-blocking access with WAL mode and
dictionary-style rows. Values are stored as JSON text; sets and lists get
their own tables so that membership and ordering survive restarts.
"""

from __future__ import annotations

import json
import sqlite3
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import aiosqlite

from wallet_cron.errors import StoreError
from wallet_cron.storage.kv import BaseKVStore, _slice_bounds


class SQLiteKVStore(BaseKVStore):
    """Key-value store backed by a single SQLite file.

    Parameters
    ----------
    db_path:
        Filesystem path to the SQLite database file.  The file (and any
        intermediate directories) will be created automatically on
        :meth:`connect` if they do not already exist.
    """

    supports_ttl = True
    supports_atomic_set = True

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the database connection, enable WAL mode, and run migrations."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = await aiosqlite.connect(str(self.db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.row_factory = sqlite3.Row
            await self._migrate()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to open store at {self.db_path}: {exc}") from exc

    async def close(self) -> None:
        """Close the database connection gracefully."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        if self._conn is None:
            raise StoreError("Store not connected. Call connect() first.")
        try:
            yield self._conn
        except sqlite3.Error as exc:
            raise StoreError(f"SQLite store error: {exc}") from exc

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[Any]:
        async with self._db() as conn:
            cursor = await conn.execute(
                "SELECT value, expires_at FROM kv WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            if row["expires_at"] is not None and row["expires_at"] <= time.time():
                await conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                await conn.commit()
                return None
            return json.loads(row["value"])

    async def set(self, key: str, value: Any) -> None:
        async with self._db() as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO kv (key, value, expires_at) VALUES (?, ?, NULL)",
                (key, json.dumps(value)),
            )
            await conn.commit()

    async def delete(self, key: str) -> None:
        async with self._db() as conn:
            await conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            await conn.execute("DELETE FROM kv_sets WHERE key = ?", (key,))
            await conn.execute("DELETE FROM kv_lists WHERE key = ?", (key,))
            await conn.commit()

    async def set_if_absent(
        self, key: str, value: Any, ttl_seconds: Optional[int] = None
    ) -> bool:
        now = time.time()
        expires_at = now + ttl_seconds if ttl_seconds is not None else None
        async with self._db() as conn:
            await conn.execute(
                "DELETE FROM kv WHERE key = ? AND expires_at IS NOT NULL AND expires_at <= ?",
                (key, now),
            )
            cursor = await conn.execute(
                "INSERT OR IGNORE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), expires_at),
            )
            await conn.commit()
            return cursor.rowcount == 1

    async def expire(self, key: str, ttl_seconds: int) -> None:
        async with self._db() as conn:
            await conn.execute(
                "UPDATE kv SET expires_at = ? WHERE key = ?",
                (time.time() + ttl_seconds, key),
            )
            await conn.commit()

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    async def sadd(self, key: str, member: str) -> None:
        async with self._db() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO kv_sets (key, member) VALUES (?, ?)",
                (key, member),
            )
            await conn.commit()

    async def srem(self, key: str, member: str) -> None:
        async with self._db() as conn:
            await conn.execute(
                "DELETE FROM kv_sets WHERE key = ? AND member = ?", (key, member)
            )
            await conn.commit()

    async def smembers(self, key: str) -> list[str]:
        async with self._db() as conn:
            cursor = await conn.execute(
                "SELECT member FROM kv_sets WHERE key = ? ORDER BY member", (key,)
            )
            rows = await cursor.fetchall()
            return [r["member"] for r in rows]

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    async def lpush(self, key: str, value: str) -> int:
        async with self._db() as conn:
            cursor = await conn.execute(
                "SELECT MIN(position) AS head, COUNT(*) AS n FROM kv_lists WHERE key = ?",
                (key,),
            )
            row = await cursor.fetchone()
            head = row["head"] if row["head"] is not None else 0
            await conn.execute(
                "INSERT INTO kv_lists (key, position, value) VALUES (?, ?, ?)",
                (key, head - 1, value),
            )
            await conn.commit()
            return row["n"] + 1

    async def _list_rows(self, conn: aiosqlite.Connection, key: str) -> list[sqlite3.Row]:
        cursor = await conn.execute(
            "SELECT id, value FROM kv_lists WHERE key = ? ORDER BY position", (key,)
        )
        return list(await cursor.fetchall())

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        async with self._db() as conn:
            rows = await self._list_rows(conn, key)
            lo, hi = _slice_bounds(len(rows), start, stop)
            return [r["value"] for r in rows[lo:hi]]

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        async with self._db() as conn:
            rows = await self._list_rows(conn, key)
            lo, hi = _slice_bounds(len(rows), start, stop)
            keep = {r["id"] for r in rows[lo:hi]}
            doomed = [(r["id"],) for r in rows if r["id"] not in keep]
            if doomed:
                await conn.executemany("DELETE FROM kv_lists WHERE id = ?", doomed)
                await conn.commit()

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def _migrate(self) -> None:
        """Create all required tables if they do not already exist."""
        assert self._conn is not None

        await self._conn.executescript(
            """\
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL
            );

            CREATE TABLE IF NOT EXISTS kv_sets (
                key TEXT NOT NULL,
                member TEXT NOT NULL,
                PRIMARY KEY (key, member)
            );

            CREATE TABLE IF NOT EXISTS kv_lists (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                key TEXT NOT NULL,
                position INTEGER NOT NULL,
                value TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_kv_lists_key ON kv_lists (key, position);
            """
        )
        await self._conn.commit()
