"""
SQLite key-value persistence for notification state.

Stores one JSON document per well-known key:
- unified_notifications: the serialized notification list
- admitted_notification_ids: ids already admitted by the deduplicator

Each is suffixed with the signed-in principal (`unified_notifications:parent:P1`)
so users sharing a device never see each other's history.
"""

from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Protocol

import aiosqlite

from .errors import PersistenceWriteError

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def namespaced(key: str, namespace: str | None) -> str:
    """Storage key for one signed-in principal; the bare key when signed out."""
    return f"{key}:{namespace}" if namespace else key


class KeyValueBackend(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...


class SQLiteKeyValueStore:
    """Async SQLite key-value store."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def get(self, key: str) -> str | None:
        assert self._db
        cursor = await self._db.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row["value"] if row else None

    async def set(self, key: str, value: str) -> None:
        if self._db is None:
            raise PersistenceWriteError(f"store closed, cannot write {key}")
        now = datetime.now(timezone.utc).isoformat()
        try:
            await self._db.execute(
                """INSERT INTO kv_store (key, value, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at""",
                (key, value, now),
            )
            await self._db.commit()
        except sqlite3.Error as exc:
            raise PersistenceWriteError(f"write {key} failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        assert self._db
        await self._db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        await self._db.commit()

    async def keys(self) -> list[str]:
        assert self._db
        cursor = await self._db.execute("SELECT key FROM kv_store ORDER BY key")
        rows = await cursor.fetchall()
        return [r["key"] for r in rows]
