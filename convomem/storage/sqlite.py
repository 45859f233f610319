"""SqliteRecordStore — aiosqlite persistence for a record family."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import aiosqlite

from convomem.storage.base import validate_record_id

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS records (
        family TEXT NOT NULL,
        id TEXT NOT NULL,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (family, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS indexes (
        family TEXT PRIMARY KEY,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS meta (
        family TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        PRIMARY KEY (family, key)
    )
    """,
)


class SqliteRecordStore:
    """Persists one record family in SQLite.

    Several families can share a database file; rows are keyed by *family*.
    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(self, db_path: Path, family: str) -> None:
        self._db_path = db_path
        self._family = family
        self._initialised = False

    @property
    def family(self) -> str:
        return self._family

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        if not self._initialised:
            try:
                for statement in _CREATE_TABLES:
                    await db.execute(statement)
                await db.commit()
            except BaseException:
                await db.close()
                raise
            self._initialised = True
        return db

    @staticmethod
    def _now() -> str:
        return datetime.now(UTC).isoformat()

    # -- Index -----------------------------------------------------------------

    async def load_index(self) -> list[dict[str, Any]] | None:
        try:
            db = await self._connect()
            try:
                cursor = await db.execute(
                    "SELECT payload FROM indexes WHERE family = ?", (self._family,)
                )
                row = await cursor.fetchone()
            finally:
                await db.close()
            if not row:
                return None
            data = json.loads(row[0])
        except (aiosqlite.Error, OSError, ValueError):
            logger.exception("Failed to load %s index", self._family)
            return None
        return data if isinstance(data, list) else None

    async def save_index(self, entries: list[dict[str, Any]]) -> bool:
        try:
            payload = json.dumps(entries, default=str)
            db = await self._connect()
            try:
                await db.execute(
                    "INSERT OR REPLACE INTO indexes (family, payload, updated_at) "
                    "VALUES (?, ?, ?)",
                    (self._family, payload, self._now()),
                )
                await db.commit()
            finally:
                await db.close()
        except (aiosqlite.Error, OSError, TypeError, ValueError):
            logger.exception("Failed to save %s index", self._family)
            return False
        return True

    # -- Records ---------------------------------------------------------------

    async def load_record(self, record_id: str) -> dict[str, Any] | None:
        validate_record_id(record_id)
        try:
            db = await self._connect()
            try:
                cursor = await db.execute(
                    "SELECT payload FROM records WHERE family = ? AND id = ?",
                    (self._family, record_id),
                )
                row = await cursor.fetchone()
            finally:
                await db.close()
            if not row:
                return None
            data = json.loads(row[0])
        except (aiosqlite.Error, OSError, ValueError):
            logger.exception("Failed to load %s record %s", self._family, record_id)
            return None
        return data if isinstance(data, dict) else None

    async def save_record(self, record_id: str, payload: dict[str, Any]) -> bool:
        validate_record_id(record_id)
        try:
            body = json.dumps(payload, default=str)
            db = await self._connect()
            try:
                await db.execute(
                    "INSERT OR REPLACE INTO records (family, id, payload, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (self._family, record_id, body, self._now()),
                )
                await db.commit()
            finally:
                await db.close()
        except (aiosqlite.Error, OSError, TypeError, ValueError):
            logger.exception("Failed to save %s record %s", self._family, record_id)
            return False
        return True

    async def delete_record(self, record_id: str) -> bool:
        validate_record_id(record_id)
        try:
            db = await self._connect()
            try:
                cursor = await db.execute(
                    "DELETE FROM records WHERE family = ? AND id = ?",
                    (self._family, record_id),
                )
                await db.commit()
                return cursor.rowcount > 0
            finally:
                await db.close()
        except (aiosqlite.Error, OSError):
            logger.exception("Failed to delete %s record %s", self._family, record_id)
            return False

    async def list_record_ids(self) -> list[str]:
        try:
            db = await self._connect()
            try:
                cursor = await db.execute(
                    "SELECT id FROM records WHERE family = ? ORDER BY id", (self._family,)
                )
                rows = await cursor.fetchall()
            finally:
                await db.close()
        except (aiosqlite.Error, OSError):
            logger.exception("Failed to list %s records", self._family)
            return []
        return [row[0] for row in rows]

    # -- Meta ------------------------------------------------------------------

    async def load_meta(self, key: str) -> Any | None:
        try:
            db = await self._connect()
            try:
                cursor = await db.execute(
                    "SELECT value FROM meta WHERE family = ? AND key = ?",
                    (self._family, key),
                )
                row = await cursor.fetchone()
            finally:
                await db.close()
            return json.loads(row[0]) if row else None
        except (aiosqlite.Error, OSError, ValueError):
            logger.exception("Failed to load %s meta %s", self._family, key)
            return None

    async def save_meta(self, key: str, value: Any) -> bool:
        try:
            body = json.dumps(value, default=str)
            db = await self._connect()
            try:
                await db.execute(
                    "INSERT OR REPLACE INTO meta (family, key, value) VALUES (?, ?, ?)",
                    (self._family, key, body),
                )
                await db.commit()
            finally:
                await db.close()
        except (aiosqlite.Error, OSError, TypeError, ValueError):
            logger.exception("Failed to save %s meta %s", self._family, key)
            return False
        return True
