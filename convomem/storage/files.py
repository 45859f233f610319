"""FileRecordStore — JSON index plus one JSON file per record.

Layout under *root*::

    index.json          metadata for every record
    meta.json           small key/value metadata (migration markers)
    records/<id>.json   full record payloads

Every write replaces the whole file atomically (temp file + ``os.replace``),
so readers never observe a partially written file. Blocking file I/O runs in
a worker thread via ``asyncio.to_thread()``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from typing import TYPE_CHECKING, Any

from convomem.storage.base import validate_record_id

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
META_FILE = "meta.json"
RECORDS_DIR = "records"


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, ensure_ascii=False, indent=2, default=str)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def _read_json(path: Path) -> Any | None:
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


class FileRecordStore:
    """Record family persisted as JSON files in a directory.

    Pass a distinct *root* per family (e.g. ``data/conversations`` and
    ``data/memory``).
    """

    def __init__(self, root: Path) -> None:
        self._root = root
        self._records = root / RECORDS_DIR

    @property
    def root(self) -> Path:
        return self._root

    def _record_path(self, record_id: str) -> Path:
        return self._records / f"{validate_record_id(record_id)}.json"

    # -- Index -----------------------------------------------------------------

    async def load_index(self) -> list[dict[str, Any]] | None:
        path = self._root / INDEX_FILE
        try:
            data = await asyncio.to_thread(_read_json, path)
        except (OSError, ValueError):
            logger.exception("Failed to load index %s", path)
            return None
        if data is None:
            return None
        if not isinstance(data, list):
            logger.warning("Ignoring malformed index %s (expected a list)", path)
            return None
        return data

    async def save_index(self, entries: list[dict[str, Any]]) -> bool:
        path = self._root / INDEX_FILE
        try:
            await asyncio.to_thread(_write_json_atomic, path, entries)
        except (OSError, TypeError, ValueError):
            logger.exception("Failed to save index %s", path)
            return False
        logger.debug("Saved index %s (%d entries)", path, len(entries))
        return True

    # -- Records ---------------------------------------------------------------

    async def load_record(self, record_id: str) -> dict[str, Any] | None:
        path = self._record_path(record_id)
        try:
            data = await asyncio.to_thread(_read_json, path)
        except (OSError, ValueError):
            logger.exception("Failed to load record %s", record_id)
            return None
        if data is not None and not isinstance(data, dict):
            logger.warning("Ignoring malformed record %s", record_id)
            return None
        return data

    async def save_record(self, record_id: str, payload: dict[str, Any]) -> bool:
        path = self._record_path(record_id)
        try:
            await asyncio.to_thread(_write_json_atomic, path, payload)
        except (OSError, TypeError, ValueError):
            logger.exception("Failed to save record %s", record_id)
            return False
        logger.debug("Saved record %s", record_id)
        return True

    async def delete_record(self, record_id: str) -> bool:
        path = self._record_path(record_id)

        def _unlink() -> bool:
            if not path.exists():
                return False
            path.unlink()
            return True

        try:
            return await asyncio.to_thread(_unlink)
        except OSError:
            logger.exception("Failed to delete record %s", record_id)
            return False

    async def list_record_ids(self) -> list[str]:
        def _scan() -> list[str]:
            if not self._records.exists():
                return []
            return sorted(p.stem for p in self._records.glob("*.json"))

        try:
            return await asyncio.to_thread(_scan)
        except OSError:
            logger.exception("Failed to list records in %s", self._records)
            return []

    # -- Meta ------------------------------------------------------------------

    async def _load_meta_file(self) -> dict[str, Any]:
        data = await asyncio.to_thread(_read_json, self._root / META_FILE)
        return data if isinstance(data, dict) else {}

    async def load_meta(self, key: str) -> Any | None:
        try:
            meta = await self._load_meta_file()
        except (OSError, ValueError):
            logger.exception("Failed to load meta from %s", self._root)
            return None
        return meta.get(key)

    async def save_meta(self, key: str, value: Any) -> bool:
        try:
            meta = await self._load_meta_file()
            meta[key] = value
            await asyncio.to_thread(_write_json_atomic, self._root / META_FILE, meta)
        except (OSError, TypeError, ValueError):
            logger.exception("Failed to save meta %s", key)
            return False
        return True
