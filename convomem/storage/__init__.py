"""Record persistence backends."""

from __future__ import annotations

from typing import TYPE_CHECKING

from convomem.storage.base import RecordStore, StorageError
from convomem.storage.files import FileRecordStore
from convomem.storage.sqlite import SqliteRecordStore

if TYPE_CHECKING:
    from convomem.config import Settings

__all__ = [
    "FileRecordStore",
    "RecordStore",
    "SqliteRecordStore",
    "StorageError",
    "create_record_store",
]


def create_record_store(family: str, cfg: Settings) -> RecordStore:
    """Build the configured backend for a record family ("conversations" or "memory")."""
    if cfg.storage_backend == "sqlite":
        return SqliteRecordStore(cfg.database_path, family)
    if cfg.storage_backend == "files":
        return FileRecordStore(cfg.data_dir / family)
    msg = f"Unknown storage backend: {cfg.storage_backend!r}"
    raise ValueError(msg)
