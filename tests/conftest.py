"""Shared test fixtures."""

import copy
from collections import Counter
from pathlib import Path
from typing import Any

import pytest

from convomem.conversations.service import ConversationService
from convomem.memory.store import MemoryStore
from convomem.storage.files import FileRecordStore


class InMemoryRecordStore:
    """RecordStore fake that counts calls and can simulate failures."""

    def __init__(self) -> None:
        self.index: list[dict[str, Any]] | None = None
        self.records: dict[str, dict[str, Any]] = {}
        self.meta: dict[str, Any] = {}
        self.calls: Counter[str] = Counter()
        self.fail_reads = False
        self.fail_writes = False

    def _read(self, name: str) -> None:
        self.calls[name] += 1
        if self.fail_reads:
            msg = "disk unavailable"
            raise OSError(msg)

    async def load_index(self) -> list[dict[str, Any]] | None:
        self._read("load_index")
        return copy.deepcopy(self.index)

    async def save_index(self, entries: list[dict[str, Any]]) -> bool:
        self.calls["save_index"] += 1
        if self.fail_writes:
            return False
        self.index = copy.deepcopy(entries)
        return True

    async def load_record(self, record_id: str) -> dict[str, Any] | None:
        self._read("load_record")
        return copy.deepcopy(self.records.get(record_id))

    async def save_record(self, record_id: str, payload: dict[str, Any]) -> bool:
        self.calls["save_record"] += 1
        if self.fail_writes:
            return False
        self.records[record_id] = copy.deepcopy(payload)
        return True

    async def delete_record(self, record_id: str) -> bool:
        self.calls["delete_record"] += 1
        return self.records.pop(record_id, None) is not None

    async def list_record_ids(self) -> list[str]:
        self._read("list_record_ids")
        return sorted(self.records)

    async def load_meta(self, key: str) -> Any | None:
        self._read("load_meta")
        return self.meta.get(key)

    async def save_meta(self, key: str, value: Any) -> bool:
        self.calls["save_meta"] += 1
        if self.fail_writes:
            return False
        self.meta[key] = value
        return True


@pytest.fixture
def records() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def file_records(tmp_path: Path) -> FileRecordStore:
    """FileRecordStore rooted in a temporary directory."""
    return FileRecordStore(tmp_path / "conversations")


@pytest.fixture
async def service(records: InMemoryRecordStore) -> ConversationService:
    """Initialised ConversationService without the cleanup job."""
    s = ConversationService(records, cleanup_interval_seconds=0)
    await s.initialize()
    yield s
    await s.destroy()


@pytest.fixture
async def memory_store(tmp_path: Path) -> MemoryStore:
    """MemoryStore persisted under a temporary directory."""
    store = MemoryStore(FileRecordStore(tmp_path / "memory"))
    await store.initialize()
    return store
