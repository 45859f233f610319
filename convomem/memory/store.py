"""Memory store — memory entries over the memory record family.

The index holds lightweight metadata for every entry and is kept in memory;
full entries are loaded from the record store on demand and cached.

All operations degrade instead of raising: read failures yield empty results,
write failures yield None/False and are logged.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from collections import Counter
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import ValidationError

from convomem.config import settings
from convomem.memory.models import (
    MemoryEntry,
    MemoryIndexEntry,
    MemoryStats,
    MemoryType,
    SearchQuery,
    SearchResult,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from convomem.storage.base import RecordStore

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def make_memory_id() -> str:
    """Generate a new memory id, e.g. ``mem_1718000000000_k3j9x0a2b``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"mem_{int(time.time() * 1000)}_{suffix}"


class MemoryStore:
    """Stores, searches and maintains memory entries.

    Args:
        records: Record store for the memory family.
        index_limit: Maximum index entries kept (most recent first).
    """

    def __init__(self, records: RecordStore, index_limit: int | None = None) -> None:
        self._records = records
        self._index_limit = index_limit or settings.memory_index_limit
        self._index: list[MemoryIndexEntry] = []
        self._cache: dict[str, MemoryEntry] = {}
        self._initialized = False

    # -- Lifecycle -------------------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            return

        try:
            raw_index = await self._records.load_index()
        except Exception:
            logger.exception("Failed to load memory index")
            raw_index = None

        self._index = []
        for raw in raw_index or []:
            try:
                self._index.append(MemoryIndexEntry.model_validate(raw))
            except ValidationError:
                logger.warning("Skipping malformed memory index entry: %r", raw)

        self._initialized = True
        logger.info("Loaded %d memory entries", len(self._index))

    # -- Internal helpers ------------------------------------------------------

    def _find_index(self, memory_id: str) -> MemoryIndexEntry | None:
        for entry in self._index:
            if entry.id == memory_id:
                return entry
        return None

    async def _save_index(self) -> bool:
        try:
            ok = await self._records.save_index([e.model_dump(mode="json") for e in self._index])
        except Exception:
            logger.exception("Error saving memory index")
            return False
        if not ok:
            logger.error("Failed to save memory index")
        return ok

    async def _save_entry(self, entry: MemoryEntry) -> bool:
        try:
            ok = await self._records.save_record(entry.id, entry.model_dump(mode="json"))
        except Exception:
            logger.exception("Error saving memory %s", entry.id)
            return False
        if ok:
            self._cache[entry.id] = entry
        else:
            logger.error("Failed to save memory %s", entry.id)
        return ok

    async def _load_entry(self, memory_id: str) -> MemoryEntry | None:
        cached = self._cache.get(memory_id)
        if cached is not None:
            return cached
        try:
            raw = await self._records.load_record(memory_id)
        except Exception:
            logger.exception("Error loading memory %s", memory_id)
            return None
        if raw is None:
            return None
        try:
            entry = MemoryEntry.model_validate(raw)
        except ValidationError:
            logger.warning("Malformed memory record %s", memory_id)
            return None
        self._cache[memory_id] = entry
        return entry

    # -- Write -----------------------------------------------------------------

    async def store(
        self,
        *,
        type: MemoryType | str,  # noqa: A002
        title: str,
        content: str,
        tags: Iterable[str] | None = None,
        conversation_id: str | None = None,
        project_id: str | None = None,
        source: str | None = None,
    ) -> MemoryEntry | None:
        """Create a memory entry. Returns the entry, or None if it could not be saved."""
        await self.initialize()

        now = datetime.now(UTC)
        entry = MemoryEntry(
            id=make_memory_id(),
            type=MemoryType(type),
            title=title,
            content=content,
            tags=list(dict.fromkeys(tags or [])),
            conversation_id=conversation_id,
            project_id=project_id,
            source=source,
            created_at=now,
            updated_at=now,
        )
        if not await self._save_entry(entry):
            return None

        self._index.insert(0, MemoryIndexEntry.from_entry(entry))
        for evicted in self._index[self._index_limit :]:
            self._cache.pop(evicted.id, None)
        del self._index[self._index_limit :]
        await self._save_index()

        logger.debug("Stored memory [%s/%s]: %s", source, entry.type, title[:80])
        return entry

    async def update(
        self,
        memory_id: str,
        *,
        title: str | None = None,
        content: str | None = None,
        tags: Iterable[str] | None = None,
        type: MemoryType | str | None = None,  # noqa: A002
    ) -> MemoryEntry | None:
        """Update fields of an entry. Returns the updated entry or None."""
        await self.initialize()

        existing = await self._load_entry(memory_id)
        if existing is None:
            return None

        changes: dict = {"updated_at": datetime.now(UTC)}
        if title:
            changes["title"] = title
        if content:
            changes["content"] = content
        if tags is not None:
            changes["tags"] = list(dict.fromkeys(tags))
        if type:
            changes["type"] = MemoryType(type)
        updated = existing.model_copy(update=changes)

        if not await self._save_entry(updated):
            return None

        position = next((i for i, e in enumerate(self._index) if e.id == memory_id), None)
        if position is not None:
            previous = self._index[position]
            refreshed = MemoryIndexEntry.from_entry(updated)
            refreshed.relevance_score = previous.relevance_score
            self._index[position] = refreshed
            await self._save_index()
        return updated

    async def delete(self, memory_id: str) -> bool:
        """Delete an entry and drop it from the index. Returns True on success."""
        await self.initialize()

        try:
            removed = await self._records.delete_record(memory_id)
        except Exception:
            logger.exception("Error deleting memory %s", memory_id)
            return False

        self._cache.pop(memory_id, None)
        index_entry = self._find_index(memory_id)
        if index_entry is not None:
            self._index.remove(index_entry)
            await self._save_index()
            return True
        return removed

    async def delete_by_tag(self, tag: str) -> int:
        """Delete every entry carrying *tag* (e.g. "auto-saved"). Returns the count."""
        await self.initialize()

        targets = [e.id for e in self._index if tag in e.tags]
        deleted = 0
        for memory_id in targets:
            if await self.delete(memory_id):
                deleted += 1
        logger.info("Deleted %d memories tagged %r", deleted, tag)
        return deleted

    # -- Read ------------------------------------------------------------------

    async def retrieve(self, memory_id: str) -> MemoryEntry | None:
        """Load one entry and record the access."""
        await self.initialize()
        touched = await self.mark_accessed([memory_id])
        return touched[0] if touched else None

    async def mark_accessed(self, memory_ids: Iterable[str]) -> list[MemoryEntry]:
        """Bump ``access_count`` / ``last_accessed`` for each id. Returns the updated entries."""
        await self.initialize()

        updated: list[MemoryEntry] = []
        for memory_id in dict.fromkeys(memory_ids):
            entry = await self._load_entry(memory_id)
            if entry is None:
                continue
            touched = entry.model_copy(
                update={
                    "access_count": entry.access_count + 1,
                    "last_accessed": datetime.now(UTC),
                }
            )
            if await self._save_entry(touched):
                updated.append(touched)
            else:
                updated.append(entry)
        return updated

    async def get_all(self) -> list[MemoryEntry]:
        """Every indexed entry (for maintenance/admin)."""
        await self.initialize()
        loaded = await asyncio.gather(*(self._load_entry(e.id) for e in self._index))
        return [entry for entry in loaded if entry is not None]

    async def search(self, query: SearchQuery) -> list[SearchResult]:
        """Search entries by filters and free text, newest first."""
        await self.initialize()

        try:
            return await self._search(query)
        except Exception:
            logger.exception("Memory search failed")
            return []

    async def _search(self, query: SearchQuery) -> list[SearchResult]:
        candidates = list(self._index)
        if query.type:
            candidates = [e for e in candidates if e.type == query.type]
        if query.tags:
            wanted = set(query.tags)
            candidates = [e for e in candidates if wanted.intersection(e.tags)]
        if query.project_id:
            candidates = [e for e in candidates if e.project_id == query.project_id]
        if query.conversation_id:
            candidates = [e for e in candidates if e.conversation_id == query.conversation_id]
        if query.start:
            candidates = [e for e in candidates if e.created_at >= query.start]
        if query.end:
            candidates = [e for e in candidates if e.created_at <= query.end]

        terms = (query.text or "").lower().split()
        loaded = await asyncio.gather(*(self._load_entry(e.id) for e in candidates))
        matches: list[tuple[MemoryIndexEntry, MemoryEntry]] = []
        for index_entry, entry in zip(candidates, loaded, strict=True):
            if entry is None:
                continue
            if terms:
                text = entry.searchable_text()
                if not any(term in text for term in terms):
                    continue
            matches.append((index_entry, entry))

        matches.sort(key=lambda pair: pair[0].created_at, reverse=True)
        page = matches[query.offset : query.offset + query.limit]
        return [
            SearchResult(
                entry=entry,
                relevance_score=(
                    index_entry.relevance_score
                    if index_entry.relevance_score is not None
                    else 1.0
                ),
                matched_fields=_matched_fields(entry, terms),
            )
            for index_entry, entry in page
        ]

    async def get_stats(self) -> MemoryStats:
        await self.initialize()

        if not self._index:
            return MemoryStats()
        by_type = Counter(str(e.type) for e in self._index)
        timestamps = [e.created_at for e in self._index]
        return MemoryStats(
            total_entries=len(self._index),
            entries_by_type=dict(by_type),
            total_size=sum(e.size for e in self._index),
            oldest_entry=min(timestamps),
            newest_entry=max(timestamps),
        )


def _matched_fields(entry: MemoryEntry, terms: list[str]) -> list[str]:
    if not terms:
        return []
    fields = []
    title = entry.title.lower()
    content = entry.content.lower()
    tags = " ".join(entry.tags).lower()
    if any(term in title for term in terms):
        fields.append("title")
    if any(term in content for term in terms):
        fields.append("content")
    if any(term in tags for term in terms):
        fields.append("tags")
    return fields
