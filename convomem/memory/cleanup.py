"""Memory maintenance — archive stale entries, drop unused ones, merge duplicates.

Cleanup only goes through ``MemoryStore`` (update/delete), so the index and
record files stay consistent. Archiving keeps an entry but tags it
``archived`` and prefixes its title; archived entries are left alone by
later runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from collections.abc import Sequence

    from convomem.memory.models import MemoryEntry
    from convomem.memory.store import MemoryStore

logger = logging.getLogger(__name__)

ARCHIVED_TAG = "archived"
ARCHIVED_TITLE_PREFIX = "[ARCHIVED] "

TITLE_SIMILARITY_THRESHOLD = 0.8
CONTENT_SIMILARITY_THRESHOLD = 0.9

# Thresholds used only for recommendations
_STALE_AFTER_DAYS = 365
_LARGE_STORE_BYTES = 10 * 1024 * 1024
_LARGE_STORE_ENTRIES = 500


class CleanupConfig(BaseModel):
    """What a cleanup run is allowed to do. ``max_age_days = 0`` disables the age rule."""

    model_config = ConfigDict(extra="forbid")

    max_memories: int = Field(default=1000, ge=0)
    max_age_days: int = Field(default=365, ge=0)
    archive_old_memories: bool = True
    remove_unused_memories: bool = False
    consolidate_duplicates: bool = True
    min_access_count: int = Field(default=0, ge=0)


@dataclass
class CleanupResult:
    success: bool = True
    deleted: int = 0
    archived: int = 0
    consolidated: int = 0
    errors: list[str] = field(default_factory=list)
    size_before: int = 0
    size_after: int = 0


@dataclass
class CleanupRecommendations:
    old_memories: int = 0
    unused_memories: int = 0
    duplicate_groups: int = 0
    duplicates: int = 0
    total_size: int = 0
    recommendations: list[str] = field(default_factory=list)


# -- Similarity ----------------------------------------------------------------


def word_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the lowercased word sets of *a* and *b*."""
    words_a = set(a.lower().split())
    words_b = set(b.lower().split())
    union = words_a | words_b
    if not union:
        return 1.0
    return len(words_a & words_b) / len(union)


def are_similar(a: MemoryEntry, b: MemoryEntry) -> bool:
    """Same type with near-identical titles, or near-identical content of any type."""
    if a.type == b.type and word_similarity(a.title, b.title) > TITLE_SIMILARITY_THRESHOLD:
        return True
    return word_similarity(a.content, b.content) > CONTENT_SIMILARITY_THRESHOLD


def find_duplicate_groups(entries: Sequence[MemoryEntry]) -> list[list[MemoryEntry]]:
    """Group entries similar to an earlier, ungrouped entry. Singletons are omitted."""
    grouped: set[str] = set()
    groups: list[list[MemoryEntry]] = []
    for i, entry in enumerate(entries):
        if entry.id in grouped:
            continue
        group = [entry]
        for other in entries[i + 1 :]:
            if other.id not in grouped and are_similar(entry, other):
                group.append(other)
        if len(group) > 1:
            grouped.update(e.id for e in group)
            groups.append(group)
    return groups


def choose_keeper(group: Sequence[MemoryEntry]) -> MemoryEntry:
    """Most accessed entry wins; ties go to the most recently updated."""
    return max(group, key=lambda e: (e.access_count, e.updated_at))


def find_old_memories(
    entries: Sequence[MemoryEntry], max_age_days: int, now: datetime | None = None
) -> list[MemoryEntry]:
    if max_age_days <= 0:
        return []
    cutoff = (now or datetime.now(UTC)) - timedelta(days=max_age_days)
    return [e for e in entries if e.created_at < cutoff]


def find_unused_memories(
    entries: Sequence[MemoryEntry], min_access_count: int
) -> list[MemoryEntry]:
    return [e for e in entries if e.access_count < min_access_count]


def is_archived(entry: MemoryEntry) -> bool:
    return ARCHIVED_TAG in entry.tags


# -- Cleaner -------------------------------------------------------------------


class MemoryCleaner:
    """Runs cleanup passes over a ``MemoryStore``.

    Args:
        store: The memory store to maintain.
        config: Defaults for ``perform_cleanup``.
    """

    def __init__(self, store: MemoryStore, config: CleanupConfig | None = None) -> None:
        self._store = store
        self._config = config or CleanupConfig()

    async def perform_cleanup(
        self,
        config: CleanupConfig | None = None,
        *,
        now: datetime | None = None,
        **overrides: Any,
    ) -> CleanupResult:
        """Run one cleanup pass. Never raises; failures are reported in ``errors``.

        Steps, in order: age out old entries, drop rarely used ones, merge
        duplicates, then enforce ``max_memories`` oldest-first. Entries
        removed by one step are not considered by later ones.
        """
        cfg = config or self._config
        if overrides:
            cfg = CleanupConfig.model_validate({**cfg.model_dump(), **overrides})
        now = now or datetime.now(UTC)
        result = CleanupResult()

        try:
            result.size_before = (await self._store.get_stats()).total_size
            entries = await self._store.get_all()
            removed: set[str] = set()
            archived: set[str] = set()

            def remaining() -> list[MemoryEntry]:
                return [e for e in entries if e.id not in removed]

            def live() -> list[MemoryEntry]:
                return [e for e in remaining() if e.id not in archived and not is_archived(e)]

            # Age
            for entry in find_old_memories(live(), cfg.max_age_days, now):
                await self._retire(entry, cfg.archive_old_memories, removed, archived, result)

            # Usage
            if cfg.remove_unused_memories:
                for entry in find_unused_memories(remaining(), cfg.min_access_count):
                    if await self._store.delete(entry.id):
                        removed.add(entry.id)
                        result.deleted += 1
                    else:
                        result.errors.append(f"Failed to delete unused memory {entry.id}")

            # Duplicates
            if cfg.consolidate_duplicates:
                for group in find_duplicate_groups(live()):
                    await self._consolidate(group, removed, result)

            # Limit
            candidates = sorted(live(), key=lambda e: e.created_at)
            excess = len(candidates) - cfg.max_memories
            for entry in candidates[: max(excess, 0)]:
                await self._retire(entry, cfg.archive_old_memories, removed, archived, result)

            result.size_after = (await self._store.get_stats()).total_size
        except Exception as exc:
            logger.exception("Memory cleanup failed")
            result.success = False
            result.errors.append(f"Cleanup failed: {exc}")

        logger.info(
            "Memory cleanup: %d deleted, %d archived, %d consolidated",
            result.deleted,
            result.archived,
            result.consolidated,
        )
        return result

    async def _retire(
        self,
        entry: MemoryEntry,
        archive: bool,
        removed: set[str],
        archived: set[str],
        result: CleanupResult,
    ) -> None:
        if archive:
            updated = await self._store.update(
                entry.id,
                title=ARCHIVED_TITLE_PREFIX + entry.title,
                tags=[*entry.tags, ARCHIVED_TAG],
            )
            if updated is None:
                result.errors.append(f"Failed to archive memory {entry.id}")
                return
            archived.add(entry.id)
            result.archived += 1
            return

        if await self._store.delete(entry.id):
            removed.add(entry.id)
            result.deleted += 1
        else:
            result.errors.append(f"Failed to delete memory {entry.id}")

    async def _consolidate(
        self, group: list[MemoryEntry], removed: set[str], result: CleanupResult
    ) -> None:
        keeper = choose_keeper(group)
        merged = list(dict.fromkeys(tag for e in [keeper, *group] for tag in e.tags))
        if merged != keeper.tags and await self._store.update(keeper.id, tags=merged) is None:
            result.errors.append(f"Failed to merge tags into memory {keeper.id}")
            return

        for entry in group:
            if entry.id == keeper.id:
                continue
            if await self._store.delete(entry.id):
                removed.add(entry.id)
                result.consolidated += 1
            else:
                result.errors.append(f"Failed to delete duplicate memory {entry.id}")

    async def get_cleanup_recommendations(
        self, *, now: datetime | None = None
    ) -> CleanupRecommendations:
        """Summarise what a cleanup run would find, without changing anything."""
        entries = await self._store.get_all()
        stats = await self._store.get_stats()

        old = find_old_memories(entries, _STALE_AFTER_DAYS, now)
        unused = find_unused_memories(entries, 1)
        groups = find_duplicate_groups(entries)
        duplicates = sum(len(g) - 1 for g in groups)

        report = CleanupRecommendations(
            old_memories=len(old),
            unused_memories=len(unused),
            duplicate_groups=len(groups),
            duplicates=duplicates,
            total_size=stats.total_size,
        )
        notes = report.recommendations
        if old:
            notes.append(f"{len(old)} memories are older than 1 year and could be archived")
        if unused:
            notes.append(f"{len(unused)} memories have never been accessed")
        if groups:
            notes.append(
                f"{len(groups)} groups of duplicates found ({duplicates} duplicates total)"
            )
        if stats.total_size > _LARGE_STORE_BYTES:
            size_mb = stats.total_size / (1024 * 1024)
            notes.append(f"Memory storage is {size_mb:.1f}MB - consider cleanup")
        if len(entries) > _LARGE_STORE_ENTRIES:
            notes.append(f"{len(entries)} total memories - consider setting limits")
        if not notes:
            notes.append("No cleanup needed - memory system is well maintained")
        return report
