"""Data models for the memory store and automatic memory."""

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MemoryType(enum.StrEnum):
    USER_PREFERENCE = "user_preference"
    CONVERSATION_CONTEXT = "conversation_context"
    PROJECT_KNOWLEDGE = "project_knowledge"
    CODE_SNIPPET = "code_snippet"
    SOLUTION = "solution"
    GENERAL = "general"

    @property
    def label(self) -> str:
        """Human-readable label, e.g. "User Preference"."""
        return self.value.replace("_", " ").title()


# -- Persisted ---------------------------------------------------------------


class MemoryEntry(BaseModel):
    """A distilled, reusable fact."""

    id: str
    type: MemoryType = MemoryType.GENERAL
    title: str
    content: str
    tags: list[str] = Field(default_factory=list)
    conversation_id: str | None = None
    project_id: str | None = None
    source: str | None = None  # "explicit", "auto_memory", "auto_conversation"
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_accessed: datetime | None = None
    access_count: int = 0

    def searchable_text(self) -> str:
        return " ".join([self.title, self.content, *self.tags]).lower()


class MemoryIndexEntry(BaseModel):
    """Lightweight metadata kept in the memory index."""

    id: str
    type: MemoryType
    title: str
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    relevance_score: float | None = None
    conversation_id: str | None = None
    project_id: str | None = None
    source: str | None = None
    size: int = 0

    @classmethod
    def from_entry(cls, entry: MemoryEntry) -> "MemoryIndexEntry":
        return cls(
            id=entry.id,
            type=entry.type,
            title=entry.title,
            tags=list(entry.tags),
            created_at=entry.created_at,
            conversation_id=entry.conversation_id,
            project_id=entry.project_id,
            source=entry.source,
            size=len(entry.model_dump_json()),
        )


class SearchQuery(BaseModel):
    """Memory search filters. Every field is optional and filters independently."""

    text: str | None = None
    type: MemoryType | None = None
    tags: list[str] | None = None
    conversation_id: str | None = None
    project_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int = 50
    offset: int = 0


# -- Ephemeral ---------------------------------------------------------------


@dataclass
class SearchResult:
    entry: MemoryEntry
    relevance_score: float
    matched_fields: list[str] = field(default_factory=list)


@dataclass
class MemoryStats:
    total_entries: int = 0
    entries_by_type: dict[str, int] = field(default_factory=dict)
    total_size: int = 0
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None


@dataclass
class ConversationAnalysis:
    topics: list[str] = field(default_factory=list)
    intent: str = "general"
    entities: list[str] = field(default_factory=list)
    memory_triggers: list[str] = field(default_factory=list)
    should_create_memory: bool = False
    suggested_type: MemoryType | None = None


@dataclass
class RankedMemory:
    """A memory entry scored for one prompt-enhancement call."""

    entry: MemoryEntry
    relevance_score: float

    @property
    def id(self) -> str:
        return self.entry.id


@dataclass
class MemoryContext:
    relevant_memories: list[RankedMemory] = field(default_factory=list)
    context_summary: str = ""
    total_memories: int = 0


@dataclass
class AutoSaveCandidate:
    """A proposed, not yet persisted memory entry."""

    type: MemoryType
    title: str
    content: str
    tags: list[str]
    confidence: float
    reason: str


@dataclass
class AutoSaveResult:
    saved: int = 0
    candidates: list[AutoSaveCandidate] = field(default_factory=list)


@dataclass
class MemoryEnhancedPrompt:
    enhanced_prompt: str
    original_prompt: str
    memories_used: list[RankedMemory] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enhanced_prompt": self.enhanced_prompt,
            "original_prompt": self.original_prompt,
            "memories_used": [m.entry.model_dump(mode="json") for m in self.memories_used],
        }
