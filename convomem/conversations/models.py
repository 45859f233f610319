"""Data models for conversation storage."""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Message(BaseModel):
    """A single conversation turn.

    Unknown keys sent by the UI layer (attachments, provider ids) are kept
    as-is so they survive a save/load cycle.
    """

    model_config = ConfigDict(extra="allow")

    role: str  # "user", "assistant", "system" or "tool"
    content: str | list[Any] = ""
    timestamp: datetime = Field(default_factory=_utcnow)
    usage: dict[str, Any] | None = None
    tool_calls: list[dict[str, Any]] | None = None

    def text(self) -> str:
        """Plain-text content, joining text parts of multi-part content."""
        if isinstance(self.content, str):
            return self.content
        parts = []
        for part in self.content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return " ".join(parts)


class ConversationIndexEntry(BaseModel):
    """Lightweight metadata stored in the conversation index."""

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0
    tools_hash: str | None = None


class Conversation(BaseModel):
    """A chat transcript.

    ``message_count`` tracks the persisted length; ``messages`` may be empty
    (not hydrated yet) or shorter (trimmed working set).
    """

    id: str
    title: str
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    tools_hash: str | None = None
    message_count: int = 0

    def to_index_entry(self) -> ConversationIndexEntry:
        return ConversationIndexEntry(
            id=self.id,
            title=self.title,
            created_at=self.created_at,
            updated_at=self.updated_at,
            message_count=self.message_count,
            tools_hash=self.tools_hash,
        )

    @classmethod
    def from_index_entry(cls, entry: ConversationIndexEntry) -> "Conversation":
        """Build an unhydrated conversation (messages empty) from index metadata."""
        return cls(
            id=entry.id,
            title=entry.title,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
            tools_hash=entry.tools_hash,
            message_count=entry.message_count,
        )

    def to_record(self) -> dict[str, Any]:
        """Serialize the full conversation for the record store."""
        return self.model_dump(mode="json")
