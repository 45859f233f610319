"""ConversationService — conversation list, lazy hydration and bounded cache.

The index (one metadata entry per conversation) is loaded on start and is
always cheap to list. Full message lists are loaded from the record store
only when a conversation is opened with ``get_conversation``.

A periodic cleanup job bounds the in-memory working set. It never rewrites
record files: once a conversation is trimmed, updates replace only the
window kept in memory and the hidden prefix is read back from its record
before saving, so the persisted transcript stays complete.

Callers are expected to serialize updates per conversation id; overlapping
``update_conversation`` calls for the same id race and the last write wins.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
import time
from collections.abc import Iterable
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import ValidationError

from convomem.config import settings
from convomem.conversations.migration import run_migrations
from convomem.conversations.models import Conversation, ConversationIndexEntry, Message
from convomem.conversations.tools_hash import generate_tools_hash

if TYPE_CHECKING:
    from pathlib import Path

    from convomem.storage.base import RecordStore

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 50
_PLACEHOLDER_RE = re.compile(r"^Chat \d{4}-\d{2}-\d{2}$")
_CLEANUP_JOB_ID = "conversation-cleanup"


class ServiceState(enum.StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    DESTROYED = "destroyed"


def placeholder_title(today: date | None = None) -> str:
    """Dated title used until the conversation has a user message."""
    return f"Chat {(today or date.today()).isoformat()}"


def is_placeholder_title(title: str) -> bool:
    return bool(_PLACEHOLDER_RE.match(title))


def generate_title(messages: Iterable[Message]) -> str:
    """Title from the first user turn, truncated to 47 chars + "...".

    Falls back to the dated placeholder when there is no usable user text.
    """
    for message in messages:
        if message.role != "user":
            continue
        content = message.text().strip()
        if not content:
            break
        if len(content) > TITLE_MAX_LENGTH:
            return content[: TITLE_MAX_LENGTH - 3] + "..."
        return content
    return placeholder_title()


def _coerce_messages(messages: Iterable[Message | dict[str, Any]]) -> list[Message]:
    return [m if isinstance(m, Message) else Message.model_validate(m) for m in messages]


class ConversationService:
    """Owns the conversation list for one chat client.

    Args:
        store: Record store for the conversation family.
        max_conversations: Conversations kept in the list (oldest dropped).
        max_messages_in_memory: Per-conversation bound applied by cleanup.
        cleanup_interval_seconds: Cleanup period; 0 disables the job.
        legacy_history_path: Single-blob history to migrate on first start.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        max_conversations: int | None = None,
        max_messages_in_memory: int | None = None,
        cleanup_interval_seconds: int | None = None,
        legacy_history_path: Path | None = None,
    ) -> None:
        self._store = store
        self._max_conversations = max_conversations or settings.max_conversations
        self._max_messages = max_messages_in_memory or settings.max_messages_in_memory
        self._cleanup_interval = (
            settings.cleanup_interval_seconds
            if cleanup_interval_seconds is None
            else cleanup_interval_seconds
        )
        self._legacy_path = legacy_history_path
        self._conversations: list[Conversation] = []
        self._current_id: str | None = None
        self._last_id = 0
        # Conversation id -> number of persisted messages hidden in front of the cached window
        self._trimmed: dict[str, int] = {}
        self._pending_deletes: set[str] = set()
        self._scheduler: AsyncIOScheduler | None = None
        self._state = ServiceState.UNINITIALIZED
        self._init_lock = asyncio.Lock()

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def cleanup_scheduled(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def current_conversation_id(self) -> str | None:
        return self._current_id

    @current_conversation_id.setter
    def current_conversation_id(self, conversation_id: str | None) -> None:
        self._current_id = conversation_id

    # -- Lifecycle -------------------------------------------------------------

    async def initialize(self) -> None:
        """Load the index and start the cleanup job. Safe to call repeatedly."""
        if self._state is ServiceState.INITIALIZED:
            return

        async with self._init_lock:
            # Another caller may have finished loading while this one waited
            if self._state is ServiceState.INITIALIZED:
                return

            try:
                await run_migrations(self._store, self._legacy_path)
                raw_index = await self._store.load_index() or []
            except Exception:
                logger.exception("Failed to load conversation history")
                raw_index = []

            loaded: list[Conversation] = []
            seen: set[str] = set()
            for raw in raw_index:
                try:
                    entry = ConversationIndexEntry.model_validate(raw)
                except ValidationError:
                    logger.warning("Skipping malformed index entry: %r", raw)
                    continue
                if entry.id in seen:
                    continue
                seen.add(entry.id)
                loaded.append(Conversation.from_index_entry(entry))

            for conversation in loaded:
                if conversation.id.isdigit():
                    self._last_id = max(self._last_id, int(conversation.id))

            self._conversations = loaded
            self._start_cleanup_job()
            self._state = ServiceState.INITIALIZED
            logger.info("Loaded %d conversation(s) from index", len(loaded))

    async def destroy(self) -> None:
        """Stop the cleanup job and drop the in-memory cache."""
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self._conversations = []
        self._trimmed.clear()
        self._current_id = None
        self._state = ServiceState.DESTROYED
        logger.debug("Conversation service destroyed")

    def _start_cleanup_job(self) -> None:
        if self._cleanup_interval <= 0 or self.cleanup_scheduled:
            return
        self._scheduler = AsyncIOScheduler(timezone=UTC)
        self._scheduler.add_job(
            self.cleanup_memory,
            IntervalTrigger(seconds=self._cleanup_interval),
            id=_CLEANUP_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.debug("Cleanup job scheduled every %ds", self._cleanup_interval)

    # -- Internal helpers ------------------------------------------------------

    def _find(self, conversation_id: str) -> Conversation | None:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def _next_id(self) -> str:
        candidate = int(time.time() * 1000)
        if candidate <= self._last_id:
            candidate = self._last_id + 1
        self._last_id = candidate
        return str(candidate)

    async def _save_record(
        self, conversation: Conversation, messages: list[Message] | None = None
    ) -> bool:
        if messages is not None:
            conversation = conversation.model_copy(update={"messages": messages})
        try:
            ok = await self._store.save_record(conversation.id, conversation.to_record())
        except Exception:
            logger.exception("Error saving conversation %s", conversation.id)
            return False
        if ok:
            logger.debug("Conversation %s saved", conversation.id)
        else:
            logger.error("Failed to save conversation %s", conversation.id)
        return ok

    async def _load_record(self, conversation_id: str) -> dict[str, Any] | None:
        try:
            return await self._store.load_record(conversation_id)
        except Exception:
            logger.exception("Error loading conversation %s", conversation_id)
            return None

    async def _delete_record(self, conversation_id: str) -> None:
        try:
            await self._store.delete_record(conversation_id)
        except Exception:
            logger.exception("Error deleting conversation %s", conversation_id)

    async def _save_index(self) -> bool:
        entries = [c.to_index_entry().model_dump(mode="json") for c in self._conversations]
        try:
            ok = await self._store.save_index(entries)
        except Exception:
            logger.exception("Error saving conversation index")
            return False
        if not ok:
            logger.error("Failed to save conversation index")
            return False

        # Conversations evicted by cleanup leave the index only now
        for conversation_id in sorted(self._pending_deletes):
            await self._delete_record(conversation_id)
        self._pending_deletes.clear()
        return True

    async def _load_trimmed_prefix(self, conversation_id: str, offset: int) -> list[Message] | None:
        """The first *offset* persisted messages, hidden from memory by cleanup."""
        raw = await self._load_record(conversation_id)
        if raw is None:
            return None
        try:
            persisted = Conversation.model_validate(raw).messages
        except ValidationError:
            logger.exception("Malformed record for conversation %s", conversation_id)
            return None
        if len(persisted) < offset:
            logger.warning(
                "Record for %s holds %d message(s), expected at least %d",
                conversation_id,
                len(persisted),
                offset,
            )
            return None
        return persisted[:offset]

    # -- Public API ------------------------------------------------------------

    async def create_conversation(self, messages: Iterable[Message | dict[str, Any]]) -> str:
        """Create and persist a conversation. Returns its id."""
        await self.initialize()

        msgs = _coerce_messages(messages)
        now = datetime.now(UTC)
        conversation = Conversation(
            id=self._next_id(),
            title=generate_title(msgs),
            messages=msgs,
            created_at=now,
            updated_at=now,
            message_count=len(msgs),
        )

        self._conversations.insert(0, conversation)
        self._current_id = conversation.id

        dropped = self._conversations[self._max_conversations :]
        del self._conversations[self._max_conversations :]

        await self._save_record(conversation)
        for old in dropped:
            self._trimmed.pop(old.id, None)
            await self._delete_record(old.id)
        await self._save_index()

        logger.info("Created conversation %s (%d messages)", conversation.id, len(msgs))
        return conversation.id

    async def update_conversation(
        self, conversation_id: str, messages: Iterable[Message | dict[str, Any]]
    ) -> None:
        """Replace a conversation's messages and persist. Unknown ids are ignored.

        After cleanup trimmed a conversation, *messages* replaces only the
        window held in memory; the older persisted messages stay in front of
        it on disk. A list that already starts with those older messages is
        taken as the whole history.
        """
        await self.initialize()

        conversation = self._find(conversation_id)
        if conversation is None:
            logger.debug("Ignoring update for unknown conversation %s", conversation_id)
            return

        msgs = _coerce_messages(messages)
        offset = self._trimmed.get(conversation_id, 0)
        prefix: list[Message] | None = []
        if offset:
            prefix = await self._load_trimmed_prefix(conversation_id, offset)
            if prefix is not None and msgs[:offset] == prefix:
                del self._trimmed[conversation_id]
                offset, prefix = 0, []
        full = msgs if prefix is None else prefix + msgs

        conversation.messages = msgs
        conversation.message_count = offset + len(msgs)
        conversation.updated_at = datetime.now(UTC)
        if is_placeholder_title(conversation.title):
            conversation.title = generate_title(full)

        if prefix is None:
            # Writing only the window would truncate the history on disk
            logger.error(
                "Not saving conversation %s: trimmed history could not be restored",
                conversation_id,
            )
            return

        await self._save_record(conversation, full)
        await self._save_index()

    async def get_all_conversations(self) -> list[Conversation]:
        """Index-level copies of every conversation (``messages`` empty)."""
        await self.initialize()
        return [c.model_copy(update={"messages": []}) for c in self._conversations]

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Return a conversation, loading its messages on first access."""
        await self.initialize()

        conversation = self._find(conversation_id)
        if conversation is None:
            return None

        if not conversation.messages and conversation.message_count > 0:
            raw = await self._load_record(conversation_id)
            if raw is None:
                logger.warning("Conversation %s is indexed but has no record", conversation_id)
            else:
                try:
                    loaded = Conversation.model_validate(raw)
                except ValidationError:
                    logger.exception("Malformed record for conversation %s", conversation_id)
                else:
                    loaded.message_count = len(loaded.messages)
                    loaded.tools_hash = conversation.tools_hash or loaded.tools_hash
                    self._trimmed.pop(conversation_id, None)
                    position = self._conversations.index(conversation)
                    self._conversations[position] = loaded
                    conversation = loaded

        return conversation.model_copy(update={"messages": list(conversation.messages)})

    async def delete_conversation(self, conversation_id: str) -> None:
        """Remove a conversation from the list, its record and the index."""
        await self.initialize()

        conversation = self._find(conversation_id)
        if conversation is None:
            return

        self._conversations.remove(conversation)
        self._trimmed.pop(conversation_id, None)
        if self._current_id == conversation_id:
            self._current_id = None

        await self._delete_record(conversation_id)
        await self._save_index()
        logger.info("Deleted conversation %s", conversation_id)

    async def clear_all_history(self) -> None:
        """Remove every conversation and record."""
        await self.initialize()

        ids = {c.id for c in self._conversations} | self._pending_deletes
        try:
            ids.update(await self._store.list_record_ids())
        except Exception:
            logger.exception("Error listing conversation records")

        self._conversations = []
        self._trimmed.clear()
        self._pending_deletes.clear()
        self._current_id = None

        for conversation_id in sorted(ids):
            await self._delete_record(conversation_id)
        await self._save_index()
        logger.info("Cleared %d conversation(s)", len(ids))

    # -- Tool declarations -----------------------------------------------------

    @staticmethod
    def generate_tools_hash(tools: Iterable[Any] | None) -> str:
        return generate_tools_hash(tools)

    async def get_tools_hash(self, conversation_id: str) -> str | None:
        await self.initialize()
        conversation = self._find(conversation_id)
        return conversation.tools_hash if conversation else None

    async def set_tools_hash(self, conversation_id: str, tools_hash: str) -> None:
        """Remember the tool set last sent for a conversation (index only)."""
        await self.initialize()
        conversation = self._find(conversation_id)
        if conversation is None or conversation.tools_hash == tools_hash:
            return
        conversation.tools_hash = tools_hash
        await self._save_index()

    async def should_send_tools(self, conversation_id: str, tools: Iterable[Any] | None) -> bool:
        """True if *tools* differ from the set last sent; records the new hash."""
        current = generate_tools_hash(tools)
        stored = await self.get_tools_hash(conversation_id)
        if stored == current:
            logger.debug("Skipping tools for %s: no changes (hash %s)", conversation_id, current)
            return False
        await self.set_tools_hash(conversation_id, current)
        return True

    # -- Memory pressure -------------------------------------------------------

    async def cleanup_memory(self) -> None:
        """Bound the working set: 50 conversations, 200 messages each.

        Only in-memory state changes here; record files are left alone.
        """
        evicted = self._conversations[self._max_conversations :]
        if evicted:
            del self._conversations[self._max_conversations :]
            for conversation in evicted:
                self._trimmed.pop(conversation.id, None)
                self._pending_deletes.add(conversation.id)
            if self._current_id in {c.id for c in evicted}:
                self._current_id = None

        trimmed = 0
        for conversation in self._conversations:
            if len(conversation.messages) > self._max_messages:
                conversation.messages = conversation.messages[-self._max_messages :]
                self._trimmed[conversation.id] = conversation.message_count - len(
                    conversation.messages
                )
                trimmed += 1

        if evicted or trimmed:
            logger.debug(
                "Cleanup evicted %d conversation(s), trimmed %d message list(s)",
                len(evicted),
                trimmed,
            )
