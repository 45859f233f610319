"""One-time migration from the legacy single-blob conversation history.

Older releases kept every conversation (messages included) in one JSON list.
Migration version 1 splits that blob into one record per conversation plus
the index, then writes ``schema_version = 1`` to the family's meta so later
startups only check the marker.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from convomem.conversations.models import Conversation, ConversationIndexEntry
from convomem.storage.base import StorageError

if TYPE_CHECKING:
    from pathlib import Path

    from convomem.storage.base import RecordStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION_KEY = "schema_version"
CURRENT_SCHEMA_VERSION = 1

_LEGACY_KEYS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "toolsHash": "tools_hash",
    "messageCount": "message_count",
}


def _from_legacy(item: dict[str, Any]) -> Conversation:
    data = {_LEGACY_KEYS.get(k, k): v for k, v in item.items()}
    data["id"] = str(data.get("id", ""))
    data.setdefault("title", "")
    conversation = Conversation.model_validate(data)
    conversation.message_count = len(conversation.messages)
    return conversation


def _read_legacy(path: Path) -> list[dict[str, Any]] | None:
    if not path.exists():
        return None
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        msg = f"Legacy history is not a list: {path}"
        raise ValueError(msg)
    return data


async def migrate_legacy_blob(store: RecordStore, legacy_path: Path) -> int:
    """Copy legacy conversations into *store*. Returns how many were migrated.

    Conversations whose id already exists in the index are left untouched;
    ones whose id cannot name a record are skipped.
    Raises ``ValueError`` if the legacy file cannot be parsed.
    """
    items = await asyncio.to_thread(_read_legacy, legacy_path)
    if not items:
        return 0

    index = [
        ConversationIndexEntry.model_validate(raw) for raw in (await store.load_index() or [])
    ]
    known = {entry.id for entry in index}

    migrated = 0
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            conversation = _from_legacy(item)
        except ValidationError:
            logger.warning("Skipping unreadable legacy conversation %r", item.get("id"))
            continue
        if not conversation.id or conversation.id in known:
            continue
        try:
            saved = await store.save_record(conversation.id, conversation.to_record())
        except StorageError:
            logger.warning("Skipping legacy conversation with unusable id %r", conversation.id)
            continue
        if not saved:
            logger.error("Failed to migrate legacy conversation %s", conversation.id)
            continue
        index.append(conversation.to_index_entry())
        known.add(conversation.id)
        migrated += 1

    if migrated:
        index.sort(key=lambda e: e.created_at, reverse=True)
        await store.save_index([e.model_dump(mode="json") for e in index])
        logger.info("Migrated %d legacy conversation(s) from %s", migrated, legacy_path)
    return migrated


async def run_migrations(store: RecordStore, legacy_path: Path | None) -> int:
    """Run pending migrations once. Returns the number of migrated conversations.

    A corrupt legacy file is logged and leaves the marker unset, so the
    migration is retried on the next start.
    """
    version = await store.load_meta(SCHEMA_VERSION_KEY)
    if isinstance(version, int) and version >= CURRENT_SCHEMA_VERSION:
        return 0

    migrated = 0
    if legacy_path is not None:
        try:
            migrated = await migrate_legacy_blob(store, legacy_path)
        except (OSError, ValueError):
            logger.exception("Legacy conversation migration failed")
            return 0

    await store.save_meta(SCHEMA_VERSION_KEY, CURRENT_SCHEMA_VERSION)
    return migrated
