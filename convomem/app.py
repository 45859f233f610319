"""Service container — wires stores and services from settings.

Services are explicit instances rather than process-wide singletons; whoever
owns the chat client builds one container and passes it around.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from convomem.config import Settings, settings
from convomem.conversations.service import ConversationService
from convomem.memory.automatic import AutoMemoryConfig, AutomaticMemoryManager
from convomem.memory.cleanup import MemoryCleaner
from convomem.memory.context import MemoryContextAnalyzer
from convomem.memory.store import MemoryStore
from convomem.storage import create_record_store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    conversations: ConversationService
    memory_store: MemoryStore
    analyzer: MemoryContextAnalyzer
    memory: AutomaticMemoryManager
    cleaner: MemoryCleaner

    async def start(self) -> None:
        await self.conversations.initialize()
        await self.memory_store.initialize()

    async def stop(self) -> None:
        await self.conversations.destroy()


def build_services(cfg: Settings | None = None, *, cleanup: bool = True) -> Services:
    """Build every service over the configured storage backend.

    Pass ``cleanup=False`` to skip the periodic cache cleanup job (CLI use).
    """
    cfg = cfg or settings
    conversation_records = create_record_store("conversations", cfg)
    memory_records = create_record_store("memory", cfg)

    conversations = ConversationService(
        conversation_records,
        max_conversations=cfg.max_conversations,
        max_messages_in_memory=cfg.max_messages_in_memory,
        cleanup_interval_seconds=cfg.cleanup_interval_seconds if cleanup else 0,
        legacy_history_path=cfg.legacy_history_path,
    )
    memory_store = MemoryStore(memory_records, index_limit=cfg.memory_index_limit)
    auto_config = AutoMemoryConfig.from_settings(cfg)
    analyzer = MemoryContextAnalyzer(
        memory_store,
        relevance_threshold=auto_config.search_threshold,
        max_context_memories=auto_config.max_context_memories,
    )
    memory = AutomaticMemoryManager(memory_store, analyzer=analyzer, config=auto_config)

    logger.debug("Services built (backend=%s, data_dir=%s)", cfg.storage_backend, cfg.data_dir)
    return Services(
        conversations=conversations,
        memory_store=memory_store,
        analyzer=analyzer,
        memory=memory,
        cleaner=MemoryCleaner(memory_store),
    )
