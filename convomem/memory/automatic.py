"""Automatic memory: prompt enhancement and post-turn auto-save.

Before a prompt goes to the model, relevant memories are searched and spliced
in. After the response arrives, the exchange is run through the heuristic
classifiers and confident candidates are saved. Neither path ever raises;
failures leave the prompt unchanged or save nothing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from convomem.config import settings
from convomem.memory.context import HistoryItem, MemoryContextAnalyzer
from convomem.memory.heuristics import (
    detect_code_snippet,
    detect_preference,
    detect_project_knowledge,
    detect_solution,
)
from convomem.memory.models import (
    AutoSaveCandidate,
    AutoSaveResult,
    MemoryEnhancedPrompt,
    MemoryEntry,
    MemoryType,
    RankedMemory,
)

if TYPE_CHECKING:
    from convomem.config import Settings
    from convomem.memory.store import MemoryStore

logger = logging.getLogger(__name__)

AUTO_SAVED_TAG = "auto-saved"
AUTO_SAVE_SOURCE = "auto_memory"

TOOL_INSTRUCTION_MARKERS = (
    "You have access to the following tools",
    "Available tools:",
    "Tool usage:",
    "Functions available:",
)

DEFAULT_AUTO_SAVE_TYPES = [
    MemoryType.USER_PREFERENCE,
    MemoryType.SOLUTION,
    MemoryType.PROJECT_KNOWLEDGE,
    MemoryType.CODE_SNIPPET,
]


class AutoMemoryConfig(BaseModel):
    """Runtime-mutable automatic memory settings."""

    model_config = ConfigDict(extra="forbid")

    enable_auto_search: bool = True
    enable_auto_save: bool = True
    search_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    save_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_context_memories: int = Field(default=5, ge=0)
    auto_save_types: list[MemoryType] = Field(
        default_factory=lambda: list(DEFAULT_AUTO_SAVE_TYPES)
    )

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> AutoMemoryConfig:
        cfg = cfg or settings
        return cls(
            enable_auto_search=cfg.auto_memory_search,
            enable_auto_save=cfg.auto_memory_save,
            search_threshold=cfg.memory_search_threshold,
            save_threshold=cfg.memory_save_threshold,
            max_context_memories=cfg.max_context_memories,
            auto_save_types=[MemoryType(t) for t in cfg.get_auto_save_types()],
        )


# -- Prompt assembly ---------------------------------------------------------


def build_memory_section(memories: Sequence[RankedMemory]) -> str:
    """Numbered block describing each memory, for injection into a system prompt."""
    if not memories:
        return ""

    items = []
    for number, memory in enumerate(memories, start=1):
        entry = memory.entry
        items.append(
            f"{number}. **{entry.title}** ({entry.type.label})\n"
            f"   {entry.content}\n"
            f"   Tags: {', '.join(entry.tags)}"
        )

    return (
        "## Relevant Context from Memory\n\n"
        "You have access to the following relevant information from previous "
        "conversations:\n\n"
        + "\n\n".join(items)
        + "\n\nUse this context to provide more informed and personalized responses. "
        "Reference this information naturally when relevant, but don't mention the "
        "memory system explicitly."
    )


def inject_memory_into_prompt(original_prompt: str, memory_section: str) -> str:
    """Insert before the first tool-instruction marker, or append."""
    for marker in TOOL_INSTRUCTION_MARKERS:
        position = original_prompt.find(marker)
        if position != -1:
            return (
                original_prompt[:position] + memory_section + "\n\n" + original_prompt[position:]
            )
    return f"{original_prompt}\n\n{memory_section}"


def identify_save_candidates(
    user_message: str,
    ai_response: str,
    project_id: str | None = None,
) -> list[AutoSaveCandidate]:
    """Run every classifier over the exchange and collect their proposals."""
    proposals = (
        detect_preference(user_message),
        detect_solution(user_message, ai_response),
        detect_code_snippet(ai_response),
        detect_project_knowledge(user_message, ai_response, project_id),
    )
    return [candidate for candidate in proposals if candidate is not None]


# -- Manager -----------------------------------------------------------------


class AutomaticMemoryManager:
    """Orchestrates memory search before a turn and memory capture after it.

    Args:
        store: Memory store used for writes and access tracking.
        analyzer: Context analyzer (built over *store* when omitted).
        config: Initial configuration (defaults from settings).
    """

    def __init__(
        self,
        store: MemoryStore,
        analyzer: MemoryContextAnalyzer | None = None,
        config: AutoMemoryConfig | None = None,
    ) -> None:
        self._store = store
        self._analyzer = analyzer or MemoryContextAnalyzer(store)
        self._config = config or AutoMemoryConfig.from_settings()
        logger.debug("Automatic memory initialised: %s", self._config)

    @property
    def analyzer(self) -> MemoryContextAnalyzer:
        return self._analyzer

    # -- Configuration ---------------------------------------------------------

    def get_config(self) -> AutoMemoryConfig:
        return self._config.model_copy(deep=True)

    def update_config(self, **changes: Any) -> AutoMemoryConfig:
        """Merge *changes* into the config.

        Raises ``pydantic.ValidationError`` (a ``ValueError``) for unknown keys
        or out-of-range values; the previous config is kept in that case.
        """
        self._config = AutoMemoryConfig.model_validate({**self._config.model_dump(), **changes})
        logger.info("Auto-memory config updated: %s", self._config)
        return self.get_config()

    def set_enabled(self, auto_search: bool, auto_save: bool) -> None:
        self._config.enable_auto_search = auto_search
        self._config.enable_auto_save = auto_save
        logger.info("Auto-memory: search=%s, save=%s", auto_search, auto_save)

    # -- Prompt enhancement ----------------------------------------------------

    async def enhance_prompt_with_memories(
        self,
        original_prompt: str,
        user_message: str,
        history: Sequence[HistoryItem] = (),
        conversation_id: str | None = None,
        project_id: str | None = None,
    ) -> MemoryEnhancedPrompt:
        """Splice relevant memories into *original_prompt*."""
        unchanged = MemoryEnhancedPrompt(
            enhanced_prompt=original_prompt, original_prompt=original_prompt
        )
        if not self._config.enable_auto_search:
            return unchanged

        try:
            context = await self._analyzer.get_memory_context(
                user_message, conversation_id, project_id, history
            )
            memories = [
                m
                for m in context.relevant_memories
                if m.relevance_score >= self._config.search_threshold
            ][: self._config.max_context_memories]
            if not memories:
                return unchanged

            section = build_memory_section(memories)
            enhanced = inject_memory_into_prompt(original_prompt, section)
            await self._store.mark_accessed(m.id for m in memories)
        except Exception:
            logger.exception("Error enhancing prompt with memories")
            return unchanged

        logger.info("Enhanced prompt with %d memories", len(memories))
        return MemoryEnhancedPrompt(
            enhanced_prompt=enhanced,
            original_prompt=original_prompt,
            memories_used=memories,
        )

    # -- Auto-save -------------------------------------------------------------

    def is_saveable(self, candidate: AutoSaveCandidate) -> bool:
        return (
            candidate.confidence >= self._config.save_threshold
            and candidate.type in self._config.auto_save_types
        )

    async def _save_candidate(
        self,
        candidate: AutoSaveCandidate,
        conversation_id: str | None,
        project_id: str | None,
    ) -> MemoryEntry | None:
        return await self._store.store(
            type=candidate.type,
            title=candidate.title,
            content=candidate.content,
            tags=[*candidate.tags, AUTO_SAVED_TAG],
            conversation_id=conversation_id,
            project_id=project_id,
            source=AUTO_SAVE_SOURCE,
        )

    async def auto_save_from_conversation(
        self,
        user_message: str,
        ai_response: str,
        history: Sequence[HistoryItem] = (),
        conversation_id: str | None = None,
        project_id: str | None = None,
    ) -> AutoSaveResult:
        """Propose memories from an exchange and save the confident ones.

        ``candidates`` lists every proposal; ``saved`` counts those written.
        """
        if not self._config.enable_auto_save:
            return AutoSaveResult()

        try:
            candidates = identify_save_candidates(user_message, ai_response, project_id)
        except Exception:
            logger.exception("Error in auto-save analysis")
            return AutoSaveResult()

        eligible = [c for c in candidates if self.is_saveable(c)]
        outcomes = await asyncio.gather(
            *(self._save_candidate(c, conversation_id, project_id) for c in eligible),
            return_exceptions=True,
        )

        saved = 0
        for candidate, outcome in zip(eligible, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("Failed to auto-save %r: %s", candidate.title, outcome)
            elif outcome is not None:
                saved += 1
                logger.info("Auto-saved memory: %s (%s)", candidate.title, candidate.type)

        return AutoSaveResult(saved=saved, candidates=candidates)
