"""Memory-aware conversation analysis and context retrieval."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from convomem.memory.heuristics import find_substantial_code_block
from convomem.memory.models import (
    ConversationAnalysis,
    MemoryContext,
    MemoryEntry,
    MemoryType,
    RankedMemory,
    SearchQuery,
)

if TYPE_CHECKING:
    from convomem.memory.store import MemoryStore

logger = logging.getLogger(__name__)

TECH_KEYWORDS = (
    "react",
    "javascript",
    "typescript",
    "python",
    "node",
    "api",
    "database",
    "ui",
    "frontend",
    "backend",
)
ACTION_KEYWORDS = ("create", "build", "fix", "debug", "implement", "design", "optimize")

HISTORY_WINDOW = 3
RELEVANCE_THRESHOLD = 0.3
MAX_CONTEXT_MEMORIES = 5

TOPIC_BOOST = 0.2
ENTITY_BOOST = 0.3
RECENCY_BOOST = 0.1
RECENCY_WINDOW = timedelta(days=7)
POPULARITY_BOOST = 0.1
POPULARITY_MIN_ACCESSES = 5

_ENTITY_STRIP = ".,!?;:\"'()[]{}<>"

HistoryItem = Mapping[str, Any] | Any


def _history_content(item: HistoryItem) -> str:
    """Text of a history item given as a dict or a ``Message``."""
    if isinstance(item, Mapping):
        content = item.get("content", "")
    else:
        text = getattr(item, "text", None)
        if callable(text):
            return text()
        content = getattr(item, "content", "")
    return content if isinstance(content, str) else ""


# -- Message analysis --------------------------------------------------------


def extract_topics(lowered: str) -> list[str]:
    return [kw for kw in TECH_KEYWORDS + ACTION_KEYWORDS if kw in lowered]


def determine_intent(lowered: str) -> str:
    """First matching rule wins."""
    if any(cue in lowered for cue in ("prefer", "like", "want")):
        return "preference"
    if any(cue in lowered for cue in ("how", "what", "?")):
        return "question"
    if any(cue in lowered for cue in ("create", "build", "make")):
        return "creation"
    if any(cue in lowered for cue in ("fix", "error", "problem")):
        return "troubleshooting"
    return "general"


def extract_entities(message: str) -> list[str]:
    """Capitalized words ("Postgres", "Alice") as naive named entities."""
    entities: list[str] = []
    for raw in message.split():
        word = raw.strip(_ENTITY_STRIP)
        if len(word) > 2 and word[0].isupper() and word[1:] == word[1:].lower():
            if word not in entities:
                entities.append(word)
    return entities


def identify_memory_triggers(lowered: str) -> list[str]:
    triggers = []
    if any(cue in lowered for cue in ("prefer", "like", "always")):
        triggers.append("preference")
    if any(cue in lowered for cue in ("worked", "solved", "fixed")):
        triggers.append("solution")
    if any(cue in lowered for cue in ("remember", "note", "important")):
        triggers.append("knowledge")
    return triggers


def suggest_memory_type(lowered: str, intent: str) -> MemoryType:
    if intent == "preference":
        return MemoryType.USER_PREFERENCE
    if intent == "troubleshooting":
        return MemoryType.SOLUTION
    if "code" in lowered or "function" in lowered:
        return MemoryType.CODE_SNIPPET
    if "project" in lowered:
        return MemoryType.PROJECT_KNOWLEDGE
    return MemoryType.GENERAL


def calculate_relevance_score(
    entry: MemoryEntry,
    analysis: ConversationAnalysis,
    base_score: float,
    now: datetime | None = None,
) -> float:
    """Score how applicable *entry* is to the analysed message, clamped to [0, 1]."""
    score = base_score
    text = entry.searchable_text()

    score += TOPIC_BOOST * sum(1 for topic in analysis.topics if topic in text)
    score += ENTITY_BOOST * sum(1 for entity in analysis.entities if entity.lower() in text)

    now = now or datetime.now(UTC)
    created = entry.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    if now - created < RECENCY_WINDOW:
        score += RECENCY_BOOST
    if entry.access_count > POPULARITY_MIN_ACCESSES:
        score += POPULARITY_BOOST

    return max(0.0, min(score, 1.0))


class MemoryContextAnalyzer:
    """Finds and formats memories relevant to the current turn.

    Args:
        store: Memory store to search and write through.
        relevance_threshold: Minimum score for a memory to be returned.
        max_context_memories: Cap on returned memories.
    """

    def __init__(
        self,
        store: MemoryStore,
        *,
        relevance_threshold: float = RELEVANCE_THRESHOLD,
        max_context_memories: int = MAX_CONTEXT_MEMORIES,
    ) -> None:
        self._store = store
        self._threshold = relevance_threshold
        self._max_memories = max_context_memories

    # -- Analysis --------------------------------------------------------------

    def analyze_message(
        self, message: str, history: Sequence[HistoryItem] = ()
    ) -> ConversationAnalysis:
        """Extract topics, intent, entities and memory triggers from a message."""
        lowered = message.lower()
        recent = [_history_content(h) for h in list(history)[-HISTORY_WINDOW:]]

        intent = determine_intent(lowered)
        should_create = (
            intent == "preference"
            or (
                intent == "troubleshooting"
                and any("worked" in text or "solved" in text for text in recent)
            )
            or any(cue in lowered for cue in ("remember", "important", "note"))
        )

        return ConversationAnalysis(
            topics=extract_topics(lowered),
            intent=intent,
            entities=extract_entities(message),
            memory_triggers=identify_memory_triggers(lowered),
            should_create_memory=should_create,
            suggested_type=suggest_memory_type(lowered, intent) if should_create else None,
        )

    @staticmethod
    def build_search_queries(
        analysis: ConversationAnalysis,
        conversation_id: str | None = None,
        project_id: str | None = None,
    ) -> list[SearchQuery]:
        queries = []
        if analysis.topics:
            queries.append(SearchQuery(text=" ".join(analysis.topics), limit=3))
        if analysis.entities:
            queries.append(SearchQuery(text=" ".join(analysis.entities), limit=2))
        if project_id:
            queries.append(SearchQuery(project_id=project_id, limit=3))
        if conversation_id:
            queries.append(SearchQuery(conversation_id=conversation_id, limit=2))
        if analysis.intent == "preference" or "preference" in analysis.memory_triggers:
            queries.append(SearchQuery(type=MemoryType.USER_PREFERENCE, limit=3))
        return queries

    # -- Retrieval -------------------------------------------------------------

    async def get_memory_context(
        self,
        message: str,
        conversation_id: str | None = None,
        project_id: str | None = None,
        history: Sequence[HistoryItem] = (),
    ) -> MemoryContext:
        """Search, score and rank memories for *message*. Failures yield an empty context."""
        try:
            analysis = self.analyze_message(message, history)
            queries = self.build_search_queries(analysis, conversation_id, project_id)
            result_sets = await asyncio.gather(*(self._store.search(q) for q in queries))

            now = datetime.now(UTC)
            best: dict[str, RankedMemory] = {}
            for results in result_sets:
                for result in results:
                    score = calculate_relevance_score(
                        result.entry, analysis, result.relevance_score, now
                    )
                    if score < self._threshold:
                        continue
                    current = best.get(result.entry.id)
                    if current is None or score > current.relevance_score:
                        best[result.entry.id] = RankedMemory(result.entry, score)
        except Exception:
            logger.exception("Error getting memory context")
            return MemoryContext()

        ranked = sorted(best.values(), key=lambda m: m.relevance_score, reverse=True)
        selected = ranked[: self._max_memories]
        return MemoryContext(
            relevant_memories=selected,
            context_summary=create_context_summary(selected),
            total_memories=len(ranked),
        )

    # -- Prompt building -------------------------------------------------------

    @staticmethod
    def build_memory_enhanced_prompt(original_prompt: str, context: MemoryContext) -> str:
        if not context.relevant_memories:
            return original_prompt

        bullets = "\n".join(f"• {m.entry.content}" for m in context.relevant_memories)
        return (
            f"{original_prompt}\n\n"
            "=== RELEVANT CONTEXT FROM PREVIOUS CONVERSATIONS ===\n\n"
            "You have access to the following information from previous interactions:\n\n"
            f"{bullets}\n\n"
            "Please use this context naturally when relevant to the conversation. "
            "You can reference this information when it helps answer questions or "
            "provide better assistance, without mentioning where it came from.\n"
            "=== END OF RELEVANT CONTEXT ==="
        )

    # -- Memory creation -------------------------------------------------------

    async def create_memory_from_conversation(
        self,
        user_message: str,
        ai_response: str,
        analysis: ConversationAnalysis,
        conversation_id: str | None = None,
        project_id: str | None = None,
    ) -> bool:
        """Store a memory for the exchange when the analysis calls for one."""
        if not analysis.should_create_memory or analysis.suggested_type is None:
            return False

        title = generate_memory_title(user_message, analysis)
        entry = await self._store.store(
            type=analysis.suggested_type,
            title=title,
            content=extract_memory_content(user_message, ai_response, analysis),
            tags=generate_memory_tags(analysis),
            conversation_id=conversation_id,
            project_id=project_id,
            source="auto_conversation",
        )
        if entry is None:
            logger.error("Failed to auto-create memory: %s", title)
            return False
        logger.info("Auto-created memory: %s (%s)", title, analysis.suggested_type)
        return True


def create_context_summary(memories: Sequence[RankedMemory]) -> str:
    """One-line summary grouping memory titles by type."""
    by_type: dict[str, list[str]] = {}
    for memory in memories:
        by_type.setdefault(memory.entry.type.value, []).append(memory.entry.title)
    return " | ".join(
        f"{type_name.replace('_', ' ').upper()}: {', '.join(titles)}"
        for type_name, titles in by_type.items()
    )


def extract_memory_content(
    user_message: str, ai_response: str, analysis: ConversationAnalysis
) -> str:
    match analysis.suggested_type:
        case MemoryType.USER_PREFERENCE:
            return f"User preference: {user_message}"
        case MemoryType.SOLUTION:
            return f"Problem: {user_message}\n\nSolution: {ai_response}"
        case MemoryType.CODE_SNIPPET:
            return find_substantial_code_block(ai_response) or ai_response
        case _:
            return f"{user_message}\n\nResponse: {ai_response}"


def generate_memory_title(user_message: str, analysis: ConversationAnalysis) -> str:
    words = user_message.split()
    lead = " ".join(words[:6])
    label = (
        analysis.suggested_type.value.replace("_", " ")
        if analysis.suggested_type
        else "conversation"
    )
    suffix = "..." if len(words) > 6 else ""
    return f"{label}: {lead}{suffix}"


def generate_memory_tags(analysis: ConversationAnalysis) -> list[str]:
    tags = [*analysis.topics, *(e.lower() for e in analysis.entities), analysis.intent]
    return [tag for tag in dict.fromkeys(tags) if len(tag) > 1]
