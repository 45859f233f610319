"""Chat session — one conversation wired to persistence and automatic memory."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from convomem.conversations.models import Message

if TYPE_CHECKING:
    from convomem.conversations.service import ConversationService
    from convomem.memory.automatic import AutomaticMemoryManager
    from convomem.memory.models import AutoSaveResult, MemoryEnhancedPrompt

logger = logging.getLogger(__name__)

RECENT_HISTORY_SIZE = 6  # last 3 exchanges


class ChatSession:
    """Conversation state for a single chat.

    Each exchange is persisted before ``record_exchange`` returns; memory
    capture runs as a background task so it never delays the reply.
    """

    def __init__(
        self,
        conversations: ConversationService,
        memory: AutomaticMemoryManager,
        *,
        project_id: str | None = None,
    ) -> None:
        self._conversations = conversations
        self._memory = memory
        self._project_id = project_id
        self._conversation_id: str | None = None
        self._messages: list[Message] = []
        self._background: set[asyncio.Task[AutoSaveResult]] = set()

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def to_api_messages(self) -> list[dict[str, Any]]:
        """Format messages for an LLM chat API."""
        return [{"role": m.role, "content": m.content} for m in self._messages]

    async def open(self, conversation_id: str) -> bool:
        """Resume a stored conversation. Returns False if it does not exist."""
        conversation = await self._conversations.get_conversation(conversation_id)
        if conversation is None:
            return False
        self._conversation_id = conversation.id
        self._messages = list(conversation.messages)
        self._conversations.current_conversation_id = conversation.id
        return True

    async def prepare_prompt(self, system_prompt: str, user_message: str) -> MemoryEnhancedPrompt:
        """System prompt enhanced with memories relevant to *user_message*."""
        return await self._memory.enhance_prompt_with_memories(
            system_prompt,
            user_message,
            self.to_api_messages()[-RECENT_HISTORY_SIZE:],
            conversation_id=self._conversation_id,
            project_id=self._project_id,
        )

    async def record_exchange(
        self,
        user_message: str,
        assistant_response: str,
        *,
        usage: dict[str, Any] | None = None,
    ) -> str:
        """Append a user/assistant turn, persist it and schedule memory capture."""
        history = self.to_api_messages()[-RECENT_HISTORY_SIZE:]
        self._messages.append(Message(role="user", content=user_message))
        self._messages.append(Message(role="assistant", content=assistant_response, usage=usage))

        if self._conversation_id is None:
            self._conversation_id = await self._conversations.create_conversation(self._messages)
        else:
            await self._conversations.update_conversation(self._conversation_id, self._messages)

        # Background memory capture (don't block the response)
        task = asyncio.create_task(
            self._memory.auto_save_from_conversation(
                user_message,
                assistant_response,
                history,
                conversation_id=self._conversation_id,
                project_id=self._project_id,
            )
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return self._conversation_id

    async def drain(self) -> list[AutoSaveResult]:
        """Wait for pending memory capture tasks."""
        if not self._background:
            return []
        results = await asyncio.gather(*self._background, return_exceptions=True)
        outcomes = []
        for result in results:
            if isinstance(result, BaseException):
                logger.error("Background memory capture failed: %s", result)
            else:
                outcomes.append(result)
        return outcomes
