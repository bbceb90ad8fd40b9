"""Conversation log for one model session.

The in-memory log is newest-first (display order) while the persisted record
is oldest-first; ``load`` and ``flush`` each reverse exactly once.
"""

import asyncio
from typing import Callable, Iterable, List, Optional

import structlog
from pydantic import ValidationError

from ..cancellation import CancellationToken
from ..domain.errors import StorageError
from ..domain.models import ChatTurn, Message
from ..repositories.base import KeyValueRepository
from .llm import LLMService

logger = structlog.get_logger()

SUMMARY_INSTRUCTION = "Summarize this conversation in one sentence, using the same language as the conversation."


class ConversationStore:
    """Owns the ordered message log, its persistence and derived metrics."""

    def __init__(
        self,
        repository: KeyValueRepository,
        token: CancellationToken,
        llm: Optional[LLMService] = None,
        summary_max_turns: int = 5,
    ) -> None:
        self._repository = repository
        self._token = token
        self._llm = llm
        self._summary_max_turns = summary_max_turns
        self._messages: List[Message] = []
        self._summary_task: Optional[asyncio.Task] = None
        self.model_id: Optional[str] = None
        self.conversation_summary: Optional[str] = None

    @property
    def messages(self) -> List[Message]:
        """Newest-first copy of the log."""
        return list(self._messages)

    @property
    def total_token(self) -> int:
        """Character length of every message still eligible for context."""
        return len("".join(m.text for m in self._messages if m.include_in_context))

    @property
    def remain_tokens(self) -> Optional[int]:
        if not self._messages:
            return None
        return self._messages[0].remain_tokens

    def get(self, message_id: str) -> Optional[Message]:
        return next((m for m in self._messages if m.id == message_id), None)

    async def load(self, model_id: str) -> List[Message]:
        """Restore the persisted log for model_id and start the summary."""
        self.model_id = model_id
        try:
            records = await self._repository.load(model_id) or []
            restored = [Message.model_validate(record) for record in records]
        except (StorageError, ValidationError, TypeError) as e:
            # An unreadable record starts the session with an empty log
            logger.error("conversation_load_failed", model_id=model_id, error=str(e))
            restored = []
        if not self._token.alive:
            return []

        self._messages = list(reversed(restored))
        logger.info("conversation_loaded", model_id=model_id, message_count=len(restored))

        if restored and self._llm is not None:
            self._summary_task = asyncio.create_task(self._summarize(model_id, restored))
        return self.messages

    def append(self, *messages: Message) -> None:
        """Insert at the head; the first argument becomes the newest message."""
        self._messages[:0] = messages

    def update_by_id(self, message_id: str, fn: Callable[[Message], Message]) -> bool:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                self._messages[index] = fn(message)
                return True
        return False

    def update_all(self, fn: Callable[[Message], Message]) -> None:
        self._messages = [fn(m) for m in self._messages]

    def restrict_context(self, keep_ids: Iterable[str], skip_id: Optional[str] = None) -> None:
        """Flag non-empty messages outside keep_ids as excluded from context."""
        keep = set(keep_ids)

        def apply(message: Message) -> Message:
            if message.id == skip_id or not message.text.strip():
                return message
            return message.model_copy(update={"include_in_context": message.id in keep})

        self.update_all(apply)

    async def clear(self) -> None:
        """Empty the log and delete the persisted record."""
        self._messages = []
        if not self.model_id:
            return
        try:
            await self._repository.remove(self.model_id)
        except Exception as e:
            logger.error("conversation_clear_failed", model_id=self.model_id, error=str(e))
        else:
            logger.info("conversation_cleared", model_id=self.model_id)

    async def flush(self) -> None:
        """Persist the log oldest-first."""
        if not self.model_id or not self._messages:
            return
        records = [m.to_record() for m in reversed(self._messages)]
        await self._repository.save(self.model_id, records)
        logger.info("conversation_flushed", model_id=self.model_id, message_count=len(records))

    def discard(self) -> None:
        """Drop in-memory state and stop a pending summary."""
        if self._summary_task is not None and not self._summary_task.done():
            self._summary_task.cancel()
        self._summary_task = None
        self._messages = []

    async def _summarize(self, model_id: str, restored: List[Message]) -> None:
        turns = [m.to_turn() for m in restored[: self._summary_max_turns]]
        turns.append(ChatTurn(role="user", content=SUMMARY_INSTRUCTION))
        try:
            summary = await self._llm.prompt(model_id, "", messages=turns, use_context_history=True)
        except Exception as e:
            logger.debug("conversation_summary_skipped", model_id=model_id, error=str(e))
            return
        if self._token.alive:
            self.conversation_summary = summary
