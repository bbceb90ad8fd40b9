"""Session-scoped composition of the conversation, model and generation components.

Everything a chat screen needs is built together and released as a unit at
``close``; the root cancellation token is the session's liveness flag.
"""

from collections import deque
from typing import Deque, List, Optional

import structlog

from ..cancellation import CancellationToken
from ..config import Settings, get_settings
from ..domain.models import Alert, Message, SessionSnapshot
from ..engines.base import InferenceEngine, TextGenerator
from ..repositories.base import KeyValueRepository
from .conversation import ConversationStore
from .generation import StreamingGenerationEngine
from .llm import LLMService
from .model_lifecycle import ModelLifecycleManager

logger = structlog.get_logger()

MAX_ALERTS = 20


class ChatSession:
    """One chat session against one model id."""

    def __init__(
        self,
        engine: InferenceEngine,
        generator: TextGenerator,
        repository: KeyValueRepository,
        model_id: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.model_id = model_id
        self.token = CancellationToken()
        self.alerts: Deque[Alert] = deque(maxlen=MAX_ALERTS)
        self.llm = LLMService(engine, generator)
        self.conversation = ConversationStore(
            repository,
            self.token,
            llm=self.llm,
            summary_max_turns=settings.summary_max_turns,
        )
        self.models = ModelLifecycleManager(
            engine,
            self.token,
            initial_model_id=model_id,
            on_alert=self._record_alert,
        )
        self.generation = StreamingGenerationEngine(
            self.conversation,
            self.models,
            generator,
            self.token,
            use_context_history=settings.use_context_history,
            keep_latest=settings.context_keep_latest,
            update_interval=settings.update_interval,
        )
        self._started = False

    @property
    def alive(self) -> bool:
        return self._started and self.token.alive

    async def start(self) -> None:
        """Restore the conversation and recover an already-downloaded model."""
        self._started = True
        logger.info("session_started", model_id=self.model_id)
        if not self.model_id:
            return
        await self.conversation.load(self.model_id)
        exists = await self.models.check_model_exists(self.model_id)
        if not exists:
            logger.info("session_model_not_ready", model_id=self.model_id, status=self.models.status.value)

    async def close(self) -> None:
        """Abort in-flight work, persist the log and release the model."""
        if self.token.cancelled:
            return
        self.token.cancel()
        try:
            await self.conversation.flush()
        except Exception as e:
            logger.error("conversation_flush_failed", model_id=self.model_id, error=str(e))
        self.conversation.discard()
        await self.models.release()
        logger.info("session_closed", model_id=self.model_id)

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def send(self, text: str) -> bool:
        return await self.generation.send(text)

    async def setup_model(self, model_id: str) -> bool:
        return await self.models.setup_model(model_id)

    async def remove_model(self) -> None:
        await self.models.remove_model()

    async def remove_model_by_id(self, model_id: str) -> None:
        await self.models.remove_model_by_id(model_id)

    async def clear_conversation(self) -> None:
        await self.conversation.clear()

    def set_context_history(self, enabled: bool) -> None:
        self.generation.use_context_history = enabled

    @property
    def messages(self) -> List[Message]:
        return self.conversation.messages

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            model_id=self.model_id,
            model_status=self.models.status,
            model_loading_state=self.models.loading_state,
            download_progress=self.models.download_progress,
            selected_model_id=self.models.selected_model_id,
            is_loading=self.generation.is_loading,
            use_context_history=self.generation.use_context_history,
            conversation_summary=self.conversation.conversation_summary,
            total_token=self.conversation.total_token,
            remain_tokens=self.conversation.remain_tokens,
            message_count=len(self.conversation.messages),
            alerts=list(self.alerts),
        )

    def _record_alert(self, alert: Alert) -> None:
        logger.warning("session_alert", title=alert.title, message=alert.message)
        self.alerts.append(alert)
