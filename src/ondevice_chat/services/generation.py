"""Streaming generation with context-overflow recovery.

A turn prepends a user message and an empty assistant placeholder, streams
deltas into the placeholder and finalizes it. When the model reports that
its context is full, older turns are excluded from context once and the
generation is re-issued; any further failure is rendered into the
placeholder.
"""

import asyncio
from typing import Callable, List, Optional, Set

import structlog

from ..cancellation import CancellationToken, OperationCancelled
from ..domain.errors import ModelUnavailableError
from ..domain.models import ChatTurn, Message
from ..engines.base import LanguageModel, TextGenerator
from .conversation import ConversationStore
from .model_lifecycle import ModelLifecycleManager

logger = structlog.get_logger()

KEEP_LATEST_CONTEXT_MESSAGES = 3


def is_context_overflow(error: BaseException) -> bool:
    """Whether a generation error reports an over-capacity context."""
    return "context" in str(error).lower()


def render_error(error: BaseException) -> str:
    detail = str(error)
    return f"Error: {detail}" if detail else f"Error: {type(error).__name__}"


def build_context(messages: List[Message], exclude_id: str) -> List[ChatTurn]:
    """Chronological turns eligible for a generation request.

    ``messages`` is newest-first, as held by the conversation store.
    """
    return [
        m.to_turn()
        for m in reversed(messages)
        if m.id != exclude_id and m.text.strip() and m.include_in_context
    ]


def select_context_window(
    messages: List[Message],
    current_user_id: str,
    placeholder_id: str,
    keep_latest: int = KEEP_LATEST_CONTEXT_MESSAGES,
) -> Set[str]:
    """Ids that stay in context after pruning.

    The submitted user message is always kept, plus the ``keep_latest`` most
    recent other non-empty messages.
    """
    eligible = [
        m
        for m in reversed(messages)
        if m.id not in (current_user_id, placeholder_id) and m.text.strip()
    ]
    keep = {current_user_id}
    if keep_latest > 0:
        keep.update(m.id for m in eligible[-keep_latest:])
    return keep


class CoalescedUpdater:
    """Applies the latest scheduled value at most once per loop turn.

    Values scheduled before a pending update fires are merged into it.
    """

    def __init__(self, apply: Callable[[str], None], interval: float = 0.0) -> None:
        self._apply = apply
        self._interval = interval
        self._pending: Optional[str] = None
        self._handle: Optional[asyncio.Handle] = None

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def schedule(self, value: str) -> None:
        self._pending = value
        if self._handle is not None:
            return
        loop = asyncio.get_running_loop()
        if self._interval > 0:
            self._handle = loop.call_later(self._interval, self._fire)
        else:
            self._handle = loop.call_soon(self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._apply(self._pending)


class StreamingGenerationEngine:
    """Runs one generation at a time against the borrowed model handle."""

    def __init__(
        self,
        conversation: ConversationStore,
        models: ModelLifecycleManager,
        generator: TextGenerator,
        token: CancellationToken,
        use_context_history: bool = True,
        keep_latest: int = KEEP_LATEST_CONTEXT_MESSAGES,
        update_interval: float = 0.0,
        on_scroll_hint: Optional[Callable[[], None]] = None,
    ) -> None:
        self._conversation = conversation
        self._models = models
        self._generator = generator
        self._token = token
        self._on_scroll_hint = on_scroll_hint
        self._abort: Optional[CancellationToken] = None
        self._is_loading = False
        self.last_reply_id: Optional[str] = None
        self.use_context_history = use_context_history
        self.keep_latest = keep_latest
        self.update_interval = update_interval

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    def abort(self) -> None:
        """Stop applying updates from the in-flight turn, if any."""
        if self._abort is not None:
            self._abort.cancel()

    async def send(self, input_text: str) -> bool:
        """Submit input_text and stream the reply.

        Returns False when the input was rejected, the turn failed or it was
        cancelled; failures are rendered into the assistant message.
        """
        text = (input_text or "").strip()
        if not text or self._is_loading or not self._token.alive:
            return False
        handle = self._models.handle
        if handle is None:
            return False

        user = Message.create(text, is_user=True)
        placeholder = Message.create("", is_user=False)
        self._conversation.append(placeholder, user)
        self.last_reply_id = placeholder.id
        self._is_loading = True
        if self._on_scroll_hint:
            self._on_scroll_hint()

        abort = self._token.child()
        self._abort = abort
        logger.info(
            "generation_started",
            model_id=handle.model_id,
            use_context_history=self.use_context_history,
            input_length=len(text),
        )
        try:
            await self._generate(handle, text, user.id, placeholder.id, abort)
            logger.info("generation_completed", model_id=handle.model_id)
            return True
        except OperationCancelled:
            logger.info("generation_cancelled", model_id=handle.model_id)
            return False
        except Exception as e:
            if abort.cancelled:
                return False
            logger.error("generation_failed", model_id=handle.model_id, error=str(e))
            self._apply_text(placeholder.id, render_error(e), abort)
            return False
        finally:
            self._abort = None
            if self._token.alive:
                self._is_loading = False

    async def _generate(
        self,
        handle: LanguageModel,
        text: str,
        user_id: str,
        placeholder_id: str,
        abort: CancellationToken,
    ) -> None:
        try:
            await self._stream_once(handle, text, placeholder_id, abort)
        except OperationCancelled:
            raise
        except Exception as e:
            abort.raise_if_cancelled()
            if not (self.use_context_history and is_context_overflow(e)):
                raise
            self._prune(user_id, placeholder_id)
            logger.warning(
                "context_overflow_pruned",
                model_id=handle.model_id,
                error=str(e),
                remain_tokens=self._conversation.total_token,
            )
            await self._stream_once(handle, text, placeholder_id, abort)

    async def _stream_once(
        self,
        handle: LanguageModel,
        text: str,
        placeholder_id: str,
        abort: CancellationToken,
    ) -> None:
        self._ensure_handle(handle)
        if self.use_context_history:
            context = build_context(self._conversation.messages, placeholder_id)
            stream = self._generator.stream_text(handle, messages=context)
        else:
            stream = self._generator.stream_text(handle, prompt=text)

        updater = CoalescedUpdater(
            lambda value: self._apply_text(placeholder_id, value, abort),
            self.update_interval,
        )
        full_text = ""
        try:
            async for delta in stream:
                abort.raise_if_cancelled()
                self._ensure_handle(handle)
                full_text += delta
                updater.schedule(full_text)
        finally:
            updater.cancel()
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        abort.raise_if_cancelled()
        # Coalescing may have dropped the tail; always write the full text
        self._apply_text(placeholder_id, full_text, abort)

    def _prune(self, user_id: str, placeholder_id: str) -> None:
        keep = select_context_window(self._conversation.messages, user_id, placeholder_id, self.keep_latest)
        self._conversation.restrict_context(keep, skip_id=placeholder_id)
        total = self._conversation.total_token

        def annotate(message: Message) -> Message:
            update = {"remain_tokens": total}
            if message.id == placeholder_id:
                update["text"] = ""
            return message.model_copy(update=update)

        self._conversation.update_all(annotate)

    def _ensure_handle(self, handle: LanguageModel) -> None:
        if self._models.handle is not handle:
            raise ModelUnavailableError("Model was unloaded during generation", model_id=handle.model_id)

    def _apply_text(self, message_id: str, text: str, abort: CancellationToken) -> None:
        if abort.cancelled:
            return
        self._conversation.update_by_id(message_id, lambda m: m.model_copy(update={"text": text}))
