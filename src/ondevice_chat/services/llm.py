"""One-shot prompting helpers over the on-device engine."""

from typing import Optional, Sequence

import structlog

from ..domain.errors import GenerationError, ModelNotDownloadedError, ModelSetupError
from ..domain.models import ChatTurn
from ..engines.base import InferenceEngine, ProgressCallback, TextGenerator

logger = structlog.get_logger()


class LLMService:
    """Prompts a model by id without going through a session's model handle."""

    def __init__(self, engine: InferenceEngine, generator: TextGenerator) -> None:
        self._engine = engine
        self._generator = generator

    async def prompt(
        self,
        model_id: str,
        prompt: str,
        messages: Optional[Sequence[ChatTurn]] = None,
        use_context_history: bool = False,
    ) -> str:
        """Generate a complete response.

        Uses ``messages`` when context history is requested and messages are
        given, otherwise the bare ``prompt``.
        """
        try:
            model = self._engine.language_model(model_id)
            if not await model.is_downloaded():
                raise ModelNotDownloadedError(
                    f"Model {model_id} is not downloaded. Please download it first.",
                    model_id=model_id,
                )

            try:
                await model.prepare()
            except Exception as e:
                # prepare() is idempotent; a failure here may just mean it is already loaded
                logger.warning("model_prepare_warning", model_id=model_id, error=str(e))

            if use_context_history and messages:
                return await self._generator.generate_text(model, messages=list(messages))
            return await self._generator.generate_text(model, prompt=prompt)
        except ModelNotDownloadedError:
            raise
        except Exception as e:
            logger.error("prompt_failed", model_id=model_id, error=str(e))
            raise GenerationError(f"Failed to get AI response: {e}", model_id=model_id) from e

    async def is_model_ready(self, model_id: str) -> bool:
        try:
            return await self._engine.language_model(model_id).is_downloaded()
        except Exception as e:
            logger.error("model_readiness_check_failed", model_id=model_id, error=str(e))
            return False

    async def ensure_model_ready(self, model_id: str, on_progress: Optional[ProgressCallback] = None) -> None:
        """Download the model if needed, then prepare it."""
        try:
            model = self._engine.language_model(model_id)
            if not await model.is_downloaded():
                await model.download(on_progress)
            await model.prepare()
        except Exception as e:
            logger.error("ensure_model_ready_failed", model_id=model_id, error=str(e))
            raise ModelSetupError(f"Failed to setup model: {e}", model_id=model_id) from e
