"""Contracts the session requires from the inference engine.

The engine is addressed by model identifier and hands out LanguageModel
objects. A prepared LanguageModel is the opaque handle passed back into the
TextGenerator; the session never looks inside it.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Optional, Sequence

from ..domain.models import ChatTurn

ProgressCallback = Callable[[float], None]


class LanguageModel(ABC):
    """An on-device model artifact and, once prepared, a usable handle."""

    model_id: str

    @abstractmethod
    async def is_downloaded(self) -> bool:
        pass

    @abstractmethod
    async def download(self, on_progress: Optional[ProgressCallback] = None) -> None:
        """Fetch the artifact, reporting progress as a 0-100 percentage."""
        pass

    @abstractmethod
    async def prepare(self) -> None:
        """Load the model for generation. Idempotent."""
        pass

    @abstractmethod
    async def unload(self) -> None:
        pass

    @abstractmethod
    async def remove(self) -> None:
        """Delete the on-device artifact."""
        pass


class InferenceEngine(ABC):
    """Factory for LanguageModel objects."""

    @abstractmethod
    def language_model(self, model_id: str) -> LanguageModel:
        pass


class TextGenerator(ABC):
    """Streaming and one-shot text generation against a prepared model.

    Exactly one of ``messages`` or ``prompt`` is given per call.
    """

    @abstractmethod
    def stream_text(
        self,
        model: LanguageModel,
        *,
        messages: Optional[Sequence[ChatTurn]] = None,
        prompt: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Return a lazy sequence of text increments."""
        pass

    @abstractmethod
    async def generate_text(
        self,
        model: LanguageModel,
        *,
        messages: Optional[Sequence[ChatTurn]] = None,
        prompt: Optional[str] = None,
    ) -> str:
        pass
