"""Shared fakes for the engine, the generator and the session components."""

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import pytest

from ondevice_chat.cancellation import CancellationToken
from ondevice_chat.domain.models import ChatTurn
from ondevice_chat.engines.base import InferenceEngine, LanguageModel, TextGenerator
from ondevice_chat.repositories.memory import InMemoryRepository
from ondevice_chat.services.conversation import ConversationStore
from ondevice_chat.services.generation import StreamingGenerationEngine
from ondevice_chat.services.model_lifecycle import ModelLifecycleManager

MODEL_ID = "org/repo/model-Q4_K_M.gguf"
OTHER_MODEL_ID = "org/other/other-Q8_0.gguf"


async def drain(turns: int = 10) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(turns):
        await asyncio.sleep(0)


class FakeModel(LanguageModel):
    def __init__(self, engine: "FakeEngine", model_id: str) -> None:
        self.model_id = model_id
        self._engine = engine

    async def _step(self, name: str) -> None:
        self._engine.calls.append((name, self.model_id))
        gate = self._engine.gates.get(name)
        if gate is not None:
            await gate.wait()
        error = self._engine.failures.get(name)
        if error is not None:
            raise error

    async def is_downloaded(self) -> bool:
        await self._step("is_downloaded")
        return self.model_id in self._engine.downloaded

    async def download(self, on_progress=None) -> None:
        self._engine.calls.append(("download", self.model_id))
        for percentage in self._engine.progress_steps:
            if on_progress:
                on_progress(percentage)
        gate = self._engine.gates.get("download")
        if gate is not None:
            await gate.wait()
        error = self._engine.failures.get("download")
        if error is not None:
            raise error
        self._engine.downloaded.add(self.model_id)

    async def prepare(self) -> None:
        await self._step("prepare")
        self._engine.prepared.add(self.model_id)

    async def unload(self) -> None:
        await self._step("unload")
        self._engine.prepared.discard(self.model_id)

    async def remove(self) -> None:
        await self._step("remove")
        self._engine.downloaded.discard(self.model_id)


class FakeEngine(InferenceEngine):
    """Records every call; ``failures`` and ``gates`` are keyed by operation name."""

    def __init__(self, downloaded: Sequence[str] = ()) -> None:
        self.downloaded = set(downloaded)
        self.prepared = set()
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.progress_steps = [25.0, 50.0]

    def language_model(self, model_id: str) -> FakeModel:
        return FakeModel(self, model_id)

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)


@dataclass
class StreamCall:
    model: LanguageModel
    messages: Optional[List[ChatTurn]]
    prompt: Optional[str]


class FakeGenerator(TextGenerator):
    """Plays back one script per stream_text call.

    A script item is a text delta, an exception to raise, or an
    asyncio.Event to wait on before continuing.
    """

    def __init__(self, *scripts, responses: Sequence = ()) -> None:
        self.scripts = list(scripts)
        self.responses = list(responses)
        self.calls: List[StreamCall] = []
        self.generate_calls: List[StreamCall] = []

    def stream_text(self, model, *, messages=None, prompt=None):
        self.calls.append(StreamCall(model, list(messages) if messages is not None else None, prompt))
        script = self.scripts.pop(0) if self.scripts else ["Hi", " there"]
        return self._play(script)

    async def _play(self, script):
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield item

    async def generate_text(self, model, *, messages=None, prompt=None) -> str:
        self.generate_calls.append(StreamCall(model, list(messages) if messages is not None else None, prompt))
        response = self.responses.pop(0) if self.responses else "A short chat."
        if isinstance(response, BaseException):
            raise response
        return response


@dataclass
class Harness:
    token: CancellationToken
    repository: InMemoryRepository
    engine: FakeEngine
    generator: FakeGenerator
    conversation: ConversationStore
    models: ModelLifecycleManager
    generation: StreamingGenerationEngine


@pytest.fixture
def make_harness():
    """Build the three components around fakes, optionally with a ready model."""

    async def build(*scripts, ready: bool = True, **options) -> Harness:
        token = CancellationToken()
        repository = InMemoryRepository()
        engine = FakeEngine()
        generator = FakeGenerator(*scripts)
        conversation = ConversationStore(repository, token)
        conversation.model_id = MODEL_ID
        models = ModelLifecycleManager(engine, token)
        generation = StreamingGenerationEngine(conversation, models, generator, token, **options)
        if ready:
            assert await models.setup_model(MODEL_ID)
        return Harness(token, repository, engine, generator, conversation, models, generation)

    return build
