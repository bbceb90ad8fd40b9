"""Ollama runtime adapter.

Maps the engine contract onto a locally running Ollama server:

1. Artifact lifecycle: ``/api/show`` (presence), ``/api/pull`` (download with
   streamed progress), ``/api/delete`` (remove).
2. Residency: ``/api/generate`` with ``keep_alive`` loads or unloads a model.
3. Generation: ``/api/chat`` for message lists and ``/api/generate`` for bare
   prompts, streamed as JSON lines.

Runtime errors are raised as EngineError carrying the server's own text, so
callers can classify context-length failures by message.
"""

import json
import re
from pathlib import PurePosixPath
from typing import Any, AsyncIterator, Dict, Optional, Sequence

import httpx
import structlog

from ..domain.errors import EngineConnectionError, EngineError
from ..domain.models import ChatTurn
from .base import InferenceEngine, LanguageModel, ProgressCallback, TextGenerator

logger = structlog.get_logger()


def ollama_model_name(model_id: str) -> str:
    """Translate a ``org/repo/file-QUANT.gguf`` id to an Ollama pull name.

    Ids that do not point at a GGUF file are assumed to already be Ollama
    names and pass through unchanged.
    """
    parts = model_id.split("/")
    if len(parts) < 3 or not parts[-1].lower().endswith(".gguf"):
        return model_id
    repo = "/".join(parts[:-1])
    stem = PurePosixPath(parts[-1]).stem
    quant = re.split(r"[-.]", stem)[-1]
    return f"hf.co/{repo}:{quant}"


class OllamaModel(LanguageModel):
    """A model artifact managed by the Ollama runtime."""

    def __init__(self, engine: "OllamaEngine", model_id: str) -> None:
        self.model_id = model_id
        self.name = ollama_model_name(model_id)
        self._engine = engine

    async def is_downloaded(self) -> bool:
        resp = await self._engine._request("POST", "/api/show", {"model": self.name})
        if resp.status_code == 404:
            return False
        self._engine._raise_for_status(resp)
        return True

    async def download(self, on_progress: Optional[ProgressCallback] = None) -> None:
        payload = {"model": self.name, "stream": True}
        async for event in self._engine._stream_lines("/api/pull", payload):
            total = event.get("total")
            completed = event.get("completed")
            if on_progress and total and completed is not None:
                on_progress(min(100.0, completed / total * 100))
        logger.info("model_pulled", model_id=self.model_id, name=self.name)

    async def prepare(self) -> None:
        payload = {"model": self.name, "keep_alive": self._engine.keep_alive}
        resp = await self._engine._request("POST", "/api/generate", payload)
        self._engine._raise_for_status(resp)

    async def unload(self) -> None:
        resp = await self._engine._request("POST", "/api/generate", {"model": self.name, "keep_alive": 0})
        self._engine._raise_for_status(resp)

    async def remove(self) -> None:
        resp = await self._engine._request("DELETE", "/api/delete", {"model": self.name})
        if resp.status_code == 404:
            return
        self._engine._raise_for_status(resp)

    def __repr__(self) -> str:
        return f"OllamaModel({self.model_id!r})"


class OllamaEngine(InferenceEngine, TextGenerator):
    """Inference engine and text generator backed by one Ollama server."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 300.0,
        keep_alive: str = "5m",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.keep_alive = keep_alive
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout, trust_env=False)

    def language_model(self, model_id: str) -> OllamaModel:
        return OllamaModel(self, model_id)

    async def stream_text(
        self,
        model: LanguageModel,
        *,
        messages: Optional[Sequence[ChatTurn]] = None,
        prompt: Optional[str] = None,
    ) -> AsyncIterator[str]:
        path, payload = self._generation_payload(model, messages, prompt, stream=True)
        async for event in self._stream_lines(path, payload):
            delta = self._extract_text(event)
            if delta:
                yield delta

    async def generate_text(
        self,
        model: LanguageModel,
        *,
        messages: Optional[Sequence[ChatTurn]] = None,
        prompt: Optional[str] = None,
    ) -> str:
        path, payload = self._generation_payload(model, messages, prompt, stream=False)
        resp = await self._request("POST", path, payload)
        self._raise_for_status(resp)
        return self._extract_text(resp.json())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _generation_payload(self, model, messages, prompt, stream: bool):
        name = getattr(model, "name", None) or ollama_model_name(model.model_id)
        if messages is not None:
            return "/api/chat", {
                "model": name,
                "messages": [turn.model_dump() for turn in messages],
                "stream": stream,
                "keep_alive": self.keep_alive,
            }
        return "/api/generate", {
            "model": name,
            "prompt": prompt or "",
            "stream": stream,
            "keep_alive": self.keep_alive,
        }

    @staticmethod
    def _extract_text(event: Dict[str, Any]) -> str:
        message = event.get("message")
        if isinstance(message, dict):
            return message.get("content") or ""
        return event.get("response") or ""

    async def _request(self, method: str, path: str, payload: dict) -> httpx.Response:
        try:
            return await self._client.request(method, path, json=payload)
        except httpx.RequestError as e:
            raise EngineConnectionError(str(e), path=path)

    async def _stream_lines(self, path: str, payload: dict) -> AsyncIterator[Dict[str, Any]]:
        try:
            async with self._client.stream("POST", path, json=payload) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    self._raise_for_status(resp)
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("engine_line_skipped", path=path)
                        continue
                    if event.get("error"):
                        raise EngineError(str(event["error"]), path=path)
                    yield event
        except httpx.RequestError as e:
            raise EngineConnectionError(str(e), path=path)

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        try:
            detail = resp.json().get("error") or resp.text
        except (ValueError, AttributeError):
            detail = resp.text
        raise EngineError(str(detail), http_status=resp.status_code)
