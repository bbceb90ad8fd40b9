"""Catalog of models the user can pick from."""

import re
from typing import List, Literal, Optional

import httpx
import structlog

from ..domain.models import ModelInfo
from ..repositories.base import KeyValueRepository

logger = structlog.get_logger()

CATALOG_CACHE_KEY = "LIST_MODELS"

SortOrder = Literal["asc", "desc"]

AVAILABLE_MODELS: List[ModelInfo] = [
    ModelInfo(
        id="ggml-org/tinygemma3-GGUF/tinygemma3-Q8_0.gguf",
        name="tinygemma3-Q8_0.gguf",
        size="47.2 MB",
    ),
    ModelInfo(
        id="tiiuae/Falcon-H1-Tiny-90M-Instruct-GGUF/Falcon-H1-Tiny-90M-Instruct-Q4_K_M.gguf",
        name="Falcon-H1-Tiny-90M-Instruct-Q4_K_M.gguf",
        size="58.6 MB",
    ),
    ModelInfo(
        id="M4-ai/TinyMistral-248M-v2-Instruct-GGUF/TinyMistral-248M-v2-Instruct.Q4_K_M.gguf",
        name="TinyMistral-248M-v2-Instruct.Q4_K_M.gguf",
        size="156 MB",
    ),
    ModelInfo(
        id="TheBloke/TinyLlama-1.1B-Chat-v1.0-GGUF/tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf",
        name="tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf",
        size="669 MB",
    ),
    ModelInfo(
        id="bartowski/Llama-3.2-3B-Instruct-GGUF/Llama-3.2-3B-Instruct-Q3_K_L.gguf",
        name="Llama-3.2-3B-Instruct-Q3_K_L.gguf",
        size="1.82GB",
    ),
    ModelInfo(
        id="unsloth/DeepSeek-R1-0528-Qwen3-8B-GGUF/DeepSeek-R1-0528-Qwen3-8B-Q4_K_M.gguf",
        name="DeepSeek-R1-0528-Qwen3-8B-Q4_K_M.gguf",
        size="5.03GB",
    ),
]

_SIZE_PATTERN = re.compile(r"^([\d.]+)\s*(KB|MB|GB)?$", re.IGNORECASE)
_UNIT_BYTES = {"KB": 1024, "MB": 1024**2, "GB": 1024**3}


def parse_size_to_bytes(size: str) -> float:
    """Parse ``"47.2 MB"``-style sizes; a bare number is taken as MB."""
    match = _SIZE_PATTERN.match(size.strip())
    if not match:
        return 0
    try:
        value = float(match.group(1))
    except ValueError:
        return 0
    unit = (match.group(2) or "MB").upper()
    return value * _UNIT_BYTES[unit]


class ModelCatalog:
    """Model list backed by a remote catalog, a local cache and a built-in fallback."""

    def __init__(
        self,
        repository: KeyValueRepository,
        catalog_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._repository = repository
        self._catalog_url = catalog_url
        self._client = client
        self._models: List[ModelInfo] = list(AVAILABLE_MODELS)
        self.sort_order: SortOrder = "asc"
        self.is_refreshing = False

    @property
    def models(self) -> List[ModelInfo]:
        return sorted(
            self._models,
            key=lambda m: parse_size_to_bytes(m.size),
            reverse=self.sort_order == "desc",
        )

    def toggle_sort_order(self) -> SortOrder:
        self.sort_order = "desc" if self.sort_order == "asc" else "asc"
        return self.sort_order

    async def load(self, refresh: bool = False) -> List[ModelInfo]:
        """Apply the cached list, then try the remote catalog."""
        if refresh:
            self.is_refreshing = True
        try:
            cached = await self._repository.load(CATALOG_CACHE_KEY)
            if cached:
                self._models = [ModelInfo.model_validate(item) for item in cached]

            fetched = await self._fetch()
            if fetched:
                await self._repository.save(CATALOG_CACHE_KEY, [m.model_dump() for m in fetched])
                self._models = fetched
            else:
                logger.info("model_catalog_fallback", reason="no_remote_data")
                self._models = list(AVAILABLE_MODELS)
        except Exception as e:
            logger.error("model_catalog_load_failed", error=str(e))
            self._models = list(AVAILABLE_MODELS)
        finally:
            self.is_refreshing = False
        return self.models

    async def _fetch(self) -> List[ModelInfo]:
        if not self._catalog_url:
            return []
        if self._client is not None:
            resp = await self._client.get(self._catalog_url)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.get(self._catalog_url)
        resp.raise_for_status()
        return self._parse(resp.json())

    @staticmethod
    def _parse(payload: dict) -> List[ModelInfo]:
        entries = payload.get("data") or []
        if not entries:
            return []
        items = (entries[0].get("attributes") or {}).get("data") or []
        return [
            ModelInfo(id=item["fieldId"], name=item["fieldName"], size=item.get("info1") or "0 MB")
            for item in items
        ]
