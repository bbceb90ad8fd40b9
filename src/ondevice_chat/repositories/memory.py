"""In-memory repository implementation."""

import asyncio
import copy
from typing import Any, Dict, Optional

import structlog

from .base import KeyValueRepository

logger = structlog.get_logger()


class InMemoryRepository(KeyValueRepository):
    """Process-local repository; values are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._values: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        logger.debug("repository_initialized", backend="memory")

    async def load(self, key: str) -> Optional[Any]:
        async with self._lock:
            value = self._values.get(key)
            return copy.deepcopy(value)

    async def save(self, key: str, value: Any) -> None:
        async with self._lock:
            self._values[key] = copy.deepcopy(value)
            logger.debug("value_saved", key=key)

    async def remove(self, key: str) -> None:
        async with self._lock:
            if self._values.pop(key, None) is not None:
                logger.debug("value_removed", key=key)
