"""Base repository interface."""

from abc import ABC, abstractmethod
from typing import Any, Optional


class KeyValueRepository(ABC):
    """Abstract key/value persistence keyed by model identifier."""

    @abstractmethod
    async def load(self, key: str) -> Optional[Any]:
        """Return the stored value for key, or None."""
        pass

    @abstractmethod
    async def save(self, key: str, value: Any) -> None:
        """Store a JSON-compatible value under key."""
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete the value stored under key, if any."""
        pass
