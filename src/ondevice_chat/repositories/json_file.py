"""File-backed repository storing one JSON document per key."""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote
from uuid import uuid4

import structlog

from ..domain.errors import StorageError
from .base import KeyValueRepository

logger = structlog.get_logger()


class JsonFileRepository(KeyValueRepository):
    """Stores each key as ``<root>/kv/<quoted key>.json``, written atomically."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve() / "kv"
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def path_for(self, key: str) -> Path:
        # Model ids contain slashes; quote everything so each key is one file
        return self._root / f"{quote(key, safe='')}.json"

    async def load(self, key: str) -> Optional[Any]:
        async with self._lock:
            return await asyncio.to_thread(self._read, self.path_for(key))

    async def save(self, key: str, value: Any) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, self.path_for(key), value)
        logger.debug("value_saved", key=key, backend="json")

    async def remove(self, key: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._delete, self.path_for(key))

    @staticmethod
    def _read(path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(str(e), code="STORE_READ_ERROR", path=str(path))

    @staticmethod
    def _write(path: Path, value: Any) -> None:
        tmp_path = path.with_name(f"{path.stem}.{uuid4().hex}.tmp")
        try:
            tmp_path.write_text(json.dumps(value, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(str(e), code="STORE_WRITE_ERROR", path=str(path))

    @staticmethod
    def _delete(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(str(e), code="STORE_DELETE_ERROR", path=str(path))
