"""
Local persistent key-value store.

Mirrors the mobile AsyncStorage surface: string keys, string values, every
call async. Keys are independent; there is no cross-key transaction.

Two implementations:
- MemoryStore: process-local dict, used in tests and ephemeral runs
- FileStore: single JSON file on disk, atomically replaced on each write
"""
import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from equiauth.utils.logger import get_logger

logger = get_logger(__name__)


class KeyValueStore(ABC):
    """Async string key-value store."""

    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        ...

    @abstractmethod
    async def get_all_keys(self) -> List[str]:
        ...

    async def multi_remove(self, keys: Iterable[str]) -> None:
        """Remove several keys. Stops at the first failure."""
        for key in keys:
            await self.remove_item(key)


class MemoryStore(KeyValueStore):
    """In-memory store."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    async def get_all_keys(self) -> List[str]:
        return list(self._data.keys())


class FileStore(KeyValueStore):
    """
    JSON-file backed store.

    The whole file is loaded lazily on first access and rewritten on every
    mutation (temp file + os.replace). A lock serializes writers inside
    the process. An unreadable file is treated as empty and overwritten on
    the next write.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._data: Optional[Dict[str, str]] = None
        self._lock = asyncio.Lock()

    async def _load(self) -> Dict[str, str]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._read_file)
        return self._data

    def _read_file(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Local store at {self.path} unreadable, starting empty: {e}")
            return {}
        if not isinstance(raw, dict):
            logger.warning(f"Local store at {self.path} is not an object, starting empty")
            return {}
        return {str(k): str(v) for k, v in raw.items()}

    def _write_file(self, snapshot: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".store-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot, f)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def _flush(self) -> None:
        await asyncio.to_thread(self._write_file, dict(self._data or {}))

    async def get_item(self, key: str) -> Optional[str]:
        data = await self._load()
        return data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        async with self._lock:
            data = await self._load()
            data[key] = value
            await self._flush()

    async def remove_item(self, key: str) -> None:
        async with self._lock:
            data = await self._load()
            if key not in data:
                return
            del data[key]
            await self._flush()

    async def get_all_keys(self) -> List[str]:
        data = await self._load()
        return list(data.keys())

    async def multi_remove(self, keys: Iterable[str]) -> None:
        async with self._lock:
            data = await self._load()
            removed = False
            for key in keys:
                if data.pop(key, None) is not None:
                    removed = True
            if removed:
                await self._flush()
