"""
LocalStore - capacity-bounded key/value store persisted as one JSON file.
Keys keep their write order, so the first keys are the oldest ones.
"""
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles

from core.errors import LocalStoreQuotaExceededError

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY_BYTES = 5 * 1024 * 1024


def _entries_size(entries: Dict[str, str]) -> int:
    return sum(len(key.encode("utf-8")) + len(value.encode("utf-8")) for key, value in entries.items())


class LocalStore:
    def __init__(self, path: str, capacity_bytes: int = DEFAULT_CAPACITY_BYTES):
        self.path = Path(path)
        self.capacity_bytes = capacity_bytes
        self._entries: Optional[Dict[str, str]] = None
        self._lock = asyncio.Lock()

    async def _load(self) -> Dict[str, str]:
        if self._entries is not None:
            return self._entries

        entries: Dict[str, str] = {}
        if self.path.exists():
            try:
                async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                    data = json.loads(await f.read())
                entries = {str(k): str(v) for k, v in data.get("entries", {}).items()}
            except (OSError, ValueError, AttributeError) as e:
                logger.error(f"Discarding unreadable local store {self.path}: {e}")
        self._entries = entries
        return entries

    async def _save(self, entries: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps({"entries": entries}))
        os.replace(tmp_path, self.path)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entries = await self._load()
            return entries.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            entries = dict(await self._load())
            entries.pop(key, None)
            entries[key] = value

            required = _entries_size(entries)
            if required > self.capacity_bytes:
                raise LocalStoreQuotaExceededError(key, required, self.capacity_bytes)

            await self._save(entries)
            self._entries = entries

    async def remove(self, key: str) -> bool:
        async with self._lock:
            entries = dict(await self._load())
            if key not in entries:
                return False
            del entries[key]
            await self._save(entries)
            self._entries = entries
            return True

    async def keys(self, prefix: str = "") -> List[str]:
        """Keys starting with `prefix`, oldest write first."""
        async with self._lock:
            entries = await self._load()
            return [key for key in entries if key.startswith(prefix)]

    async def usage(self) -> int:
        async with self._lock:
            return _entries_size(await self._load())
