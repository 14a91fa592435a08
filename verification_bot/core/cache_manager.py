from __future__ import annotations

import json
import re
import time
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

import aiofiles

from verification_bot.core.logging_utils import get_logger

logger = get_logger("cache_manager")

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_\-]+$")


class Cache(Protocol):
    async def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def set(self, key: str, value: Dict[str, Any]) -> None: ...


class MemoryCache:
    """
    In-process cache of extraction results keyed by image hash.
    Does not persist across restart; :class:`DiskCache` covers that.
    """

    def __init__(self, *, default_ttl: Optional[int] = None, max_entries: int = 1024) -> None:
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._kv: Dict[str, Tuple[Dict[str, Any], Optional[float]]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        if key not in self._kv:
            return None
        value, expire = self._kv[key]
        if expire is not None and expire < time.time():
            del self._kv[key]
            return None
        return dict(value)

    async def set(self, key: str, value: Dict[str, Any], *, ttl: Optional[int] = None) -> None:
        ttl = ttl or self._default_ttl
        expire = time.time() + ttl if ttl else None
        if key not in self._kv and len(self._kv) >= self._max_entries:
            # drop the oldest insertion
            self._kv.pop(next(iter(self._kv)))
        self._kv[key] = (dict(value), expire)

    def delete(self, key: str) -> None:
        self._kv.pop(key, None)

    def clear(self) -> None:
        self._kv.clear()

    def __len__(self) -> int:
        return len(self._kv)


class DiskCache:
    """One JSON file per key under ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path_for(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Unsafe cache key: {key!r}")
        return self.directory / f"{key}.json"

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as fh:
                raw = await fh.read()
            value = json.loads(raw)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", path.name, exc)
            return None
        return value if isinstance(value, dict) else None

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as fh:
            await fh.write(json.dumps(value, indent=2))
        tmp_path.replace(path)


class LayeredCache:
    """Memory first, then disk. Disk hits are promoted into memory."""

    def __init__(self, memory: MemoryCache, disk: Optional[DiskCache] = None) -> None:
        self.memory = memory
        self.disk = disk

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = await self.memory.get(key)
        if value is not None:
            logger.debug("Memory cache hit for %s", key[:12])
            return value
        if self.disk is None:
            return None
        value = await self.disk.get(key)
        if value is not None:
            logger.debug("Disk cache hit for %s", key[:12])
            await self.memory.set(key, value)
        return value

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        await self.memory.set(key, value)
        if self.disk is None:
            return
        try:
            await self.disk.set(key, value)
        except OSError as exc:
            logger.warning("Failed to write disk cache entry %s: %s", key[:12], exc)


__all__ = ["Cache", "MemoryCache", "DiskCache", "LayeredCache"]
