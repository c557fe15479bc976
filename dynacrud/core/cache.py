import hashlib
import json
import logging
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class CacheStrategy(ABC):
    """Key/value store for JSON-serializable dicts with an advisory TTL."""

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any], ttl: int = 3600) -> bool: ...

    @abstractmethod
    def invalidate(self, key: str) -> bool: ...

    @abstractmethod
    def clear(self) -> bool: ...


class MemoryCacheStrategy(CacheStrategy):
    """Process-local cache. Good enough for tests and single-worker apps."""

    def __init__(self):
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        expires_at, value = entry
        if expires_at < time.time():
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Dict[str, Any], ttl: int = 3600) -> bool:
        self._entries[key] = (time.time() + ttl, value)
        return True

    def invalidate(self, key: str) -> bool:
        self._entries.pop(key, None)
        return True

    def clear(self) -> bool:
        self._entries.clear()
        return True


class FileCacheStrategy(CacheStrategy):
    """
    One JSON file per key under cache_dir, named by the md5 of the key.
    Shared between worker processes on the same host.
    """

    def __init__(self, cache_dir: Optional[str] = None):
        self.cache_dir = Path(cache_dir or Path(tempfile.gettempdir()) / "dynacrud_cache")
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _file(self, key: str) -> Path:
        return self.cache_dir / f"{hashlib.md5(key.encode()).hexdigest()}.cache"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._file(key)
        if not path.exists():
            return None

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            logger.warning(f"Dropping unreadable cache entry {path.name}: {error}")
            path.unlink(missing_ok=True)
            return None

        if data.get("expires_at", 0) < time.time():
            path.unlink(missing_ok=True)
            return None
        return data.get("value")

    def set(self, key: str, value: Dict[str, Any], ttl: int = 3600) -> bool:
        payload = {"value": value, "expires_at": time.time() + ttl}
        self._file(key).write_text(json.dumps(payload), encoding="utf-8")
        return True

    def invalidate(self, key: str) -> bool:
        self._file(key).unlink(missing_ok=True)
        return True

    def clear(self) -> bool:
        for path in self.cache_dir.glob("*.cache"):
            path.unlink(missing_ok=True)
        return True
