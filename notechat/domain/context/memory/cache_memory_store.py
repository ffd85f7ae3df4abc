from typing import Any, Dict, Generic, Optional, TypeVar
from collections import OrderedDict
import asyncio
import time

T = TypeVar("T")


class CacheMemoryStore(Generic[T]):
    """In-memory cache with per-entry TTL and a bounded size (oldest evicted first)"""

    def __init__(self, default_ttl: float = 3600, max_entries: int = 256):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.cache: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self._lock = asyncio.Lock()

    async def set(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        """Set a value with TTL in seconds"""

        async with self._lock:
            self.cache.pop(key, None)
            self.cache[key] = {
                "value": value,
                "expires_at": time.monotonic() + (self.default_ttl if ttl is None else ttl)
            }
            while len(self.cache) > self.max_entries:
                self.cache.popitem(last=False)

    async def get(self, key: str) -> Optional[T]:
        """Get value if present and not expired"""

        async with self._lock:
            entry = self.cache.get(key)
            if entry is None:
                self.misses += 1
                return None

            if time.monotonic() > entry["expires_at"]:
                del self.cache[key]
                self.misses += 1
                return None

            self.hits += 1
            return entry["value"]

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self.cache.pop(key, None) is not None

    async def clear(self) -> None:
        async with self._lock:
            self.cache.clear()

    async def clear_expired(self) -> int:
        """Clear expired entries and return count"""

        async with self._lock:
            now = time.monotonic()
            expired_keys = [key for key, entry in self.cache.items() if now > entry["expires_at"]]
            for key in expired_keys:
                del self.cache[key]
            return len(expired_keys)

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "total_keys": len(self.cache),
                "hits": self.hits,
                "misses": self.misses
            }
