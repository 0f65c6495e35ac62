"""
Small JSON cache handed to consumers that want to avoid repeated reads.

RedisCache   — shared across API workers (REDIS_URL)
TTLMemoryCache — bounded in-process map with explicit TTL sweeping
"""

import json
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Optional

import redis

from extraction.config import CACHE_BACKEND, REDIS_URL


class Cache:
    def get_json(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set_json(self, key: str, value: Any, ttl_seconds: float) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class RedisCache(Cache):
    def __init__(self, client: Optional[redis.Redis] = None, url: str = REDIS_URL):
        self.client = client or redis.from_url(url, decode_responses=True)

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.client.get(key)
        return json.loads(raw) if raw else None

    def set_json(self, key: str, value: Any, ttl_seconds: float) -> None:
        # Redis expiry has millisecond resolution
        self.client.set(key, json.dumps(value, default=str), px=max(1, int(ttl_seconds * 1000)))

    def delete(self, key: str) -> None:
        self.client.delete(key)


class TTLMemoryCache(Cache):
    """Thread-safe; evicts expired entries on every write and the oldest entry past max_entries."""

    def __init__(self, max_entries: int = 1024, clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self.clock = clock
        self._data: "OrderedDict[str, tuple]" = OrderedDict()
        self._lock = threading.Lock()

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self.clock()
        with self._lock:
            expired = [k for k, (expires, _) in self._data.items() if expires <= now]
            for k in expired:
                del self._data[k]
        return len(expired)

    def get_json(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires, value = entry
            if expires <= self.clock():
                del self._data[key]
                return None
            return json.loads(value)

    def set_json(self, key: str, value: Any, ttl_seconds: float) -> None:
        self.sweep()
        with self._lock:
            self._data[key] = (self.clock() + ttl_seconds, json.dumps(value, default=str))
            self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __len__(self):
        return len(self._data)


_cache: Optional[Cache] = None


def get_cache() -> Cache:
    """Get or create the configured cache."""
    global _cache
    if _cache is None:
        _cache = RedisCache() if CACHE_BACKEND == "redis" else TTLMemoryCache()
    return _cache
