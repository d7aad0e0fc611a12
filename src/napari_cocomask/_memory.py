"""
Cache and resource tracking utilities for napari-cocomask plugin.

Decoded run lengths are kept in named LRU caches so re-rendering the same
image does not decode every compressed mask again.
"""

from typing import Dict, Any, Optional, TypeVar, Generic
import threading
import time
import logging
from dataclasses import dataclass
from collections import OrderedDict

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class CacheStats:
    cache_entries: int
    cache_size_bytes: int
    hits: int
    misses: int


class LRUCache(Generic[T]):

    def __init__(self, max_size: int = 100, max_memory_mb: int = 100):
        self.max_size = max_size
        self.max_memory_bytes = max_memory_mb * 1024 * 1024
        self._cache: 'OrderedDict[Any, T]' = OrderedDict()
        self._sizes: Dict[Any, int] = {}
        self._lock = threading.RLock()
        self._memory_usage = 0
        self.hits = 0
        self.misses = 0

    def get(self, key: Any, default: Optional[T] = None) -> Optional[T]:
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                self.hits += 1
                return self._cache[key]
            self.misses += 1
            return default

    def put(self, key: Any, value: T, size_bytes: int = 0) -> None:
        with self._lock:
            if key in self._cache:
                self._cache.pop(key)
                self._memory_usage -= self._sizes.pop(key, 0)

            self._cache[key] = value
            self._sizes[key] = size_bytes
            self._memory_usage += size_bytes

            self._enforce_limits()

    def _enforce_limits(self) -> None:
        # Always keep the newest entry, even if it alone exceeds the memory cap
        while len(self._cache) > 1 and (len(self._cache) > self.max_size or
                                        self._memory_usage > self.max_memory_bytes):
            oldest_key, _ = self._cache.popitem(last=False)
            self._memory_usage -= self._sizes.pop(oldest_key, 0)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._sizes.clear()
            self._memory_usage = 0

    def __contains__(self, key: Any) -> bool:
        return key in self._cache

    def size(self) -> int:
        return len(self._cache)

    def memory_usage(self) -> int:
        return self._memory_usage


class CacheManager:

    def __init__(self):
        self._caches: Dict[str, LRUCache] = {}
        self._lock = threading.RLock()

    def get_cache(self, name: str, max_size: int = 100, max_memory_mb: int = 50) -> LRUCache:
        with self._lock:
            if name not in self._caches:
                self._caches[name] = LRUCache(max_size, max_memory_mb)
            return self._caches[name]

    def get_stats(self) -> CacheStats:
        with self._lock:
            caches = list(self._caches.values())
        return CacheStats(
            cache_entries=sum(cache.size() for cache in caches),
            cache_size_bytes=sum(cache.memory_usage() for cache in caches),
            hits=sum(cache.hits for cache in caches),
            misses=sum(cache.misses for cache in caches),
        )

    def clear_cache(self, cache_name: Optional[str] = None) -> None:
        with self._lock:
            if cache_name and cache_name in self._caches:
                self._caches[cache_name].clear()
            else:
                for cache in self._caches.values():
                    cache.clear()


# Global cache manager instance
_cache_manager: Optional[CacheManager] = None


def get_cache_manager() -> CacheManager:
    global _cache_manager
    if _cache_manager is None:
        _cache_manager = CacheManager()
    return _cache_manager


class ResourceTracker:
    """Times a block and logs it when it runs longer than ``threshold`` seconds."""

    def __init__(self, operation_name: str = "unknown", threshold: float = 1.0):
        self.operation_name = operation_name
        self.threshold = threshold
        self.start_time = 0.0
        self.duration = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time
        if self.duration > self.threshold:
            logger.info(f"Operation '{self.operation_name}' took {self.duration:.2f}s")
