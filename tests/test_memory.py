"""
Tests for the decoded mask caches and slow operation tracking.
"""

import logging

from napari_cocomask._memory import CacheManager, LRUCache, ResourceTracker


class TestLRUCache:
    """Test cases for the LRU cache."""

    def test_hits_and_misses(self):
        cache = LRUCache(max_size=2)
        assert cache.get('a') is None
        cache.put('a', 1)
        assert cache.get('a') == 1
        assert (cache.hits, cache.misses) == (1, 1)

    def test_evicts_least_recently_used(self):
        cache = LRUCache(max_size=2)
        cache.put('a', 1)
        cache.put('b', 2)
        cache.get('a')
        cache.put('c', 3)

        assert 'a' in cache
        assert 'b' not in cache
        assert cache.size() == 2

    def test_memory_limit_keeps_newest(self):
        cache = LRUCache(max_size=10, max_memory_mb=1)
        cache.put('small', 1, 1024)
        cache.put('huge', 2, 4 * 1024 * 1024)

        assert 'small' not in cache
        assert 'huge' in cache

    def test_replacing_key_updates_memory(self):
        cache = LRUCache()
        cache.put('a', 1, 100)
        cache.put('a', 2, 40)
        assert cache.memory_usage() == 40
        cache.clear()
        assert cache.memory_usage() == 0

    def test_manager_stats(self):
        manager = CacheManager()
        first = manager.get_cache("first")
        assert manager.get_cache("first") is first

        first.put('a', 1, 10)
        first.get('a')
        manager.get_cache("second").get('missing')

        stats = manager.get_stats()
        assert (stats.cache_entries, stats.cache_size_bytes) == (1, 10)
        assert (stats.hits, stats.misses) == (1, 1)

        manager.clear_cache("first")
        assert manager.get_stats().cache_entries == 0

    def test_resource_tracker_logs_slow_operations(self, caplog):
        with caplog.at_level(logging.INFO, logger="napari_cocomask._memory"):
            with ResourceTracker("decode", threshold=-1.0) as tracker:
                pass
        assert tracker.duration >= 0
        assert "Operation 'decode'" in caplog.text

