"""
Simple in-memory caching for the Picross service.
Caches leaderboard pages and per-attempt pace curves.
"""

import time
from typing import Any, Optional, Dict
import threading
from dataclasses import dataclass

from .logging_utils import get_logger

logger = get_logger("picross.cache")


@dataclass
class CacheEntry:
    """A single cache entry with value and expiration"""
    value: Any
    expires_at: float
    created_at: float


class MemoryCache:
    """Thread-safe in-memory cache with TTL support"""

    def __init__(self):
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'evictions': 0
        }

    def get(self, key: str) -> Optional[Any]:
        """Get a value from cache, return None if not found or expired"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None

            if time.time() > entry.expires_at:
                del self._cache[key]
                self._stats['misses'] += 1
                self._stats['evictions'] += 1
                return None

            self._stats['hits'] += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int = 3600) -> None:
        """Set a value in cache with TTL in seconds"""
        with self._lock:
            now = time.time()
            self._cache[key] = CacheEntry(
                value=value,
                expires_at=now + ttl_seconds,
                created_at=now
            )
            self._stats['sets'] += 1

    def delete(self, key: str) -> bool:
        """Delete a key from cache, return True if existed"""
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix, return count removed"""
        with self._lock:
            keys = [k for k in self._cache if k.startswith(prefix)]
            for k in keys:
                del self._cache[k]
            return len(keys)

    def clear(self) -> None:
        """Clear all cache entries"""
        with self._lock:
            evicted = len(self._cache)
            self._cache.clear()
            self._stats['evictions'] += evicted

    def cleanup_expired(self) -> int:
        """Remove all expired entries, return count of removed entries"""
        with self._lock:
            now = time.time()
            expired_keys = [
                key for key, entry in self._cache.items()
                if now > entry.expires_at
            ]

            for key in expired_keys:
                del self._cache[key]

            self._stats['evictions'] += len(expired_keys)
            return len(expired_keys)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        with self._lock:
            total_requests = self._stats['hits'] + self._stats['misses']
            hit_rate = (self._stats['hits'] / total_requests * 100) if total_requests > 0 else 0

            return {
                **self._stats,
                'total_requests': total_requests,
                'hit_rate_percent': round(hit_rate, 2),
                'cache_size': len(self._cache),
            }


# Global cache instance
_cache = MemoryCache()


def get_cache() -> MemoryCache:
    """Get the global cache instance"""
    return _cache


def _leaderboard_key(size: Optional[int], period: Optional[str]) -> str:
    return f"leaderboard:{size or 'all'}:{period or 'all'}"


def cache_leaderboard(size: Optional[int], period: Optional[str], rows: list, ttl_seconds: int = 30) -> None:
    """Cache leaderboard rows with a short TTL since finishes land constantly"""
    _cache.set(_leaderboard_key(size, period), rows, ttl_seconds)


def get_cached_leaderboard(size: Optional[int], period: Optional[str]) -> Optional[list]:
    return _cache.get(_leaderboard_key(size, period))


def invalidate_leaderboard_cache() -> None:
    """Drop every cached leaderboard page when a new finish lands"""
    _cache.delete_prefix("leaderboard:")


def cache_kde_path(attempt_id: str, path: str, ttl_hours: int = 24) -> None:
    _cache.set(f"kde:{attempt_id}", path, ttl_hours * 3600)


def get_cached_kde_path(attempt_id: str) -> Optional[str]:
    return _cache.get(f"kde:{attempt_id}")


def cleanup_expired_entries() -> int:
    """Drop expired entries; run alongside the stale attempt sweep"""
    expired_count = _cache.cleanup_expired()
    if expired_count > 0:
        logger.info("cache_cleanup", extra={"count": expired_count})
    return expired_count
