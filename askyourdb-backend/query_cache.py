"""
Response Cache for AskYourDB
Caches complete query responses keyed by (question, schema hint)
"""

import asyncio
import json
import logging
from typing import Optional, Any, Dict
from datetime import datetime
from dataclasses import dataclass
from collections import OrderedDict

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 600  # 10 minutes


@dataclass
class CacheEntry:
    """Cache entry with metadata"""
    key: str
    value: Any
    created_at: datetime
    ttl_seconds: int
    hit_count: int = 0

    def is_expired(self) -> bool:
        """Check if cache entry is expired"""
        age = (datetime.now() - self.created_at).total_seconds()
        return age > self.ttl_seconds


class QueryCache:
    """Bounded TTL cache; the oldest inserted entry is evicted first"""

    def __init__(self, max_size: int = 1000, default_ttl: int = 300):
        """
        Initialize response cache

        Args:
            max_size: Maximum number of entries
            default_ttl: Default TTL in seconds (5 minutes)
        """
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0
        }

    @staticmethod
    def generate_key(question: str, schema_hint: Optional[Dict[str, Any]] = None) -> str:
        """Normalized question + canonical JSON of the hint"""
        hint = json.dumps(schema_hint or {}, sort_keys=True, default=str)
        return f"{question.strip().lower()}:{hint}"

    def get(self, question: str, schema_hint: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """
        Get cached response

        Returns:
            Cached value or None if not found/expired
        """
        key = self.generate_key(question, schema_hint)
        entry = self._cache.get(key)

        if entry is None:
            self._stats["misses"] += 1
            return None

        if entry.is_expired():
            logger.debug(f"Cache entry expired: {key[:50]}")
            del self._cache[key]
            self._stats["misses"] += 1
            self._stats["expirations"] += 1
            return None

        # No move_to_end: eviction order is insertion order
        entry.hit_count += 1
        self._stats["hits"] += 1
        logger.debug(f"Cache hit: {key[:50]} (hits: {entry.hit_count})")
        return entry.value

    def set(
        self,
        question: str,
        value: Any,
        schema_hint: Optional[Dict[str, Any]] = None,
        ttl: Optional[int] = None,
    ):
        """
        Store a response

        Args:
            question: User question
            value: Response payload to cache
            schema_hint: Hint the response was produced with
            ttl: Time-to-live in seconds (uses default if None)
        """
        key = self.generate_key(question, schema_hint)

        if key in self._cache:
            del self._cache[key]
        elif len(self._cache) >= self.max_size:
            evicted_key, _ = self._cache.popitem(last=False)
            self._stats["evictions"] += 1
            logger.debug(f"Evicted cache entry: {evicted_key[:50]}")

        entry = CacheEntry(
            key=key,
            value=value,
            created_at=datetime.now(),
            ttl_seconds=ttl if ttl is not None else self.default_ttl,
        )
        self._cache[key] = entry
        logger.debug(f"Cached response: {key[:50]} (ttl: {entry.ttl_seconds}s)")

    def invalidate(self, question: str, schema_hint: Optional[Dict[str, Any]] = None):
        """Invalidate one cached response"""
        key = self.generate_key(question, schema_hint)
        if self._cache.pop(key, None) is not None:
            logger.debug(f"Invalidated cache entry: {key[:50]}")

    def clear(self) -> int:
        """Clear all cache entries"""
        count = len(self._cache)
        self._cache.clear()
        logger.info(f"Cleared {count} cache entries")
        return count

    def cleanup_expired(self) -> int:
        """Remove all expired entries"""
        expired_keys = [
            key for key, entry in self._cache.items()
            if entry.is_expired()
        ]

        for key in expired_keys:
            del self._cache[key]
            self._stats["expirations"] += 1

        if expired_keys:
            logger.info(f"Cleaned up {len(expired_keys)} expired entries")
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self._cache)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        total_requests = self._stats["hits"] + self._stats["misses"]
        hit_rate = self._stats["hits"] / total_requests if total_requests > 0 else 0

        return {
            "size": len(self._cache),
            "max_size": self.max_size,
            "ttl_seconds": self.default_ttl,
            "utilization": len(self._cache) / self.max_size if self.max_size else 0,
            "hits": self._stats["hits"],
            "misses": self._stats["misses"],
            "hit_rate": hit_rate,
            "evictions": self._stats["evictions"],
            "expirations": self._stats["expirations"],
        }


async def run_periodic_cleanup(cache: QueryCache, interval: float = CLEANUP_INTERVAL_SECONDS):
    """Sweep expired entries forever; cancel the task to stop it"""
    while True:
        await asyncio.sleep(interval)
        try:
            cache.cleanup_expired()
        except Exception as e:
            logger.error(f"Cache cleanup failed: {e}")
