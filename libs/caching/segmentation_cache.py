"""
TTL cache for segmentation results.

Entries are keyed by the SHA-256 of the normalized query text. Two backends:
- In-process: ``OrderedDict`` guarded by a ``threading.Lock``, bounded, oldest evicted
- Redis: entry JSON under ``SET EX``, usage counts in a ``:meta`` hash

Store errors never propagate: reads degrade to misses, writes are skipped.
"""

import hashlib
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
import structlog

from libs.caching.redis_client import close_redis_client, health_check
from libs.common.settings import SegmentationSettings
from segmentation.schemas.segment import SegmentationCacheEntry

logger = structlog.get_logger(__name__)


def hash_query(text: str) -> str:
    """Cache key for a query: SHA-256 hex of the lowercased, stripped text."""
    return hashlib.sha256(text.lower().strip().encode("utf-8")).hexdigest()


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    total_requests: int = 0
    hits: int = 0
    misses: int = 0
    errors: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.hits / self.total_requests


class SegmentationCache:
    """
    Segmentation cache safe for concurrent use.

    Usage:
        cache = SegmentationCache(default_ttl=300)
        entry = await cache.get(hash_query(query))
        if entry is None:
            ...
            await cache.put(query_hash, new_entry)
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        default_ttl: int = 300,
        max_entries: int = 1000,
        key_prefix: str = "segmentation:",
    ):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.key_prefix = key_prefix
        self._redis_client = redis_client
        self._entries: "OrderedDict[str, SegmentationCacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._stats = CacheStats()

    @property
    def backend(self) -> str:
        return "redis" if self._redis_client is not None else "memory"

    async def get(self, query_hash: str) -> Optional[SegmentationCacheEntry]:
        """Entry for ``query_hash``, or None on miss, expiry or store error."""
        self._stats.total_requests += 1
        try:
            if self._redis_client is not None:
                entry = await self._redis_get(query_hash)
            else:
                entry = self._memory_get(query_hash)
        except Exception as e:
            self._stats.errors += 1
            self._stats.misses += 1
            logger.error("Error reading segmentation cache", error=str(e), backend=self.backend)
            return None

        if entry is None:
            self._stats.misses += 1
            logger.debug("Segmentation cache miss", query_hash=query_hash[:12])
            return None

        self._stats.hits += 1
        logger.info(
            "Segmentation cache hit",
            query_hash=query_hash[:12],
            usage_count=entry.usage_count,
            backend=self.backend,
        )
        return entry

    async def put(
        self,
        query_hash: str,
        entry: SegmentationCacheEntry,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """Store ``entry``; last write wins."""
        ttl = ttl_seconds or self.default_ttl
        entry = entry.model_copy(update={"expires_at": entry.created_at + ttl})
        try:
            if self._redis_client is not None:
                await self._redis_put(query_hash, entry, ttl)
            else:
                self._memory_put(query_hash, entry)
        except Exception as e:
            self._stats.errors += 1
            logger.error("Error writing segmentation cache", error=str(e), backend=self.backend)
            return

        logger.debug("Segmentation cached", query_hash=query_hash[:12], ttl_seconds=ttl)

    async def clear(self) -> int:
        """Drop every entry. Returns the number of keys removed."""
        if self._redis_client is None:
            with self._lock:
                count = len(self._entries)
                self._entries.clear()
            return count

        deleted = 0
        try:
            async for key in self._redis_client.scan_iter(match=f"{self.key_prefix}*"):
                deleted += await self._redis_client.delete(key)
        except Exception as e:
            logger.error("Error clearing segmentation cache", error=str(e))
        return deleted

    def get_stats(self) -> CacheStats:
        return self._stats

    async def health_check(self) -> bool:
        """In-process caches are always healthy; Redis must answer a ping."""
        if self._redis_client is None:
            return True
        return await health_check(self._redis_client)

    async def close(self) -> None:
        await close_redis_client(self._redis_client)

    # In-process backend

    def _memory_get(self, query_hash: str) -> Optional[SegmentationCacheEntry]:
        now = time.time()
        with self._lock:
            entry = self._entries.get(query_hash)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[query_hash]
                return None
            entry = entry.model_copy(update={"usage_count": entry.usage_count + 1})
            self._entries[query_hash] = entry
            # Stored entries are never handed out directly
            return entry.model_copy(deep=True)

    def _memory_put(self, query_hash: str, entry: SegmentationCacheEntry) -> None:
        with self._lock:
            self._entries.pop(query_hash, None)
            self._entries[query_hash] = entry.model_copy(deep=True)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                logger.debug("Segmentation cache eviction", query_hash=evicted[:12])

    # Redis backend

    def _key(self, query_hash: str) -> str:
        return f"{self.key_prefix}{query_hash}"

    async def _redis_get(self, query_hash: str) -> Optional[SegmentationCacheEntry]:
        key = self._key(query_hash)
        raw = await self._redis_client.get(key)
        if not raw:
            return None

        entry = SegmentationCacheEntry.model_validate_json(raw)
        if entry.is_expired(time.time()):
            await self._redis_client.delete(key, f"{key}:meta")
            return None

        usage_count = await self._redis_client.hincrby(f"{key}:meta", "usage_count", 1)
        return entry.model_copy(update={"usage_count": int(usage_count)})

    async def _redis_put(self, query_hash: str, entry: SegmentationCacheEntry, ttl: int) -> None:
        key = self._key(query_hash)
        await self._redis_client.set(key, entry.model_dump_json(), ex=ttl)
        await self._redis_client.hset(
            f"{key}:meta",
            mapping={"usage_count": entry.usage_count, "created_at": entry.created_at},
        )
        await self._redis_client.expire(f"{key}:meta", ttl)


def create_segmentation_cache(
    settings: SegmentationSettings,
    redis_client: Optional[redis.Redis] = None,
) -> Optional[SegmentationCache]:
    """Cache configured from settings, or None when caching is disabled."""
    if not settings.cache_enabled:
        logger.info("Segmentation cache disabled")
        return None

    cache = SegmentationCache(
        redis_client=redis_client,
        default_ttl=settings.cache_ttl_seconds,
        max_entries=settings.cache_max_entries,
    )
    logger.info("Segmentation cache created", backend=cache.backend, ttl_seconds=settings.cache_ttl_seconds)
    return cache
