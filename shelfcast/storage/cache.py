"""
Recommendation Cache

In-process TTL cache for served recommendation lists, keyed per
(user, scenario, algorithm, limit) and invalidated per user.
"""

import copy
import pickle
import time
import logging
from typing import Any, Callable, Dict, Optional, Set
from dataclasses import dataclass


@dataclass
class CacheConfig:
    """Configuration for the recommendation cache"""
    default_ttl_s: int = 300
    max_items: int = 10000
    enabled: bool = True


@dataclass
class CacheStats:
    """Cache performance statistics"""
    hits: int = 0
    misses: int = 0
    total_requests: int = 0
    invalidations: int = 0
    avg_latency_ms: float = 0.0

    @property
    def hit_rate(self) -> float:
        return self.hits / max(1, self.total_requests)


def recommendation_key(user_id: str, scenario: str, algorithm: str, limit: int) -> str:
    """Cache key for a served recommendation list"""
    return f"rec_{user_id}_{scenario}_{algorithm}_{limit}"


class CacheManager:
    """
    TTL cache with LRU eviction

    Values are deep-copied on the way in and out, so callers can annotate
    what they get back without touching the cached entry.
    """

    def __init__(self, config: Optional[CacheConfig] = None, clock: Callable[[], float] = time.time):
        """
        Initialize cache manager

        Args:
            config: Cache configuration
            clock: Time source used for expiry
        """
        self.config = config or CacheConfig()
        self.clock = clock

        self.entries: Dict[str, Any] = {}
        self.access_times: Dict[str, float] = {}
        self.expiry: Dict[str, float] = {}
        self.owners: Dict[str, str] = {}
        self.user_keys: Dict[str, Set[str]] = {}

        self.stats = CacheStats()
        self.logger = logging.getLogger(__name__)

    async def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache

        Args:
            key: Cache key

        Returns:
            Cached value or None
        """
        start_time = time.time()
        self.stats.total_requests += 1

        if key in self.entries:
            if key in self.expiry and self.clock() > self.expiry[key]:
                self._remove(key)
            else:
                self.access_times[key] = self.clock()
                self.stats.hits += 1
                self._update_avg_latency((time.time() - start_time) * 1000)
                return copy.deepcopy(self.entries[key])

        self.stats.misses += 1
        return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, user_id: Optional[str] = None):
        """
        Set value in cache

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time to live in seconds; 0 disables expiry
            user_id: Owner of the entry, for per-user invalidation
        """
        if not self.config.enabled:
            return

        ttl = self.config.default_ttl_s if ttl is None else ttl
        self._evict_if_needed()

        self.entries[key] = copy.deepcopy(value)
        self.access_times[key] = self.clock()
        if ttl > 0:
            self.expiry[key] = self.clock() + ttl
        else:
            self.expiry.pop(key, None)

        if user_id is not None:
            self.owners[key] = user_id
            self.user_keys.setdefault(user_id, set()).add(key)

    def _remove(self, key: str):
        self.entries.pop(key, None)
        self.access_times.pop(key, None)
        self.expiry.pop(key, None)
        owner = self.owners.pop(key, None)
        if owner is not None:
            keys = self.user_keys.get(owner)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self.user_keys[owner]

    async def delete(self, key: str):
        """Delete one key"""
        self._remove(key)

    async def invalidate_user_cache(self, user_id: str) -> int:
        """Invalidate all cache entries for a user"""
        keys_to_delete = list(self.user_keys.get(user_id, ()))

        for key in keys_to_delete:
            self._remove(key)

        self.stats.invalidations += len(keys_to_delete)
        self.logger.debug(f"Invalidated {len(keys_to_delete)} cache entries for user {user_id}")
        return len(keys_to_delete)

    def _evict_if_needed(self):
        """Evict old entries using LRU if cache is full"""
        if len(self.entries) < self.config.max_items:
            return

        # Expired entries go first
        now = self.clock()
        for key in [k for k, expires in self.expiry.items() if now > expires]:
            self._remove(key)

        if len(self.entries) >= self.config.max_items:
            sorted_items = sorted(self.access_times.items(), key=lambda x: x[1])

            # Remove oldest 10% of items
            num_to_remove = max(1, len(sorted_items) // 10)
            for key, _ in sorted_items[:num_to_remove]:
                self._remove(key)

    def _update_avg_latency(self, latency_ms: float):
        """Update average latency using exponential moving average"""
        alpha = 0.1  # Smoothing factor
        if self.stats.avg_latency_ms == 0:
            self.stats.avg_latency_ms = latency_ms
        else:
            self.stats.avg_latency_ms = (
                alpha * latency_ms +
                (1 - alpha) * self.stats.avg_latency_ms
            )

    async def ping(self) -> bool:
        """Health check for cache system"""
        test_key = f"ping_test_{int(time.time())}"
        self.entries[test_key] = "pong"
        result = self.entries.pop(test_key, None)
        return result == "pong"

    def get_stats(self) -> Dict[str, Any]:
        """Get cache performance statistics"""
        memory_usage_mb = 0.0
        for value in self.entries.values():
            try:
                memory_usage_mb += len(pickle.dumps(value)) / (1024 * 1024)
            except (pickle.PicklingError, TypeError, AttributeError):
                memory_usage_mb += 0.001  # Estimate

        return {
            "hit_rate": self.stats.hit_rate,
            "total_requests": self.stats.total_requests,
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "invalidations": self.stats.invalidations,
            "avg_latency_ms": self.stats.avg_latency_ms,
            "memory_usage_mb": memory_usage_mb,
            "size": len(self.entries),
            "max_items": self.config.max_items
        }

    def clear_stats(self):
        """Reset cache statistics"""
        self.stats = CacheStats()

    async def clear(self):
        self.entries.clear()
        self.access_times.clear()
        self.expiry.clear()
        self.owners.clear()
        self.user_keys.clear()

    async def close(self):
        """Drop every entry"""
        self.logger.info("Closing recommendation cache...")
        await self.clear()
