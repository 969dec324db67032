"""In-memory query result cache."""
import hashlib
import json
import re
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Optional, Sequence
from loguru import logger
from ..models import CacheEntry

_WHITESPACE = re.compile(r"\s+")


def normalize_statement(text: str) -> str:
    """Collapse whitespace so formatting differences share a key."""
    return _WHITESPACE.sub(" ", text).strip()


def generate_cache_key(text: str, params: Optional[Sequence[Any]] = None) -> str:
    """Deterministic key for a statement and its parameters."""
    params_str = json.dumps(list(params), sort_keys=True, default=str) if params else ""
    return hashlib.md5((normalize_statement(text) + params_str).encode()).hexdigest()


class QueryCache:
    """TTL cache for read results with insertion-order eviction.

    Expired entries are treated as absent on read but stay in place until
    they are overwritten, invalidated or pushed out by capacity pressure.
    Eviction removes the oldest inserted entry, not the least recently used.
    """

    def __init__(
        self,
        capacity: int = 1000,
        default_ttl: float = 300.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize query cache.

        Args:
            capacity: Maximum number of entries
            default_ttl: Time to live in seconds when set() gets none
            enabled: Whether caching is enabled
            clock: Monotonic time source in seconds
        """
        self.capacity = capacity
        self.default_ttl = default_ttl
        self.enabled = enabled
        self.clock = clock
        self.entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.lock = Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

        if not enabled:
            logger.warning("Query caching is disabled")

    def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Returns:
            Cached value, or None if missing or expired
        """
        if not self.enabled:
            return None

        with self.lock:
            entry = self.entries.get(key)
            if entry is None or entry.is_expired(self.clock()):
                self.misses += 1
                return None

            self.hits += 1
            return entry.value

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time to live in seconds
            tags: Logical resources (table names) the value was read from

        Returns:
            True if stored, False when caching is disabled
        """
        if not self.enabled or self.capacity <= 0:
            return False

        with self.lock:
            # re-setting a key counts as a fresh insertion
            self.entries.pop(key, None)
            while len(self.entries) >= self.capacity:
                self.entries.popitem(last=False)
                self.evictions += 1

            self.entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=self.clock(),
                ttl=self.default_ttl if ttl is None else ttl,
                tags=list(tags or []),
            )
        return True

    def delete(self, key: str) -> bool:
        """Delete key from cache."""
        with self.lock:
            return self.entries.pop(key, None) is not None

    def invalidate(self, pattern: str) -> int:
        """
        Remove entries whose key or tags contain pattern.

        Args:
            pattern: Substring, typically a table name

        Returns:
            Number of entries removed
        """
        if not pattern:
            return 0

        with self.lock:
            doomed = [
                key for key, entry in self.entries.items()
                if pattern in key or any(pattern in tag for tag in entry.tags)
            ]
            for key in doomed:
                del self.entries[key]

        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries matching '{pattern}'")
        return len(doomed)

    def clear(self):
        """Drop every entry."""
        with self.lock:
            self.entries.clear()
        logger.info("Query cache cleared")

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self.lock:
            total = self.hits + self.misses
            return {
                'enabled': self.enabled,
                'size': len(self.entries),
                'capacity': self.capacity,
                'default_ttl': self.default_ttl,
                'hits': self.hits,
                'misses': self.misses,
                'evictions': self.evictions,
                'hit_rate': self.hits / total if total else 0.0,
            }
