"""In-memory TTL cache for rule generation results.

Holds recent structured rule proposals keyed by the instruction content
hash so that a retried identical instruction does not trigger a second
provider call. The cache is process-local: entries live until their TTL
elapses or they are pushed out by LRU eviction, and the module-level
``generation_cache`` is created at import time and cleared on shutdown.
Correctness never depends on it.
"""

import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from app.core.config import settings


@dataclass
class CacheEntry:
    """Single cache entry with value and expiration timestamp."""

    value: Any
    expires_at: float


class TTLCache:
    """Thread-safe LRU cache with TTL expiration.

    Args:
        max_size: Maximum number of entries.
        ttl_seconds: Time-to-live for each entry.
    """

    def __init__(self, max_size: int = 256, ttl_seconds: int = 1800) -> None:
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def make_key(*parts: Any) -> str:
        """Deterministic content hash over the given parts."""
        raw = json.dumps(parts, sort_keys=True, default=str)
        return hashlib.sha256(raw.encode()).hexdigest()

    def get(self, key: str) -> Any | None:
        """Retrieve a value if it exists and hasn't expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return None
            if time.time() > entry.expires_at:
                del self._cache[key]
                self._misses += 1
                return None
            self._cache.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any) -> None:
        """Store a value with TTL expiration."""
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            self._cache[key] = CacheEntry(value=value, expires_at=time.time() + self._ttl)
            while len(self._cache) > self._max_size:
                self._cache.popitem(last=False)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = time.time()
        with self._lock:
            expired = [k for k, e in self._cache.items() if now > e.expires_at]
            for key in expired:
                del self._cache[key]
        return len(expired)

    def clear(self) -> None:
        """Remove all entries and reset counters."""
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def __len__(self) -> int:
        return len(self._cache)

    @property
    def stats(self) -> dict[str, Any]:
        """Return cache hit/miss statistics."""
        lookups = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_ratio": round(self._hits / lookups, 4) if lookups else 0.0,
            "size": len(self._cache),
            "max_size": self._max_size,
            "ttl_seconds": self._ttl,
        }


# Process-wide cache of generated rule proposals
generation_cache = TTLCache(
    max_size=settings.generation_cache_max_size,
    ttl_seconds=settings.generation_cache_ttl_seconds,
)
