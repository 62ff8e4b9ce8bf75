"""
Request cache.

TTL- and capacity-bounded memoization of prior results, keyed by a
normalized request fingerprint.
"""

import hashlib
import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

MISS = object()


def normalize_query(query: str) -> str:
    """Lower-case, strip punctuation and collapse whitespace."""
    text = _PUNCTUATION.sub("", (query or "").lower())
    return _WHITESPACE.sub(" ", text).strip()


def make_cache_key(category: str, template_id: str, query: str) -> str:
    """Fingerprint of a request: hash of category, template and normalized query."""
    raw = "\x1f".join((category, template_id, normalize_query(query)))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    """Cached payload and the time it was stored."""
    key: str
    payload: Any
    created_at: float


@dataclass(frozen=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    evictions: int
    expirations: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


class RequestCache:
    """Thread-safe bounded cache with lazy and periodic expiry.

    An entry is visible only while ``now - created_at < ttl``. When the
    cache is full, the oldest ``eviction_fraction`` of entries is dropped
    before a new key is inserted.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 10000,
        eviction_fraction: float = 0.1,
        clock: Callable[[], float] = time.time,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.eviction_fraction = eviction_fraction
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at >= self.ttl_seconds

    def get(self, key: str, default: Any = MISS) -> Any:
        """Return the cached payload, or ``default`` on a miss or expired entry."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default
            if self._expired(entry, now):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return default
            self._hits += 1
        logger.debug("Cache hit for key %s", key[:12])
        return entry.payload

    def put(self, key: str, payload: Any) -> None:
        """Store a payload, evicting the oldest entries when the cache is full."""
        now = self._clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_oldest()
            self._entries[key] = CacheEntry(key=key, payload=payload, created_at=now)

    def _evict_oldest(self) -> None:
        count = max(1, math.floor(self.max_entries * self.eviction_fraction))
        oldest = sorted(self._entries.values(), key=lambda e: e.created_at)[:count]
        for entry in oldest:
            del self._entries[entry.key]
        self._evictions += len(oldest)
        logger.debug("Evicted %d cache entries under capacity pressure", len(oldest))

    def sweep(self) -> int:
        """Remove every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if self._expired(e, now)]
            for key in expired:
                del self._entries[key]
            self._expirations += len(expired)
        if expired:
            logger.debug("Cleaned up %d expired cache entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                expirations=self._expirations,
            )
