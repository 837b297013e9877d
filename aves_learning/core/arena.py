"""
TTL Arena - bounded key/value storage with expiry and LRU eviction.

The building block for every piece of in-process state the engine keeps
(recommendation results, batch job records). Lifecycle is explicit:
entries are created by put(), expire at exactly created + ttl, and are
evicted least-recently-used first once max_entries is exceeded.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


@dataclass
class ArenaEntry:
    """A stored value plus its lifecycle metadata."""
    key: str
    value: Any
    created_at: float
    expires_at: float
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLArena:
    """
    Thread-safe LRU map with per-entry TTL.

    Example:
        arena = TTLArena(max_entries=100, default_ttl=60)
        arena.put("a", {"x": 1})
        entry = arena.get("a")      # ArenaEntry or None once expired
    """

    def __init__(
        self,
        max_entries: int = 1000,
        default_ttl: float = 1800,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_entries: Capacity before LRU eviction kicks in
            default_ttl: Seconds an entry lives when put() gets no ttl
            clock: Seconds source, injectable for tests
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: "OrderedDict[str, ArenaEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[ArenaEntry]:
        """Get a live entry, moving it to most-recently-used."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self.misses += 1
                logger.debug(f"Arena entry expired: {key}")
                return None

            self._entries.move_to_end(key)
            entry.hit_count += 1
            self.hits += 1
            return entry

    def peek(self, key: str) -> Optional[ArenaEntry]:
        """Get a live entry without touching LRU order or statistics."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return entry

    def put(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        replace: bool = True,
    ) -> bool:
        """
        Store a value.

        Args:
            key: Entry key
            value: Value to store
            ttl: Seconds to live (defaults to default_ttl)
            replace: When False, a live entry for key wins and the new
                value is discarded

        Returns:
            True if the value was stored
        """
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            now = self._clock()
            existing = self._entries.get(key)
            if existing is not None and not replace and not existing.is_expired(now):
                return False

            self._entries[key] = ArenaEntry(
                key=key,
                value=value,
                created_at=now,
                expires_at=now + ttl,
            )
            self._entries.move_to_end(key)

            # Evict oldest if over capacity
            while len(self._entries) > self.max_entries:
                evicted_key, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug(f"LRU eviction: {evicted_key}")
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """Remove every entry. Returns how many were removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def purge_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def keys(self) -> List[str]:
        """Live keys, least recently used first."""
        with self._lock:
            now = self._clock()
            return [k for k, e in self._entries.items() if not e.is_expired(now)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.peek(key) is not None

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "hit_rate": (self.hits / total) if total else 0.0,
            }
