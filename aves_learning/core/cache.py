"""
Recommendation Cache.

Memoizes ranked recommendation results keyed by the normalized request
context, including the scoring-relevant content of every candidate.
Entries expire at exactly createdAt + ttl and are LRU-evicted past
capacity. Concurrent writers for one key follow single-writer-wins: the
first live entry stays, later puts are dropped (the result is recomputable).

Every clear() starts a new generation. A put tagged with an older
generation is dropped, so a ranking computed before an invalidation can
never repopulate the cache after it.
"""

import hashlib
import json
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional, Sequence
import logging

from .arena import TTLArena
from .models import Candidate, Objectives, RecommendationResult

logger = logging.getLogger(__name__)


class RecommendationCache:
    """
    TTL-bounded memoization of recommendation results.

    Example:
        cache = RecommendationCache(max_entries=500, ttl_seconds=1800)
        generation = cache.generation
        key = cache.make_key("discrimination", objectives, ["beak"], candidates, 5)
        result = cache.get(key)
        if result is None:
            result = engine.recommend(...)
            cache.put(key, result, generation=generation)
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float = 1800,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._arena = TTLArena(
            max_entries=max_entries,
            default_ttl=ttl_seconds,
            clock=clock,
        )
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        """Invalidation counter, bumped by every clear()."""
        with self._lock:
            return self._generation

    @staticmethod
    def candidate_digest(candidate: Candidate) -> Dict[str, Any]:
        """The candidate fields that scoring and tie-breaking read."""
        return {
            "id": candidate.id,
            "species_id": candidate.species_id,
            "features": candidate.distinct_features,
            "annotation_count": candidate.annotation_count,
            "quality": candidate.quality.overall if candidate.quality else None,
            "orientation": (candidate.orientation or "").strip().lower(),
            "times_used": candidate.times_used,
            "times_successful": candidate.times_successful,
            "created_at": candidate.created_at.isoformat(),
        }

    @classmethod
    def make_key(
        cls,
        exercise_type: str,
        objectives: Optional[Objectives],
        vocabulary_gaps: Iterable[str],
        candidates: Sequence[Candidate],
        top_n: int,
    ) -> str:
        """
        Stable hash of the normalized request context.

        Ordering of objectives, gaps, species filter and candidates does not
        affect the key; any change to a candidate's scored content does.
        """
        context = {
            "exercise_type": exercise_type.strip().lower(),
            "objectives": (objectives or Objectives()).normalized(),
            "vocabulary_gaps": sorted({g.strip().lower() for g in vocabulary_gaps}),
            "candidates": sorted(
                (cls.candidate_digest(c) for c in candidates),
                key=lambda d: d["id"],
            ),
            "top_n": top_n,
        }
        payload = json.dumps(context, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode()).hexdigest()

    def get(self, key: str) -> Optional[RecommendationResult]:
        entry = self._arena.get(key)
        if entry is None:
            logger.debug(f"Recommendation cache miss: {key[:12]}")
            return None
        logger.debug(f"Recommendation cache hit: {key[:12]} (hits={entry.hit_count})")
        return entry.value

    def put(
        self,
        key: str,
        result: RecommendationResult,
        ttl: Optional[float] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """
        Store a result.

        Args:
            key: Cache key from make_key
            result: Ranked result
            ttl: Seconds to live (defaults to ttl_seconds)
            generation: Generation observed before computing the result; the
                put is dropped if the cache was cleared since

        Returns:
            False if a live entry already won the key or the result is stale
        """
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(f"Discarded stale cache write: {key[:12]}")
                return False
            stored = self._arena.put(key, result, ttl=ttl, replace=False)
        if not stored:
            logger.debug(f"Discarded concurrent cache write: {key[:12]}")
        return stored

    def hit_count(self, key: str) -> int:
        entry = self._arena.peek(key)
        return entry.hit_count if entry else 0

    def invalidate(self, key: str) -> bool:
        return self._arena.delete(key)

    def clear(self) -> int:
        with self._lock:
            self._generation += 1
            count = self._arena.clear()
        if count:
            logger.info(f"Recommendation cache cleared ({count} entries)")
        return count

    def purge_expired(self) -> int:
        return self._arena.purge_expired()

    def __len__(self) -> int:
        return len(self._arena)

    def stats(self) -> Dict[str, Any]:
        stats = self._arena.stats()
        stats["ttl_seconds"] = self.ttl_seconds
        stats["generation"] = self.generation
        return stats
