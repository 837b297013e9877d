"""
Aves Learning - Core Layer

- Pattern store: the only I/O boundary (SQLite/Redis/in-memory)
- TTL arena: bounded in-process state with explicit expiry
- Recommendation cache built on the arena
"""

from .arena import ArenaEntry, TTLArena
from .cache import RecommendationCache
from .models import (
    BoundingBox,
    Candidate,
    CandidateScore,
    Objectives,
    QualityAssessment,
    RecommendationResult,
)
from .store import (
    InMemoryPatternStore,
    PatternStore,
    RedisPatternStore,
    SQLitePatternStore,
    create_pattern_store,
)

__all__ = [
    "ArenaEntry",
    "TTLArena",
    "RecommendationCache",
    "BoundingBox",
    "Candidate",
    "CandidateScore",
    "Objectives",
    "QualityAssessment",
    "RecommendationResult",
    "PatternStore",
    "InMemoryPatternStore",
    "SQLitePatternStore",
    "RedisPatternStore",
    "create_pattern_store",
]
