"""
Configuration for the Aves learning engine.

Every weight, boost and threshold the engine uses is a product tuning knob,
not a derived constant. They live here so they can be changed per deployment
(and overridden from AVES_* environment variables) without touching the
learning or ranking code.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

# Anatomical vocabulary the exercises aim to cover
TARGET_VOCABULARY: List[str] = [
    # Head features
    "beak", "bill", "eye", "crest", "crown", "nape", "throat", "chin",
    # Body features
    "breast", "belly", "back", "rump", "flank", "wing", "tail", "leg", "foot",
    # Wing details
    "primary feathers", "secondary feathers", "wing bar", "wing coverts",
    # Tail details
    "tail feathers", "undertail coverts", "tail tip",
    # Plumage
    "plumage", "feathers", "pattern", "marking",
]

# Logging configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVEL = os.environ.get("AVES_LOG_LEVEL", "INFO")


@dataclass
class LearnerConfig:
    """Step sizes, decay and thresholds for the pattern learner."""
    approval_boost: float = 0.05
    rejection_penalty: float = 0.10
    correction_weight: float = 1.5          # Corrections count 1.5x an approval
    neutral_confidence: float = 0.5
    decay_factor: float = 0.95              # Per idle cycle
    decay_interval_seconds: float = 86400   # One idle cycle = one day
    min_samples: int = 3
    max_recommendation_history: int = 10
    max_corrections_per_key: int = 50
    suppression_threshold: int = 3
    min_target_per_feature: int = 10
    strict_vocabulary: bool = True
    target_vocabulary: List[str] = field(default_factory=lambda: list(TARGET_VOCABULARY))


@dataclass
class QualityConfig:
    """Sub-score caps and the suitability threshold."""
    visibility_cap: float = 40.0
    clarity_cap: float = 30.0
    technical_cap: float = 20.0
    educational_cap: float = 10.0
    suitability_threshold: float = 60.0
    issue_ratio: float = 0.5


@dataclass
class RelevanceRule:
    """Exercise-type-specific relevance rule."""
    min_features: int
    min_quality: float
    base: float
    side_view_bonus: float
    per_annotation_bonus: float
    annotation_bonus_cap: float
    objective_bonus: float = 0.2


DEFAULT_RELEVANCE_RULES: Dict[str, RelevanceRule] = {
    "discrimination": RelevanceRule(
        min_features=3, min_quality=0.75, base=0.6,
        side_view_bonus=0.2, per_annotation_bonus=0.02, annotation_bonus_cap=0.2,
    ),
    "spatial_identification": RelevanceRule(
        min_features=1, min_quality=0.6, base=0.6,
        side_view_bonus=0.1, per_annotation_bonus=0.03, annotation_bonus_cap=0.3,
    ),
    "comparative_analysis": RelevanceRule(
        min_features=2, min_quality=0.7, base=0.5,
        side_view_bonus=0.2, per_annotation_bonus=0.03, annotation_bonus_cap=0.3,
    ),
    "annotation_sequencing": RelevanceRule(
        min_features=3, min_quality=0.6, base=0.5,
        side_view_bonus=0.1, per_annotation_bonus=0.05, annotation_bonus_cap=0.4,
    ),
    "category_sorting": RelevanceRule(
        min_features=2, min_quality=0.6, base=0.6,
        side_view_bonus=0.0, per_annotation_bonus=0.04, annotation_bonus_cap=0.3,
    ),
}


@dataclass
class RecommendationConfig:
    """Weights, boosts and diversity settings for ranking."""
    quality_weight: float = 0.3
    relevance_weight: float = 0.4
    history_weight: float = 0.2
    pattern_weight: float = 0.1
    gap_boost: float = 1.3
    success_boost: float = 1.2
    high_success_threshold: float = 0.8
    max_per_species: int = 2
    side_views: Tuple[str, ...] = ("side", "profile", "lateral")
    relevance_rules: Dict[str, RelevanceRule] = field(
        default_factory=lambda: dict(DEFAULT_RELEVANCE_RULES)
    )

    @property
    def weights(self) -> Tuple[float, float, float, float]:
        return (
            self.quality_weight,
            self.relevance_weight,
            self.history_weight,
            self.pattern_weight,
        )


@dataclass
class CacheConfig:
    ttl_seconds: float = 1800               # 30 minutes
    max_entries: int = 1000
    invalidate_on_feedback: bool = True


@dataclass
class BatchConfig:
    concurrency: int = 5
    requests_per_minute: float = 500
    burst_size: int = 50
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    item_timeout_seconds: float = 120
    job_ttl_seconds: float = 86400
    max_jobs: int = 200


@dataclass
class EngineConfig:
    """Top-level configuration composed of the per-component sections."""
    learner: LearnerConfig = field(default_factory=LearnerConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    recommendation: RecommendationConfig = field(default_factory=RecommendationConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "EngineConfig":
        """
        Build a config, overriding defaults from AVES_* environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            EngineConfig instance
        """
        env = os.environ if environ is None else environ
        config = cls()

        def _float(name: str, current: float) -> float:
            value = env.get(name)
            return float(value) if value not in (None, "") else current

        def _int(name: str, current: int) -> int:
            value = env.get(name)
            return int(value) if value not in (None, "") else current

        learner = config.learner
        learner.decay_factor = _float("AVES_DECAY_FACTOR", learner.decay_factor)
        learner.decay_interval_seconds = _float(
            "AVES_DECAY_INTERVAL_SECONDS", learner.decay_interval_seconds
        )
        learner.min_samples = _int("AVES_MIN_SAMPLES", learner.min_samples)
        if env.get("AVES_STRICT_VOCABULARY"):
            learner.strict_vocabulary = env["AVES_STRICT_VOCABULARY"].lower() in ("1", "true", "yes")

        config.quality.suitability_threshold = _float(
            "AVES_SUITABILITY_THRESHOLD", config.quality.suitability_threshold
        )

        rec = config.recommendation
        rec.gap_boost = _float("AVES_GAP_BOOST", rec.gap_boost)
        rec.success_boost = _float("AVES_SUCCESS_BOOST", rec.success_boost)
        rec.max_per_species = _int("AVES_MAX_PER_SPECIES", rec.max_per_species)

        config.cache.ttl_seconds = _float("AVES_CACHE_TTL_SECONDS", config.cache.ttl_seconds)
        config.cache.max_entries = _int("AVES_CACHE_MAX_ENTRIES", config.cache.max_entries)

        batch = config.batch
        batch.concurrency = _int("AVES_BATCH_CONCURRENCY", batch.concurrency)
        batch.requests_per_minute = _float("AVES_REQUESTS_PER_MINUTE", batch.requests_per_minute)
        batch.burst_size = _int("AVES_BURST_SIZE", batch.burst_size)
        batch.max_attempts = _int("AVES_MAX_ATTEMPTS", batch.max_attempts)

        return config
