"""
Pattern Learner - Learn from Reviewer Feedback.

Turns reviewer actions into per-(feature, species) statistics:
- Approvals nudge confidence up
- Rejections nudge it down harder and feed the rejection ledger
- Bounding-box corrections count more than approvals and move the
  learned position statistics

Stale patterns are decayed toward a neutral prior before each update.
All state lives behind the injected PatternStore; every update for one
(feature, species) key is serialized through a per-key lock.
"""

import math
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
import logging

import numpy as np

from ..config import LearnerConfig
from ..core.models import BoundingBox, utcnow
from ..core.store import PatternStore
from ..exceptions import InsufficientDataError, PersistenceError, ValidationError
from .types import (
    AnnotationQuality,
    CorrectionDelta,
    InsufficientData,
    LearnedPattern,
    PositionCorrection,
    PositionStats,
    RejectionPattern,
    SpeciesFeatureStats,
    VocabularyGap,
    pattern_key,
)

logger = logging.getLogger(__name__)

PatternResult = Union[LearnedPattern, InsufficientData]


class PatternLearner:
    """
    Learn annotation patterns from review feedback.

    Example:
        learner = PatternLearner(InMemoryPatternStore())

        learner.record_approval("beak", "northern-cardinal", box)
        learner.record_rejection("crest", "northern-cardinal", "poor_localization")

        pattern = learner.get_pattern("beak", "northern-cardinal")
        if not pattern:
            ...  # InsufficientData: fall back to defaults

        features = learner.get_recommended_features("northern-cardinal")
    """

    NS_PATTERNS = "patterns"
    NS_REJECTIONS = "rejections"
    NS_CORRECTIONS = "corrections"
    NS_SPECIES = "species_stats"
    NS_QUALITY = "quality_corrections"

    def __init__(
        self,
        store: PatternStore,
        config: Optional[LearnerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize pattern learner.

        Args:
            store: Pattern store backend (the only I/O the learner performs)
            config: Step sizes, decay and thresholds
            clock: Current-time source, injectable for decay tests
        """
        self.store = store
        self.config = config or LearnerConfig()
        self._clock = clock
        self._vocabulary = {v.lower() for v in self.config.target_vocabulary}

        self._key_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

        # Last recommendations per species, used to keep rankings stable
        self._history: Dict[str, List[str]] = {}
        self._history_lock = threading.Lock()

    # =========================================================================
    # Internals
    # =========================================================================

    def _lock_for(self, namespace: str, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._key_locks.get((namespace, key))
            if lock is None:
                lock = threading.Lock()
                self._key_locks[(namespace, key)] = lock
            return lock

    def _persist(self, namespace: str, key: str, blob: Dict[str, Any]) -> None:
        try:
            ok = self.store.store(namespace, key, blob)
        except Exception as e:
            logger.error(f"Pattern store write failed for {namespace}/{key}: {e}")
            raise PersistenceError(f"Failed to persist {namespace}/{key}: {e}") from e
        if not ok:
            logger.error(f"Pattern store rejected write for {namespace}/{key}")
            raise PersistenceError(f"Pattern store rejected write for {namespace}/{key}")

    def _normalize(self, feature_name: str, species_id: str) -> Tuple[str, str]:
        if not isinstance(feature_name, str) or not feature_name.strip():
            raise ValidationError("feature_name must be a non-empty string")
        if not isinstance(species_id, str) or not species_id.strip():
            raise ValidationError("species_id must be a non-empty string")

        feature = feature_name.strip().lower()
        if self.config.strict_vocabulary and feature not in self._vocabulary:
            raise ValidationError(f"Unknown feature: {feature_name}")
        return feature, species_id.strip()

    def _decay_cycles(self, last_updated: datetime, now: datetime) -> int:
        interval = self.config.decay_interval_seconds
        if interval <= 0:
            return 0
        elapsed = (now - last_updated).total_seconds()
        return max(0, int(elapsed // interval))

    def _apply_decay(self, pattern: LearnedPattern, now: datetime) -> int:
        """Pull an idle pattern toward the neutral prior. Returns cycles applied."""
        cycles = self._decay_cycles(pattern.last_updated_at, now)
        if cycles:
            neutral = self.config.neutral_confidence
            factor = self.config.decay_factor ** cycles
            pattern.confidence = neutral + (pattern.confidence - neutral) * factor
            pattern.last_updated_at += timedelta(
                seconds=cycles * self.config.decay_interval_seconds
            )
            logger.debug(f"Decayed {pattern.key} by {cycles} idle cycle(s)")
        return cycles

    def _load_pattern(self, feature: str, species: str) -> Optional[LearnedPattern]:
        blob = self.store.retrieve(self.NS_PATTERNS, pattern_key(feature, species))
        return LearnedPattern.from_dict(blob) if blob else None

    def _update_pattern(
        self,
        feature: str,
        species: str,
        mutate: Callable[[LearnedPattern], None],
    ) -> LearnedPattern:
        """Serialized read-decay-mutate-write of one pattern."""
        key = pattern_key(feature, species)
        with self._lock_for(self.NS_PATTERNS, key):
            now = self._clock()
            pattern = self._load_pattern(feature, species)
            if pattern is None:
                pattern = LearnedPattern(
                    feature_name=feature,
                    species_id=species,
                    confidence=self.config.neutral_confidence,
                    created_at=now,
                    last_updated_at=now,
                )
            else:
                self._apply_decay(pattern, now)

            mutate(pattern)
            pattern.confidence = float(min(1.0, max(0.0, pattern.confidence)))
            pattern.sample_count += 1
            pattern.last_updated_at = now
            pattern.version += 1

            self._persist(self.NS_PATTERNS, key, pattern.to_dict())
            logger.debug(
                f"Pattern {key} v{pattern.version}: confidence={pattern.confidence:.3f} "
                f"samples={pattern.sample_count}"
            )
            return pattern

    def _update_species_stats(
        self,
        feature: str,
        species: str,
        approved: bool,
    ) -> SpeciesFeatureStats:
        with self._lock_for(self.NS_SPECIES, species):
            blob = self.store.retrieve(self.NS_SPECIES, species) or {"features": {}}
            features = blob.setdefault("features", {})
            now = self._clock()

            if feature in features:
                stats = SpeciesFeatureStats.from_dict(features[feature])
            else:
                stats = SpeciesFeatureStats(species_id=species, feature_name=feature)

            stats.occurrence_count += 1
            if approved:
                stats.approvals += 1
            else:
                stats.rejections += 1
            stats.last_updated = now

            features[feature] = stats.to_dict()
            self._persist(self.NS_SPECIES, species, blob)
            return stats

    # =========================================================================
    # Recording feedback
    # =========================================================================

    def record_approval(
        self,
        feature_name: str,
        species_id: str,
        box: Optional[BoundingBox] = None,
    ) -> LearnedPattern:
        """
        Record that a reviewer approved an annotation as suggested.

        Args:
            feature_name: Anatomical feature (e.g. "beak")
            species_id: Species the annotation belongs to
            box: Approved bounding box, feeds the position statistics

        Returns:
            The updated pattern
        """
        feature, species = self._normalize(feature_name, species_id)

        def mutate(pattern: LearnedPattern) -> None:
            pattern.confidence += self.config.approval_boost
            pattern.approvals += 1
            if box is not None:
                if pattern.position is None:
                    pattern.position = PositionStats()
                pattern.position.update(box, weight=1.0)

        pattern = self._update_pattern(feature, species, mutate)
        self._update_species_stats(feature, species, approved=True)
        return pattern

    def record_rejection(
        self,
        feature_name: str,
        species_id: str,
        category: str = "other",
    ) -> LearnedPattern:
        """
        Record a rejected annotation.

        Args:
            feature_name: Anatomical feature
            species_id: Species the annotation belongs to
            category: Rejection category (see feedback.REJECTION_CATEGORIES)

        Returns:
            The updated pattern
        """
        feature, species = self._normalize(feature_name, species_id)
        category = (category or "other").strip().lower()

        def mutate(pattern: LearnedPattern) -> None:
            pattern.confidence -= self.config.rejection_penalty
            pattern.rejections += 1

        pattern = self._update_pattern(feature, species, mutate)
        self._increment_rejection(category, feature, species)
        self._update_species_stats(feature, species, approved=False)
        return pattern

    def _increment_rejection(self, category: str, feature: str, species: str) -> RejectionPattern:
        key = pattern_key(feature, species)
        with self._lock_for(self.NS_REJECTIONS, key):
            blob = self.store.retrieve(self.NS_REJECTIONS, key) or {"categories": {}}
            categories = blob.setdefault("categories", {})
            now = self._clock()

            if category in categories:
                rejection = RejectionPattern.from_dict(categories[category])
            else:
                rejection = RejectionPattern(
                    category=category,
                    feature_name=feature,
                    species_id=species,
                    first_seen=now,
                )
            rejection.count += 1
            rejection.last_seen = now

            categories[category] = rejection.to_dict()
            self._persist(self.NS_REJECTIONS, key, blob)
            logger.debug(f"Rejection {category} for {key}: count={rejection.count}")
            return rejection

    def record_correction(
        self,
        feature_name: str,
        species_id: str,
        original: BoundingBox,
        corrected: BoundingBox,
        reviewer_id: str,
    ) -> PositionCorrection:
        """
        Record a manual bounding-box correction.

        Corrections carry richer positional information than approvals, so
        they move confidence by approval_boost * correction_weight and enter
        the position statistics with correction_weight.

        Returns:
            The immutable correction record
        """
        feature, species = self._normalize(feature_name, species_id)
        if not reviewer_id:
            raise ValidationError("reviewer_id is required for corrections")

        weight = self.config.correction_weight
        correction = PositionCorrection(
            feature_name=feature,
            species_id=species,
            original=original,
            corrected=corrected,
            reviewer_id=reviewer_id,
            timestamp=self._clock(),
            weight=weight,
        )

        def mutate(pattern: LearnedPattern) -> None:
            pattern.confidence += self.config.approval_boost * weight
            pattern.corrections += 1
            if pattern.position is None:
                pattern.position = PositionStats()
            pattern.position.update(corrected, weight=weight)

        self._update_pattern(feature, species, mutate)
        self._append_correction(correction)
        return correction

    def _append_correction(self, correction: PositionCorrection) -> None:
        key = pattern_key(correction.feature_name, correction.species_id)
        with self._lock_for(self.NS_CORRECTIONS, key):
            blob = self.store.retrieve(self.NS_CORRECTIONS, key) or {"corrections": []}
            entries = blob.setdefault("corrections", [])
            entries.append(correction.to_dict())
            # Keep only the most recent corrections
            blob["corrections"] = entries[-self.config.max_corrections_per_key:]
            self._persist(self.NS_CORRECTIONS, key, blob)

    def record_quality_override(self, correction: CorrectionDelta) -> None:
        """Store a quality-override delta for per-species calibration."""
        species = correction.species_id or "_global"
        with self._lock_for(self.NS_QUALITY, species):
            blob = self.store.retrieve(self.NS_QUALITY, species) or {
                "count": 0,
                "mean_delta": 0.0,
                "recent": [],
            }
            blob["count"] += 1
            blob["mean_delta"] += (correction.delta - blob["mean_delta"]) / blob["count"]
            blob["recent"] = (blob["recent"] + [correction.to_dict()])[
                -self.config.max_corrections_per_key:
            ]
            self._persist(self.NS_QUALITY, species, blob)
        logger.info(
            f"Quality override for {correction.image_id}: delta={correction.delta:+.1f} "
            f"({species}, n={blob['count']})"
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_pattern(self, feature_name: str, species_id: str) -> PatternResult:
        """
        Get the learned pattern for a (feature, species) pair.

        Returns InsufficientData until min_samples observations exist. The
        returned pattern reflects decay up to now but is not written back.
        """
        feature, species = self._normalize(feature_name, species_id)
        pattern = self._load_pattern(feature, species)
        sample_count = pattern.sample_count if pattern else 0

        if pattern is None or not pattern.is_authoritative(self.config.min_samples):
            return InsufficientData(
                feature_name=feature,
                species_id=species,
                sample_count=sample_count,
                required=self.config.min_samples,
            )

        self._apply_decay(pattern, self._clock())
        return pattern

    def require_pattern(self, feature_name: str, species_id: str) -> LearnedPattern:
        """Like get_pattern, but raises InsufficientDataError."""
        result = self.get_pattern(feature_name, species_id)
        if isinstance(result, InsufficientData):
            raise InsufficientDataError(
                result.feature_name,
                result.species_id,
                result.sample_count,
                result.required,
            )
        return result

    def decay_idle(self, feature_name: str, species_id: str) -> Optional[LearnedPattern]:
        """
        Apply pending idle-cycle decay without recording an observation.

        Returns:
            The decayed pattern, or None if nothing has been learned yet
        """
        feature, species = self._normalize(feature_name, species_id)
        key = pattern_key(feature, species)
        with self._lock_for(self.NS_PATTERNS, key):
            pattern = self._load_pattern(feature, species)
            if pattern is None:
                return None
            if self._apply_decay(pattern, self._clock()):
                pattern.version += 1
                self._persist(self.NS_PATTERNS, key, pattern.to_dict())
            return pattern

    def list_patterns(self, species_id: Optional[str] = None) -> List[LearnedPattern]:
        prefix = f"{species_id}:" if species_id else ""
        patterns = []
        for key in self.store.list(self.NS_PATTERNS, prefix):
            blob = self.store.retrieve(self.NS_PATTERNS, key)
            if blob:
                patterns.append(LearnedPattern.from_dict(blob))
        return patterns

    def get_adjustment(self, features: Iterable[str], species_id: str) -> float:
        """
        Learned adjustment for a candidate's features, in [0, 1].

        Mean confidence over the candidate's authoritative patterns; 0 when
        none of them has enough samples.
        """
        confidences = []
        for feature in sorted({f.strip().lower() for f in features if f and f.strip()}):
            if self.config.strict_vocabulary and feature not in self._vocabulary:
                continue
            pattern = self.get_pattern(feature, species_id)
            if pattern:
                confidences.append(pattern.confidence)

        if not confidences:
            return 0.0
        return float(min(1.0, max(0.0, np.mean(confidences))))

    def get_rejection_patterns(
        self,
        feature_name: str,
        species_id: str,
    ) -> List[RejectionPattern]:
        """Rejection categories for a pair, most frequent first."""
        feature, species = self._normalize(feature_name, species_id)
        blob = self.store.retrieve(self.NS_REJECTIONS, pattern_key(feature, species))
        if not blob:
            return []
        rejections = [RejectionPattern.from_dict(r) for r in blob["categories"].values()]
        rejections.sort(key=lambda r: (-r.count, r.category))
        return rejections

    def get_rejection_count(
        self,
        feature_name: str,
        species_id: str,
        category: Optional[str] = None,
    ) -> int:
        rejections = self.get_rejection_patterns(feature_name, species_id)
        if category is not None:
            category = category.strip().lower()
            return sum(r.count for r in rejections if r.category == category)
        return sum(r.count for r in rejections)

    def get_corrections(self, feature_name: str, species_id: str) -> List[PositionCorrection]:
        feature, species = self._normalize(feature_name, species_id)
        blob = self.store.retrieve(self.NS_CORRECTIONS, pattern_key(feature, species))
        if not blob:
            return []
        return [PositionCorrection.from_dict(c) for c in blob["corrections"]]

    def get_position_adjustment(
        self,
        feature_name: str,
        species_id: str,
    ) -> Union[Dict[str, float], InsufficientData]:
        """
        Average box delta reviewers apply to suggestions for this pair.

        Returns:
            dx/dy/dwidth/dheight means, or InsufficientData below min_samples
        """
        corrections = self.get_corrections(feature_name, species_id)
        if len(corrections) < self.config.min_samples:
            feature, species = self._normalize(feature_name, species_id)
            return InsufficientData(
                feature_name=feature,
                species_id=species,
                sample_count=len(corrections),
                required=self.config.min_samples,
            )

        deltas = np.array([
            [c.delta["dx"], c.delta["dy"], c.delta["dwidth"], c.delta["dheight"]]
            for c in corrections
        ])
        dx, dy, dwidth, dheight = deltas.mean(axis=0).tolist()
        return {"dx": dx, "dy": dy, "dwidth": dwidth, "dheight": dheight}

    def get_quality_calibration(self, species_id: Optional[str]) -> Union[float, InsufficientData]:
        """Mean manual-minus-automatic quality delta for a species."""
        species = species_id or "_global"
        blob = self.store.retrieve(self.NS_QUALITY, species)
        count = blob["count"] if blob else 0
        if count < self.config.min_samples:
            return InsufficientData(
                feature_name="quality",
                species_id=species,
                sample_count=count,
                required=self.config.min_samples,
            )
        return float(blob["mean_delta"])

    def get_species_stats(self, species_id: str) -> Dict[str, SpeciesFeatureStats]:
        blob = self.store.retrieve(self.NS_SPECIES, species_id)
        if not blob:
            return {}
        return {
            name: SpeciesFeatureStats.from_dict(data)
            for name, data in blob.get("features", {}).items()
        }

    def get_recommended_features(
        self,
        species_id: str,
        limit: Optional[int] = None,
    ) -> List[str]:
        """
        Features to prioritize when annotating a species.

        Ranks by occurrence count ascending, then approval rate ascending, so
        rare and historically troublesome features come first. Features that
        were rejected at least suppression_threshold times are demoted to the
        end. Ties keep their order from the previous recommendation, which
        stops the list from oscillating between calls.

        Args:
            species_id: Species to rank features for
            limit: Maximum features returned (defaults to the history window)

        Returns:
            Ordered feature names
        """
        if not isinstance(species_id, str) or not species_id.strip():
            raise ValidationError("species_id must be a non-empty string")
        species = species_id.strip()

        window = self.config.max_recommendation_history
        limit = window if limit is None else max(0, limit)

        stats = self.get_species_stats(species)
        names = set(self._vocabulary) | set(stats)
        with self._history_lock:
            previous = list(self._history.get(species, []))

        def rank(name: str) -> Tuple[bool, int, float, int, str]:
            feature_stats = stats.get(name)
            occurrence = feature_stats.occurrence_count if feature_stats else 0
            approval_rate = feature_stats.approval_rate if feature_stats else 0.0
            suppressed = (
                self._rejection_total(name, species) >= self.config.suppression_threshold
            )
            prior = previous.index(name) if name in previous else len(previous)
            return (suppressed, occurrence, approval_rate, prior, name)

        ranked = sorted(names, key=rank)[:limit]

        with self._history_lock:
            self._history[species] = list(ranked[:window])
        return ranked

    def _rejection_total(self, feature: str, species: str) -> int:
        blob = self.store.retrieve(self.NS_REJECTIONS, pattern_key(feature, species))
        if not blob:
            return 0
        return sum(r["count"] for r in blob["categories"].values())

    def get_vocabulary_gaps(self) -> List[VocabularyGap]:
        """
        Target-vocabulary features with too little approved coverage.

        Current count is the number of approved annotations of the feature
        across all species. The per-feature target is the even share of all
        approved annotations, never below min_target_per_feature.
        """
        counts: Dict[str, int] = defaultdict(int)
        for species in self.store.list(self.NS_SPECIES):
            for name, stats in self.get_species_stats(species).items():
                counts[name] += stats.approvals

        vocabulary = sorted(self._vocabulary)
        total = sum(counts.values())
        target = max(
            self.config.min_target_per_feature,
            math.ceil(total / len(vocabulary)) if vocabulary else 0,
        )

        gaps = []
        for feature in vocabulary:
            current = counts.get(feature, 0)
            deficit = target - current
            if deficit <= 0:
                continue
            gaps.append(VocabularyGap(
                feature=feature,
                current_count=current,
                target_count=target,
                deficit=deficit,
                priority=self._gap_priority(deficit, target),
            ))

        gaps.sort(key=lambda g: (-g.deficit, g.feature))
        return gaps

    @staticmethod
    def _gap_priority(deficit: int, target: int) -> str:
        ratio = deficit / target if target else 0.0
        if ratio > 0.8:
            return "critical"
        if ratio > 0.5:
            return "high"
        if ratio > 0.2:
            return "medium"
        return "low"

    def evaluate_annotation(
        self,
        feature_name: str,
        species_id: str,
        box: BoundingBox,
        confidence: float,
    ) -> AnnotationQuality:
        """
        Score a proposed annotation against the learned patterns.

        Position quality is exp(-d / 2) where d is the centre distance from
        the learned mean, normalised by the learned variance (plus 0.01). With too little
        data both position quality and historical confidence default to 0.7.
        """
        notes = []
        position_quality = 0.7
        historical = 0.7

        pattern = self.get_pattern(feature_name, species_id)
        if pattern:
            historical = pattern.confidence
            stats = pattern.position
            if stats is not None and stats.sample_size >= self.config.min_samples:
                variance = stats.variance[:2]
                center = np.asarray(box.as_vector()[:2])
                scaled = (center - stats.mean[:2]) ** 2 / (variance + 0.01)
                distance = float(np.sqrt(scaled.sum()))
                position_quality = float(math.exp(-distance / 2))
                if position_quality < 0.5:
                    notes.append("position deviates from learned location")
            else:
                notes.append("no learned position yet")
            if historical < 0.5:
                notes.append("feature often rejected for this species")
        else:
            notes.append(f"insufficient data ({pattern.sample_count}/{pattern.required})")

        confidence = float(min(1.0, max(0.0, confidence)))
        overall = 0.4 * confidence + 0.3 * position_quality + 0.3 * historical
        return AnnotationQuality(
            confidence=confidence,
            position_quality=position_quality,
            historical_confidence=historical,
            overall=overall,
            notes=tuple(notes),
        )

    def get_analytics(self) -> Dict[str, Any]:
        """Summary of what has been learned so far."""
        patterns = self.list_patterns()
        species = {p.species_id for p in patterns}

        by_category: Dict[str, int] = defaultdict(int)
        for key in self.store.list(self.NS_REJECTIONS):
            blob = self.store.retrieve(self.NS_REJECTIONS, key)
            for category, data in (blob or {}).get("categories", {}).items():
                by_category[category] += data["count"]

        top = sorted(patterns, key=lambda p: (-p.sample_count, p.key))[:10]
        authoritative = [p for p in patterns if p.is_authoritative(self.config.min_samples)]

        return {
            "total_patterns": len(patterns),
            "authoritative_patterns": len(authoritative),
            "species_tracked": len(species),
            "average_confidence": (
                float(np.mean([p.confidence for p in authoritative])) if authoritative else None
            ),
            "top_features": [
                {
                    "feature": p.feature_name,
                    "species": p.species_id,
                    "samples": p.sample_count,
                    "confidence": p.confidence,
                }
                for p in top
            ],
            "rejections_by_category": dict(sorted(by_category.items())),
        }
