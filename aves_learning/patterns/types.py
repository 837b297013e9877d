"""
Pattern Type Definitions.

These structures represent learned patterns, the ledgers that feed them
(position corrections, rejections, quality overrides) and per-species
feature coverage. All of them serialize to plain dicts for the pattern store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from ..core.models import BoundingBox, utcnow


def pattern_key(feature_name: str, species_id: str) -> str:
    """Storage key for a (feature, species) pair."""
    return f"{species_id}:{feature_name}"


def _parse_time(value: Any) -> datetime:
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


@dataclass
class PositionStats:
    """
    Weighted running mean/variance of box centre x/y, width and height.

    Uses the weighted form of Welford's online algorithm so a correction can
    count for more than one observation without replaying it.
    """
    mean: np.ndarray = field(default_factory=lambda: np.zeros(4))
    m2: np.ndarray = field(default_factory=lambda: np.zeros(4))
    total_weight: float = 0.0
    sample_size: int = 0

    def update(self, box: BoundingBox, weight: float = 1.0) -> None:
        if weight <= 0:
            raise ValueError("weight must be positive")
        x = np.asarray(box.as_vector(), dtype=float)
        new_weight = self.total_weight + weight
        delta = x - self.mean
        self.mean = self.mean + (weight / new_weight) * delta
        self.m2 = self.m2 + weight * delta * (x - self.mean)
        self.total_weight = new_weight
        self.sample_size += 1

    @property
    def variance(self) -> np.ndarray:
        if self.total_weight <= 0:
            return np.zeros(4)
        return self.m2 / self.total_weight

    @property
    def center(self) -> Tuple[float, float]:
        return (float(self.mean[0]), float(self.mean[1]))

    @property
    def size(self) -> Tuple[float, float]:
        return (float(self.mean[2]), float(self.mean[3]))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mean": self.mean.tolist(),
            "m2": self.m2.tolist(),
            "total_weight": self.total_weight,
            "sample_size": self.sample_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PositionStats":
        return cls(
            mean=np.asarray(data["mean"], dtype=float),
            m2=np.asarray(data["m2"], dtype=float),
            total_weight=float(data["total_weight"]),
            sample_size=int(data["sample_size"]),
        )


@dataclass
class LearnedPattern:
    """
    Aggregated statistics for one (feature, species) pair.

    Created lazily on first observation, updated on every review action and
    never deleted - only decayed toward the neutral baseline when idle.
    """
    feature_name: str
    species_id: str
    confidence: float = 0.5
    sample_count: int = 0
    approvals: int = 0
    rejections: int = 0
    corrections: int = 0
    position: Optional[PositionStats] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @property
    def key(self) -> str:
        return pattern_key(self.feature_name, self.species_id)

    def is_authoritative(self, min_samples: int) -> bool:
        return self.sample_count >= min_samples

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature_name": self.feature_name,
            "species_id": self.species_id,
            "confidence": self.confidence,
            "sample_count": self.sample_count,
            "approvals": self.approvals,
            "rejections": self.rejections,
            "corrections": self.corrections,
            "position": self.position.to_dict() if self.position else None,
            "created_at": self.created_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearnedPattern":
        data = data.copy()
        data["created_at"] = _parse_time(data["created_at"])
        data["last_updated_at"] = _parse_time(data["last_updated_at"])
        if data.get("position"):
            data["position"] = PositionStats.from_dict(data["position"])
        return cls(**data)


@dataclass(frozen=True)
class InsufficientData:
    """
    Typed "no confident answer" result.

    Falsy, so ``if learner.get_pattern(...)`` reads naturally. Callers fall
    back to neutral/unbiased behaviour.
    """
    feature_name: str
    species_id: str
    sample_count: int
    required: int

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class PositionCorrection:
    """An immutable record of one manual bounding-box edit."""
    feature_name: str
    species_id: str
    original: BoundingBox
    corrected: BoundingBox
    reviewer_id: str
    timestamp: datetime
    weight: float

    @property
    def delta(self) -> Dict[str, float]:
        return self.original.delta_to(self.corrected)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature_name": self.feature_name,
            "species_id": self.species_id,
            "original": self.original.to_dict(),
            "corrected": self.corrected.to_dict(),
            "reviewer_id": self.reviewer_id,
            "timestamp": self.timestamp.isoformat(),
            "weight": self.weight,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PositionCorrection":
        return cls(
            feature_name=data["feature_name"],
            species_id=data["species_id"],
            original=BoundingBox.from_dict(data["original"]),
            corrected=BoundingBox.from_dict(data["corrected"]),
            reviewer_id=data["reviewer_id"],
            timestamp=_parse_time(data["timestamp"]),
            weight=float(data["weight"]),
        )


@dataclass
class RejectionPattern:
    """Frequency + recency of one rejection category for a (feature, species)."""
    category: str
    feature_name: str
    species_id: str
    count: int = 0
    first_seen: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "feature_name": self.feature_name,
            "species_id": self.species_id,
            "count": self.count,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RejectionPattern":
        data = data.copy()
        data["first_seen"] = _parse_time(data["first_seen"])
        data["last_seen"] = _parse_time(data["last_seen"])
        return cls(**data)


@dataclass
class SpeciesFeatureStats:
    """Coverage of one feature for one species."""
    species_id: str
    feature_name: str
    occurrence_count: int = 0
    approvals: int = 0
    rejections: int = 0
    last_updated: datetime = field(default_factory=utcnow)

    @property
    def approval_rate(self) -> float:
        reviewed = self.approvals + self.rejections
        return self.approvals / reviewed if reviewed else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "species_id": self.species_id,
            "feature_name": self.feature_name,
            "occurrence_count": self.occurrence_count,
            "approvals": self.approvals,
            "rejections": self.rejections,
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpeciesFeatureStats":
        data = data.copy()
        data["last_updated"] = _parse_time(data["last_updated"])
        return cls(**data)


@dataclass(frozen=True)
class CorrectionDelta:
    """Signal produced when a reviewer overrides an automatic quality score."""
    image_id: str
    species_id: Optional[str]
    original_score: float
    manual_score: float
    delta: float
    reasons: Tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image_id": self.image_id,
            "species_id": self.species_id,
            "original_score": self.original_score,
            "manual_score": self.manual_score,
            "delta": self.delta,
            "reasons": list(self.reasons),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class VocabularyGap:
    """A target feature with too little annotation coverage."""
    feature: str
    current_count: int
    target_count: int
    deficit: int
    priority: str                            # critical, high, medium, low

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "current_count": self.current_count,
            "target_count": self.target_count,
            "deficit": self.deficit,
            "priority": self.priority,
        }


@dataclass(frozen=True)
class AnnotationQuality:
    """How well a proposed annotation agrees with what has been learned."""
    confidence: float
    position_quality: float
    historical_confidence: float
    overall: float
    notes: Tuple[str, ...] = ()
