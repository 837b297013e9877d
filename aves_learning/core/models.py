"""
Data models for the Aves learning engine.

Plain dataclasses shared by the learner, the scorers and the recommendation
engine. Records that must never change once created (assessments, scores,
ranked results) are frozen.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


@dataclass
class BoundingBox:
    """An annotation box in normalised image coordinates (0-1)."""

    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)

    def as_vector(self) -> List[float]:
        """Centre x, centre y, width, height."""
        cx, cy = self.center
        return [cx, cy, self.width, self.height]

    def delta_to(self, other: "BoundingBox") -> Dict[str, float]:
        """Position/size change needed to turn this box into ``other``."""
        return {
            "dx": other.x - self.x,
            "dy": other.y - self.y,
            "dwidth": other.width - self.width,
            "dheight": other.height - self.height,
        }

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoundingBox":
        return cls(
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data["width"]),
            height=float(data["height"]),
        )


@dataclass(frozen=True)
class QualityAssessment:
    """
    Four-dimension quality evaluation of an image/annotation.

    Immutable once created. A manual override produces a new assessment
    (source="override", supersedes=<old id>) rather than editing this one.
    """

    image_id: str
    visibility: float                        # 0-40
    clarity: float                           # 0-30
    technical: float                         # 0-20
    educational: float                       # 0-10
    overall: float                           # 0-100
    suitable: bool
    issues: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()
    species_id: Optional[str] = None
    source: str = "vision"                   # "vision" or "override"
    supersedes: Optional[str] = None
    calibration: float = 0.0                 # Learned mean override delta
    assessed_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def normalized(self) -> float:
        """Overall score scaled to [0, 1]."""
        return self.overall / 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "image_id": self.image_id,
            "visibility": self.visibility,
            "clarity": self.clarity,
            "technical": self.technical,
            "educational": self.educational,
            "overall": self.overall,
            "suitable": self.suitable,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
            "species_id": self.species_id,
            "source": self.source,
            "supersedes": self.supersedes,
            "calibration": self.calibration,
            "assessed_at": self.assessed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityAssessment":
        data = data.copy()
        if isinstance(data.get("assessed_at"), str):
            data["assessed_at"] = datetime.fromisoformat(data["assessed_at"])
        data["issues"] = tuple(data.get("issues", ()))
        data["recommendations"] = tuple(data.get("recommendations", ()))
        return cls(**data)


@dataclass
class Candidate:
    """An image/annotation set that could be reused in a generated exercise."""

    id: str
    species_id: str
    features: List[str] = field(default_factory=list)   # Annotated vocabulary
    annotation_count: int = 0
    quality: Optional[QualityAssessment] = None          # None = not assessed
    orientation: Optional[str] = None                    # e.g. "side", "front"
    created_at: datetime = field(default_factory=utcnow)
    times_used: int = 0
    times_successful: int = 0
    difficulty: Optional[int] = None

    @property
    def historical_success(self) -> float:
        """Success rate in past exercises, 0 with no usage history."""
        if self.times_used <= 0:
            return 0.0
        return min(1.0, self.times_successful / self.times_used)

    @property
    def distinct_features(self) -> List[str]:
        return sorted({f.strip().lower() for f in self.features if f and f.strip()})


@dataclass
class Objectives:
    """Learning objectives attached to a recommendation request."""

    target_features: List[str] = field(default_factory=list)
    species_filter: List[str] = field(default_factory=list)
    difficulty: Optional[int] = None

    def normalized(self) -> Dict[str, Any]:
        """Order-independent representation used for cache keys."""
        return {
            "target_features": sorted({f.strip().lower() for f in self.target_features}),
            "species_filter": sorted(set(self.species_filter)),
            "difficulty": self.difficulty,
        }


@dataclass(frozen=True)
class CandidateScore:
    """Per-request score breakdown for one candidate. Never persisted."""

    candidate_id: str
    species_id: str
    quality: Optional[float]                 # None when quality is unknown
    relevance: float
    historical_success: float
    pattern_adjustment: float
    final_score: float
    annotation_count: int
    created_at: datetime
    reasons: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "species_id": self.species_id,
            "quality": self.quality,
            "relevance": self.relevance,
            "historical_success": self.historical_success,
            "pattern_adjustment": self.pattern_adjustment,
            "final_score": self.final_score,
            "annotation_count": self.annotation_count,
            "created_at": self.created_at.isoformat(),
            "reasons": list(self.reasons),
        }


@dataclass(frozen=True)
class RecommendationResult:
    """Ranked, diversified recommendation output."""

    exercise_type: str
    recommended: Tuple[CandidateScore, ...]
    alternates: Tuple[CandidateScore, ...]
    reasoning: Tuple[str, ...] = ()

    @property
    def recommended_ids(self) -> List[str]:
        return [s.candidate_id for s in self.recommended]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exercise_type": self.exercise_type,
            "recommended": [s.to_dict() for s in self.recommended],
            "alternates": [s.to_dict() for s in self.alternates],
            "reasoning": list(self.reasoning),
        }
