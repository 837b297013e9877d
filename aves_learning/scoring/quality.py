"""
Quality Scorer.

Converts a raw four-dimension vision assessment into a 0-100 overall score
and a suitability flag:

    visibility   0-40   Is the bird clearly visible and large enough?
    clarity      0-30   Focus, sharpness, motion blur
    technical    0-20   Exposure, lighting, framing
    educational  0-10   Pose and anatomy useful for teaching

The overall score is the plain sum of the capped sub-scores. Manual
overrides never rewrite an assessment; they create a new one plus a
CorrectionDelta that the learner turns into a calibration signal.
"""

import math
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from ..config import QualityConfig
from ..core.models import QualityAssessment, utcnow
from ..exceptions import ValidationError
from ..patterns.types import CorrectionDelta

logger = logging.getLogger(__name__)

DIMENSIONS = ("visibility", "clarity", "technical", "educational")

# Issue and recommendation text per dimension when a sub-score is weak
_ADVICE = {
    "visibility": (
        "low visibility: bird partially hidden or too small in frame",
        "Prefer images where the bird fills a larger part of the frame",
    ),
    "clarity": (
        "low clarity: image blurred or out of focus",
        "Use a sharper image of the same species",
    ),
    "technical": (
        "technical problems: exposure, lighting or framing",
        "Pick a well-lit, correctly exposed image",
    ),
    "educational": (
        "limited educational value: pose hides key anatomy",
        "Prefer side or three-quarter views that show field marks",
    ),
}


class QualityScorer:
    """
    Score vision assessments and learn from manual overrides.

    Example:
        scorer = QualityScorer()
        result = scorer.compute_overall_score(
            {"visibility": 35, "clarity": 25, "technical": 15, "educational": 8}
        )
        result["overall"]   # 83.0
        result["suitable"]  # True
    """

    def __init__(self, config: Optional[QualityConfig] = None):
        self.config = config or QualityConfig()

    @property
    def caps(self) -> Dict[str, float]:
        return {
            "visibility": self.config.visibility_cap,
            "clarity": self.config.clarity_cap,
            "technical": self.config.technical_cap,
            "educational": self.config.educational_cap,
        }

    def _clamp_sub_scores(self, sub_scores: Dict[str, Any]) -> Dict[str, float]:
        clamped = {}
        for name, cap in self.caps.items():
            if name not in sub_scores or sub_scores[name] is None:
                raise ValidationError(f"Missing quality sub-score: {name}")
            try:
                value = float(sub_scores[name])
            except (TypeError, ValueError):
                raise ValidationError(f"Quality sub-score {name} is not a number")
            if math.isnan(value):
                raise ValidationError(f"Quality sub-score {name} is NaN")
            clamped[name] = min(cap, max(0.0, value))
        return clamped

    def compute_overall_score(self, sub_scores: Dict[str, Any]) -> Dict[str, Any]:
        """
        Combine the four sub-scores.

        Each sub-score is clamped into [0, cap] before summing.

        Args:
            sub_scores: visibility/clarity/technical/educational values

        Returns:
            Dict with overall, suitable, issues, recommendations and the
            clamped sub_scores
        """
        clamped = self._clamp_sub_scores(sub_scores)
        overall = round(sum(clamped.values()), 6)

        issues: List[str] = []
        recommendations: List[str] = []
        for name in DIMENSIONS:
            if clamped[name] < self.caps[name] * self.config.issue_ratio:
                issue, recommendation = _ADVICE[name]
                issues.append(issue)
                recommendations.append(recommendation)

        return {
            "overall": overall,
            "suitable": overall >= self.config.suitability_threshold,
            "issues": issues,
            "recommendations": recommendations,
            "sub_scores": clamped,
        }

    def build_assessment(
        self,
        image_id: str,
        sub_scores: Dict[str, Any],
        species_id: Optional[str] = None,
        extra_issues: Iterable[str] = (),
        calibration: float = 0.0,
    ) -> QualityAssessment:
        """Create an immutable assessment from raw sub-scores."""
        if not image_id:
            raise ValidationError("image_id is required")

        result = self.compute_overall_score(sub_scores)
        issues = list(result["issues"])
        for issue in extra_issues:
            if issue and issue not in issues:
                issues.append(issue)

        sub = result["sub_scores"]
        return QualityAssessment(
            image_id=image_id,
            visibility=sub["visibility"],
            clarity=sub["clarity"],
            technical=sub["technical"],
            educational=sub["educational"],
            overall=result["overall"],
            suitable=result["suitable"],
            issues=tuple(issues),
            recommendations=tuple(result["recommendations"]),
            species_id=species_id,
            calibration=calibration,
        )

    def learn_from_override(
        self,
        original: QualityAssessment,
        manual_score: float,
        reasons: Iterable[str] = (),
    ) -> Tuple[QualityAssessment, CorrectionDelta]:
        """
        Record a reviewer's manual quality score.

        The original assessment is left untouched. A new assessment with
        source="override" supersedes it, and the returned CorrectionDelta
        (manual - automatic) is the learning signal.

        Args:
            original: Assessment being overridden
            manual_score: Reviewer's overall score, 0-100
            reasons: Free-text reasons for the override

        Returns:
            (override assessment, correction delta)
        """
        try:
            manual = float(manual_score)
        except (TypeError, ValueError):
            raise ValidationError("manual_score must be a number")
        if math.isnan(manual) or not 0.0 <= manual <= 100.0:
            raise ValidationError("manual_score must be between 0 and 100")

        reasons = tuple(r for r in reasons if r)
        now = utcnow()
        delta = CorrectionDelta(
            image_id=original.image_id,
            species_id=original.species_id,
            original_score=original.overall,
            manual_score=manual,
            delta=manual - original.overall,
            reasons=reasons,
            timestamp=now,
        )

        override = QualityAssessment(
            image_id=original.image_id,
            visibility=original.visibility,
            clarity=original.clarity,
            technical=original.technical,
            educational=original.educational,
            overall=manual,
            suitable=manual >= self.config.suitability_threshold,
            issues=reasons or original.issues,
            recommendations=original.recommendations,
            species_id=original.species_id,
            source="override",
            supersedes=original.id,
            calibration=original.calibration,
            assessed_at=now,
        )

        logger.info(
            f"Quality override for {original.image_id}: "
            f"{original.overall:.1f} -> {manual:.1f} (delta {delta.delta:+.1f})"
        )
        return override, delta
