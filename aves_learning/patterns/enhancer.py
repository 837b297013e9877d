"""
Prompt/Feature Enhancer - feed learned patterns back into generation.

Turns the learner's current statistics into:
- A ranked list of features to emphasize for a species
- Prompt text blocks (species guidance, learned positions, correction
  adjustments, rejection warnings) appended to a base generation prompt

Every block is only emitted when it is backed by at least min_samples
observations, so a fresh system produces the base prompt unchanged.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from .learner import PatternLearner

logger = logging.getLogger(__name__)

# Rejection categories must repeat this often before they become warnings
MIN_REJECTIONS_FOR_WARNING = 2


@dataclass
class FeatureEmphasis:
    """One feature the next generation request should focus on."""
    feature: str
    score: float
    confidence: Optional[float] = None       # None = insufficient data
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "score": self.score,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
        }


class PromptEnhancer:
    """
    Build generation guidance from learned patterns.

    Example:
        enhancer = PromptEnhancer(learner)
        prompt = enhancer.enhance_prompt(
            "Annotate the visible anatomy.",
            species_id="northern-cardinal",
            target_features=["beak", "crest"],
        )
    """

    def __init__(self, learner: PatternLearner):
        self.learner = learner

    @property
    def min_samples(self) -> int:
        return self.learner.config.min_samples

    def get_emphasis(
        self,
        species_id: str,
        target_features: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> List[FeatureEmphasis]:
        """
        Rank features by how much attention they need.

        Low learned confidence and repeated rejections raise the score.
        Features without enough data get a neutral score.

        Args:
            species_id: Species being annotated
            target_features: Features to rank (defaults to the learner's
                recommended features for the species)
            limit: Maximum items returned

        Returns:
            FeatureEmphasis items, highest score first
        """
        if target_features is None:
            target_features = self.learner.get_recommended_features(species_id)

        emphasis = []
        for feature in dict.fromkeys(f.strip().lower() for f in target_features):
            pattern = self.learner.get_pattern(feature, species_id)
            reasons = []
            if pattern:
                confidence = pattern.confidence
                score = 1.0 - confidence
                reasons.append(f"learned confidence {confidence:.2f}")
            else:
                confidence = None
                score = 1.0 - self.learner.config.neutral_confidence
                reasons.append("insufficient data")

            for rejection in self.learner.get_rejection_patterns(feature, species_id):
                if rejection.count >= MIN_REJECTIONS_FOR_WARNING:
                    score += 0.1
                    reasons.append(f"rejected as {rejection.category} ({rejection.count}x)")

            emphasis.append(FeatureEmphasis(
                feature=feature,
                score=round(min(1.0, score), 6),
                confidence=confidence,
                reasons=reasons,
            ))

        emphasis.sort(key=lambda e: (-e.score, e.feature))
        return emphasis[:limit] if limit is not None else emphasis

    def enhance_prompt(
        self,
        base_prompt: str,
        species_id: Optional[str] = None,
        target_features: Optional[List[str]] = None,
    ) -> str:
        """
        Append learned guidance to a generation prompt.

        Args:
            base_prompt: Prompt to extend
            species_id: Species being annotated
            target_features: Features the request asks for

        Returns:
            The extended prompt (base_prompt unchanged if nothing is learned)
        """
        features = [f.strip().lower() for f in (target_features or []) if f and f.strip()]
        sections = []

        if species_id:
            sections.append(self._species_guidance(species_id))
            if features:
                sections.append(self._feature_guidance(species_id, features))
                sections.append(self._correction_guidance(species_id, features))
                sections.append(self._rejection_warnings(species_id, features))

        prompt = base_prompt + "".join(s for s in sections if s)
        logger.info(
            f"Enhanced prompt for {species_id or 'any species'} "
            f"({len(features)} target features, {sum(1 for s in sections if s)} blocks)"
        )
        return prompt

    def _species_guidance(self, species_id: str) -> str:
        stats = self.learner.get_species_stats(species_id)
        if len(stats) < self.min_samples:
            return ""

        top = sorted(stats.values(), key=lambda s: (-s.occurrence_count, s.feature_name))[:5]
        total = sum(s.occurrence_count for s in stats.values())
        return (
            f"\n\nSPECIES-SPECIFIC GUIDANCE for {species_id}:\n"
            f"- Common features to prioritize: {', '.join(s.feature_name for s in top)}\n"
            f"- Based on {total} previous annotations"
        )

    def _feature_guidance(self, species_id: str, features: List[str]) -> str:
        hints = []
        for feature in features:
            pattern = self.learner.get_pattern(feature, species_id)
            if not pattern or pattern.position is None:
                continue
            if pattern.position.sample_size < self.min_samples:
                continue
            cx, cy = pattern.position.center
            width, height = pattern.position.size
            hints.append(
                f"- {feature}: typically centered at ({cx:.2f}, {cy:.2f}) "
                f"with size {width:.2f}x{height:.2f}"
            )

        if not hints:
            return ""
        return (
            "\n\nLEARNED FEATURE PATTERNS:\n" + "\n".join(hints)
            + "\nNote: Use these as reference points, not strict requirements"
        )

    def _correction_guidance(self, species_id: str, features: List[str]) -> str:
        hints = []
        for feature in features:
            adjustment = self.learner.get_position_adjustment(feature, species_id)
            if not adjustment:
                continue
            count = len(self.learner.get_corrections(feature, species_id))
            hints.append(
                f"- {feature}: Adjust position by ({adjustment['dx']:.2f}, {adjustment['dy']:.2f}) "
                f"and size by ({adjustment['dwidth']:.2f}, {adjustment['dheight']:.2f}) "
                f"[Based on {count} reviewer corrections]"
            )

        if not hints:
            return ""
        return "\n\nCORRECTION-BASED ADJUSTMENTS:\n" + "\n".join(hints)

    def _rejection_warnings(self, species_id: str, features: List[str]) -> str:
        warnings = []
        for feature in features:
            common = [
                r for r in self.learner.get_rejection_patterns(feature, species_id)
                if r.count >= MIN_REJECTIONS_FOR_WARNING
            ][:3]
            if common:
                reasons = ", ".join(f'"{r.category}" ({r.count}x)' for r in common)
                warnings.append(f"- {feature}: Avoid patterns that caused: {reasons}")

        if not warnings:
            return ""
        return "\n\nCOMMON REJECTION PATTERNS TO AVOID:\n" + "\n".join(warnings)
