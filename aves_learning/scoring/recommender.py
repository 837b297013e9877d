"""
Recommendation Engine.

Ranks candidate images/annotations for reuse in a generated exercise.

Per candidate, four components in [0, 1]:
    quality             QualityAssessment.overall / 100 (None if unassessed)
    relevance           exercise-type-specific rule
    historical_success  successes / uses (0 with no history)
    pattern_adjustment  learner confidence for the candidate's features

Relevance is boosted (vocabulary gap x1.3, high success x1.2) before the
weighted sum 0.3/0.4/0.2/0.1. Unassessed candidates drop the quality term
and the remaining weights are renormalised, so they are neither rewarded
nor scored as zero. Ranking is fully deterministic.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple
import logging

import numpy as np

from ..config import RecommendationConfig, RelevanceRule
from ..core.models import Candidate, CandidateScore, Objectives, RecommendationResult
from ..exceptions import ValidationError
from ..patterns.learner import PatternLearner

logger = logging.getLogger(__name__)


class RecommendationEngine:
    """
    Multi-factor candidate ranking with gap boosts and species diversity.

    Example:
        engine = RecommendationEngine(learner)
        result = engine.recommend(
            candidates,
            exercise_type="discrimination",
            objectives=Objectives(target_features=["beak"]),
            vocabulary_gaps=["crest", "wing bar"],
            top_n=5,
        )
        for score in result.recommended:
            print(score.candidate_id, score.final_score, score.reasons)
    """

    def __init__(
        self,
        learner: Optional[PatternLearner] = None,
        config: Optional[RecommendationConfig] = None,
    ):
        """
        Initialize recommendation engine.

        Args:
            learner: Source of pattern adjustments (None = no adjustment)
            config: Weights, boosts and relevance rules
        """
        self.learner = learner
        self.config = config or RecommendationConfig()
        self._weights = np.asarray(self.config.weights, dtype=float)

    @property
    def exercise_types(self) -> List[str]:
        return sorted(self.config.relevance_rules)

    def _rule(self, exercise_type: str) -> RelevanceRule:
        rule = self.config.relevance_rules.get((exercise_type or "").strip().lower())
        if rule is None:
            raise ValidationError(
                f"Unknown exercise type: {exercise_type} "
                f"(expected one of {', '.join(self.exercise_types)})"
            )
        return rule

    # =========================================================================
    # Component scores
    # =========================================================================

    def score_relevance(
        self,
        candidate: Candidate,
        exercise_type: str,
        objectives: Optional[Objectives] = None,
    ) -> Tuple[float, List[str]]:
        """
        Exercise-type-specific relevance before boosts.

        The candidate must have enough distinct features and a high enough
        quality to get the base score. Unknown quality counts as not meeting
        the quality gate.

        Returns:
            (relevance, reason strings)
        """
        rule = self._rule(exercise_type)
        features = candidate.distinct_features
        quality = candidate.quality.normalized if candidate.quality else None

        if len(features) < rule.min_features:
            return 0.0, [f"needs {rule.min_features}+ features, has {len(features)}"]
        if quality is None:
            return 0.0, ["quality unknown"]
        if quality <= rule.min_quality:
            return 0.0, [f"quality {quality:.2f} below {rule.min_quality:.2f}"]

        score = rule.base
        reasons = []
        orientation = (candidate.orientation or "").strip().lower()
        if rule.side_view_bonus and orientation in self.config.side_views:
            score += rule.side_view_bonus
            reasons.append("clear side view")

        annotation_bonus = min(
            rule.annotation_bonus_cap,
            rule.per_annotation_bonus * max(0, candidate.annotation_count),
        )
        if annotation_bonus > 0:
            score += annotation_bonus
            reasons.append(f"{candidate.annotation_count} annotations")

        if objectives and objectives.target_features:
            targets = {f.strip().lower() for f in objectives.target_features}
            covered = sorted(targets.intersection(features))
            if covered:
                score += rule.objective_bonus * len(covered) / len(targets)
                reasons.append(f"covers objectives {', '.join(covered)}")

        return min(1.0, score), reasons

    def _pattern_adjustment(self, candidate: Candidate) -> float:
        if self.learner is None or not candidate.features:
            return 0.0
        return self.learner.get_adjustment(candidate.features, candidate.species_id)

    def combine(
        self,
        quality: Optional[float],
        relevance: float,
        historical_success: float,
        pattern_adjustment: float,
    ) -> float:
        """
        Weighted sum of the four components.

        With unknown quality the quality weight is dropped and the rest are
        renormalised to sum to the original total.
        """
        if quality is not None:
            components = np.array([quality, relevance, historical_success, pattern_adjustment])
            return float(np.dot(self._weights, components))

        weights = self._weights[1:]
        total = weights.sum()
        if total <= 0:
            return 0.0
        components = np.array([relevance, historical_success, pattern_adjustment])
        return float(np.dot(weights * (self._weights.sum() / total), components))

    def score_candidate(
        self,
        candidate: Candidate,
        exercise_type: str,
        objectives: Optional[Objectives] = None,
        vocabulary_gaps: Iterable[str] = (),
    ) -> CandidateScore:
        """Compute the full score breakdown for one candidate."""
        relevance, reasons = self.score_relevance(candidate, exercise_type, objectives)
        quality = candidate.quality.normalized if candidate.quality else None
        history = candidate.historical_success
        adjustment = self._pattern_adjustment(candidate)

        gaps = {g.strip().lower() for g in vocabulary_gaps if g and g.strip()}
        filled = sorted(gaps.intersection(candidate.distinct_features))
        if filled:
            relevance *= self.config.gap_boost
            reasons.extend(f"boosted: fills vocabulary gap '{g}'" for g in filled)
        if history > self.config.high_success_threshold:
            relevance *= self.config.success_boost
            reasons.append(f"boosted: high past success ({history:.0%})")
        relevance = min(1.0, relevance)

        if quality is None:
            reasons.append("quality unknown: ranked without quality weight")
        if adjustment > 0:
            reasons.append(f"learned pattern confidence {adjustment:.2f}")

        final = self.combine(quality, relevance, history, adjustment)
        return CandidateScore(
            candidate_id=candidate.id,
            species_id=candidate.species_id,
            quality=quality,
            relevance=round(relevance, 6),
            historical_success=history,
            pattern_adjustment=adjustment,
            final_score=round(final, 6),
            annotation_count=candidate.annotation_count,
            created_at=candidate.created_at,
            reasons=tuple(reasons),
        )

    # =========================================================================
    # Ranking
    # =========================================================================

    @staticmethod
    def _sort_key(score: CandidateScore):
        return (
            -score.final_score,
            -score.annotation_count,
            score.created_at,
            score.candidate_id,
        )

    def _diversify(
        self,
        ranked: Sequence[CandidateScore],
        top_n: int,
    ) -> Tuple[List[CandidateScore], List[CandidateScore]]:
        """
        Cap same-species repeats inside the top-N window.

        Deferred candidates fill the window in score order when there are not
        enough diverse ones. Everything else becomes an alternate.
        """
        cap = self.config.max_per_species
        selected: List[CandidateScore] = []
        deferred: List[CandidateScore] = []
        per_species: Dict[str, int] = {}

        for score in ranked:
            if len(selected) >= top_n:
                deferred.append(score)
                continue
            count = per_species.get(score.species_id, 0)
            if cap > 0 and count >= cap:
                deferred.append(score)
                continue
            per_species[score.species_id] = count + 1
            selected.append(score)

        if len(selected) < top_n:
            fill = deferred[:top_n - len(selected)]
            selected.extend(fill)
            deferred = deferred[len(fill):]
            selected.sort(key=self._sort_key)

        deferred.sort(key=self._sort_key)
        return selected, deferred

    def recommend(
        self,
        candidates: Sequence[Candidate],
        exercise_type: str,
        objectives: Optional[Objectives] = None,
        vocabulary_gaps: Iterable[str] = (),
        top_n: int = 5,
    ) -> RecommendationResult:
        """
        Rank candidates for an exercise.

        Args:
            candidates: Images/annotations to choose from
            exercise_type: One of the configured exercise types
            objectives: Target features, species filter, difficulty
            vocabulary_gaps: Features the caller wants more coverage of
            top_n: Size of the recommended window

        Returns:
            RecommendationResult with recommended, alternates and reasoning
        """
        if top_n < 0:
            raise ValidationError("top_n must not be negative")
        exercise_type = (exercise_type or "").strip().lower()
        self._rule(exercise_type)
        vocabulary_gaps = list(vocabulary_gaps)

        species_filter: Set[str] = set(objectives.species_filter) if objectives else set()
        pool = [c for c in candidates if not species_filter or c.species_id in species_filter]

        seen: Set[str] = set()
        for candidate in pool:
            if candidate.id in seen:
                raise ValidationError(f"Duplicate candidate id: {candidate.id}")
            seen.add(candidate.id)

        scores = [
            self.score_candidate(c, exercise_type, objectives, vocabulary_gaps)
            for c in pool
        ]
        ranked = sorted(scores, key=self._sort_key)
        recommended, alternates = self._diversify(ranked, top_n)

        reasoning = [
            f"{exercise_type}: ranked {len(pool)} of {len(candidates)} candidates",
        ]
        if species_filter:
            reasoning.append(f"species filter: {', '.join(sorted(species_filter))}")
        unassessed = sum(1 for s in scores if s.quality is None)
        if unassessed:
            reasoning.append(f"{unassessed} candidate(s) without quality assessment")
        for score in recommended:
            detail = "; ".join(score.reasons) if score.reasons else "no bonuses"
            reasoning.append(f"{score.candidate_id} ({score.final_score:.3f}): {detail}")

        logger.debug(
            f"Recommended {len(recommended)} / {len(pool)} candidates for {exercise_type}"
        )
        return RecommendationResult(
            exercise_type=exercise_type,
            recommended=tuple(recommended),
            alternates=tuple(alternates),
            reasoning=tuple(reasoning),
        )
