"""
Annotation Engine - the one object host services talk to.

Wires the pattern store, learner, scorers, recommendation cache and batch
assessor together and exposes the public operations:

    recommend                 cache-fronted candidate ranking
    assess_quality            vision assessment -> QualityAssessment
    record_feedback           approve / reject / correct
    get_recommended_features  features to prioritize for a species
    get_vocabulary_gaps       under-covered target vocabulary
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
import logging

from .config import EngineConfig
from .core.cache import RecommendationCache
from .core.models import BoundingBox, Candidate, Objectives, QualityAssessment, RecommendationResult
from .core.store import InMemoryPatternStore, PatternStore
from .exceptions import AvesError, ValidationError
from .patterns.enhancer import PromptEnhancer
from .patterns.feedback import REJECTION_CATEGORIES, ReviewWorkflow, categorize_rejection
from .patterns.learner import PatternLearner, PatternResult
from .patterns.types import LearnedPattern, PositionCorrection, VocabularyGap
from .scoring.batch import BatchAssessor, BatchJob
from .scoring.quality import QualityScorer
from .scoring.recommender import RecommendationEngine
from .scoring.vision import ImageRef, VisionAssessor

logger = logging.getLogger(__name__)

FEEDBACK_ACTIONS = ("approve", "reject", "correct")


def _as_box(value: Any, name: str) -> BoundingBox:
    if isinstance(value, BoundingBox):
        return value
    if isinstance(value, dict):
        try:
            return BoundingBox.from_dict(value)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid {name} box: {e}") from e
    raise ValidationError(f"{name} box is required")


class AnnotationEngine:
    """
    Adaptive annotation-quality and recommendation engine.

    Example:
        engine = AnnotationEngine(create_pattern_store("sqlite"))

        engine.record_feedback("beak", "northern-cardinal", "approve",
                               {"box": {"x": .4, "y": .2, "width": .1, "height": .08}})

        result = engine.recommend(candidates, "discrimination", top_n=5)
        gaps = engine.get_vocabulary_gaps()
    """

    def __init__(
        self,
        store: Optional[PatternStore] = None,
        config: Optional[EngineConfig] = None,
        vision: Optional[VisionAssessor] = None,
        cache: Optional[RecommendationCache] = None,
        learner: Optional[PatternLearner] = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Pattern store (defaults to in-memory)
            config: Engine configuration
            vision: Vision assessment backend, needed for assess_quality
            cache: Recommendation cache (defaults to one built from config)
            learner: Pre-built learner (tests inject one with a fixed clock)
        """
        self.config = config or EngineConfig()
        if store is None:
            store = learner.store if learner is not None else InMemoryPatternStore()
        self.store = store
        self.learner = learner or PatternLearner(self.store, self.config.learner)
        self.scorer = QualityScorer(self.config.quality)
        self.recommender = RecommendationEngine(self.learner, self.config.recommendation)
        self.enhancer = PromptEnhancer(self.learner)
        self.workflow = ReviewWorkflow(self.learner, self.scorer)
        self.cache = cache if cache is not None else RecommendationCache(
            max_entries=self.config.cache.max_entries,
            ttl_seconds=self.config.cache.ttl_seconds,
        )
        self.vision = vision
        self.batch = BatchAssessor(self.assess_quality, self.config.batch)

        logger.info(
            f"Annotation engine ready (store={type(self.store).__name__}, "
            f"vision={'on' if vision else 'off'})"
        )

    # =========================================================================
    # Recommendation
    # =========================================================================

    def recommend(
        self,
        candidates: Sequence[Candidate],
        exercise_type: str,
        objectives: Optional[Objectives] = None,
        vocabulary_gaps: Optional[Iterable[str]] = None,
        top_n: int = 5,
    ) -> RecommendationResult:
        """
        Rank candidates, serving repeated requests from the cache.

        Args:
            candidates: Images/annotations to choose from
            exercise_type: Exercise type (see config relevance rules)
            objectives: Target features, species filter, difficulty
            vocabulary_gaps: Gap features to boost (defaults to the
                learner's current vocabulary gaps)
            top_n: Number of recommended candidates

        Returns:
            RecommendationResult
        """
        # Read before any learner state so a concurrent clear is detected
        generation = self.cache.generation
        if vocabulary_gaps is None:
            gaps = [g.feature for g in self.learner.get_vocabulary_gaps()]
        else:
            gaps = list(vocabulary_gaps)

        key = self.cache.make_key(exercise_type, objectives, gaps, candidates, top_n)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        result = self.recommender.recommend(candidates, exercise_type, objectives, gaps, top_n)
        self.cache.put(key, result, generation=generation)
        return result

    # =========================================================================
    # Quality
    # =========================================================================

    def assess_quality(self, image: Union[ImageRef, Dict[str, Any]]) -> QualityAssessment:
        """
        Assess one image through the vision capability.

        Raises:
            TransientExternalError: the vision call failed (retryable)
        """
        if isinstance(image, dict):
            image = ImageRef(**image)
        if self.vision is None:
            raise AvesError("No vision assessor configured")

        raw = self.vision.assess(image)
        calibration = self.learner.get_quality_calibration(image.species_id)
        return self.scorer.build_assessment(
            image.image_id,
            raw.sub_scores,
            species_id=image.species_id,
            extra_issues=raw.issues,
            calibration=calibration if calibration else 0.0,
        )

    def override_quality(
        self,
        original: QualityAssessment,
        manual_score: float,
        reasons: Iterable[str] = (),
    ) -> QualityAssessment:
        """Replace an automatic score with a reviewer's and learn the delta."""
        override, delta = self.scorer.learn_from_override(original, manual_score, reasons)
        self.learner.record_quality_override(delta)
        return override

    def start_batch(self, images: Sequence[Union[ImageRef, Dict[str, Any]]]) -> BatchJob:
        items = [ImageRef(**i) if isinstance(i, dict) else i for i in images]
        return self.batch.start(items)

    def get_batch(self, job_id: str) -> Optional[BatchJob]:
        return self.batch.get(job_id)

    def cancel_batch(self, job_id: str) -> bool:
        return self.batch.cancel(job_id)

    # =========================================================================
    # Feedback and learned state
    # =========================================================================

    def record_feedback(
        self,
        feature_name: str,
        species_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Union[LearnedPattern, PositionCorrection]:
        """
        Feed one reviewer action to the learner.

        Args:
            feature_name: Anatomical feature
            species_id: Species
            action: "approve", "reject" or "correct"
            details: approve: optional "box"; reject: "category" or free-text
                "reason"; correct: "original", "corrected", "reviewer_id"

        Returns:
            The updated pattern (approve/reject) or the correction record
        """
        details = details or {}
        action = (action or "").strip().lower()
        if action not in FEEDBACK_ACTIONS:
            raise ValidationError(
                f"Unknown feedback action: {action!r} (expected {', '.join(FEEDBACK_ACTIONS)})"
            )

        if action == "approve":
            box = details.get("box")
            result = self.learner.record_approval(
                feature_name,
                species_id,
                _as_box(box, "approved") if box is not None else None,
            )
        elif action == "reject":
            category = details.get("category")
            if category is None:
                category = categorize_rejection(details.get("reason"))
            elif str(category).strip().lower() not in REJECTION_CATEGORIES:
                raise ValidationError(f"Unknown rejection category: {category}")
            result = self.learner.record_rejection(feature_name, species_id, category)
        else:
            reviewer_id = details.get("reviewer_id")
            if not reviewer_id:
                raise ValidationError("reviewer_id is required for corrections")
            result = self.learner.record_correction(
                feature_name,
                species_id,
                original=_as_box(details.get("original"), "original"),
                corrected=_as_box(details.get("corrected"), "corrected"),
                reviewer_id=reviewer_id,
            )

        if self.config.cache.invalidate_on_feedback:
            self.cache.clear()
        return result

    def get_pattern(self, feature_name: str, species_id: str) -> PatternResult:
        return self.learner.get_pattern(feature_name, species_id)

    def get_recommended_features(self, species_id: str, limit: Optional[int] = None) -> List[str]:
        return self.learner.get_recommended_features(species_id, limit)

    def get_vocabulary_gaps(self) -> List[VocabularyGap]:
        return self.learner.get_vocabulary_gaps()

    def enhance_prompt(
        self,
        base_prompt: str,
        species_id: Optional[str] = None,
        target_features: Optional[List[str]] = None,
    ) -> str:
        return self.enhancer.enhance_prompt(base_prompt, species_id, target_features)

    def stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.stats(),
            "learner": self.learner.get_analytics(),
            "batch_jobs": len(self.batch.registry),
        }

    def close(self) -> None:
        if self.vision is not None:
            self.vision.close()
        self.store.close()
