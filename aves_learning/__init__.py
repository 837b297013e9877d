"""
Aves Learning - adaptive annotation quality and recommendation engine.

Learns from reviewer feedback (approvals, rejections, bounding-box
corrections) to improve future machine-generated annotations and to rank
candidate images for reuse in generated exercises.

Layers:
- core: pattern store backends, TTL arena, recommendation cache, models
- patterns: learner, prompt enhancer, review state machine
- scoring: quality scorer, recommendation engine, vision adapter, batches
"""

from .config import EngineConfig
from .core import (
    BoundingBox,
    Candidate,
    CandidateScore,
    Objectives,
    QualityAssessment,
    RecommendationCache,
    RecommendationResult,
    create_pattern_store,
)
from .patterns import (
    AnnotationReview,
    InsufficientData,
    LearnedPattern,
    PatternLearner,
    PromptEnhancer,
    ReviewState,
    ReviewWorkflow,
)
from .scoring import QualityScorer, RecommendationEngine
from .engine import AnnotationEngine
from .exceptions import (
    AvesError,
    InsufficientDataError,
    InvalidTransitionError,
    PersistenceError,
    TransientExternalError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "AnnotationEngine",
    "EngineConfig",
    # Models
    "BoundingBox",
    "Candidate",
    "CandidateScore",
    "Objectives",
    "QualityAssessment",
    "RecommendationResult",
    # Components
    "RecommendationCache",
    "create_pattern_store",
    "PatternLearner",
    "PromptEnhancer",
    "ReviewWorkflow",
    "ReviewState",
    "AnnotationReview",
    "LearnedPattern",
    "InsufficientData",
    "QualityScorer",
    "RecommendationEngine",
    # Errors
    "AvesError",
    "TransientExternalError",
    "ValidationError",
    "InvalidTransitionError",
    "PersistenceError",
    "InsufficientDataError",
]
