"""
Pattern learning for annotations.

Reviewer actions flow in through the review state machine, the learner
turns them into per-(feature, species) statistics, and the enhancer turns
those statistics back into guidance for the next generation request.
"""

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
)
from .learner import PatternLearner
from .enhancer import FeatureEmphasis, PromptEnhancer
from .feedback import (
    REJECTION_CATEGORIES,
    AnnotationReview,
    ReviewState,
    ReviewWorkflow,
    categorize_rejection,
)

__all__ = [
    # Types
    "AnnotationQuality",
    "CorrectionDelta",
    "InsufficientData",
    "LearnedPattern",
    "PositionCorrection",
    "PositionStats",
    "RejectionPattern",
    "SpeciesFeatureStats",
    "VocabularyGap",
    # Core classes
    "PatternLearner",
    "PromptEnhancer",
    "FeatureEmphasis",
    "ReviewWorkflow",
    "ReviewState",
    "AnnotationReview",
    "REJECTION_CATEGORIES",
    "categorize_rejection",
]
