"""Quality scoring, candidate ranking and batch vision assessment."""

from .quality import QualityScorer
from .recommender import RecommendationEngine
from .vision import HttpVisionAssessor, ImageRef, VisionAssessor, VisionResult
from .batch import BatchAssessor, BatchJob, JobStatus, TokenBucket

__all__ = [
    "QualityScorer",
    "RecommendationEngine",
    "VisionAssessor",
    "HttpVisionAssessor",
    "ImageRef",
    "VisionResult",
    "BatchAssessor",
    "BatchJob",
    "JobStatus",
    "TokenBucket",
]
