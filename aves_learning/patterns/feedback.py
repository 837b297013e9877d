"""
Review Feedback State Machine.

    PENDING ──approve──▶ APPROVED ──override──▶ UNDER_REVIEW
       │                                        │   ▲
       └────reject────▶ REJECTED ──override─────┘   │
                                                    │
    UNDER_REVIEW ──approve/reject──▶ APPROVED/REJECTED

Box edits are allowed while PENDING or UNDER_REVIEW and never change state.
There is no direct APPROVED -> REJECTED move; it has to go through an
override. Every transition drives the learner, and the learner update
happens before the state changes so a failed write leaves the review as it was.
Check, learner update and state move run under one lock per annotation, so
concurrent reviewers of the same review cannot both win a transition.
"""

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional
import logging

from ..core.models import BoundingBox, QualityAssessment, utcnow
from ..exceptions import InvalidTransitionError, ValidationError
from ..scoring.quality import QualityScorer
from .learner import PatternLearner
from .types import CorrectionDelta, PositionCorrection

logger = logging.getLogger(__name__)


class ReviewState(str, Enum):
    """Lifecycle of one annotation review."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    UNDER_REVIEW = "under_review"


TRANSITIONS: Dict[ReviewState, FrozenSet[ReviewState]] = {
    ReviewState.PENDING: frozenset({ReviewState.APPROVED, ReviewState.REJECTED}),
    ReviewState.APPROVED: frozenset({ReviewState.UNDER_REVIEW}),
    ReviewState.REJECTED: frozenset({ReviewState.UNDER_REVIEW}),
    ReviewState.UNDER_REVIEW: frozenset({ReviewState.APPROVED, ReviewState.REJECTED}),
}

EDITABLE_STATES = frozenset({ReviewState.PENDING, ReviewState.UNDER_REVIEW})

REJECTION_CATEGORIES = (
    "incorrect_species",
    "incorrect_feature",
    "poor_localization",
    "false_positive",
    "duplicate",
    "low_quality",
    "other",
)

# Checked in order; the first category with a matching keyword wins
_CATEGORY_KEYWORDS = (
    ("incorrect_species", ("species", "wrong bird")),
    ("false_positive", ("does not exist", "doesn't exist", "not found", "false")),
    ("incorrect_feature", ("feature", "part", "anatomy")),
    ("poor_localization", ("position", "localization", "box")),
    ("duplicate", ("duplicate", "already exists")),
    ("low_quality", ("quality", "blurry", "unclear")),
)

_EXPLICIT_CATEGORY = re.compile(r"^\[([A-Z_]+)\]")


def categorize_rejection(reason: Optional[str]) -> str:
    """
    Map a free-text rejection reason to a standard category.

    An explicit "[CATEGORY] notes" prefix wins when it names a known
    category; otherwise the category is inferred from keywords.
    """
    if not reason:
        return "other"

    match = _EXPLICIT_CATEGORY.match(reason.strip())
    if match and match.group(1).lower() in REJECTION_CATEGORIES:
        return match.group(1).lower()

    lowered = reason.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(k in lowered for k in keywords):
            return category
    return "other"


@dataclass
class StateChange:
    from_state: ReviewState
    to_state: ReviewState
    actor: Optional[str]
    at: datetime = field(default_factory=utcnow)


@dataclass
class AnnotationReview:
    """Review record for one machine-generated annotation."""
    annotation_id: str
    feature_name: str
    species_id: str
    box: Optional[BoundingBox] = None
    state: ReviewState = ReviewState.PENDING
    rejection_category: Optional[str] = None
    rejection_reason: Optional[str] = None
    quality: Optional[QualityAssessment] = None
    superseded_quality: List[QualityAssessment] = field(default_factory=list)
    corrections: List[PositionCorrection] = field(default_factory=list)
    history: List[StateChange] = field(default_factory=list)


class ReviewWorkflow:
    """
    Drive AnnotationReview transitions and feed the learner.

    Example:
        workflow = ReviewWorkflow(learner, QualityScorer())
        review = AnnotationReview("ann-1", "beak", "northern-cardinal", box)

        workflow.edit(review, corrected_box, reviewer_id="rev-7")
        workflow.approve(review, reviewer_id="rev-7")

        # Later, an administrator disagrees with the quality score
        workflow.open_override(review, "admin-1", manual_score=45, reasons=["blurred"])
        workflow.reject(review, "[LOW_QUALITY] too blurred", reviewer_id="admin-1")
    """

    def __init__(self, learner: PatternLearner, scorer: Optional[QualityScorer] = None):
        self.learner = learner
        self.scorer = scorer or QualityScorer()
        self._review_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, review: AnnotationReview) -> threading.Lock:
        with self._locks_guard:
            lock = self._review_locks.get(review.annotation_id)
            if lock is None:
                lock = threading.Lock()
                self._review_locks[review.annotation_id] = lock
            return lock

    def _check(self, review: AnnotationReview, target: ReviewState) -> None:
        if target not in TRANSITIONS[review.state]:
            raise InvalidTransitionError(
                f"Cannot move annotation {review.annotation_id} "
                f"from {review.state.value} to {target.value}"
            )

    def _move(self, review: AnnotationReview, target: ReviewState, actor: Optional[str]) -> None:
        review.history.append(StateChange(review.state, target, actor))
        logger.info(
            f"Annotation {review.annotation_id}: {review.state.value} -> {target.value}"
        )
        review.state = target

    def approve(self, review: AnnotationReview, reviewer_id: Optional[str] = None) -> AnnotationReview:
        """PENDING/UNDER_REVIEW -> APPROVED. Positive learner update."""
        with self._lock_for(review):
            self._check(review, ReviewState.APPROVED)
            self.learner.record_approval(review.feature_name, review.species_id, review.box)
            review.rejection_category = None
            review.rejection_reason = None
            self._move(review, ReviewState.APPROVED, reviewer_id)
        return review

    def reject(
        self,
        review: AnnotationReview,
        reason: Optional[str] = None,
        reviewer_id: Optional[str] = None,
        category: Optional[str] = None,
    ) -> AnnotationReview:
        """
        PENDING/UNDER_REVIEW -> REJECTED.

        Negative learner update plus a rejection-ledger increment.

        Args:
            review: Review to reject
            reason: Free-text reason, categorized when category is omitted
            reviewer_id: Acting reviewer
            category: Explicit rejection category
        """
        if category is not None:
            category = category.strip().lower()
            if category not in REJECTION_CATEGORIES:
                raise ValidationError(f"Unknown rejection category: {category}")
        else:
            category = categorize_rejection(reason)

        with self._lock_for(review):
            self._check(review, ReviewState.REJECTED)
            self.learner.record_rejection(review.feature_name, review.species_id, category)
            review.rejection_category = category
            review.rejection_reason = reason
            self._move(review, ReviewState.REJECTED, reviewer_id)
        return review

    def edit(
        self,
        review: AnnotationReview,
        corrected: BoundingBox,
        reviewer_id: str,
    ) -> PositionCorrection:
        """Correct the annotation box. State does not change."""
        with self._lock_for(review):
            if review.state not in EDITABLE_STATES:
                raise InvalidTransitionError(
                    f"Annotation {review.annotation_id} cannot be edited while {review.state.value}"
                )
            if review.box is None:
                raise ValidationError(f"Annotation {review.annotation_id} has no box to correct")

            correction = self.learner.record_correction(
                review.feature_name,
                review.species_id,
                original=review.box,
                corrected=corrected,
                reviewer_id=reviewer_id,
            )
            review.corrections.append(correction)
            review.box = corrected
        return correction

    def open_override(
        self,
        review: AnnotationReview,
        reviewer_id: str,
        manual_score: Optional[float] = None,
        reasons: Iterable[str] = (),
    ) -> Optional[CorrectionDelta]:
        """
        APPROVED/REJECTED -> UNDER_REVIEW (administrative override).

        With manual_score, the quality assessment is re-scored: a new
        assessment supersedes the old one and the delta goes to the learner.

        Returns:
            The CorrectionDelta when quality was re-scored, else None
        """
        with self._lock_for(review):
            self._check(review, ReviewState.UNDER_REVIEW)

            delta = None
            if manual_score is not None:
                if review.quality is None:
                    raise ValidationError(
                        f"Annotation {review.annotation_id} has no quality assessment to override"
                    )
                override, delta = self.scorer.learn_from_override(
                    review.quality, manual_score, reasons
                )
                self.learner.record_quality_override(delta)
                review.superseded_quality.append(review.quality)
                review.quality = override

            self._move(review, ReviewState.UNDER_REVIEW, reviewer_id)
        return delta
