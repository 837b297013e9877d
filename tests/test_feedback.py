"""Tests for the review feedback state machine."""

import threading
import time

import pytest

from aves_learning.core.models import BoundingBox
from aves_learning.core.store import InMemoryPatternStore
from aves_learning.exceptions import InvalidTransitionError, PersistenceError, ValidationError
from aves_learning.patterns.feedback import (
    AnnotationReview,
    ReviewState,
    ReviewWorkflow,
    categorize_rejection,
)
from aves_learning.patterns.learner import PatternLearner
from aves_learning.scoring.quality import QualityScorer

BOX = BoundingBox(0.40, 0.20, 0.10, 0.08)
SCORES = {"visibility": 35, "clarity": 25, "technical": 15, "educational": 8}


@pytest.fixture
def workflow(learner):
    return ReviewWorkflow(learner, QualityScorer())


@pytest.fixture
def review():
    return AnnotationReview(
        annotation_id="ann-1",
        feature_name="beak",
        species_id="cardinal",
        box=BOX,
        quality=QualityScorer().build_assessment("img-1", SCORES, species_id="cardinal"),
    )


class TestCategorizeRejection:

    @pytest.mark.parametrize("reason, expected", [
        ("[INCORRECT_SPECIES] wrong bird", "incorrect_species"),
        ("[POOR_LOCALIZATION] bad box", "poor_localization"),
        ("This is the wrong bird species", "incorrect_species"),
        ("Feature identification is incorrect", "incorrect_feature"),
        ("Bounding box position is off", "poor_localization"),
        ("This feature does not exist", "false_positive"),
        ("Duplicate of another annotation", "duplicate"),
        ("Image is too blurry", "low_quality"),
        ("Something is wrong", "other"),
        ("", "other"),
        (None, "other"),
    ])
    def test_categories(self, reason, expected):
        assert categorize_rejection(reason) == expected

    def test_unknown_explicit_tag_falls_back_to_keywords(self):
        assert categorize_rejection("[MISC] duplicate entry") == "duplicate"


class TestTransitions:

    def test_approve_from_pending(self, workflow, review, learner):
        workflow.approve(review, reviewer_id="rev-1")
        assert review.state == ReviewState.APPROVED
        assert learner.store.retrieve("patterns", "cardinal:beak")["approvals"] == 1
        assert review.history[-1].from_state == ReviewState.PENDING

    def test_reject_from_pending(self, workflow, review, learner):
        workflow.reject(review, "Bounding box position is off", reviewer_id="rev-1")
        assert review.state == ReviewState.REJECTED
        assert review.rejection_category == "poor_localization"
        assert learner.get_rejection_count("beak", "cardinal", "poor_localization") == 1

    def test_explicit_category(self, workflow, review):
        workflow.reject(review, "meh", category="DUPLICATE")
        assert review.rejection_category == "duplicate"

    def test_unknown_category(self, workflow, review):
        with pytest.raises(ValidationError):
            workflow.reject(review, category="bad_vibes")
        assert review.state == ReviewState.PENDING

    def test_no_direct_approved_to_rejected(self, workflow, review, learner):
        workflow.approve(review)
        with pytest.raises(InvalidTransitionError):
            workflow.reject(review, "changed my mind")
        assert review.state == ReviewState.APPROVED
        assert learner.get_rejection_count("beak", "cardinal") == 0

    def test_no_double_approval(self, workflow, review):
        workflow.approve(review)
        with pytest.raises(InvalidTransitionError):
            workflow.approve(review)

    def test_override_path_allows_reversal(self, workflow, review, learner):
        workflow.approve(review, reviewer_id="rev-1")
        workflow.open_override(review, reviewer_id="admin")
        assert review.state == ReviewState.UNDER_REVIEW
        workflow.reject(review, "[FALSE_POSITIVE] not a beak", reviewer_id="admin")
        assert review.state == ReviewState.REJECTED
        assert learner.get_rejection_count("beak", "cardinal", "false_positive") == 1
        assert [c.to_state for c in review.history] == [
            ReviewState.APPROVED, ReviewState.UNDER_REVIEW, ReviewState.REJECTED,
        ]

    def test_override_not_allowed_from_pending(self, workflow, review):
        with pytest.raises(InvalidTransitionError):
            workflow.open_override(review, reviewer_id="admin")

    def test_failed_write_keeps_state(self, workflow, review, monkeypatch):
        def boom(*args, **kwargs):
            raise PersistenceError("store down")

        monkeypatch.setattr(workflow.learner, "record_approval", boom)
        with pytest.raises(PersistenceError):
            workflow.approve(review)
        assert review.state == ReviewState.PENDING
        assert review.history == []


class TestEdits:

    def test_edit_while_pending_keeps_state(self, workflow, review, learner):
        corrected = BoundingBox(0.42, 0.22, 0.10, 0.08)
        correction = workflow.edit(review, corrected, reviewer_id="rev-1")
        assert review.state == ReviewState.PENDING
        assert review.box == corrected
        assert correction.original == BOX
        assert learner.get_corrections("beak", "cardinal") == [correction]

    def test_approval_after_edit_uses_corrected_box(self, workflow, review, learner):
        corrected = BoundingBox(0.42, 0.22, 0.10, 0.08)
        workflow.edit(review, corrected, reviewer_id="rev-1")
        workflow.approve(review)
        pattern = learner.store.retrieve("patterns", "cardinal:beak")
        assert pattern["sample_count"] == 2
        assert pattern["position"]["sample_size"] == 2

    def test_no_edit_after_approval(self, workflow, review):
        workflow.approve(review)
        with pytest.raises(InvalidTransitionError):
            workflow.edit(review, BOX, reviewer_id="rev-1")

    def test_edit_under_review(self, workflow, review):
        workflow.reject(review, "blurry")
        workflow.open_override(review, reviewer_id="admin")
        workflow.edit(review, BoundingBox(0.5, 0.5, 0.1, 0.1), reviewer_id="admin")
        assert review.state == ReviewState.UNDER_REVIEW
        assert len(review.corrections) == 1

    def test_edit_requires_box(self, workflow):
        review = AnnotationReview("ann-2", "beak", "cardinal")
        with pytest.raises(ValidationError):
            workflow.edit(review, BOX, reviewer_id="rev-1")


class TestQualityOverride:

    def test_rescore_creates_new_assessment(self, workflow, review, learner):
        original = review.quality
        workflow.approve(review)
        delta = workflow.open_override(
            review, reviewer_id="admin", manual_score=40, reasons=["bird too small"]
        )
        assert delta.delta == pytest.approx(40 - 83)
        assert review.quality.supersedes == original.id
        assert review.quality.overall == 40
        assert review.superseded_quality == [original]
        assert original.overall == 83

    def test_rescore_feeds_calibration(self, workflow, learner):
        for i in range(3):
            review = AnnotationReview(
                f"ann-{i}", "beak", "cardinal", BOX,
                quality=QualityScorer().build_assessment(f"img-{i}", SCORES, species_id="cardinal"),
            )
            workflow.approve(review)
            workflow.open_override(review, reviewer_id="admin", manual_score=73)
        assert learner.get_quality_calibration("cardinal") == pytest.approx(-10)

    def test_rescore_requires_assessment(self, workflow):
        review = AnnotationReview("ann-9", "beak", "cardinal", BOX)
        workflow.approve(review)
        with pytest.raises(ValidationError):
            workflow.open_override(review, reviewer_id="admin", manual_score=50)
        assert review.state == ReviewState.APPROVED


class SlowStore(InMemoryPatternStore):
    """Store whose reads stall, widening the window between check and write."""

    def retrieve(self, namespace, key):
        time.sleep(0.01)
        return super().retrieve(namespace, key)


class TestConcurrentReviewers:

    def test_only_one_concurrent_approval_wins(self, review):
        learner = PatternLearner(SlowStore())
        workflow = ReviewWorkflow(learner, QualityScorer())
        errors = []
        barrier = threading.Barrier(4)

        def approve(reviewer):
            barrier.wait()
            try:
                workflow.approve(review, reviewer_id=reviewer)
            except InvalidTransitionError as e:
                errors.append(e)

        threads = [threading.Thread(target=approve, args=(f"rev-{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert review.state == ReviewState.APPROVED
        assert len(review.history) == 1
        assert len(errors) == 3
        assert learner.store.retrieve("patterns", "cardinal:beak")["approvals"] == 1

    def test_approve_and_reject_race_has_one_outcome(self, review):
        learner = PatternLearner(SlowStore())
        workflow = ReviewWorkflow(learner, QualityScorer())
        barrier = threading.Barrier(2)
        errors = []

        def act(action):
            barrier.wait()
            try:
                action()
            except InvalidTransitionError as e:
                errors.append(e)

        threads = [
            threading.Thread(target=act, args=(lambda: workflow.approve(review),)),
            threading.Thread(target=act, args=(lambda: workflow.reject(review, "blurry"),)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(errors) == 1
        assert len(review.history) == 1
        pattern = learner.store.retrieve("patterns", "cardinal:beak")
        assert pattern["approvals"] + pattern["rejections"] == 1
