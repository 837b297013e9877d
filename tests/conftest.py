"""Shared fixtures for the Aves learning tests."""

from datetime import datetime, timedelta, timezone

import pytest

from aves_learning.config import EngineConfig, LearnerConfig
from aves_learning.core.models import Candidate, QualityAssessment
from aves_learning.core.store import InMemoryPatternStore
from aves_learning.engine import AnnotationEngine
from aves_learning.exceptions import TransientExternalError
from aves_learning.patterns.learner import PatternLearner
from aves_learning.scoring.vision import VisionAssessor, VisionResult

EPOCH = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = EPOCH):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Manually advanced seconds counter for arenas and rate limiters."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVision(VisionAssessor):
    """Vision assessor returning canned scores, optionally failing first."""

    def __init__(self, scores=None, failures=None):
        self.scores = scores or {"visibility": 35, "clarity": 25, "technical": 15, "educational": 8}
        self.failures = dict(failures or {})     # image_id -> failures before success
        self.calls = []

    def assess(self, image):
        self.calls.append(image.image_id)
        remaining = self.failures.get(image.image_id, 0)
        if remaining:
            self.failures[image.image_id] = remaining - 1
            raise TransientExternalError(f"vision timeout for {image.image_id}")
        return VisionResult(issues=["slight backlight"], **self.scores)


def make_assessment(overall: float, image_id: str = "img", species_id: str = "cardinal"):
    """Assessment whose sub-scores add up to overall."""
    return QualityAssessment(
        image_id=image_id,
        visibility=overall * 0.4,
        clarity=overall * 0.3,
        technical=overall * 0.2,
        educational=overall * 0.1,
        overall=overall,
        suitable=overall >= 60,
        species_id=species_id,
    )


def make_candidate(
    candidate_id: str,
    species_id: str = "cardinal",
    features=("beak", "crest", "wing"),
    quality=90.0,
    annotation_count=5,
    orientation="side",
    created_offset_days: int = 0,
    times_used: int = 0,
    times_successful: int = 0,
) -> Candidate:
    return Candidate(
        id=candidate_id,
        species_id=species_id,
        features=list(features),
        annotation_count=annotation_count,
        quality=make_assessment(quality, candidate_id, species_id) if quality is not None else None,
        orientation=orientation,
        created_at=EPOCH + timedelta(days=created_offset_days),
        times_used=times_used,
        times_successful=times_successful,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryPatternStore()


@pytest.fixture
def learner_config():
    return LearnerConfig()


@pytest.fixture
def learner(store, learner_config, clock):
    return PatternLearner(store, learner_config, clock=clock)


@pytest.fixture
def vision():
    return FakeVision()


@pytest.fixture
def engine(store, learner, vision):
    config = EngineConfig()
    config.batch.backoff_base_seconds = 0.0
    return AnnotationEngine(store, config=config, vision=vision, learner=learner)
