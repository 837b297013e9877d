"""Tests for candidate scoring and ranking."""

import random

import pytest

from aves_learning.config import RecommendationConfig
from aves_learning.core.models import Objectives
from aves_learning.exceptions import ValidationError
from aves_learning.scoring.recommender import RecommendationEngine

from conftest import make_candidate


@pytest.fixture
def ranker():
    return RecommendationEngine()


class TestCombine:

    def test_weighted_sum(self, ranker):
        a = ranker.combine(0.8, 0.9, 0.5, 0.0)
        b = ranker.combine(0.6, 0.95, 0.5, 0.0)
        assert a == pytest.approx(0.70)
        assert b == pytest.approx(0.66)
        assert a > b

    def test_unknown_quality_renormalises(self, ranker):
        assert ranker.combine(None, 0.5, 0.5, 0.5) == pytest.approx(0.5)
        assert ranker.combine(None, 1.0, 0.0, 0.0) == pytest.approx(0.4 / 0.7)

    def test_unknown_quality_not_scored_as_zero(self, ranker):
        assert ranker.combine(None, 0.6, 0.6, 0.6) > ranker.combine(0.0, 0.6, 0.6, 0.6)


class TestRelevance:

    def test_discrimination_full_marks(self, ranker):
        relevance, reasons = ranker.score_relevance(make_candidate("c1"), "discrimination")
        assert relevance == pytest.approx(0.9)
        assert "clear side view" in reasons

    def test_too_few_features(self, ranker):
        candidate = make_candidate("c1", features=("beak", "beak", "crest"))
        relevance, reasons = ranker.score_relevance(candidate, "discrimination")
        assert relevance == 0.0
        assert reasons == ["needs 3+ features, has 2"]

    def test_quality_gate(self, ranker):
        relevance, _ = ranker.score_relevance(make_candidate("c1", quality=75.0), "discrimination")
        assert relevance == 0.0

    def test_unknown_quality_fails_gate(self, ranker):
        relevance, reasons = ranker.score_relevance(make_candidate("c1", quality=None), "discrimination")
        assert relevance == 0.0
        assert reasons == ["quality unknown"]

    def test_objective_bonus(self, ranker):
        candidate = make_candidate(
            "c1", features=("beak", "crest"), annotation_count=0, orientation="front"
        )
        relevance, reasons = ranker.score_relevance(
            candidate, "spatial_identification", Objectives(target_features=["Beak", "tail"])
        )
        assert relevance == pytest.approx(0.7)
        assert "covers objectives beak" in reasons

    def test_annotation_bonus_capped(self, ranker):
        relevance, _ = ranker.score_relevance(
            make_candidate("c1", annotation_count=40), "discrimination"
        )
        assert relevance == pytest.approx(1.0)

    def test_unknown_exercise_type(self, ranker):
        with pytest.raises(ValidationError):
            ranker.score_relevance(make_candidate("c1"), "crossword")


class TestBoosts:

    def _spatial(self, **kwargs):
        defaults = dict(features=("beak",), annotation_count=0, orientation="front")
        defaults.update(kwargs)
        return make_candidate("c1", **defaults)

    def test_gap_boost_applies_when_feature_fills_gap(self, ranker):
        score = ranker.score_candidate(self._spatial(), "spatial_identification", vocabulary_gaps=["beak"])
        assert score.relevance == pytest.approx(0.78)
        assert "boosted: fills vocabulary gap 'beak'" in score.reasons

    def test_no_gap_boost_without_overlap(self, ranker):
        score = ranker.score_candidate(self._spatial(), "spatial_identification", vocabulary_gaps=["crest"])
        assert score.relevance == pytest.approx(0.6)
        assert not any("vocabulary gap" in r for r in score.reasons)

    def test_success_boost(self, ranker):
        candidate = self._spatial(times_used=10, times_successful=9)
        score = ranker.score_candidate(candidate, "spatial_identification")
        assert score.relevance == pytest.approx(0.72)
        assert score.final_score == pytest.approx(0.27 + 0.4 * 0.72 + 0.2 * 0.9, abs=1e-6)

    def test_success_threshold_is_strict(self, ranker):
        candidate = self._spatial(times_used=10, times_successful=8)
        score = ranker.score_candidate(candidate, "spatial_identification")
        assert score.relevance == pytest.approx(0.6)

    def test_boosted_relevance_clamped(self, ranker):
        candidate = make_candidate("c1", annotation_count=10, times_used=10, times_successful=10)
        score = ranker.score_candidate(candidate, "discrimination", vocabulary_gaps=["crest"])
        assert score.relevance == 1.0
        assert score.final_score == pytest.approx(0.27 + 0.4 + 0.2)

    def test_pattern_adjustment_from_learner(self, learner):
        for _ in range(3):
            learner.record_approval("beak", "cardinal")
        ranker = RecommendationEngine(learner)
        score = ranker.score_candidate(make_candidate("c1"), "discrimination")
        assert score.pattern_adjustment == pytest.approx(0.65)
        assert score.final_score == pytest.approx(0.27 + 0.36 + 0.065, abs=1e-6)

    def test_insufficient_patterns_do_not_adjust(self, learner):
        learner.record_approval("beak", "cardinal")
        ranker = RecommendationEngine(learner)
        assert ranker.score_candidate(make_candidate("c1"), "discrimination").pattern_adjustment == 0.0


class TestRanking:

    def test_deterministic_regardless_of_input_order(self, ranker):
        candidates = [
            make_candidate(f"c{i}", species_id=f"s{i % 3}", quality=80 + i, created_offset_days=i)
            for i in range(8)
        ]
        expected = ranker.recommend(candidates, "discrimination", top_n=4)
        shuffled = candidates[:]
        random.Random(7).shuffle(shuffled)
        again = ranker.recommend(shuffled, "discrimination", top_n=4)
        assert again.recommended_ids == expected.recommended_ids
        assert [s.candidate_id for s in again.alternates] == [s.candidate_id for s in expected.alternates]

    def test_tie_breaks(self, ranker):
        candidates = [
            make_candidate("b", species_id="s1", annotation_count=10, created_offset_days=0),
            make_candidate("a", species_id="s2", annotation_count=10, created_offset_days=0),
            make_candidate("c", species_id="s3", annotation_count=10, created_offset_days=-1),
            make_candidate("d", species_id="s4", annotation_count=15, created_offset_days=5),
        ]
        result = ranker.recommend(candidates, "discrimination", top_n=4)
        assert result.recommended_ids == ["d", "c", "a", "b"]

    def test_species_diversity_cap(self, ranker):
        candidates = [
            make_candidate("card-1", created_offset_days=0),
            make_candidate("card-2", created_offset_days=1),
            make_candidate("card-3", created_offset_days=2),
            make_candidate("jay-1", species_id="blue-jay", quality=80.0),
        ]
        result = ranker.recommend(candidates, "discrimination", top_n=3)
        assert result.recommended_ids == ["card-1", "card-2", "jay-1"]
        assert [s.candidate_id for s in result.alternates] == ["card-3"]

    def test_fills_window_when_not_diverse(self, ranker):
        candidates = [make_candidate(f"card-{i}", created_offset_days=i) for i in range(4)]
        result = ranker.recommend(candidates, "discrimination", top_n=3)
        assert result.recommended_ids == ["card-0", "card-1", "card-2"]
        assert [s.candidate_id for s in result.alternates] == ["card-3"]

    def test_diversity_disabled(self):
        ranker = RecommendationEngine(config=RecommendationConfig(max_per_species=0))
        candidates = [make_candidate(f"card-{i}", created_offset_days=i) for i in range(3)]
        candidates.append(make_candidate("jay-1", species_id="blue-jay", quality=80.0))
        result = ranker.recommend(candidates, "discrimination", top_n=3)
        assert result.recommended_ids == ["card-0", "card-1", "card-2"]

    def test_unassessed_ranked_not_dropped(self, ranker):
        candidates = [
            make_candidate("known", quality=90.0),
            make_candidate("unknown", species_id="blue-jay", quality=None, times_used=4, times_successful=2),
        ]
        result = ranker.recommend(candidates, "discrimination", top_n=2)
        assert set(result.recommended_ids) == {"known", "unknown"}
        unknown = [s for s in result.recommended if s.candidate_id == "unknown"][0]
        assert unknown.quality is None
        assert unknown.final_score == pytest.approx(0.2 / 0.7 * 0.5, abs=1e-6)
        assert any("without quality assessment" in line for line in result.reasoning)

    def test_species_filter(self, ranker):
        candidates = [
            make_candidate("card-1"),
            make_candidate("jay-1", species_id="blue-jay"),
        ]
        result = ranker.recommend(
            candidates, "discrimination", Objectives(species_filter=["blue-jay"]), top_n=5
        )
        assert result.recommended_ids == ["jay-1"]
        assert result.reasoning[0] == "discrimination: ranked 1 of 2 candidates"
        assert "species filter: blue-jay" in result.reasoning

    def test_top_n_zero(self, ranker):
        result = ranker.recommend([make_candidate("c1")], "discrimination", top_n=0)
        assert result.recommended == ()
        assert len(result.alternates) == 1

    def test_empty_candidates(self, ranker):
        result = ranker.recommend([], "discrimination")
        assert result.recommended == ()
        assert result.alternates == ()

    def test_exercise_type_normalised(self, ranker):
        result = ranker.recommend([make_candidate("c1")], " Discrimination ")
        assert result.exercise_type == "discrimination"

    def test_validation(self, ranker):
        with pytest.raises(ValidationError):
            ranker.recommend([make_candidate("c1")], "crossword")
        with pytest.raises(ValidationError):
            ranker.recommend([make_candidate("c1")], "discrimination", top_n=-1)
        with pytest.raises(ValidationError):
            ranker.recommend([make_candidate("c1"), make_candidate("c1")], "discrimination")
