"""Tests for the PromptEnhancer."""

import pytest

from aves_learning.core.models import BoundingBox
from aves_learning.patterns.enhancer import PromptEnhancer

BASE = "Annotate the visible anatomy."
BOX = BoundingBox(0.40, 0.20, 0.10, 0.08)


@pytest.fixture
def enhancer(learner):
    return PromptEnhancer(learner)


class TestEnhancePrompt:

    def test_unchanged_without_learned_data(self, enhancer):
        assert enhancer.enhance_prompt(BASE, "cardinal", ["beak"]) == BASE

    def test_unchanged_without_species(self, enhancer, learner):
        for _ in range(3):
            learner.record_approval("beak", "cardinal", BOX)
        assert enhancer.enhance_prompt(BASE, None, ["beak"]) == BASE

    def test_learned_positions(self, enhancer, learner):
        for _ in range(3):
            learner.record_approval("beak", "cardinal", BOX)
        prompt = enhancer.enhance_prompt(BASE, "cardinal", ["beak"])
        assert prompt.startswith(BASE)
        assert "LEARNED FEATURE PATTERNS" in prompt
        assert "beak: typically centered at (0.45, 0.24) with size 0.10x0.08" in prompt

    def test_species_guidance_needs_enough_features(self, enhancer, learner):
        for feature in ("beak", "crest"):
            learner.record_approval(feature, "cardinal")
        assert "SPECIES-SPECIFIC GUIDANCE" not in enhancer.enhance_prompt(BASE, "cardinal")

        learner.record_approval("wing", "cardinal")
        prompt = enhancer.enhance_prompt(BASE, "cardinal")
        assert "SPECIES-SPECIFIC GUIDANCE for cardinal" in prompt
        assert "Based on 3 previous annotations" in prompt

    def test_correction_guidance(self, enhancer, learner):
        corrected = BoundingBox(0.42, 0.20, 0.10, 0.08)
        for _ in range(3):
            learner.record_correction("beak", "cardinal", BOX, corrected, "rev-1")
        prompt = enhancer.enhance_prompt(BASE, "cardinal", ["beak"])
        assert "CORRECTION-BASED ADJUSTMENTS" in prompt
        assert "beak: Adjust position by (0.02, 0.00)" in prompt
        assert "[Based on 3 reviewer corrections]" in prompt

    def test_rejection_warnings_need_repeats(self, enhancer, learner):
        learner.record_rejection("crest", "cardinal", "poor_localization")
        assert "COMMON REJECTION PATTERNS" not in enhancer.enhance_prompt(BASE, "cardinal", ["crest"])

        learner.record_rejection("crest", "cardinal", "poor_localization")
        prompt = enhancer.enhance_prompt(BASE, "cardinal", ["crest"])
        assert 'crest: Avoid patterns that caused: "poor_localization" (2x)' in prompt


class TestEmphasis:

    def test_low_confidence_ranks_first(self, enhancer, learner):
        for _ in range(3):
            learner.record_approval("beak", "cardinal")
            learner.record_rejection("crest", "cardinal", "other")
        emphasis = enhancer.get_emphasis("cardinal", ["beak", "crest", "wing"])
        assert [e.feature for e in emphasis] == ["crest", "wing", "beak"]
        assert emphasis[1].confidence is None
        assert "rejected as other (3x)" in emphasis[0].reasons

    def test_defaults_to_recommended_features(self, enhancer):
        emphasis = enhancer.get_emphasis("cardinal", limit=4)
        assert len(emphasis) == 4
        assert all(e.reasons == ["insufficient data"] for e in emphasis)
