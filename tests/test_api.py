"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from api.main import app, get_engine
from aves_learning.engine import AnnotationEngine

from conftest import FakeVision

BOX = {"x": 0.40, "y": 0.20, "width": 0.10, "height": 0.08}
SCORES = {"visibility": 35, "clarity": 25, "technical": 15, "educational": 8}


def candidate(candidate_id, species_id="cardinal", **overrides):
    data = {
        "id": candidate_id,
        "species_id": species_id,
        "features": ["beak", "crest", "wing"],
        "annotation_count": 5,
        "quality": SCORES,
        "orientation": "side",
        "created_at": "2024-05-01T12:00:00",
    }
    data.update(overrides)
    return data


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def approve(client):
    def _approve(feature="beak", species="cardinal", times=1):
        for _ in range(times):
            response = client.post("/v1/feedback", json={
                "feature_name": feature,
                "species_id": species,
                "action": "approve",
                "box": BOX,
            })
            assert response.status_code == 200
    return _approve


class TestStatus:

    def test_root_and_health(self, client):
        assert client.get("/").json()["status"] == "operational"
        assert client.get("/health").json() == {"status": "healthy"}

    def test_stats(self, client, approve):
        approve()
        data = client.get("/v1/stats").json()
        assert data["learner"]["total_patterns"] == 1


class TestFeedback:

    def test_approve(self, client):
        response = client.post("/v1/feedback", json={
            "feature_name": "beak", "species_id": "cardinal", "action": "approve", "box": BOX,
        })
        assert response.status_code == 200
        body = response.json()
        assert body["recorded"] == "approve"
        assert body["result"]["confidence"] == pytest.approx(0.55)

    def test_reject_with_reason(self, client, engine):
        response = client.post("/v1/feedback", json={
            "feature_name": "crest", "species_id": "cardinal", "action": "reject",
            "reason": "Image is too blurry",
        })
        assert response.status_code == 200
        assert engine.learner.get_rejection_count("crest", "cardinal", "low_quality") == 1

    def test_correct(self, client):
        response = client.post("/v1/feedback", json={
            "feature_name": "beak", "species_id": "cardinal", "action": "correct",
            "original": BOX, "corrected": dict(BOX, y=0.25), "reviewer_id": "rev-1",
        })
        assert response.status_code == 200
        assert response.json()["result"]["reviewer_id"] == "rev-1"

    def test_correct_needs_both_boxes(self, client):
        response = client.post("/v1/feedback", json={
            "feature_name": "beak", "species_id": "cardinal", "action": "correct",
            "original": BOX, "reviewer_id": "rev-1",
        })
        assert response.status_code == 400

    def test_unknown_action_rejected_by_schema(self, client):
        response = client.post("/v1/feedback", json={
            "feature_name": "beak", "species_id": "cardinal", "action": "like",
        })
        assert response.status_code == 422

    def test_unknown_feature_is_bad_request(self, client):
        response = client.post("/v1/feedback", json={
            "feature_name": "antenna", "species_id": "cardinal", "action": "approve",
        })
        assert response.status_code == 400
        assert "Unknown feature" in response.json()["detail"]


class TestLearnedState:

    def test_pattern_not_found_until_enough_samples(self, client, approve):
        approve(times=2)
        assert client.get("/v1/patterns/cardinal/beak").status_code == 404
        approve()
        response = client.get("/v1/patterns/cardinal/beak")
        assert response.status_code == 200
        assert response.json()["sample_count"] == 3

    def test_recommended_features(self, client, approve):
        approve(times=3)
        data = client.get("/v1/species/cardinal/features", params={"limit": 28}).json()
        assert len(data["features"]) == 28
        assert data["features"][-1] == "beak"

    def test_vocabulary_gaps(self, client):
        data = client.get("/v1/vocabulary/gaps").json()
        assert data["count"] == 28
        assert {g["priority"] for g in data["gaps"]} == {"critical"}

    def test_enhance_prompt(self, client, approve):
        approve(times=3)
        response = client.post("/v1/prompts/enhance", json={
            "base_prompt": "Annotate the bird.",
            "species_id": "cardinal",
            "target_features": ["beak"],
        })
        data = response.json()
        assert data["prompt"].startswith("Annotate the bird.")
        assert "LEARNED FEATURE PATTERNS" in data["prompt"]
        assert data["emphasis"][0]["feature"] == "beak"


class TestRecommend:

    def test_ranked_response(self, client):
        response = client.post("/v1/recommend", json={
            "candidates": [
                candidate("card-1"),
                candidate("card-2", quality=dict(SCORES, visibility=20)),
                candidate("jay-1", species_id="blue-jay", quality=None),
            ],
            "exercise_type": "discrimination",
            "vocabulary_gaps": [],
            "top_n": 2,
        })
        assert response.status_code == 200
        data = response.json()
        assert [s["candidate_id"] for s in data["recommended"]] == ["card-1", "card-2"]
        assert data["alternates"][0]["candidate_id"] == "jay-1"
        assert data["alternates"][0]["quality"] is None

    def test_unknown_exercise_type(self, client):
        response = client.post("/v1/recommend", json={
            "candidates": [candidate("card-1")],
            "exercise_type": "crossword",
        })
        assert response.status_code == 400


class TestQuality:

    def test_assess(self, client):
        response = client.post("/v1/quality/assess", json={"image_id": "img-1", "species_id": "cardinal"})
        assert response.status_code == 200
        assert response.json()["overall"] == 83

    def test_vision_failure_is_bad_gateway(self, client, engine):
        engine.vision = FakeVision(failures={"img-1": 1})
        response = client.post("/v1/quality/assess", json={"image_id": "img-1"})
        assert response.status_code == 502

    def test_assess_without_vision(self, learner):
        app.dependency_overrides[get_engine] = lambda: AnnotationEngine(learner=learner)
        try:
            response = TestClient(app).post("/v1/quality/assess", json={"image_id": "img-1"})
        finally:
            app.dependency_overrides.clear()
        assert response.status_code == 503

    def test_override(self, client):
        response = client.post("/v1/quality/override", json={
            "image_id": "img-1",
            "species_id": "cardinal",
            "scores": SCORES,
            "manual_score": 50,
            "reasons": ["bird too small"],
        })
        assert response.status_code == 200
        data = response.json()
        assert data["original"]["overall"] == 83
        assert data["override"]["overall"] == 50
        assert data["override"]["supersedes"] == data["original"]["id"]

    def test_batch_lifecycle(self, client, engine):
        response = client.post("/v1/batch", json={"images": [{"image_id": "img-1"}, {"image_id": "img-2"}]})
        assert response.status_code == 200
        job_id = response.json()["job_id"]
        assert engine.get_batch(job_id).wait(timeout=10)

        data = client.get(f"/v1/batch/{job_id}").json()
        assert data["status"] == "completed"
        assert data["progress"]["successful"] == 2
        assert client.delete(f"/v1/batch/{job_id}").json()["cancelled"] is False

    def test_unknown_batch(self, client):
        assert client.get("/v1/batch/missing").status_code == 404
        assert client.delete("/v1/batch/missing").status_code == 404
