"""
Aves Learning API

HTTP wrapper around AnnotationEngine: exercise recommendations, image
quality assessment, reviewer feedback and learned-pattern queries.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from aves_learning import __version__
from aves_learning.config import EngineConfig, LOG_FORMAT, LOG_LEVEL
from aves_learning.core.models import BoundingBox, Candidate, Objectives
from aves_learning.core.store import create_pattern_store
from aves_learning.engine import FEEDBACK_ACTIONS, AnnotationEngine
from aves_learning.exceptions import (
    AvesError,
    InsufficientDataError,
    PersistenceError,
    TransientExternalError,
    ValidationError,
)
from aves_learning.scoring.vision import HttpVisionAssessor

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

# =============================================================================
# Configuration
# =============================================================================

BASE_DATA_DIR = os.environ.get("AVES_DATA_DIR", "~/.aves-learning")
STORE_BACKEND = os.environ.get("AVES_STORE_BACKEND", "sqlite")
VISION_URL = os.environ.get("AVES_VISION_URL")
VISION_API_KEY = os.environ.get("AVES_VISION_API_KEY")

ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "http://localhost:3000").split(",")

# Docs toggle
ENABLE_DOCS = os.environ.get("ENABLE_DOCS")

# =============================================================================
# Engine
# =============================================================================

_engine: Optional[AnnotationEngine] = None


def build_engine() -> AnnotationEngine:
    """Create the engine from AVES_* environment variables."""
    config = EngineConfig.from_env()
    data_dir = os.path.expanduser(BASE_DATA_DIR)
    store = create_pattern_store(
        STORE_BACKEND,
        db_path=os.path.join(data_dir, "patterns.db"),
    )
    vision = None
    if VISION_URL:
        vision = HttpVisionAssessor(
            VISION_URL,
            api_key=VISION_API_KEY,
            timeout=config.batch.item_timeout_seconds,
        )
    return AnnotationEngine(store, config=config, vision=vision)


def get_engine() -> AnnotationEngine:
    """Dependency returning the running engine."""
    if _engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return _engine


# =============================================================================
# Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown."""
    global _engine
    _engine = build_engine()
    yield
    _engine.close()
    _engine = None


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Aves Learning API",
    description="Adaptive annotation quality and exercise recommendations.",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if ENABLE_DOCS else None,
    redoc_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type"],
)

_ERROR_STATUS = (
    (InsufficientDataError, 404),
    (ValidationError, 400),
    (TransientExternalError, 502),
    (PersistenceError, 503),
)


@app.exception_handler(AvesError)
async def aves_error_handler(request: Request, exc: AvesError):
    status = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status, content={"detail": str(exc)})


# =============================================================================
# Request/Response Models
# =============================================================================

class BoxModel(BaseModel):
    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)
    width: float = Field(..., gt=0.0, le=1.0)
    height: float = Field(..., gt=0.0, le=1.0)

    def to_box(self) -> BoundingBox:
        return BoundingBox(self.x, self.y, self.width, self.height)


class SubScores(BaseModel):
    visibility: float = Field(..., ge=0.0, le=40.0)
    clarity: float = Field(..., ge=0.0, le=30.0)
    technical: float = Field(..., ge=0.0, le=20.0)
    educational: float = Field(..., ge=0.0, le=10.0)


class CandidateModel(BaseModel):
    id: str = Field(..., min_length=1, max_length=200)
    species_id: str = Field(..., min_length=1, max_length=200)
    features: List[str] = Field(default_factory=list, max_length=100)
    annotation_count: int = Field(default=0, ge=0)
    quality: Optional[SubScores] = Field(default=None, description="Omit when not assessed")
    orientation: Optional[str] = Field(default=None, max_length=50)
    created_at: Optional[datetime] = None
    times_used: int = Field(default=0, ge=0)
    times_successful: int = Field(default=0, ge=0)

    @field_validator("created_at")
    @classmethod
    def assume_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ObjectivesModel(BaseModel):
    target_features: List[str] = Field(default_factory=list)
    species_filter: List[str] = Field(default_factory=list)
    difficulty: Optional[int] = Field(default=None, ge=1, le=5)


class RecommendRequest(BaseModel):
    candidates: List[CandidateModel] = Field(..., max_length=1000)
    exercise_type: str = Field(..., description="discrimination, spatial_identification, ...")
    objectives: Optional[ObjectivesModel] = None
    vocabulary_gaps: Optional[List[str]] = Field(
        default=None, description="Omit to use the learned vocabulary gaps"
    )
    top_n: int = Field(default=5, ge=1, le=100)


class AssessRequest(BaseModel):
    image_id: str = Field(..., min_length=1)
    url: Optional[str] = None
    species_id: Optional[str] = None


class OverrideRequest(BaseModel):
    image_id: str = Field(..., min_length=1)
    species_id: Optional[str] = None
    scores: SubScores
    manual_score: float = Field(..., ge=0.0, le=100.0)
    reasons: List[str] = Field(default_factory=list, max_length=20)


class FeedbackRequest(BaseModel):
    feature_name: str = Field(..., min_length=1, max_length=100)
    species_id: str = Field(..., min_length=1, max_length=200)
    action: str = Field(..., description="approve, reject or correct")
    box: Optional[BoxModel] = Field(default=None, description="approve: approved box")
    category: Optional[str] = Field(default=None, description="reject: rejection category")
    reason: Optional[str] = Field(default=None, max_length=1000, description="reject: free text")
    original: Optional[BoxModel] = Field(default=None, description="correct: suggested box")
    corrected: Optional[BoxModel] = Field(default=None, description="correct: corrected box")
    reviewer_id: Optional[str] = Field(default=None, max_length=200)

    @field_validator("action")
    @classmethod
    def validate_action(cls, v):
        v = v.strip().lower()
        if v not in FEEDBACK_ACTIONS:
            raise ValueError(f"action must be one of {', '.join(FEEDBACK_ACTIONS)}")
        return v


class EnhanceRequest(BaseModel):
    base_prompt: str = Field(..., max_length=20000)
    species_id: Optional[str] = None
    target_features: List[str] = Field(default_factory=list)


class BatchRequest(BaseModel):
    images: List[AssessRequest] = Field(..., min_length=1, max_length=5000)


def _to_candidate(model: CandidateModel, engine: AnnotationEngine) -> Candidate:
    quality = None
    if model.quality is not None:
        quality = engine.scorer.build_assessment(
            model.id,
            model.quality.model_dump(),
            species_id=model.species_id,
        )
    candidate = Candidate(
        id=model.id,
        species_id=model.species_id,
        features=list(model.features),
        annotation_count=model.annotation_count,
        quality=quality,
        orientation=model.orientation,
        times_used=model.times_used,
        times_successful=model.times_successful,
    )
    if model.created_at is not None:
        candidate.created_at = model.created_at
    return candidate


# =============================================================================
# Public Endpoints
# =============================================================================

@app.get("/")
async def root():
    """API status."""
    return {
        "service": "Aves Learning API",
        "status": "operational",
        "version": __version__,
        "endpoints": {
            "recommend": "POST /v1/recommend",
            "assess": "POST /v1/quality/assess",
            "override": "POST /v1/quality/override",
            "feedback": "POST /v1/feedback",
            "features": "GET /v1/species/{species_id}/features",
            "gaps": "GET /v1/vocabulary/gaps",
            "pattern": "GET /v1/patterns/{species_id}/{feature_name}",
            "enhance": "POST /v1/prompts/enhance",
            "batch": "POST /v1/batch",
            "stats": "GET /v1/stats",
        },
    }


@app.get("/health")
async def health():
    """Health check."""
    return {"status": "healthy"}


# =============================================================================
# Recommendation & Quality Endpoints
# =============================================================================

@app.post("/v1/recommend")
async def recommend(
    request: RecommendRequest,
    engine: AnnotationEngine = Depends(get_engine),
):
    """Rank candidate images for an exercise."""
    candidates = [_to_candidate(c, engine) for c in request.candidates]
    objectives = None
    if request.objectives is not None:
        objectives = Objectives(
            target_features=request.objectives.target_features,
            species_filter=request.objectives.species_filter,
            difficulty=request.objectives.difficulty,
        )
    result = engine.recommend(
        candidates,
        request.exercise_type,
        objectives=objectives,
        vocabulary_gaps=request.vocabulary_gaps,
        top_n=request.top_n,
    )
    return result.to_dict()


@app.post("/v1/quality/assess")
async def assess_quality(
    request: AssessRequest,
    engine: AnnotationEngine = Depends(get_engine),
):
    """Assess one image through the vision service."""
    if engine.vision is None:
        raise HTTPException(status_code=503, detail="Vision assessment not configured")
    assessment = engine.assess_quality(request.model_dump())
    return assessment.to_dict()


@app.post("/v1/quality/override")
async def override_quality(
    request: OverrideRequest,
    engine: AnnotationEngine = Depends(get_engine),
):
    """Replace an automatic quality score with a reviewer's score."""
    original = engine.scorer.build_assessment(
        request.image_id,
        request.scores.model_dump(),
        species_id=request.species_id,
    )
    override = engine.override_quality(original, request.manual_score, request.reasons)
    return {"original": original.to_dict(), "override": override.to_dict()}


@app.post("/v1/batch")
async def start_batch(
    request: BatchRequest,
    engine: AnnotationEngine = Depends(get_engine),
):
    """Start a batch assessment job."""
    if engine.vision is None:
        raise HTTPException(status_code=503, detail="Vision assessment not configured")
    job = engine.start_batch([i.model_dump() for i in request.images])
    return {"job_id": job.job_id, "status": job.status.value, "total": len(job.items)}


@app.get("/v1/batch/{job_id}")
async def get_batch(job_id: str, engine: AnnotationEngine = Depends(get_engine)):
    """Batch job status and results."""
    job = engine.get_batch(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()


@app.delete("/v1/batch/{job_id}")
async def cancel_batch(job_id: str, engine: AnnotationEngine = Depends(get_engine)):
    """Cancel a running batch job. In-flight items still finish."""
    if engine.get_batch(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"job_id": job_id, "cancelled": engine.cancel_batch(job_id)}


# =============================================================================
# Learning Endpoints
# =============================================================================

@app.post("/v1/feedback")
async def record_feedback(
    request: FeedbackRequest,
    engine: AnnotationEngine = Depends(get_engine),
):
    """Record a reviewer approve / reject / correct action."""
    details: Dict[str, Any] = {}
    if request.action == "approve":
        if request.box is not None:
            details["box"] = request.box.to_box()
    elif request.action == "reject":
        details["category"] = request.category
        details["reason"] = request.reason
        if request.category is None:
            del details["category"]
    else:
        if request.original is None or request.corrected is None:
            raise HTTPException(status_code=400, detail="correct requires original and corrected boxes")
        details.update({
            "original": request.original.to_box(),
            "corrected": request.corrected.to_box(),
            "reviewer_id": request.reviewer_id,
        })

    result = engine.record_feedback(
        request.feature_name,
        request.species_id,
        request.action,
        details,
    )
    return {"recorded": request.action, "result": result.to_dict()}


@app.get("/v1/patterns/{species_id}/{feature_name}")
async def get_pattern(
    species_id: str,
    feature_name: str,
    engine: AnnotationEngine = Depends(get_engine),
):
    """Learned pattern for a (feature, species) pair. 404 until enough samples."""
    pattern = engine.learner.require_pattern(feature_name, species_id)
    return pattern.to_dict()


@app.get("/v1/species/{species_id}/features")
async def recommended_features(
    species_id: str,
    limit: Optional[int] = None,
    engine: AnnotationEngine = Depends(get_engine),
):
    """Features to prioritize when annotating a species."""
    features = engine.get_recommended_features(species_id, limit)
    return {"species_id": species_id, "features": features}


@app.get("/v1/vocabulary/gaps")
async def vocabulary_gaps(engine: AnnotationEngine = Depends(get_engine)):
    """Target vocabulary features that need more annotations."""
    gaps = engine.get_vocabulary_gaps()
    return {"count": len(gaps), "gaps": [g.to_dict() for g in gaps]}


@app.post("/v1/prompts/enhance")
async def enhance_prompt(
    request: EnhanceRequest,
    engine: AnnotationEngine = Depends(get_engine),
):
    """Append learned guidance to a generation prompt."""
    prompt = engine.enhance_prompt(
        request.base_prompt,
        species_id=request.species_id,
        target_features=request.target_features,
    )
    emphasis = []
    if request.species_id:
        emphasis = [
            e.to_dict()
            for e in engine.enhancer.get_emphasis(
                request.species_id, request.target_features or None
            )
        ]
    return {"prompt": prompt, "emphasis": emphasis}


@app.get("/v1/stats")
async def stats(engine: AnnotationEngine = Depends(get_engine)):
    """Cache, learner and batch statistics."""
    return engine.stats()


# =============================================================================
# Run with: uvicorn api.main:app --reload --port 8000
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
