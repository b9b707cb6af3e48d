# app.py: exam mastery analytics API
# - Attempts are stored per user; every analytics call recomputes from them
# - Auth is handled upstream; routes take an explicit user_id

import importlib
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import ValidationError

import db
from engines.aggregation import (
    attempt_history,
    attempt_view,
    exam_metrics,
    performance_summary,
    topic_detail,
    topic_mastery_summaries,
)
from engines.attempts import Attempt
from engines.normalization import normalize_attempts
from engines.recommendations import RecommendationService
from engines.validation import AnalyticsContractError, AttemptValidationError, ensure_user_id
from env_validation import (
    POLICY_CHOICES,
    STRATEGY_CHOICES,
    describe_environment,
    get_env_bool,
    get_env_choice,
)
from schemas import (
    AttemptHistoryEntry,
    AttemptRecord,
    BulkAttemptsRequest,
    BulkAttemptsResponse,
    ExamMetricsResponse,
    NormalizationResponse,
    NormalizeRequest,
    PerformanceSummaryResponse,
    RecommendationInput,
    RecommendationRequest,
    RecommendationResponse,
    StoredRecommendations,
    TopicDetailResponse,
    TopicMasterySummary,
)

logger = logging.getLogger(__name__)


def _load_generator(path: Optional[str]):
    """Build the recommendation generator from a ``module:factory`` path."""
    if not path:
        return None
    module_name, _, attr = path.partition(":")
    if not attr:
        raise RuntimeError(f"RECOMMENDATION_GENERATOR must look like 'module:factory', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


def build_recommendation_service() -> RecommendationService:
    return RecommendationService(
        _load_generator(os.getenv("RECOMMENDATION_GENERATOR")),
        policy=get_env_choice("UNRESOLVED_SUBJECT_POLICY", POLICY_CHOICES, "exclude"),
        strategy=get_env_choice("MASTERY_STRATEGY", STRATEGY_CHOICES, "blended"),
    )


@asynccontextmanager
async def _lifespan(app: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        db.DB_PATH = os.environ["DB_PATH"]
        db.init()
        app.state.recommendation_service = build_recommendation_service()
        logger.info("Analytics API ready (db=%s)", db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Exam Mastery Analytics", version="1.0.0", lifespan=_lifespan)


def _now(as_of: Optional[datetime]) -> datetime:
    if as_of is None:
        return datetime.now(timezone.utc)
    if as_of.tzinfo is None:
        return as_of.replace(tzinfo=timezone.utc)
    return as_of


def _recommendation_service(request: Request) -> RecommendationService:
    service = getattr(request.app.state, "recommendation_service", None)
    if service is None:
        # Without a configured generator only payload building is available.
        service = RecommendationService(None)
    return service


def _user_id(user_id: str) -> str:
    try:
        return ensure_user_id(user_id)
    except AnalyticsContractError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _load_attempts(user_id: str, exam_type: Optional[str] = None) -> List[Attempt]:
    return db.list_attempts(_user_id(user_id), exam_type)


@app.get("/health")
def health():
    return {"status": "ok", "config": describe_environment()}


@app.post("/api/attempts/bulk", response_model=BulkAttemptsResponse)
def bulk_insert_attempts(body: BulkAttemptsRequest):
    if not body.attempts:
        raise HTTPException(status_code=400, detail="No attempts provided")
    uploaded_at = datetime.now(timezone.utc)
    try:
        user_id = ensure_user_id(body.user_id)
        attempts = [
            Attempt.from_record(item.to_record(), user_id=user_id, default_time=uploaded_at)
            for item in body.attempts
        ]
    except (AttemptValidationError, AnalyticsContractError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    inserted = db.insert_attempts(user_id, attempts)
    sessions = len({a.test_session_id for a in attempts if a.test_session_id})
    if get_env_bool("NORMALIZE_ON_UPLOAD"):
        _normalize_user(user_id)
    return BulkAttemptsResponse(inserted=inserted, sessions=sessions)


def _normalize_user(user_id: str) -> NormalizationResponse:
    result = normalize_attempts(db.list_attempts(user_id))
    db.apply_attempt_updates(result.updates)
    return NormalizationResponse(
        updated_count=result.updated_count,
        inferred_mistake_count=result.inferred_mistake_count,
        normalized_count=result.normalized_count,
    )


@app.post("/api/attempts/normalize", response_model=NormalizationResponse)
def normalize_user_attempts(body: NormalizeRequest):
    return _normalize_user(_user_id(body.user_id))


@app.get("/api/attempts", response_model=List[AttemptRecord])
def list_recent_attempts(user_id: str, limit: int = db.DEFAULT_ATTEMPT_LIMIT):
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be at least 1")
    return [attempt_view(a) for a in db.recent_attempts(_user_id(user_id), limit)]


@app.get("/api/attempt-history", response_model=List[AttemptHistoryEntry])
def list_attempt_history(user_id: str):
    return attempt_history(_load_attempts(user_id))


@app.delete("/api/attempts")
def reset_attempts(user_id: str):
    return {"deleted": db.delete_user_attempts(_user_id(user_id))}


@app.get("/api/analytics/summary", response_model=PerformanceSummaryResponse)
def analytics_summary(user_id: str, as_of: Optional[datetime] = None):
    attempts = _load_attempts(user_id)
    summary = performance_summary(attempts, _now(as_of))
    return PerformanceSummaryResponse(**summary.to_dict())


@app.get("/api/analytics/topic-mastery", response_model=List[TopicMasterySummary])
def analytics_topic_mastery(user_id: str, strategy: Optional[str] = None, as_of: Optional[datetime] = None):
    attempts = _load_attempts(user_id)
    try:
        summaries = topic_mastery_summaries(
            attempts, _now(as_of), strategy=strategy or os.getenv("MASTERY_STRATEGY")
        )
    except AnalyticsContractError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return [TopicMasterySummary(**item) for item in summaries]


@app.get("/api/analytics/topic-mastery/{topic:path}", response_model=TopicDetailResponse)
def analytics_topic_detail(
    topic: str, user_id: str, strategy: Optional[str] = None, as_of: Optional[datetime] = None
):
    attempts = _load_attempts(user_id)
    try:
        detail = topic_detail(
            attempts, topic, _now(as_of), strategy=strategy or os.getenv("MASTERY_STRATEGY")
        )
    except AnalyticsContractError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if detail is None:
        raise HTTPException(status_code=404, detail=f"No attempts found for topic '{topic}'")
    return detail


@app.get("/api/analytics/exam-metrics", response_model=ExamMetricsResponse)
def analytics_exam_metrics(user_id: str, exam_type: str):
    attempts = _load_attempts(user_id, exam_type)
    return ExamMetricsResponse(**exam_metrics(attempts, exam_type).to_dict())


@app.get("/api/recommendations/input", response_model=RecommendationInput)
def recommendation_input(request: Request, user_id: str, exam_type: str, as_of: Optional[datetime] = None):
    attempts = _load_attempts(user_id, exam_type)
    service = _recommendation_service(request)
    try:
        payload = service.build_payload(exam_type, attempts, _now(as_of))
    except AnalyticsContractError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return RecommendationInput(**payload)


@app.get("/api/recommendations", response_model=StoredRecommendations)
def stored_recommendations(user_id: str, exam_type: str):
    stored = db.get_recommendations(_user_id(user_id), exam_type.strip())
    if stored is None:
        raise HTTPException(status_code=404, detail=f"No recommendations stored for {exam_type}")
    return stored


@app.post("/api/recommendations/generate", response_model=RecommendationResponse)
def generate_recommendations(request: Request, body: RecommendationRequest):
    service = _recommendation_service(request)
    if service.generator is None:
        raise HTTPException(status_code=503, detail="Recommendation generator is not configured")
    user_id = _user_id(body.user_id)
    exam_type = body.exam_type.strip()
    if not exam_type:
        raise HTTPException(status_code=400, detail="exam_type is required for recommendations")
    attempts = _load_attempts(user_id, exam_type)
    if not attempts:
        # No tests left for this exam, so earlier cards no longer apply.
        db.delete_recommendations(user_id, exam_type)
        logger.info("No attempts for %s; cleared stored recommendations of %s", exam_type, user_id)
        return RecommendationResponse(status="empty", evidence={"attempt_count": 0, "test_count": 0})

    previous = db.get_recommendations(user_id, exam_type)
    now = datetime.now(timezone.utc)
    try:
        outcome = service.generate(
            exam_type, attempts, now, previous["cards"] if previous else None
        )
    except (AnalyticsContractError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.exception("Recommendation generator failed for user %s", user_id)
        raise HTTPException(status_code=502, detail=f"Recommendation generator failed: {exc}")

    stored = outcome.to_dict()
    db.save_recommendations(
        user_id, exam_type, stored["status"], stored["cards"], stored["evidence"], now.isoformat()
    )
    return RecommendationResponse(status=outcome.status, cards=outcome.cards, evidence=outcome.evidence)
