"""Pydantic schemas for API payloads, generator outputs and helper utilities."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Literal, Type, TypeVar

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "AttemptIn",
    "BulkAttemptsRequest",
    "BulkAttemptsResponse",
    "NormalizeRequest",
    "NormalizationResponse",
    "AttemptRecord",
    "HistoryTopic",
    "HistoryTrend",
    "AttemptHistoryEntry",
    "SubtopicMastery",
    "TopicDetailResponse",
    "TopicMasterySummary",
    "PerformanceSummaryResponse",
    "TimelinePoint",
    "ExamArea",
    "ExamMetricsResponse",
    "RecommendationMetricRecord",
    "RecommendationInput",
    "RecommendationCard",
    "RecommendationRequest",
    "RecommendationResponse",
    "StoredRecommendations",
    "extract_json_object",
    "parse_embedded_json",
]

MAX_WHY_LENGTH = 100
MAX_ACTION_LENGTH = 80
ACTIONS_PER_CARD = 3


class AttemptIn(BaseModel):
    """One uploaded attempt; metadata may be nested or flattened."""

    id: str | None = None
    question_id: str | None = Field(default=None, alias="questionId")
    test_session_id: str | None = Field(default=None, alias="testSessionId")
    question_metadata: Dict[str, Any] | None = Field(default=None, alias="questionMetadata")
    topic: str | None = None
    subtopic: str | None = None
    subject: str | None = None
    difficulty: str | None = None
    correctness: bool
    confidence_rating: float | None = Field(default=None, alias="confidenceRating")
    time_taken_seconds: float | None = Field(default=None, alias="timeTakenSeconds")
    mistake_type: str | None = Field(default=None, alias="mistakeType")
    attempted_at: datetime | None = Field(default=None, alias="attemptedAt")
    exam_type: str | None = Field(default=None, alias="examType")
    test_name: str | None = Field(default=None, alias="testName")
    test_date: datetime | None = Field(default=None, alias="testDate")

    model_config = {"populate_by_name": True}

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=False, exclude_none=True)


class BulkAttemptsRequest(BaseModel):
    user_id: str
    attempts: List[AttemptIn]


class BulkAttemptsResponse(BaseModel):
    inserted: int
    sessions: int


class NormalizeRequest(BaseModel):
    user_id: str


class NormalizationResponse(BaseModel):
    updated_count: int
    inferred_mistake_count: int
    normalized_count: int


class AttemptRecord(BaseModel):
    """Stored attempt as listed back to the client; unusable numbers are null."""

    id: str
    user_id: str
    test_session_id: str | None = None
    question_metadata: Dict[str, Any] = Field(default_factory=dict)
    correctness: bool
    confidence_rating: float | None = None
    time_taken_seconds: float | None = None
    mistake_type: str | None = None
    attempted_at: str
    exam_type: str | None = None
    test_name: str | None = None
    test_date: str | None = None


class HistoryTopic(BaseModel):
    topic: str
    accuracy: float = Field(ge=0, le=100)
    attempts: int


class HistoryTrend(BaseModel):
    accuracy_change: float = Field(description="Accuracy points gained since the previous test.")
    time_change: int
    direction: Literal["improving", "declining", "stable"]


class AttemptHistoryEntry(BaseModel):
    test_session_id: str
    test: str | None = None
    exam_type: str | None = None
    test_date: str
    accuracy: float = Field(ge=0, le=100)
    avg_time: int
    attempts: int
    topics: List[HistoryTopic] = Field(default_factory=list)
    trend: HistoryTrend | None = None


class SubtopicMastery(BaseModel):
    subtopic: str
    mastery: float = Field(ge=0, le=100)
    attempt_count: int
    correct_count: int


class TopicDetailResponse(BaseModel):
    topic: str
    strategy: str
    mastery: float = Field(ge=0, le=100)
    total_attempts: int
    correct_attempts: int
    subtopics: List[SubtopicMastery] = Field(default_factory=list)
    recent_attempts: List[AttemptRecord] = Field(default_factory=list)


class TopicMasterySummary(BaseModel):
    topic: str
    subject: str | None = None
    mastery: float = Field(ge=0, le=100)
    accuracy: float = Field(ge=0, le=100, description="Recency-weighted accuracy in percent.")
    attempts: int
    avg_time: int
    confidence_gap: Literal["high", "low"]


class PerformanceSummaryResponse(BaseModel):
    total_attempts: int
    avg_accuracy: float
    avg_time: int
    mastery: float
    trend: float = Field(description="Recent-ten minus previous-ten accuracy, in points.")


class TimelinePoint(BaseModel):
    date: str
    accuracy: float


class ExamArea(BaseModel):
    name: str
    attempts: int
    incorrect_rate: float
    confidence_avg: float
    trend: Literal["stable", "improving", "declining", "unstable"]


class ExamMetricsResponse(BaseModel):
    exam_type: str | None = None
    test_count: int
    timeline: List[TimelinePoint] = Field(default_factory=list)
    areas: List[ExamArea] = Field(default_factory=list)


class RecommendationMetricRecord(BaseModel):
    """Numeric topic record consumed by the recommendation generator."""

    subject: str | None
    topic: str
    attempts: int
    incorrect_rate: float = Field(ge=0, le=1)
    confidence_mismatch_rate: float = Field(ge=0, le=1)
    volatility: float = Field(ge=0)
    trend: Literal["stable", "improving", "declining", "unstable"]
    has_regression: bool = False
    last_seen_index: int = 0
    data_points: int


class RecommendationInput(BaseModel):
    exam_type: str
    aggregated_performance_data: List[RecommendationMetricRecord] = Field(default_factory=list)
    previous_recommendation_cards: List[Dict[str, Any]] = Field(default_factory=list)


class RecommendationCard(BaseModel):
    priority: Literal["High", "Medium", "Low"]
    subject: str
    topic: str
    confidence: float = Field(ge=0, le=100)
    data_points: int = Field(ge=0, alias="dataPoints")
    why: str = Field(max_length=MAX_WHY_LENGTH)
    actions: List[str]

    model_config = {"populate_by_name": True}

    @field_validator("actions")
    @classmethod
    def _check_actions(cls, value: List[str]) -> List[str]:
        if len(value) != ACTIONS_PER_CARD:
            raise ValueError(f"exactly {ACTIONS_PER_CARD} actions are required")
        for action in value:
            if not action.strip():
                raise ValueError("actions cannot be blank")
            if len(action) > MAX_ACTION_LENGTH:
                raise ValueError(f"actions must be at most {MAX_ACTION_LENGTH} characters")
        return value


class RecommendationRequest(BaseModel):
    user_id: str
    exam_type: str


class RecommendationResponse(BaseModel):
    status: Literal["ok", "partial", "empty"]
    cards: List[RecommendationCard] = Field(default_factory=list)
    evidence: Dict[str, Any] = Field(default_factory=dict)


class StoredRecommendations(RecommendationResponse):
    exam_type: str
    updated_at: str


_T = TypeVar("_T", bound=BaseModel)


_DECODER = json.JSONDecoder()


def extract_json_object(text: str) -> tuple[Dict[str, Any], str]:
    """Return the first decodable JSON object in ``text`` and the text after it."""
    start = text.find("{")
    while start != -1:
        try:
            obj, end = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        return obj, text[end:]
    raise ValueError("No JSON object found in generator output")


def parse_embedded_json(text: str, model: Type[_T]) -> _T:
    """Validate the JSON object embedded in a generator reply against ``model``.

    Replies may wrap the object in prose or a code fence. Anything other than
    a closing fence after the object is rejected.
    """
    obj, rest = extract_json_object(text)
    if rest.strip().strip("`").strip():
        raise ValueError("Trailing content detected after JSON object")
    return model.model_validate(obj)
