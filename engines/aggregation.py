"""Per-topic performance aggregation.

Attempts are grouped by (subject, topic), scored with a mastery strategy and
classified by the trend analyser. Two views come out of the same metrics:

* heatmap summaries for the dashboard, thresholded at ``MIN_SAMPLES_DISPLAY``
  and sorted by topic;
* flat numeric records for the recommendation generator, thresholded at the
  stricter ``MIN_SAMPLES_RECOMMENDATION`` and sorted by evidence volume.

Per-test history and single-topic detail are built from the same attempts.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from engines.attempts import Attempt
from engines.mastery import (
    MasteryContext,
    MasteryStrategy,
    RecencyAccuracyStrategy,
    TimeRange,
    get_strategy,
    round_half_up,
)
from engines.normalization import (
    FALLBACK_SUBJECT,
    infer_subject_from_topic,
    match_allowed_subject,
    match_subject_keywords,
    normalize_topic,
    subject_candidate,
)
from engines.recency import weight_attempt
from engines.trend import (
    TREND_DECLINING,
    TREND_IMPROVING,
    TREND_STABLE,
    UNGROUPED_SESSION,
    analyze_attempts,
    session_accuracies,
)
from engines.validation import AnalyticsContractError, ensure_now, is_valid_confidence, is_valid_time

logger = logging.getLogger(__name__)

MIN_SAMPLES_DISPLAY = 3
MIN_SAMPLES_RECOMMENDATION = 5
HIGH_CONFIDENCE = 4
CONFIDENCE_GAP_RATIO = 0.30
SUMMARY_TREND_WINDOW = 10
RECENT_TOPIC_ATTEMPTS = 10
UNKNOWN_TOPIC = "Unknown"

# Exam section names that CSV exports put in the topic column.
EXAM_SECTIONS = ("Quant", "LRDI", "VARC", "GS1", "GS2", "GS3", "GS4", "GS5", "GS6")


class UnresolvedSubjectPolicy(str, Enum):
    COERCE = "coerce"
    EXCLUDE = "exclude"

    @classmethod
    def parse(cls, value: Any) -> "UnresolvedSubjectPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise AnalyticsContractError(
                f"Unknown unresolved-subject policy '{value}'. Use 'coerce' or 'exclude'."
            ) from None


@dataclass
class TopicMetric:
    subject: Optional[str]
    topic: str
    attempts: int
    accuracy: float
    incorrect_rate: float
    mastery_score: float
    confidence_mismatch_rate: float
    volatility: float
    trend: str = TREND_STABLE
    has_regression: bool = False
    last_seen_index: int = 0
    avg_time: float = 0.0
    weighted_accuracy: float = 0.0
    confidence_gap: str = "low"
    components: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_summary(self) -> Dict[str, Any]:
        """Heatmap record for the dashboard."""
        return {
            "topic": self.topic,
            "subject": self.subject,
            "mastery": self.mastery_score,
            "accuracy": round_half_up(self.weighted_accuracy * 100, 1),
            "attempts": self.attempts,
            "avg_time": int(round_half_up(self.avg_time)),
            "confidence_gap": self.confidence_gap,
        }

    def to_recommendation_record(self) -> Dict[str, Any]:
        """Numeric-only record handed to the recommendation generator."""
        return {
            "subject": self.subject,
            "topic": self.topic,
            "attempts": self.attempts,
            "incorrect_rate": round_half_up(self.incorrect_rate, 3),
            "confidence_mismatch_rate": round_half_up(self.confidence_mismatch_rate, 3),
            "volatility": round_half_up(self.volatility, 3),
            "trend": self.trend,
            "has_regression": self.has_regression,
            "last_seen_index": self.last_seen_index,
            "data_points": self.attempts,
        }


def _section_subject(topic: Optional[str]) -> Optional[str]:
    if not topic:
        return None
    allowed = match_allowed_subject(topic)
    if allowed:
        return allowed
    for section in EXAM_SECTIONS:
        if section.lower() == topic.strip().lower():
            return section
    return None


def resolve_subject_and_topic(
    attempt: Attempt, policy: UnresolvedSubjectPolicy = UnresolvedSubjectPolicy.COERCE
) -> Tuple[Optional[str], str]:
    """Subject and display topic used to bucket ``attempt``.

    A topic column that names a subject (``Physics``) with a subtopic means the
    subtopic is the real topic. ``General`` is the coerced fallback, so under
    the exclude policy it counts as unresolved.
    """
    topic = normalize_topic(attempt.topic)
    subtopic = normalize_topic(attempt.subtopic)

    section = _section_subject(attempt.topic)
    if section and section != FALLBACK_SUBJECT and subtopic:
        return section, subtopic

    subject = match_subject_keywords(subject_candidate(attempt))
    if subject == FALLBACK_SUBJECT:
        subject = None
    if subject is None:
        subject = infer_subject_from_topic(topic) or section
    if subject is None and policy is UnresolvedSubjectPolicy.COERCE:
        subject = FALLBACK_SUBJECT
    return subject, topic or UNKNOWN_TOPIC


def group_by_topic(
    attempts: Iterable[Attempt],
    policy: UnresolvedSubjectPolicy = UnresolvedSubjectPolicy.COERCE,
) -> Dict[Tuple[str, str], List[Attempt]]:
    policy = UnresolvedSubjectPolicy.parse(policy)
    groups: Dict[Tuple[str, str], List[Attempt]] = {}
    excluded: Dict[str, int] = {}
    for attempt in attempts:
        subject, topic = resolve_subject_and_topic(attempt, policy)
        if subject is None:
            excluded[topic] = excluded.get(topic, 0) + 1
            continue
        groups.setdefault((subject, topic), []).append(attempt)
    if excluded:
        logger.warning(
            "Excluded %d attempts with unresolved subject; topics: %s",
            sum(excluded.values()),
            sorted(excluded),
        )
    return groups


def confidence_mismatch_rate(attempts: Sequence[Attempt]) -> float:
    """Share of rated incorrect attempts made with confidence >= 4."""
    incorrect = [
        a for a in attempts if not a.correctness and is_valid_confidence(a.confidence_rating)
    ]
    if not incorrect:
        return 0.0
    return sum(1 for a in incorrect if a.confidence_rating >= HIGH_CONFIDENCE) / len(incorrect)


def confidence_gap(attempts: Sequence[Attempt]) -> str:
    return "high" if confidence_mismatch_rate(attempts) > CONFIDENCE_GAP_RATIO else "low"


def average_time(attempts: Sequence[Attempt]) -> float:
    times = [a.time_taken_seconds for a in attempts if is_valid_time(a.time_taken_seconds)]
    return sum(times) / len(times) if times else 0.0


def _session_positions(attempts: Sequence[Attempt]) -> Dict[str, int]:
    return {key: index for index, (key, _) in enumerate(session_accuracies(attempts))}


def _strategy(strategy: Optional[Any]) -> MasteryStrategy:
    if isinstance(strategy, MasteryStrategy):
        return strategy
    return get_strategy(strategy)


def compute_topic_metrics(
    attempts: Iterable[Attempt],
    now: datetime,
    *,
    strategy: Optional[Any] = None,
    policy: Any = UnresolvedSubjectPolicy.COERCE,
    min_samples: int = MIN_SAMPLES_DISPLAY,
) -> List[TopicMetric]:
    """Metrics for every topic with at least ``min_samples`` attempts, by topic name."""
    now = ensure_now(now)
    scorer = _strategy(strategy)
    attempts = list(attempts)
    if not attempts:
        return []

    context = MasteryContext(now=now, time_range=TimeRange.from_attempts(attempts))
    positions = _session_positions(attempts)
    metrics: List[TopicMetric] = []

    for (subject, topic), members in group_by_topic(attempts, policy).items():
        if len(members) < min_samples:
            continue
        breakdown = scorer.score(members, context)
        correct = sum(1 for a in members if a.correctness)
        accuracy = correct / len(members)
        weights = [weight_attempt(a, now) for a in members]
        weighted = sum(w for a, w in zip(members, weights) if a.correctness) / sum(weights)
        trend = analyze_attempts(members)
        seen = [positions[key] for key, _ in session_accuracies(members) if key in positions]
        metrics.append(
            TopicMetric(
                subject=subject,
                topic=topic,
                attempts=len(members),
                accuracy=accuracy,
                incorrect_rate=1.0 - accuracy,
                mastery_score=breakdown.score,
                confidence_mismatch_rate=confidence_mismatch_rate(members),
                volatility=trend.volatility,
                trend=trend.trend,
                has_regression=trend.has_regression,
                last_seen_index=max(seen) if seen else 0,
                avg_time=average_time(members),
                weighted_accuracy=weighted,
                confidence_gap=confidence_gap(members),
                components=dict(breakdown.components),
            )
        )

    metrics.sort(key=lambda m: (m.topic.lower(), m.subject or ""))
    logger.info(
        "Aggregated %d attempts into %d topics (min_samples=%d, strategy=%s)",
        len(attempts),
        len(metrics),
        min_samples,
        scorer.name,
    )
    return metrics


def topic_mastery_summaries(
    attempts: Iterable[Attempt],
    now: datetime,
    *,
    strategy: Optional[Any] = None,
    min_samples: int = MIN_SAMPLES_DISPLAY,
) -> List[Dict[str, Any]]:
    metrics = compute_topic_metrics(
        attempts,
        now,
        strategy=strategy,
        policy=UnresolvedSubjectPolicy.COERCE,
        min_samples=min_samples,
    )
    return [metric.to_summary() for metric in metrics]


def recommendation_metrics(
    attempts: Iterable[Attempt],
    now: datetime,
    *,
    policy: Any = UnresolvedSubjectPolicy.EXCLUDE,
    strategy: Optional[Any] = None,
    min_samples: int = MIN_SAMPLES_RECOMMENDATION,
) -> List[Dict[str, Any]]:
    metrics = compute_topic_metrics(
        attempts, now, strategy=strategy, policy=policy, min_samples=min_samples
    )
    metrics.sort(key=lambda m: (-m.attempts, m.topic.lower(), m.subject or ""))
    return [metric.to_recommendation_record() for metric in metrics]


@dataclass
class PerformanceSummary:
    total_attempts: int = 0
    avg_accuracy: float = 0.0
    avg_time: int = 0
    mastery: float = 0.0
    trend: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _percent_correct(attempts: Sequence[Attempt]) -> float:
    if not attempts:
        return 0.0
    return sum(1 for a in attempts if a.correctness) / len(attempts) * 100


def performance_summary(attempts: Iterable[Attempt], now: datetime) -> PerformanceSummary:
    """Dashboard headline numbers across every topic.

    ``trend`` is the accuracy of the ten most recent attempts minus the ten
    before them, in percentage points.
    """
    now = ensure_now(now)
    ordered = sorted(attempts, key=lambda a: a.attempted_at, reverse=True)
    if not ordered:
        return PerformanceSummary()

    mastery = RecencyAccuracyStrategy().score(ordered, MasteryContext(now=now)).score
    recent = ordered[:SUMMARY_TREND_WINDOW]
    previous = ordered[SUMMARY_TREND_WINDOW:SUMMARY_TREND_WINDOW * 2]
    return PerformanceSummary(
        total_attempts=len(ordered),
        avg_accuracy=round_half_up(_percent_correct(ordered), 1),
        avg_time=int(round_half_up(average_time(ordered))),
        mastery=mastery,
        trend=round_half_up(_percent_correct(recent) - _percent_correct(previous), 1),
    )


@dataclass
class ExamMetrics:
    exam_type: Optional[str]
    test_count: int = 0
    timeline: List[Dict[str, Any]] = field(default_factory=list)
    areas: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _anchor_date(members: Sequence[Attempt]) -> datetime:
    dated = [a.test_date for a in members if a.test_date is not None]
    return min(dated) if dated else min(a.attempted_at for a in members)


def _matches_exam(attempt: Attempt, exam_type: Optional[str]) -> bool:
    if not exam_type:
        return True
    return (attempt.exam_type or "").strip().lower() == exam_type.strip().lower()


def exam_metrics(
    attempts: Iterable[Attempt],
    exam_type: Optional[str] = None,
    *,
    min_samples: int = MIN_SAMPLES_RECOMMENDATION,
) -> ExamMetrics:
    """Per-test timeline and per-topic areas for one exam type."""
    scoped = [a for a in attempts if _matches_exam(a, exam_type)]
    result = ExamMetrics(exam_type=exam_type)
    if not scoped:
        return result

    sessions: Dict[str, List[Attempt]] = {}
    for attempt in scoped:
        sessions.setdefault(attempt.test_session_id or UNGROUPED_SESSION, []).append(attempt)

    for key, accuracy in session_accuracies(scoped):
        anchor = _anchor_date(sessions[key])
        result.timeline.append(
            {"date": anchor.date().isoformat(), "accuracy": round_half_up(accuracy, 2)}
        )
    result.test_count = len(result.timeline)

    areas: Dict[str, List[Attempt]] = {}
    for attempt in scoped:
        areas.setdefault(normalize_topic(attempt.topic) or UNKNOWN_TOPIC, []).append(attempt)

    for name, members in areas.items():
        if len(members) < min_samples:
            continue
        correct = sum(1 for a in members if a.correctness)
        rated = [a.confidence_rating for a in members if is_valid_confidence(a.confidence_rating)]
        result.areas.append(
            {
                "name": name,
                "attempts": len(members),
                "incorrect_rate": round_half_up(1 - correct / len(members), 2),
                "confidence_avg": round_half_up(sum(rated) / len(rated), 1) if rated else 0.0,
                "trend": analyze_attempts(members).trend,
            }
        )
    result.areas.sort(key=lambda area: (-area["attempts"], area["name"].lower()))
    logger.info(
        "Exam metrics for %s: %d tests, %d significant areas",
        exam_type or "all exams",
        result.test_count,
        len(result.areas),
    )
    return result


def attempt_view(attempt: Attempt) -> Dict[str, Any]:
    """JSON-safe attempt record; unusable numbers are reported as ``None``."""
    record = attempt.to_record()
    if not is_valid_confidence(attempt.confidence_rating):
        record["confidence_rating"] = None
    if not is_valid_time(attempt.time_taken_seconds):
        record["time_taken_seconds"] = None
    return record


def attempt_history(attempts: Iterable[Attempt]) -> List[Dict[str, Any]]:
    """One entry per test session, newest test first.

    Attempts outside a session are not part of any test and are left out. The
    newest entry carries the change against the test before it.
    """
    sessions: Dict[str, List[Attempt]] = {}
    for attempt in attempts:
        if attempt.test_session_id:
            sessions.setdefault(attempt.test_session_id, []).append(attempt)

    dated: List[Tuple[datetime, str, Dict[str, Any]]] = []
    for session_id, members in sessions.items():
        anchor = _anchor_date(members)
        topics: Dict[str, List[Attempt]] = {}
        for attempt in members:
            topics.setdefault(normalize_topic(attempt.topic) or UNKNOWN_TOPIC, []).append(attempt)
        entry = {
            "test_session_id": session_id,
            "test": next((a.test_name for a in members if a.test_name), None),
            "exam_type": next((a.exam_type for a in members if a.exam_type), None),
            "test_date": anchor.isoformat(),
            "accuracy": round_half_up(_percent_correct(members), 1),
            "avg_time": int(round_half_up(average_time(members))),
            "attempts": len(members),
            "topics": [
                {
                    "topic": name,
                    "accuracy": round_half_up(_percent_correct(group), 1),
                    "attempts": len(group),
                }
                for name, group in sorted(topics.items(), key=lambda item: item[0].lower())
            ],
        }
        dated.append((anchor, session_id, entry))

    dated.sort(key=lambda item: (item[0], item[1]), reverse=True)
    history = [entry for _, _, entry in dated]
    if len(history) >= 2:
        recent, previous = history[0], history[1]
        change = round_half_up(recent["accuracy"] - previous["accuracy"], 1)
        if change > 0:
            direction = TREND_IMPROVING
        elif change < 0:
            direction = TREND_DECLINING
        else:
            direction = TREND_STABLE
        recent["trend"] = {
            "accuracy_change": change,
            "time_change": recent["avg_time"] - previous["avg_time"],
            "direction": direction,
        }
    return history


def topic_detail(
    attempts: Iterable[Attempt],
    topic: str,
    now: datetime,
    *,
    strategy: Optional[Any] = None,
) -> Optional[Dict[str, Any]]:
    """Mastery of one topic with a per-subtopic breakdown.

    Returns ``None`` when the learner has no attempts on ``topic``. Speed is
    scored against the learner's time range across every topic.
    """
    now = ensure_now(now)
    scorer = _strategy(strategy)
    attempts = list(attempts)
    wanted = (normalize_topic(topic) or "").lower()
    members = [
        a
        for a in attempts
        if resolve_subject_and_topic(a, UnresolvedSubjectPolicy.COERCE)[1].lower() == wanted
    ]
    if not wanted or not members:
        return None

    context = MasteryContext(now=now, time_range=TimeRange.from_attempts(attempts))
    subtopics: Dict[str, List[Attempt]] = {}
    for attempt in members:
        name = normalize_topic(attempt.subtopic)
        if name:
            subtopics.setdefault(name, []).append(attempt)

    recent = sorted(members, key=lambda a: (a.attempted_at, a.id), reverse=True)
    return {
        "topic": resolve_subject_and_topic(members[0], UnresolvedSubjectPolicy.COERCE)[1],
        "strategy": scorer.name,
        "mastery": scorer.score(members, context).score,
        "total_attempts": len(members),
        "correct_attempts": sum(1 for a in members if a.correctness),
        "subtopics": [
            {
                "subtopic": name,
                "mastery": scorer.score(group, context).score,
                "attempt_count": len(group),
                "correct_count": sum(1 for a in group if a.correctness),
            }
            for name, group in sorted(subtopics.items(), key=lambda item: item[0].lower())
        ],
        "recent_attempts": [attempt_view(a) for a in recent[:RECENT_TOPIC_ATTEMPTS]],
    }


def cache_key(user_id: str, exam_type: Optional[str], attempts: Sequence[Attempt]) -> Tuple[str, str, str]:
    """Cache key for callers that memoise metrics; any new attempt changes it."""
    latest = max((a.attempted_at for a in attempts), default=None)
    return user_id, exam_type or "", latest.isoformat() if latest else ""
