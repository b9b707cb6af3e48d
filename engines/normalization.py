"""Canonicalisation of attempt subjects, topics and mistake types."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from engines.attempts import Attempt
from engines.validation import is_valid_confidence, is_valid_time

logger = logging.getLogger(__name__)

ALLOWED_SUBJECTS: Tuple[str, ...] = (
    "Mathematics",
    "Verbal",
    "Physics",
    "Chemistry",
    "Biology",
    "General",
)
FALLBACK_SUBJECT = "General"

# Ordered: the first matching rule wins.
SUBJECT_ALIAS_RULES: Tuple[Tuple[str, Tuple[re.Pattern, ...]], ...] = (
    (
        "Mathematics",
        tuple(
            re.compile(p, re.IGNORECASE)
            for p in (r"math", r"quant", r"algebra", r"geometry", r"calc", r"trig", r"arithmetic", r"number")
        ),
    ),
    (
        "Verbal",
        tuple(
            re.compile(p, re.IGNORECASE)
            for p in (r"verbal", r"english", r"reading", r"grammar", r"vocab", r"comprehension", r"\brc\b", r"language")
        ),
    ),
    ("Physics", (re.compile(r"physics", re.IGNORECASE),)),
    ("Chemistry", (re.compile(r"chem", re.IGNORECASE),)),
    ("Biology", (re.compile(r"bio", re.IGNORECASE),)),
)

# Topic keywords used when the subject has to be inferred from a topic string.
TOPIC_SUBJECT_RULES: Tuple[Tuple[str, re.Pattern], ...] = (
    (
        "Physics",
        re.compile(
            r"mechanics|thermodynamics|optics|waves|electricity|electromagnetism|modern physics"
            r"|relativity|motion|force|energy|momentum"
        ),
    ),
    (
        "Chemistry",
        re.compile(
            r"chemistry|organic|inorganic|physical|stoichiometry|equilibrium|kinetics|redox|acid"
            r"|base|salt|bonding|molecular|mole|concentration|solution"
        ),
    ),
    (
        "Mathematics",
        re.compile(
            r"algebra|geometry|trigonometry|calculus|differentiation|integration|matrices|determinant"
            r"|vector|sequence|series|probability|statistics|complex|logarithm|exponential|function|equation"
        ),
    ),
    (
        "Biology",
        re.compile(
            r"biology|botany|zoology|genetics|evolution|ecology|cell|organism|dna|enzyme"
            r"|photosynthesis|respiration|anatomy|physiology"
        ),
    ),
)

NULL_TOPIC_VALUES = frozenset({"", "n/a", "na", "none", "unknown", "null", "-"})

TOPIC_ALIASES: Dict[str, str] = {
    "probability and statistics": "Probability and Statistics",
    "probability/statistics": "Probability and Statistics",
    "statistics and probability": "Probability and Statistics",
    "probability and stats": "Probability and Statistics",
    "data interpretation": "Data Interpretation",
    "data analysis": "Data Interpretation",
    "reading comprehension": "Reading Comprehension",
    "critical reasoning": "Critical Reasoning",
    "sentence correction": "Sentence Correction",
    "number theory": "Number Theory",
    "coordinate geometry": "Coordinate Geometry",
    "word problems": "Word Problems",
    "word problem": "Word Problems",
}

TITLE_CASE_EXCEPTIONS = frozenset({"and", "or", "of", "the", "to", "in", "on", "for", "with"})

_SEPARATORS = re.compile(r"[_-]+")
_WHITESPACE = re.compile(r"\s+")


def _title_case(text: str) -> str:
    words = []
    for index, word in enumerate(text.split(" ")):
        lower = word.lower()
        if index > 0 and lower in TITLE_CASE_EXCEPTIONS:
            words.append(lower)
        else:
            words.append(lower[:1].upper() + lower[1:])
    return " ".join(words)


def match_allowed_subject(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    cleaned = str(raw).strip().lower()
    for subject in ALLOWED_SUBJECTS:
        if subject.lower() == cleaned:
            return subject
    return None


def match_subject_keywords(raw: Optional[str]) -> Optional[str]:
    """Run ``raw`` through the ordered keyword rules; ``None`` when nothing fits."""
    if not raw:
        return None
    cleaned = str(raw).strip()
    if not cleaned:
        return None
    exact = match_allowed_subject(cleaned)
    if exact:
        return exact
    for subject, patterns in SUBJECT_ALIAS_RULES:
        if any(pattern.search(cleaned) for pattern in patterns):
            return subject
    return None


def normalize_subject(raw: Optional[str]) -> str:
    return match_subject_keywords(raw) or FALLBACK_SUBJECT


def subject_candidate(attempt: Attempt) -> Optional[str]:
    return attempt.subject or attempt.exam_type or attempt.test_name


def resolve_subject(attempt: Attempt) -> str:
    """Subject from explicit metadata, then exam type, then test name."""
    return normalize_subject(subject_candidate(attempt))


def infer_subject_from_topic(topic: Optional[str]) -> Optional[str]:
    if not topic:
        return None
    lowered = str(topic).lower()
    for subject, pattern in TOPIC_SUBJECT_RULES:
        if pattern.search(lowered):
            return subject
    return None


def normalize_topic(raw: Optional[str]) -> Optional[str]:
    """Canonical display form of a topic, or ``None`` for placeholder values."""
    if raw is None:
        return None
    cleaned = str(raw).strip()
    if not cleaned:
        return None
    cleaned = _WHITESPACE.sub(" ", _SEPARATORS.sub(" ", cleaned)).strip()
    lowered = cleaned.lower()
    if lowered in NULL_TOPIC_VALUES:
        return None
    alias = TOPIC_ALIASES.get(lowered.replace("&", "and"))
    if alias:
        return alias
    return _title_case(cleaned)


def infer_mistake_type(attempt: Attempt, average_time: Optional[float]) -> Optional[str]:
    """Guess why an incorrect attempt went wrong from confidence and timing."""
    if attempt.correctness:
        return None
    confidence = attempt.confidence_rating
    if is_valid_confidence(confidence):
        if confidence >= 4:
            return "conceptual"
        if confidence <= 2:
            return "guess"
    if (
        average_time is not None
        and math.isfinite(average_time)
        and is_valid_time(attempt.time_taken_seconds)
        and attempt.time_taken_seconds > average_time
    ):
        return "misread"
    return None


def average_times_by_subject(
    attempts: Sequence[Attempt], subjects: Sequence[str]
) -> Tuple[Dict[str, float], Optional[float]]:
    sums: Dict[str, List[float]] = {}
    total = 0.0
    count = 0
    for attempt, subject in zip(attempts, subjects):
        time_taken = attempt.time_taken_seconds
        if not is_valid_time(time_taken):
            logger.debug("Skipping malformed time %r on attempt %s", time_taken, attempt.id)
            continue
        bucket = sums.setdefault(subject, [0.0, 0])
        bucket[0] += time_taken
        bucket[1] += 1
        total += time_taken
        count += 1
    by_subject = {subject: s / n for subject, (s, n) in sums.items() if n}
    overall = total / count if count else None
    return by_subject, overall


@dataclass(frozen=True)
class AttemptUpdate:
    """Fields the normaliser changed on one attempt, ready to persist."""

    attempt_id: str
    user_id: str
    question_metadata: Dict[str, object]
    mistake_type: Optional[str] = None
    metadata_changed: bool = False


@dataclass
class NormalizationResult:
    attempts: List[Attempt] = field(default_factory=list)
    updates: List[AttemptUpdate] = field(default_factory=list)
    inferred_mistake_count: int = 0
    normalized_count: int = 0

    @property
    def updated_count(self) -> int:
        return len(self.updates)


def normalize_attempts(attempts: Iterable[Attempt]) -> NormalizationResult:
    """Canonicalise subject/topic metadata and backfill missing mistake types.

    Correctness, confidence and timing are never touched. Running the result
    through this function again produces no updates.
    """
    attempts = list(attempts)
    result = NormalizationResult()
    if not attempts:
        return result

    subjects = [resolve_subject(attempt) for attempt in attempts]
    avg_by_subject, overall_avg = average_times_by_subject(attempts, subjects)

    for attempt, subject in zip(attempts, subjects):
        metadata = attempt.metadata
        changes: Dict[str, object] = {}

        if metadata.subject != subject:
            changes["subject"] = subject

        topic = normalize_topic(metadata.topic)
        if topic is not None and metadata.topic != topic:
            changes["topic"] = topic
        elif topic is None and metadata.topic is not None:
            # Placeholder topics such as "n/a" are cleared.
            changes["topic"] = None

        inferred = None
        if not attempt.mistake_type:
            inferred = infer_mistake_type(attempt, avg_by_subject.get(subject, overall_avg))

        normalized = attempt
        if changes:
            normalized = normalized.with_metadata(**changes)
            result.normalized_count += 1
        if inferred:
            normalized = replace(normalized, mistake_type=inferred)
            result.inferred_mistake_count += 1

        if changes or inferred:
            result.updates.append(
                AttemptUpdate(
                    attempt_id=attempt.id,
                    user_id=attempt.user_id,
                    question_metadata=normalized.metadata.to_dict(),
                    mistake_type=inferred,
                    metadata_changed=bool(changes),
                )
            )
        result.attempts.append(normalized)

    logger.info(
        "Normalised %d attempts: %d metadata fixes, %d inferred mistake types",
        len(attempts),
        result.normalized_count,
        result.inferred_mistake_count,
    )
    return result
