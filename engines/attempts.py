"""Typed attempt records built once at ingestion.

Raw attempts reach the engines in several shapes: flattened CSV rows, storage
rows with a nested ``question_metadata`` mapping, or camelCase payloads from
the web client. Everything downstream works on :class:`Attempt` so that the
classification fields are read in exactly one place.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Dict, Mapping, Optional

from engines.validation import AttemptValidationError

DIFFICULTY_LEVELS = ("Easy", "Medium", "Hard")
MISTAKE_TYPES = ("conceptual", "calculation", "misread", "guess")

DEFAULT_CONFIDENCE = 3

_METADATA_KEYS = ("topic", "subtopic", "subject", "difficulty")
# Flattened keys that are kept in QuestionMetadata.extra.
_EXTRA_METADATA_KEYS = {"question_id": ("question_id", "questionId")}
_TRUE_STRINGS = {"1", "true", "yes", "y", "t", "correct"}
_FALSE_STRINGS = {"0", "false", "no", "n", "f", "incorrect", "wrong"}


def _pick(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return None


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_difficulty(value: Any) -> Optional[str]:
    text = _clean_text(value)
    if text is None:
        return None
    for level in DIFFICULTY_LEVELS:
        if text.lower() == level.lower():
            return level
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings, dates and epoch seconds into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        if not math.isfinite(value):
            return None
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = _clean_text(value)
    if text is None:
        return None
    lowered = text.lower()
    if lowered in _TRUE_STRINGS:
        return True
    if lowered in _FALSE_STRINGS:
        return False
    return None


def _coerce_number(value: Any, default: float) -> float:
    # Malformed values become NaN so the scorers can skip them per signal.
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return float("nan")
    try:
        return float(value)
    except (TypeError, ValueError):
        return float("nan")


@dataclass(frozen=True)
class QuestionMetadata:
    """Classification fields of a question; every field is optional."""

    topic: Optional[str] = None
    subtopic: Optional[str] = None
    subject: Optional[str] = None
    difficulty: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "QuestionMetadata":
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            topic=_clean_text(data.get("topic")),
            subtopic=_clean_text(data.get("subtopic")),
            subject=_clean_text(data.get("subject")),
            difficulty=normalize_difficulty(data.get("difficulty")),
            extra={k: v for k, v in data.items() if k not in _METADATA_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        for key in _METADATA_KEYS:
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True)
class Attempt:
    id: str
    user_id: str
    correctness: bool
    confidence_rating: float
    time_taken_seconds: float
    attempted_at: datetime
    metadata: QuestionMetadata = field(default_factory=QuestionMetadata)
    test_session_id: Optional[str] = None
    mistake_type: Optional[str] = None
    exam_type: Optional[str] = None
    test_name: Optional[str] = None
    test_date: Optional[datetime] = None

    @property
    def topic(self) -> Optional[str]:
        return self.metadata.topic

    @property
    def subtopic(self) -> Optional[str]:
        return self.metadata.subtopic

    @property
    def subject(self) -> Optional[str]:
        return self.metadata.subject

    @property
    def difficulty(self) -> Optional[str]:
        return self.metadata.difficulty

    def with_metadata(self, **changes: Any) -> "Attempt":
        return replace(self, metadata=replace(self.metadata, **changes))

    @classmethod
    def from_record(
        cls,
        record: Mapping[str, Any],
        *,
        user_id: Optional[str] = None,
        default_time: Optional[datetime] = None,
    ) -> "Attempt":
        """Build an attempt from a flattened or nested raw record.

        ``user_id`` overrides whatever the record carries; ``default_time`` is
        used when the record has no timestamp (bulk imports stamp attempts at
        upload time).
        """
        if not isinstance(record, Mapping):
            raise AttemptValidationError("Attempt records must be mappings")

        owner = user_id or _clean_text(_pick(record, "user_id", "userId"))
        if not owner:
            raise AttemptValidationError("Attempt record has no user_id")

        correctness = _coerce_bool(_pick(record, "correctness", "correct", "is_correct"))
        if correctness is None:
            raise AttemptValidationError("Attempt record has no usable correctness value")

        attempted_at = parse_timestamp(_pick(record, "attempted_at", "attemptedAt", "attempt_date"))
        if attempted_at is None:
            if default_time is None:
                raise AttemptValidationError("Attempt record has no parseable timestamp")
            attempted_at = parse_timestamp(default_time)

        nested = _pick(record, "question_metadata", "questionMetadata")
        merged: Dict[str, Any] = dict(nested) if isinstance(nested, Mapping) else {}
        for key in _METADATA_KEYS:
            if merged.get(key) is None and record.get(key) is not None:
                merged[key] = record[key]
        for key, aliases in _EXTRA_METADATA_KEYS.items():
            value = _pick(record, *aliases)
            if merged.get(key) is None and value is not None:
                merged[key] = value

        session = _pick(record, "test_session", "testSession")
        session = session if isinstance(session, Mapping) else {}

        mistake = _clean_text(_pick(record, "mistake_type", "mistakeType"))
        if mistake is not None:
            mistake = mistake.lower()
            if mistake not in MISTAKE_TYPES:
                mistake = None

        attempt_id = _clean_text(_pick(record, "id", "attempt_id", "attemptId"))
        return cls(
            id=attempt_id or "",
            user_id=owner,
            correctness=correctness,
            confidence_rating=_coerce_number(
                _pick(record, "confidence_rating", "confidenceRating", "confidence"),
                DEFAULT_CONFIDENCE,
            ),
            time_taken_seconds=_coerce_number(
                _pick(record, "time_taken_seconds", "timeTakenSeconds", "time_taken", "timeTaken"),
                0.0,
            ),
            attempted_at=attempted_at,
            metadata=QuestionMetadata.from_mapping(merged),
            test_session_id=_clean_text(
                _pick(record, "test_session_id", "testSessionId") or session.get("id")
            ),
            mistake_type=mistake,
            exam_type=_clean_text(_pick(record, "exam_type", "examType") or _pick(session, "exam_type", "examType")),
            test_name=_clean_text(_pick(record, "test_name", "testName") or _pick(session, "test_name", "testName")),
            test_date=parse_timestamp(_pick(record, "test_date", "testDate") or _pick(session, "test_date", "testDate")),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "test_session_id": self.test_session_id,
            "question_metadata": self.metadata.to_dict(),
            "correctness": self.correctness,
            "confidence_rating": self.confidence_rating,
            "time_taken_seconds": self.time_taken_seconds,
            "mistake_type": self.mistake_type,
            "attempted_at": self.attempted_at.isoformat(),
            "exam_type": self.exam_type,
            "test_name": self.test_name,
            "test_date": self.test_date.isoformat() if self.test_date else None,
        }
