"""Topic mastery scoring strategies.

Three formulas have been used for topic mastery over the life of the product
and they do not agree with each other. Each one lives here as a named
:class:`MasteryStrategy` so a consumer picks one explicitly:

``blended``
    Recency-weighted accuracy (0.6), speed against the learner's global time
    range (0.2) and confidence calibration (0.2). Heatmap default.
``difficulty``
    Difficulty-weighted accuracy (0.4), confidence alignment bonuses (0.2),
    progress on Hard items (0.2) and index-decayed accuracy (0.2). Does not
    need a global time range or wall-clock ages.
``recency``
    Recency-weighted accuracy only. Used for the overall summary.
"""

from __future__ import annotations

import abc
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Type

from engines.attempts import Attempt
from engines.recency import HALF_LIFE_DAYS, weight_attempt
from engines.validation import (
    AnalyticsContractError,
    ensure_now,
    is_valid_confidence,
    is_valid_time,
)

NEUTRAL_SIGNAL = 0.5

DIFFICULTY_WEIGHTS: Dict[str, float] = {"Easy": 1.0, "Medium": 1.5, "Hard": 2.0}
DEFAULT_DIFFICULTY_WEIGHT = 1.0

# Alignment bonuses keyed by confidence band (high >= 4, medium == 3, low <= 2).
CORRECT_ALIGNMENT_BONUS = {"high": 0.15, "medium": 0.10, "low": 0.05}
INCORRECT_ALIGNMENT_PENALTY = {"high": -0.10, "medium": -0.05, "low": 0.0}
INDEX_DECAY_SCALE = 10.0


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, value))


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def calibration_score(correct: bool, confidence: float) -> float:
    """Linear calibration on the 1-5 scale; confident mistakes score lowest."""
    scaled = (confidence - 1) / 4
    return scaled if correct else 1 - scaled


def confidence_band(confidence: float) -> str:
    if confidence >= 4:
        return "high"
    if confidence >= 3:
        return "medium"
    return "low"


@dataclass(frozen=True)
class TimeRange:
    """Global min/max time taken across every topic of a learner."""

    minimum: Optional[float] = None
    maximum: Optional[float] = None

    @classmethod
    def from_attempts(cls, attempts: Iterable[Attempt]) -> "TimeRange":
        times = [a.time_taken_seconds for a in attempts if is_valid_time(a.time_taken_seconds)]
        if not times:
            return cls()
        return cls(minimum=float(min(times)), maximum=float(max(times)))

    @property
    def degenerate(self) -> bool:
        return self.minimum is None or self.maximum is None or self.maximum <= self.minimum

    def speed(self, average_time: Optional[float]) -> float:
        if average_time is None or self.degenerate:
            return NEUTRAL_SIGNAL
        span = self.maximum - self.minimum
        return clamp(1 - (average_time - self.minimum) / span)


@dataclass(frozen=True)
class MasteryContext:
    now: datetime
    time_range: TimeRange = field(default_factory=TimeRange)
    half_life_days: float = HALF_LIFE_DAYS


@dataclass
class MasteryBreakdown:
    strategy: str
    score: float
    components: Dict[str, float] = field(default_factory=dict)


class MasteryStrategy(abc.ABC):
    name: str = ""

    def score(self, attempts: Sequence[Attempt], context: MasteryContext) -> MasteryBreakdown:
        if not attempts:
            raise AnalyticsContractError(
                f"{self.name} mastery needs at least one attempt; filter empty topics first"
            )
        context = MasteryContext(
            now=ensure_now(context.now),
            time_range=context.time_range,
            half_life_days=context.half_life_days,
        )
        return self._score(list(attempts), context)

    @abc.abstractmethod
    def _score(self, attempts: List[Attempt], context: MasteryContext) -> MasteryBreakdown:
        raise NotImplementedError


def _weights(attempts: Sequence[Attempt], context: MasteryContext) -> List[float]:
    return [weight_attempt(a, context.now, context.half_life_days) for a in attempts]


def weighted_accuracy(attempts: Sequence[Attempt], weights: Sequence[float]) -> float:
    total = sum(weights)
    if total <= 0:
        return 0.0
    return sum(w for a, w in zip(attempts, weights) if a.correctness) / total


class BlendedSignalStrategy(MasteryStrategy):
    name = "blended"
    accuracy_weight = 0.6
    speed_weight = 0.2
    calibration_weight = 0.2

    def _score(self, attempts: List[Attempt], context: MasteryContext) -> MasteryBreakdown:
        weights = _weights(attempts, context)
        accuracy = weighted_accuracy(attempts, weights)

        timed = [(a.time_taken_seconds, w) for a, w in zip(attempts, weights) if is_valid_time(a.time_taken_seconds)]
        timed_weight = sum(w for _, w in timed)
        average_time = sum(t * w for t, w in timed) / timed_weight if timed_weight > 0 else None
        speed = context.time_range.speed(average_time)

        rated = [
            (calibration_score(a.correctness, a.confidence_rating), w)
            for a, w in zip(attempts, weights)
            if is_valid_confidence(a.confidence_rating)
        ]
        rated_weight = sum(w for _, w in rated)
        calibration = sum(s * w for s, w in rated) / rated_weight if rated_weight > 0 else NEUTRAL_SIGNAL

        blend = (
            self.accuracy_weight * accuracy
            + self.speed_weight * speed
            + self.calibration_weight * calibration
        )
        return MasteryBreakdown(
            strategy=self.name,
            score=clamp(round_half_up(blend * 100, 1), 0.0, 100.0),
            components={
                "accuracy": accuracy,
                "speed": speed,
                "calibration": calibration,
                "avg_weighted_time": average_time if average_time is not None else 0.0,
            },
        )


class DifficultyProgressStrategy(MasteryStrategy):
    name = "difficulty"

    def _score(self, attempts: List[Attempt], context: MasteryContext) -> MasteryBreakdown:
        total_weight = 0.0
        correct_weight = 0.0
        alignment = 0.0
        rated = 0
        for attempt in attempts:
            weight = DIFFICULTY_WEIGHTS.get(attempt.difficulty, DEFAULT_DIFFICULTY_WEIGHT)
            total_weight += weight
            if attempt.correctness:
                correct_weight += weight
            if is_valid_confidence(attempt.confidence_rating):
                band = confidence_band(attempt.confidence_rating)
                table = CORRECT_ALIGNMENT_BONUS if attempt.correctness else INCORRECT_ALIGNMENT_PENALTY
                alignment += table[band]
                rated += 1

        accuracy = correct_weight / total_weight if total_weight > 0 else 0.0
        calibration = clamp((alignment / rated + 1) / 2) if rated else NEUTRAL_SIGNAL

        hard = [a for a in attempts if a.difficulty == "Hard"]
        hard_correct = sum(1 for a in hard if a.correctness)
        progress = (len(hard) / len(attempts)) * 0.5 + (hard_correct / max(len(hard), 1)) * 0.5

        newest_first = sorted(attempts, key=lambda a: a.attempted_at, reverse=True)
        decay = [math.exp(-index / INDEX_DECAY_SCALE) for index in range(len(newest_first))]
        recency = sum(w for a, w in zip(newest_first, decay) if a.correctness) / sum(decay)

        blend = accuracy * 0.4 + calibration * 0.2 + progress * 0.2 + recency * 0.2
        return MasteryBreakdown(
            strategy=self.name,
            score=clamp(round_half_up(blend * 100), 0.0, 100.0),
            components={
                "weighted_accuracy": accuracy,
                "calibration": calibration,
                "difficulty_progress": progress,
                "recency_mastery": recency,
            },
        )


class RecencyAccuracyStrategy(MasteryStrategy):
    name = "recency"

    def _score(self, attempts: List[Attempt], context: MasteryContext) -> MasteryBreakdown:
        accuracy = weighted_accuracy(attempts, _weights(attempts, context))
        return MasteryBreakdown(
            strategy=self.name,
            score=clamp(round_half_up(accuracy * 100, 1), 0.0, 100.0),
            components={"accuracy": accuracy},
        )


STRATEGIES: Dict[str, Type[MasteryStrategy]] = {
    BlendedSignalStrategy.name: BlendedSignalStrategy,
    DifficultyProgressStrategy.name: DifficultyProgressStrategy,
    RecencyAccuracyStrategy.name: RecencyAccuracyStrategy,
}
DEFAULT_STRATEGY = BlendedSignalStrategy.name


def get_strategy(name: Optional[str] = None) -> MasteryStrategy:
    key = (name or DEFAULT_STRATEGY).strip().lower()
    try:
        return STRATEGIES[key]()
    except KeyError:
        raise AnalyticsContractError(
            f"Unknown mastery strategy '{name}'. Choose one of: {', '.join(sorted(STRATEGIES))}"
        ) from None
