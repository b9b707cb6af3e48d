"""Trend, volatility and regression detection over per-session accuracy."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from engines.attempts import Attempt

TREND_STABLE = "stable"
TREND_IMPROVING = "improving"
TREND_DECLINING = "declining"
TREND_UNSTABLE = "unstable"
TRENDS = (TREND_STABLE, TREND_IMPROVING, TREND_DECLINING, TREND_UNSTABLE)

TREND_THRESHOLD = 0.10
VOLATILITY_THRESHOLD = 0.20
REGRESSION_FLOOR = 0.60
REGRESSION_DROP = 0.15

UNGROUPED_SESSION = "__ungrouped__"


@dataclass(frozen=True)
class TrendResult:
    trend: str
    volatility: float
    first_half_avg: Optional[float] = None
    second_half_avg: Optional[float] = None
    diff: float = 0.0
    has_regression: bool = False
    sessions: int = 0


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def population_stdev(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    avg = _mean(values)
    return math.sqrt(sum((v - avg) ** 2 for v in values) / len(values))


def split_halves(values: Sequence[float]) -> Tuple[List[float], List[float]]:
    """First half takes the extra element on odd lengths."""
    mid = math.ceil(len(values) / 2)
    return list(values[:mid]), list(values[mid:])


def is_regression(first_half_avg: float, second_half_avg: float) -> bool:
    return first_half_avg >= REGRESSION_FLOOR and second_half_avg <= first_half_avg - REGRESSION_DROP


def analyze_trend(accuracies: Sequence[float]) -> TrendResult:
    """Classify a chronological per-session accuracy series.

    The half-split drift decides stable/improving/declining; a population
    standard deviation above 0.20 overrides that with "unstable".
    """
    values = [float(v) for v in accuracies if v is not None and math.isfinite(v)]
    if len(values) < 2:
        return TrendResult(trend=TREND_STABLE, volatility=0.0, sessions=len(values))

    first, second = split_halves(values)
    first_avg = _mean(first)
    second_avg = _mean(second)
    diff = second_avg - first_avg

    if diff > TREND_THRESHOLD:
        trend = TREND_IMPROVING
    elif diff < -TREND_THRESHOLD:
        trend = TREND_DECLINING
    else:
        trend = TREND_STABLE

    volatility = population_stdev(values)
    if volatility > VOLATILITY_THRESHOLD:
        trend = TREND_UNSTABLE

    return TrendResult(
        trend=trend,
        volatility=volatility,
        first_half_avg=first_avg,
        second_half_avg=second_avg,
        diff=diff,
        has_regression=is_regression(first_avg, second_avg),
        sessions=len(values),
    )


def _session_key(attempt: Attempt) -> str:
    return attempt.test_session_id or UNGROUPED_SESSION


def session_accuracies(attempts: Sequence[Attempt]) -> List[Tuple[str, float]]:
    """Per-session accuracy in chronological order.

    Sessions are ordered by their test date when known, else by their earliest
    attempt. Attempts without a session share one bucket.
    """
    buckets: Dict[str, List[Attempt]] = {}
    for attempt in attempts:
        buckets.setdefault(_session_key(attempt), []).append(attempt)

    def order(item: Tuple[str, List[Attempt]]) -> Tuple[datetime, str]:
        key, members = item
        dated = [a.test_date for a in members if a.test_date is not None]
        anchor = min(dated) if dated else min(a.attempted_at for a in members)
        if anchor.tzinfo is None:
            anchor = anchor.replace(tzinfo=timezone.utc)
        return anchor, key

    series = []
    for key, members in sorted(buckets.items(), key=order):
        correct = sum(1 for a in members if a.correctness)
        series.append((key, correct / len(members)))
    return series


def analyze_attempts(attempts: Sequence[Attempt]) -> TrendResult:
    return analyze_trend([accuracy for _, accuracy in session_accuracies(attempts)])
