"""Exponential recency decay for attempt weighting."""

from __future__ import annotations

import math
from datetime import datetime

from engines.attempts import Attempt
from engines.validation import AnalyticsContractError, ensure_now

HALF_LIFE_DAYS = 7.0
SECONDS_PER_DAY = 86400.0


def recency_weight(days_ago: float, half_life_days: float = HALF_LIFE_DAYS) -> float:
    """Return ``0.5 ** (days_ago / half_life_days)``.

    The weight is 1.0 for an attempt made "now" and halves every half-life.
    Future-dated attempts count as age 0 so the weight stays within (0, 1].
    """
    if half_life_days <= 0 or not math.isfinite(half_life_days):
        raise AnalyticsContractError("half_life_days must be a positive number")
    if days_ago is None or not math.isfinite(days_ago):
        raise AnalyticsContractError(f"days_ago must be finite, got {days_ago!r}")
    age = max(0.0, float(days_ago))
    weight = 0.5 ** (age / half_life_days)
    # Very old attempts underflow to 0.0; keep them strictly positive.
    return max(weight, math.ulp(0.0))


def days_between(now: datetime, then: datetime) -> float:
    now = ensure_now(now)
    if then.tzinfo is None:
        then = then.replace(tzinfo=now.tzinfo)
    return (now - then).total_seconds() / SECONDS_PER_DAY


def weight_attempt(attempt: Attempt, now: datetime, half_life_days: float = HALF_LIFE_DAYS) -> float:
    return recency_weight(days_between(now, attempt.attempted_at), half_life_days)
