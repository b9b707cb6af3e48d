"""Validation errors and guards shared by the analytics engines."""

import math
from datetime import datetime, timezone
from typing import Any, Optional


class ValidationError(Exception):
    """Base class for validation errors."""
    pass


class AnalyticsContractError(ValidationError, ValueError):
    """Raised when an engine is called with arguments it cannot work with.

    Data-quality problems inside individual attempts never raise this; they are
    normalised or excluded from the affected average instead.
    """
    pass


class AttemptValidationError(ValidationError, ValueError):
    """Raised when a raw record cannot be turned into an attempt at all."""
    pass


def ensure_now(now: Optional[datetime]) -> datetime:
    """Return ``now`` as an aware UTC datetime or raise for unusable values."""
    if now is None:
        raise AnalyticsContractError("A reference 'now' timestamp is required")
    if not isinstance(now, datetime):
        raise AnalyticsContractError(
            f"'now' must be a datetime, got {type(now).__name__}"
        )
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if now.timestamp() < 0:
        raise AnalyticsContractError("'now' cannot precede the Unix epoch")
    return now


def ensure_user_id(user_id: Any) -> str:
    if user_id is None or not str(user_id).strip():
        raise AnalyticsContractError("user_id is required")
    return str(user_id).strip()


def is_valid_confidence(value: Any) -> bool:
    """Confidence ratings are self-reported integers on a 1-5 scale."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if not math.isfinite(value):
        return False
    return 1 <= value <= 5


def is_valid_time(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value >= 0
