"""Environment variable validation and management."""

import os
import logging
from typing import Dict, Iterable

logger = logging.getLogger(__name__)

STRATEGY_CHOICES = ("blended", "difficulty", "recency")
POLICY_CHOICES = ("coerce", "exclude")


class ConfigurationError(Exception):
    """Raised when environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Apply defaults and validate analytics configuration.

    Raises ConfigurationError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "MASTERY_STRATEGY": os.getenv("MASTERY_STRATEGY") or "blended",
        "UNRESOLVED_SUBJECT_POLICY": os.getenv("UNRESOLVED_SUBJECT_POLICY") or "exclude",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    get_env_choice("MASTERY_STRATEGY", STRATEGY_CHOICES, "blended")
    get_env_choice("UNRESOLVED_SUBJECT_POLICY", POLICY_CHOICES, "exclude")

    optional_vars = {
        "RECOMMENDATION_GENERATOR": "module:factory path of the recommendation generator",
        "NORMALIZE_ON_UPLOAD": "Normalise attempts right after bulk upload",
    }
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_choice(name: str, choices: Iterable[str], default: str) -> str:
    """Return the lowercased value of ``name`` if it is one of ``choices``."""
    allowed = tuple(choices)
    value = (os.getenv(name) or default).strip().lower()
    if value not in allowed:
        raise ConfigurationError(
            f"Invalid value for {name}: {value!r} (expected one of {', '.join(allowed)})"
        )
    return value


def describe_environment() -> Dict[str, str]:
    return {
        "db_path": os.getenv("DB_PATH", "data.db"),
        "mastery_strategy": get_env_choice("MASTERY_STRATEGY", STRATEGY_CHOICES, "blended"),
        "unresolved_subject_policy": get_env_choice(
            "UNRESOLVED_SUBJECT_POLICY", POLICY_CHOICES, "exclude"
        ),
    }
