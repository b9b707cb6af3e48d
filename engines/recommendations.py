"""Bridge between topic metrics and an external recommendation generator.

The generator (an LLM client in production) turns numeric topic records into
recommendation cards. It is built once at process start and passed in; this
module only prepares its input and validates what comes back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

from pydantic import ValidationError

from engines.aggregation import (
    MIN_SAMPLES_RECOMMENDATION,
    UnresolvedSubjectPolicy,
    recommendation_metrics,
)
from engines.attempts import Attempt
from engines.validation import AnalyticsContractError
from schemas import RecommendationCard, RecommendationInput, parse_embedded_json

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_PARTIAL = "partial"
STATUS_EMPTY = "empty"

RawCard = Union[Mapping[str, Any], str]


class RecommendationGenerator(Protocol):
    def generate(self, payload: Dict[str, Any]) -> Sequence[RawCard]:
        ...


@dataclass
class RecommendationOutcome:
    status: str
    cards: List[RecommendationCard] = field(default_factory=list)
    evidence: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "cards": [card.model_dump(by_alias=True) for card in self.cards],
            "evidence": dict(self.evidence),
        }


def validate_cards(raw_cards: Iterable[RawCard]) -> Tuple[List[RecommendationCard], int]:
    """Return the cards that pass schema validation and how many were dropped."""
    valid: List[RecommendationCard] = []
    dropped = 0
    for raw in raw_cards or ():
        try:
            if isinstance(raw, str):
                card = parse_embedded_json(raw, RecommendationCard)
            elif isinstance(raw, Mapping) and "__error" in raw:
                raise ValueError(f"generator reported {raw['__error']}")
            else:
                card = RecommendationCard.model_validate(raw)
        except (ValidationError, ValueError, TypeError) as exc:
            dropped += 1
            logger.warning("Dropping invalid recommendation card: %s", exc)
            continue
        valid.append(card)
    return valid, dropped


class RecommendationService:
    def __init__(
        self,
        generator: Optional[RecommendationGenerator] = None,
        *,
        policy: Any = UnresolvedSubjectPolicy.EXCLUDE,
        min_samples: int = MIN_SAMPLES_RECOMMENDATION,
        strategy: Optional[str] = None,
    ) -> None:
        self.generator = generator
        self.policy = UnresolvedSubjectPolicy.parse(policy)
        self.min_samples = min_samples
        self.strategy = strategy

    def build_payload(
        self,
        exam_type: str,
        attempts: Iterable[Attempt],
        now: datetime,
        previous_cards: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> Dict[str, Any]:
        if not exam_type or not str(exam_type).strip():
            raise AnalyticsContractError("exam_type is required for recommendations")
        records = recommendation_metrics(
            attempts,
            now,
            policy=self.policy,
            strategy=self.strategy,
            min_samples=self.min_samples,
        )
        payload = RecommendationInput(
            exam_type=str(exam_type).strip(),
            aggregated_performance_data=records,
            previous_recommendation_cards=[dict(card) for card in previous_cards or ()],
        )
        return payload.model_dump()

    def generate(
        self,
        exam_type: str,
        attempts: Iterable[Attempt],
        now: datetime,
        previous_cards: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> RecommendationOutcome:
        if self.generator is None:
            raise RuntimeError("No recommendation generator configured")

        attempts = list(attempts)
        payload = self.build_payload(exam_type, attempts, now, previous_cards)
        records = payload["aggregated_performance_data"]
        evidence = {
            "data_point_count": len(records),
            "attempt_count": len(attempts),
            "test_count": len({a.test_session_id for a in attempts if a.test_session_id}),
        }
        if not records:
            logger.info("No significant topics for %s; skipping generator", payload["exam_type"])
            return RecommendationOutcome(status=STATUS_EMPTY, evidence=evidence)

        logger.info(
            "Requesting recommendations for %s with %d topics", payload["exam_type"], len(records)
        )
        raw_cards = self.generator.generate(payload)
        cards, dropped = validate_cards(raw_cards)
        evidence["dropped_cards"] = dropped
        if not cards:
            status = STATUS_EMPTY
        elif dropped:
            status = STATUS_PARTIAL
        else:
            status = STATUS_OK
        return RecommendationOutcome(status=status, cards=cards, evidence=evidence)
