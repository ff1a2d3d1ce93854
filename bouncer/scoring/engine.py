"""
Impersonation scoring.

Combines four similarity sub-scores under configured weights, derives a
confidence from how much evidence was available, and maps the score to an
action. Weights of sub-scores that cannot be computed for a pair are spread
proportionally over the ones that can, and the weights actually used are
kept on the event.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from bouncer.config import Settings
from bouncer.errors import ConfigurationError
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.scoring.features import (
    AccountFeatures,
    clamp,
    display_name_similarity,
    image_hash_similarity,
    metadata_similarity,
    username_similarity,
)

logger = get_logger(__name__)

FACTORS = ("username", "display_name", "profile_image", "metadata")

REASONS = {
    "username": "High username similarity detected",
    "display_name": "Display name closely matches target",
    "profile_image": "Profile image appears to be copied",
    "metadata": "Account metadata shows suspicious patterns",
}

REASON_THRESHOLD = 0.7
WEIGHT_TOLERANCE = 0.001

ImageComparator = Callable[[AccountFeatures, AccountFeatures], float | None]


class Action(StrEnum):
    IGNORE = "ignore"
    QUEUE_REVIEW = "queue_review"
    FLAG_HIGH = "flag_high"
    AUTO_RESPOND = "auto_respond"


ALERTING_ACTIONS = frozenset({Action.QUEUE_REVIEW, Action.FLAG_HIGH, Action.AUTO_RESPOND})

# Escalation order, used when a re-score is compared with the previous event
ACTION_RANK = {
    Action.IGNORE: 0,
    Action.QUEUE_REVIEW: 1,
    Action.FLAG_HIGH: 2,
    Action.AUTO_RESPOND: 3,
}


@dataclass(frozen=True, slots=True)
class ScoringWeights:
    username: float = 0.4
    display_name: float = 0.3
    profile_image: float = 0.2
    metadata: float = 0.1

    @classmethod
    def from_mapping(cls, values: Mapping[str, float]) -> ScoringWeights:
        return cls(**{name: float(values[name]) for name in FACTORS if name in values})

    def as_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in FACTORS}

    def validate(self) -> ScoringWeights:
        values = self.as_dict()
        for name, value in values.items():
            if not math.isfinite(value) or not 0 <= value <= 1:
                raise ConfigurationError(
                    f"Scoring weight {name} must be within [0, 1]", details={name: value}
                )
        total = sum(values.values())
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise ConfigurationError(
                f"Scoring weights must sum to 1.0, got {total:.4f}", details=values
            )
        return self


@dataclass(frozen=True, slots=True)
class ScoringThresholds:
    low: float = 0.3
    medium: float = 0.6
    high: float = 0.8

    @classmethod
    def from_mapping(cls, values: Mapping[str, float]) -> ScoringThresholds:
        return cls(**{name: float(values[name]) for name in ("low", "medium", "high") if name in values})

    def validate(self) -> ScoringThresholds:
        for name in ("low", "medium", "high"):
            value = getattr(self, name)
            if not math.isfinite(value) or not 0 <= value <= 1:
                raise ConfigurationError(
                    f"Threshold {name} must be within [0, 1]", details={name: value}
                )
        if not self.low < self.medium < self.high:
            raise ConfigurationError(
                "Thresholds must satisfy low < medium < high",
                details={"low": self.low, "medium": self.medium, "high": self.high},
            )
        return self


@dataclass(slots=True)
class DetectionEvent:
    suspect_account_id: str
    target_account_id: str
    score: float
    confidence: float
    factors: dict[str, float]
    weights: dict[str, float]
    reasoning: list[str]
    action: Action
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    reviewed: bool = False
    review_notes: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def alerting(self) -> bool:
        return self.action in ALERTING_ACTIONS

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DetectionEvent:
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            id=data["id"],
            suspect_account_id=data["suspect_account_id"],
            target_account_id=data["target_account_id"],
            score=float(data["score"]),
            confidence=float(data["confidence"]),
            factors=dict(data["factors"]),
            weights=dict(data.get("weights") or {}),
            reasoning=list(data.get("reasoning") or []),
            action=Action(data["action"]),
            reviewed=bool(data.get("reviewed", False)),
            review_notes=data.get("review_notes"),
            created_at=created_at or datetime.now(UTC),
        )


def determine_action(score: float, thresholds: ScoringThresholds) -> Action:
    """Thresholds are exclusive: a score equal to a threshold stays in the band below."""
    if score > thresholds.high:
        return Action.AUTO_RESPOND
    if score > thresholds.medium:
        return Action.FLAG_HIGH
    if score > thresholds.low:
        return Action.QUEUE_REVIEW
    return Action.IGNORE


def effective_weights(weights: ScoringWeights, available: set[str]) -> dict[str, float]:
    """Configured weights renormalized over the computable factors."""
    configured = weights.as_dict()
    total = sum(configured[name] for name in available)
    if total <= 0:
        return {name: 0.0 for name in FACTORS}
    return {
        name: (configured[name] / total if name in available else 0.0) for name in FACTORS
    }


def calculate_confidence(score: float, available: int) -> float:
    """
    Confidence grows with the score and with the amount of evidence.

    Each missing factor lowers the ceiling by 0.05 from 0.95.
    """
    missing = len(FACTORS) - available
    noise_margin = 0.1 * available / len(FACTORS)
    ceiling = 0.95 - 0.05 * missing
    return clamp(score + noise_margin, 0.5, ceiling)


class ScoringEngine:
    """Scores (suspect, target) pairs with fixed weights and thresholds."""

    def __init__(
        self,
        weights: ScoringWeights | None = None,
        thresholds: ScoringThresholds | None = None,
        image_comparator: ImageComparator | None = None,
    ):
        self.weights = (weights or ScoringWeights()).validate()
        self.thresholds = (thresholds or ScoringThresholds()).validate()
        self.image_comparator = image_comparator or image_hash_similarity

    @classmethod
    def from_settings(
        cls, config: Settings, image_comparator: ImageComparator | None = None
    ) -> ScoringEngine:
        return cls(
            ScoringWeights.from_mapping(config.scoring_weights()),
            ScoringThresholds.from_mapping(config.scoring_thresholds()),
            image_comparator,
        )

    def compute_factors(
        self, suspect: AccountFeatures, target: AccountFeatures
    ) -> dict[str, float | None]:
        raw = {
            "username": username_similarity(suspect, target),
            "display_name": display_name_similarity(suspect, target),
            "profile_image": self.image_comparator(suspect, target),
            "metadata": metadata_similarity(suspect, target),
        }
        factors = {}
        for name, value in raw.items():
            if value is None or not math.isfinite(value):
                factors[name] = None
            else:
                factors[name] = clamp(float(value))
        return factors

    def score(self, suspect: AccountFeatures, target: AccountFeatures) -> DetectionEvent:
        if suspect.account_id == target.account_id:
            logger.debug("Self-comparison skipped", account_id=suspect.account_id)
            return DetectionEvent(
                suspect_account_id=suspect.account_id,
                target_account_id=target.account_id,
                score=0.0,
                confidence=0.0,
                factors={name: 0.0 for name in FACTORS},
                weights=self.weights.as_dict(),
                reasoning=[],
                action=Action.IGNORE,
            )

        computed = self.compute_factors(suspect, target)
        available = {name for name, value in computed.items() if value is not None}
        weights = effective_weights(self.weights, available)
        factors = {name: computed[name] or 0.0 for name in FACTORS}

        score = clamp(sum(weights[name] * factors[name] for name in FACTORS))
        confidence = calculate_confidence(score, len(available))
        reasoning = [REASONS[name] for name in FACTORS if factors[name] > REASON_THRESHOLD]
        action = determine_action(score, self.thresholds)

        logger.debug(
            "Pair scored",
            suspect_account_id=suspect.account_id,
            target_account_id=target.account_id,
            score=round(score, 4),
            action=action.value,
            missing_factors=sorted(set(FACTORS) - available),
        )

        return DetectionEvent(
            suspect_account_id=suspect.account_id,
            target_account_id=target.account_id,
            score=score,
            confidence=confidence,
            factors=factors,
            weights=weights,
            reasoning=reasoning,
            action=action,
        )


def score(
    suspect: AccountFeatures,
    target: AccountFeatures,
    weights: ScoringWeights | None = None,
    thresholds: ScoringThresholds | None = None,
    image_comparator: ImageComparator | None = None,
) -> DetectionEvent:
    return ScoringEngine(weights, thresholds, image_comparator).score(suspect, target)
