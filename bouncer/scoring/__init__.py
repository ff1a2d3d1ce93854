from bouncer.scoring.engine import (
    ALERTING_ACTIONS,
    Action,
    DetectionEvent,
    ScoringEngine,
    ScoringThresholds,
    ScoringWeights,
    determine_action,
    score,
)
from bouncer.scoring.features import AccountFeatures

__all__ = [
    "ALERTING_ACTIONS",
    "AccountFeatures",
    "Action",
    "DetectionEvent",
    "ScoringEngine",
    "ScoringThresholds",
    "ScoringWeights",
    "determine_action",
    "score",
]
