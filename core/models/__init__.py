"""Typed data models for the decision engine."""

from core.models.market import MarketSample, SampleHistory, validate_sample
from core.models.position import Position, PositionAction, PositionState
from core.models.prediction import (
    ACTION_CLASSES,
    DecisionOutcome,
    Direction,
    EnsembleDecision,
    FeatureBag,
    MarketRegime,
    Prediction,
    SentimentSnapshot,
    fallback_prediction,
)
from core.models.risk import (
    KillSwitchLevel,
    KillSwitchState,
    RiskAssessment,
    RiskLevel,
    RiskMetrics,
    TradeValidation,
)
from core.models.trade_result import TradeResult
from core.models.training import JobStatus, ModelType, ModelVersion, TrainingJob, TrainingMode

__all__ = [
    "ACTION_CLASSES",
    "DecisionOutcome",
    "Direction",
    "EnsembleDecision",
    "FeatureBag",
    "JobStatus",
    "KillSwitchLevel",
    "KillSwitchState",
    "MarketRegime",
    "MarketSample",
    "ModelType",
    "ModelVersion",
    "Position",
    "PositionAction",
    "PositionState",
    "Prediction",
    "RiskAssessment",
    "RiskLevel",
    "RiskMetrics",
    "SampleHistory",
    "SentimentSnapshot",
    "TradeResult",
    "TradeValidation",
    "TrainingJob",
    "TrainingMode",
    "fallback_prediction",
    "validate_sample",
]
