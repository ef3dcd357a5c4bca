"""Predictions, sentiment snapshots and ensemble decisions."""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from core.models.risk import RiskAssessment


class Direction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"

    @property
    def sign(self) -> int:
        return {"BUY": 1, "SELL": -1, "HOLD": 0}[self.value]


# Class order shared by every model head
ACTION_CLASSES = (Direction.HOLD, Direction.BUY, Direction.SELL)


class MarketRegime(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"
    VOLATILE = "volatile"


@dataclass
class FeatureBag:
    """Diagnostics attached to a prediction.

    Known fields are typed; anything model-specific goes in ``extensions``.
    """
    rsi: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    trend: Optional[float] = None
    volatility: Optional[float] = None
    raw_direction: Optional[Direction] = None
    raw_confidence: Optional[float] = None
    rule_agreement: Optional[bool] = None
    weights_version: Optional[int] = None
    fallback: bool = False
    error: Optional[str] = None
    extensions: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.raw_direction is not None:
            data["raw_direction"] = self.raw_direction.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "FeatureBag":
        data = dict(data or {})
        known = {k: data.pop(k) for k in list(data) if k in cls.__dataclass_fields__}
        raw = known.get("raw_direction")
        if raw is not None:
            known["raw_direction"] = Direction(raw)
        extensions = dict(known.pop("extensions", {}) or {})
        extensions.update(data)
        return cls(**known, extensions=extensions)


@dataclass(frozen=True)
class Prediction:
    symbol: str
    direction: Direction
    confidence: float
    target_price: float
    stop_loss: float
    take_profit: float
    timeframe: str
    model_id: str
    features: FeatureBag = field(default_factory=FeatureBag)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_fallback(self) -> bool:
        return self.features.fallback

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "direction": self.direction.value,
            "confidence": self.confidence,
            "target_price": self.target_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "timeframe": self.timeframe,
            "model_id": self.model_id,
            "features": self.features.to_dict(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Prediction":
        return cls(
            symbol=data["symbol"],
            direction=Direction(data["direction"]),
            confidence=float(data["confidence"]),
            target_price=float(data.get("target_price", 0.0)),
            stop_loss=float(data.get("stop_loss", 0.0)),
            take_profit=float(data.get("take_profit", 0.0)),
            timeframe=data.get("timeframe", ""),
            model_id=data["model_id"],
            features=FeatureBag.from_dict(data.get("features", {})),
        )


def fallback_prediction(symbol: str, model_id: str = "fallback", error: str = "") -> Prediction:
    """Static HOLD used when the upstream model cannot be reached."""
    return Prediction(
        symbol=symbol,
        direction=Direction.HOLD,
        confidence=0.3,
        target_price=0.0,
        stop_loss=0.0,
        take_profit=0.0,
        timeframe="",
        model_id=model_id,
        features=FeatureBag(fallback=True, error=error or None),
    )


@dataclass(frozen=True)
class SentimentSnapshot:
    overall: float = 0.0
    price_action: float = 0.0
    volume: float = 0.0
    volatility: float = 0.0
    correlation: float = 0.0
    fear_greed: float = 50.0
    strength: float = 0.5
    confidence: float = 0.1

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DecisionOutcome:
    pnl: float
    success: bool
    closed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class EnsembleDecision:
    """One actionable output per symbol per cycle.

    Everything except ``outcome`` is fixed at creation.
    """
    symbol: str
    action: Direction
    confidence: float
    predictions: Dict[str, Prediction]
    weights: Dict[str, float]
    sentiment: SentimentSnapshot
    regime: MarketRegime
    target_price: float
    stop_loss: float
    take_profit: float
    reasoning: str = ""
    risk: Optional[RiskAssessment] = None
    decision_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    outcome: Optional[DecisionOutcome] = None

    @property
    def is_actionable(self) -> bool:
        return self.action != Direction.HOLD

    def annotate_outcome(self, pnl: float) -> DecisionOutcome:
        if self.outcome is not None:
            raise ValueError(f"decision {self.decision_id} already has an outcome")
        self.outcome = DecisionOutcome(pnl=pnl, success=pnl > 0)
        return self.outcome

    def to_dict(self) -> dict:
        return {
            "decision_id": self.decision_id,
            "symbol": self.symbol,
            "action": self.action.value,
            "confidence": self.confidence,
            "predictions": {k: p.to_dict() for k, p in self.predictions.items()},
            "weights": dict(self.weights),
            "sentiment": self.sentiment.to_dict(),
            "regime": self.regime.value,
            "target_price": self.target_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "reasoning": self.reasoning,
            "risk": self.risk.to_dict() if self.risk else None,
            "created_at": self.created_at.isoformat(),
        }
