"""Shared inference flow for the four model architectures.

Every model follows the same steps: fall back to rules when there are no
active weights or too little history, z-score the window, run its own
forward pass, softmax over (HOLD, BUY, SELL), cross-check against
independent rule signals, then derive price levels from the mid price.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from core.config import settings
from core.models import (
    ACTION_CLASSES,
    Direction,
    FeatureBag,
    MarketSample,
    ModelType,
    Prediction,
)
from logic.indicators import TechnicalIndicators, compute_indicators, price_trend, relative_volatility
from logic.tensor import softmax, zscore

HOLD_FALLBACK_CONFIDENCE = 0.5


@dataclass
class ModelInput:
    """Everything a model may look at for one symbol."""
    symbol: str
    samples: List[MarketSample]
    indicators: TechnicalIndicators
    recent_rewards: List[float] = field(default_factory=list)

    @classmethod
    def from_samples(cls, symbol: str, samples: List[MarketSample],
                     recent_rewards: Optional[List[float]] = None) -> "ModelInput":
        return cls(
            symbol=symbol,
            samples=list(samples),
            indicators=compute_indicators(samples),
            recent_rewards=list(recent_rewards or []),
        )

    @property
    def prices(self) -> np.ndarray:
        return np.array([s.mid for s in self.samples], dtype=float)

    @property
    def price(self) -> float:
        return self.samples[-1].mid if self.samples else 0.0


@dataclass(frozen=True)
class RuleSignals:
    bullish: bool
    bearish: bool


def directional_logits(delta: float, scale: float = 3.0, hold_margin: float = 0.5) -> np.ndarray:
    """Map a predicted normalized move to (HOLD, BUY, SELL) logits."""
    return np.array([hold_margin, delta * scale, -delta * scale], dtype=float)


class BaseModel(ABC):
    model_type: ModelType
    timeframe: str = ""
    fallback_confidence: float = 0.65

    def __init__(
        self,
        sequence_length: Optional[int] = None,
        agree_boost: Optional[float] = None,
        contradict_factor: Optional[float] = None,
        boost_cap: Optional[float] = None,
        hold_floor: Optional[float] = None,
    ):
        default_boost, default_factor = settings.confirmation_factors(self.model_type.value)
        self.sequence_length = sequence_length or settings.sequence_length
        self.agree_boost = agree_boost if agree_boost is not None else default_boost
        self.contradict_factor = contradict_factor if contradict_factor is not None else default_factor
        self.boost_cap = boost_cap if boost_cap is not None else settings.confidence_boost_cap
        self.hold_floor = hold_floor if hold_floor is not None else settings.contradiction_hold_floor

    @property
    def model_id(self) -> str:
        return self.model_type.value

    # Architecture hooks

    @abstractmethod
    def forward(self, weights: Dict[str, Any], normalized: np.ndarray,
                data: ModelInput) -> Tuple[np.ndarray, Dict[str, float]]:
        """Return (HOLD, BUY, SELL) logits plus diagnostics."""

    @abstractmethod
    def rule_signals(self, data: ModelInput) -> RuleSignals:
        ...

    @abstractmethod
    def rule_direction(self, data: ModelInput) -> Direction:
        """Deterministic direction used when the network cannot run."""

    @abstractmethod
    def price_levels(self, direction: Direction, data: ModelInput,
                     diagnostics: Dict[str, float], fallback: bool) -> Tuple[float, float, float]:
        """(target, stop loss, take profit)."""

    # Shared flow

    def predict(self, data: ModelInput, weights: Optional[Dict[str, Any]] = None,
                version: Optional[int] = None) -> Prediction:
        prices = data.prices
        if weights is None or len(prices) < self.sequence_length:
            return self.rule_prediction(data)

        normalized, _, _ = zscore(prices[-self.sequence_length:])
        logits, diagnostics = self.forward(weights, normalized, data)
        probs = softmax(logits)
        idx = int(np.argmax(probs))
        raw_direction = ACTION_CLASSES[idx]
        raw_confidence = float(probs[idx])

        direction, confidence, agreement = self.cross_check(raw_direction, raw_confidence, data)
        target, stop, take_profit = self.price_levels(direction, data, diagnostics, fallback=False)
        ind = data.indicators
        return Prediction(
            symbol=data.symbol,
            direction=direction,
            confidence=confidence,
            target_price=target,
            stop_loss=stop,
            take_profit=take_profit,
            timeframe=self.timeframe,
            model_id=self.model_id,
            features=FeatureBag(
                rsi=ind.rsi,
                macd=ind.macd,
                macd_signal=ind.macd_signal,
                trend=price_trend(prices, 20),
                volatility=relative_volatility(prices, 20),
                raw_direction=raw_direction,
                raw_confidence=raw_confidence,
                rule_agreement=agreement,
                weights_version=version,
                extensions={"probabilities": [float(p) for p in probs], **diagnostics},
            ),
        )

    def cross_check(self, direction: Direction, confidence: float,
                    data: ModelInput) -> Tuple[Direction, float, Optional[bool]]:
        """Boost on rule agreement, discount (and maybe HOLD) on contradiction."""
        if direction == Direction.HOLD:
            return direction, confidence, None
        signals = self.rule_signals(data)
        agrees = signals.bullish if direction == Direction.BUY else signals.bearish
        contradicts = signals.bearish if direction == Direction.BUY else signals.bullish

        if contradicts and not agrees:
            confidence *= self.contradict_factor
            if confidence < self.hold_floor:
                return Direction.HOLD, confidence, False
            return direction, confidence, False
        if agrees and not contradicts:
            return direction, min(self.boost_cap, confidence * self.agree_boost), True
        return direction, confidence, None

    def rule_prediction(self, data: ModelInput) -> Prediction:
        direction = self.rule_direction(data) if data.samples else Direction.HOLD
        confidence = HOLD_FALLBACK_CONFIDENCE if direction == Direction.HOLD else self.fallback_confidence
        prices = data.prices
        target, stop, take_profit = (0.0, 0.0, 0.0)
        if data.samples:
            target, stop, take_profit = self.price_levels(direction, data, {}, fallback=True)
        return Prediction(
            symbol=data.symbol,
            direction=direction,
            confidence=confidence,
            target_price=target,
            stop_loss=stop,
            take_profit=take_profit,
            timeframe=self.timeframe,
            model_id=self.model_id,
            features=FeatureBag(
                rsi=data.indicators.rsi,
                macd=data.indicators.macd,
                macd_signal=data.indicators.macd_signal,
                trend=price_trend(prices, 20),
                volatility=relative_volatility(prices, 20),
                extensions={"rule_based": True},
            ),
        )


def scaled_levels(direction: Direction, price: float, target_pct: float,
                  stop_pct: float, take_profit_pct: float) -> Tuple[float, float, float]:
    """Symmetric multipliers around the mid price; HOLD keeps the price."""
    if direction == Direction.BUY:
        return price * (1 + target_pct), price * (1 - stop_pct), price * (1 + take_profit_pct)
    if direction == Direction.SELL:
        return price * (1 - target_pct), price * (1 + stop_pct), price * (1 - take_profit_pct)
    return price, price, price
