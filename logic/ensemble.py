"""Ensemble decision engine.

Combines the per-model predictions for a symbol into one decision:
performance-weighted votes, a sentiment modifier, a threshold gate and
weight-averaged price levels.
"""

import math
from typing import Callable, Dict, Optional, Sequence

import numpy as np

from core.config import settings
from core.logging_utils import get_logger
from core.models import (
    Direction,
    EnsembleDecision,
    MarketRegime,
    Prediction,
    RiskAssessment,
    SentimentSnapshot,
)
from logic.model_performance import ModelPerformanceTracker
from logic.regime import RegimeDetector
from logic.tensor import softmax

logger = get_logger(__name__)

NO_HISTORY_SCORE = 0.5

# (confidence, target, stop, take_profit, sentiment) -> assessment
RiskAssessor = Callable[[float, float, float, float, SentimentSnapshot], RiskAssessment]


def sentiment_label(overall: float) -> str:
    if overall > 0.3:
        return "bullish"
    if overall < -0.3:
        return "bearish"
    return "neutral"


class EnsembleEngine:
    def __init__(
        self,
        tracker: Optional[ModelPerformanceTracker] = None,
        regime_detector: Optional[RegimeDetector] = None,
        risk_assessor: Optional[RiskAssessor] = None,
        action_threshold: Optional[float] = None,
        sentiment_modifier: Optional[float] = None,
    ):
        self.tracker = tracker or ModelPerformanceTracker(settings.performance_window_days)
        self.regime_detector = regime_detector or RegimeDetector()
        self.risk_assessor = risk_assessor
        self.action_threshold = action_threshold if action_threshold is not None else settings.action_threshold
        self.sentiment_modifier = sentiment_modifier if sentiment_modifier is not None else settings.sentiment_modifier

    def compute_weights(self, model_ids: Sequence[str]) -> Dict[str, float]:
        """Softmax over composite scores; equal weights without any history."""
        model_ids = list(model_ids)
        if not model_ids:
            return {}
        scores = self.tracker.scores(model_ids)
        if all(s is None for s in scores.values()):
            return {m: 1.0 / len(model_ids) for m in model_ids}
        probs = softmax([NO_HISTORY_SCORE if scores[m] is None else scores[m] for m in model_ids])
        return {m: float(p) for m, p in zip(model_ids, probs)}

    def decide(
        self,
        symbol: str,
        predictions: Dict[str, Prediction],
        sentiment: SentimentSnapshot,
        prices: Sequence[float],
    ) -> EnsembleDecision:
        weights = self.compute_weights(list(predictions.keys()))

        buy_score = sum(weights[m] * p.confidence for m, p in predictions.items() if p.direction == Direction.BUY)
        sell_score = sum(weights[m] * p.confidence for m, p in predictions.items() if p.direction == Direction.SELL)
        buy_score *= 1 + sentiment.overall * self.sentiment_modifier
        sell_score *= 1 - sentiment.overall * self.sentiment_modifier

        action = Direction.HOLD
        confidence = max(buy_score, sell_score)
        if buy_score > sell_score and buy_score > self.action_threshold and self._has_conviction(predictions, Direction.BUY):
            action = Direction.BUY
        elif sell_score > buy_score and sell_score > self.action_threshold and self._has_conviction(predictions, Direction.SELL):
            action = Direction.SELL
        confidence = float(np.clip(confidence, 0.0, 1.0))

        target, stop, take_profit = self._weighted_levels(predictions, weights)
        regime = self.regime_detector.update(symbol, prices, sentiment.overall)

        risk = None
        if self.risk_assessor is not None:
            risk = self.risk_assessor(confidence, target, stop, take_profit, sentiment)

        decision = EnsembleDecision(
            symbol=symbol,
            action=action,
            confidence=confidence,
            predictions=dict(predictions),
            weights=weights,
            sentiment=sentiment,
            regime=regime,
            target_price=target,
            stop_loss=stop,
            take_profit=take_profit,
            reasoning=self.reasoning(predictions, sentiment, regime, risk),
            risk=risk,
        )
        logger.info(
            "[ENSEMBLE] %s %s conf=%.3f buy=%.3f sell=%.3f regime=%s",
            symbol, action.value, confidence, buy_score, sell_score, regime.value,
        )
        return decision

    def _has_conviction(self, predictions: Dict[str, Prediction], direction: Direction) -> bool:
        """At least one model in the winning direction clears the threshold on its own."""
        return any(
            p.direction == direction and p.confidence >= self.action_threshold
            for p in predictions.values()
        )

    def _weighted_levels(self, predictions: Dict[str, Prediction],
                         weights: Dict[str, float]) -> tuple[float, float, float]:
        priced = {m: p for m, p in predictions.items() if p.target_price > 0}
        total = sum(weights[m] for m in priced)
        if not priced or total <= 0:
            return 0.0, 0.0, 0.0
        target = sum(weights[m] * p.target_price for m, p in priced.items()) / total
        stop = sum(weights[m] * p.stop_loss for m, p in priced.items()) / total
        take_profit = sum(weights[m] * p.take_profit for m, p in priced.items()) / total
        return target, stop, take_profit

    def reasoning(self, predictions: Dict[str, Prediction], sentiment: SentimentSnapshot,
                  regime: MarketRegime, risk: Optional[RiskAssessment]) -> str:
        buys = sum(1 for p in predictions.values() if p.direction == Direction.BUY)
        sells = sum(1 for p in predictions.values() if p.direction == Direction.SELL)
        parts = [
            f"Ensemble analyzed {len(predictions)} ML models.",
            f"{buys} models suggest BUY, {sells} suggest SELL.",
            f"Market sentiment: {sentiment_label(sentiment.overall)} ({sentiment.overall:.2f}).",
            f"Current regime: {regime.value}.",
        ]
        if risk is not None:
            parts.append(f"Risk level: {risk.risk_level.value}.")
            rr = risk.risk_reward if math.isfinite(risk.risk_reward) else 0.0
            parts.append(f"Risk/Reward ratio: {rr:.2f}:1.")
        return " ".join(parts)
