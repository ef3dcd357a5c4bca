"""Gradient-boosted tree model over summary features of the window."""

from typing import Any, Dict, List, Sequence

import numpy as np

from core.models import Direction, ModelType
from logic.models.base import BaseModel, ModelInput, RuleSignals, directional_logits, scaled_levels

FEATURE_NAMES = (
    "lag_5", "lag_4", "lag_3", "lag_2", "lag_1",
    "window_mean", "window_std", "last_diff",
)


def window_features(normalized: Sequence[float]) -> np.ndarray:
    """Last five values, mean, std and last difference of a normalized window."""
    window = np.asarray(normalized, dtype=float)
    lags = window[-5:]
    if len(lags) < 5:
        lags = np.concatenate([np.zeros(5 - len(lags)), lags])
    last_diff = float(window[-1] - window[-2]) if len(window) >= 2 else 0.0
    return np.concatenate([lags, [window.mean(), window.std(), last_diff]])


def traverse(node: Dict[str, Any], features: Sequence[float]) -> float:
    """Walk one tree: feature <= threshold goes left."""
    if "value" in node:
        return float(node["value"])
    branch = node["left"] if features[int(node["feature"])] <= node["threshold"] else node["right"]
    return traverse(branch, features)


def ensemble_output(weights: Dict[str, Any], features: Sequence[float]) -> float:
    trees: List[dict] = weights.get("trees", [])
    lr = float(weights.get("learning_rate", 0.1))
    return float(weights.get("base_score", 0.0)) + lr * sum(traverse(t, features) for t in trees)


class BoostedTreeModel(BaseModel):
    model_type = ModelType.XGBOOST
    timeframe = "1H"
    fallback_confidence = 0.55

    def forward(self, weights, normalized, data):
        predicted = ensemble_output(weights, window_features(normalized))
        score = float(np.clip(predicted - float(normalized[-1]), -1.0, 1.0))
        return directional_logits(score), {"predicted_next": predicted, "score": score}

    def _sma_ratio(self, data: ModelInput) -> float:
        sma = data.indicators.bb_middle
        return data.price / sma if sma > 0 else 1.0

    def rule_signals(self, data: ModelInput) -> RuleSignals:
        ratio = self._sma_ratio(data)
        rsi_n = data.indicators.rsi / 100
        bb = data.indicators.bb_position
        return RuleSignals(
            bullish=(ratio > 1.01 and rsi_n < 0.7) or bb < 0.2,
            bearish=(ratio < 0.99 and rsi_n > 0.3) or bb > 0.8,
        )

    def rule_direction(self, data: ModelInput) -> Direction:
        ratio = self._sma_ratio(data)
        if ratio > 1.015:
            return Direction.BUY
        if ratio < 0.985:
            return Direction.SELL
        return Direction.HOLD

    def price_levels(self, direction, data, diagnostics, fallback):
        score = abs(diagnostics.get("score", 0.5))
        return scaled_levels(direction, data.price, score * 0.02, 0.01, 0.02)
