"""Attention model: scaled dot-product self-attention pooled into a dense head."""

from typing import Any, Dict, Optional, Sequence

import numpy as np

from core.errors import InvalidShape
from core.models import Direction, ModelType
from logic.indicators import price_trend
from logic.models.base import BaseModel, ModelInput, RuleSignals, directional_logits, scaled_levels
from logic.tensor import Matrix, network_from_dict, network_to_dict, predict, softmax


def init_projections(embed_dim: int, rng: Optional[np.random.Generator] = None) -> Dict[str, Matrix]:
    rng = rng or np.random.default_rng()
    return {name: Matrix.random(embed_dim, 1, 0.1, rng) for name in ("query", "key", "value")}


def attention_pool(projections: Dict[str, Matrix], sequence: Sequence[float]) -> Matrix:
    """Self-attention over scalar steps, averaged into an (embed_dim x 1) vector."""
    embed_dim = projections["query"].rows
    for name in ("key", "value"):
        if projections[name].shape != (embed_dim, 1):
            raise InvalidShape(f"{name} projection {projections[name].shape}, expected ({embed_dim}, 1)")

    x = Matrix.column(sequence)                      # T x 1
    queries = x @ projections["query"].T             # T x E
    keys = x @ projections["key"].T
    values = x @ projections["value"].T

    scores = (queries @ keys.T).scale(1 / np.sqrt(embed_dim)).values
    attn = np.vstack([softmax(row) for row in scores])
    pooled = (Matrix(attn) @ values).values.mean(axis=0)
    return Matrix.column(pooled)


def pack_weights(projections: Dict[str, Matrix], head) -> Dict[str, Any]:
    return {
        "architecture": "transformer",
        "embed_dim": projections["query"].rows,
        "projections": {k: m.to_list() for k, m in projections.items()},
        "head": network_to_dict(head),
    }


def unpack_weights(weights: Dict[str, Any]):
    projections = {k: Matrix(v) for k, v in weights["projections"].items()}
    return projections, network_from_dict(weights["head"])


class AttentionModel(BaseModel):
    model_type = ModelType.TRANSFORMER
    timeframe = "30M"
    fallback_confidence = 0.65

    def forward(self, weights, normalized, data):
        projections, head = unpack_weights(weights)
        pooled = attention_pool(projections, normalized)
        predicted = float(predict(head, pooled).values[0, 0])
        return directional_logits(predicted - float(normalized[-1])), {"predicted_next": predicted}

    def _signal_counts(self, data: ModelInput) -> tuple[int, int]:
        ind = data.indicators
        prices = data.prices
        short = price_trend(prices, 20)
        medium = price_trend(prices, 50)
        bullish = sum([
            short > 0.01,
            ind.macd > ind.macd_signal,
            40 < ind.rsi < 70,
            medium > 0.005,
        ])
        bearish = sum([
            short < -0.01,
            ind.macd < ind.macd_signal,
            30 < ind.rsi < 60,
            medium < -0.005,
        ])
        return bullish, bearish

    def rule_signals(self, data: ModelInput) -> RuleSignals:
        bullish, bearish = self._signal_counts(data)
        return RuleSignals(bullish=bullish >= 3, bearish=bearish >= 3)

    def rule_direction(self, data: ModelInput) -> Direction:
        trend = price_trend(data.prices, 20)
        if trend > 0.015:
            return Direction.BUY
        if trend < -0.015:
            return Direction.SELL
        return Direction.HOLD

    def price_levels(self, direction, data, diagnostics, fallback):
        return scaled_levels(direction, data.price, 0.015, 0.005, 0.025)
