"""Reinforcement-learning model: dense Q-network over an 8-feature market state."""

from typing import Any, Dict, List, Sequence

import numpy as np

from core.models import Direction, MarketSample, ModelType
from logic.indicators import TechnicalIndicators, compute_indicators, price_trend, relative_volatility
from logic.models.base import BaseModel, ModelInput, RuleSignals, scaled_levels
from logic.tensor import Matrix, network_from_dict, network_to_dict, predict

STATE_FEATURES = (
    "momentum_5",
    "volatility_class",
    "order_flow",
    "technical_overlay",
    "reward_performance",
    "rsi",
    "macd_histogram",
    "atr_pct",
)
STATE_SIZE = len(STATE_FEATURES)
# Q-network output order
Q_ACTIONS = (Direction.BUY, Direction.SELL, Direction.HOLD)


def volatility_class(prices: Sequence[float]) -> float:
    vol = relative_volatility(prices, 20)
    if vol > 0.03:
        return 1.0
    if vol > 0.015:
        return 0.5
    return 0.0


def order_flow_imbalance(samples: List[MarketSample], lookback: int = 20) -> float:
    """Volume on up-ticks minus down-ticks over total volume."""
    window = samples[-lookback:]
    up = down = 0.0
    for prev, cur in zip(window, window[1:]):
        if cur.mid > prev.mid:
            up += cur.volume
        elif cur.mid < prev.mid:
            down += cur.volume
    total = up + down
    return (up - down) / total if total > 0 else 0.0


def technical_overlay(ind: TechnicalIndicators) -> float:
    score = 0.0
    if ind.rsi < 30:
        score += 0.3
    elif ind.rsi > 70:
        score -= 0.3
    score += 0.2 if ind.macd > ind.macd_signal else -0.2
    return float(np.clip(score, -1.0, 1.0))


def reward_performance(rewards: Sequence[float]) -> float:
    recent = list(rewards)[-5:]
    if not recent:
        return 0.0
    return float(np.clip(np.mean(recent) / 10, -1.0, 1.0))


def build_state(samples: List[MarketSample], indicators: TechnicalIndicators,
                rewards: Sequence[float] = ()) -> np.ndarray:
    prices = np.array([s.mid for s in samples], dtype=float)
    price = prices[-1] if len(prices) else 0.0
    histogram = indicators.macd_histogram / price * 100 if price > 0 else 0.0
    return np.array([
        price_trend(prices, 5),
        volatility_class(prices),
        order_flow_imbalance(samples),
        technical_overlay(indicators),
        reward_performance(rewards),
        indicators.rsi / 100,
        float(np.clip(histogram, -1.0, 1.0)),
        indicators.atr_pct,
    ], dtype=float)


def state_for_window(samples: List[MarketSample], rewards: Sequence[float] = ()) -> np.ndarray:
    return build_state(samples, compute_indicators(samples), rewards)


def pack_weights(network) -> Dict[str, Any]:
    return {"architecture": "rl", "state_size": STATE_SIZE, "network": network_to_dict(network)}


def unpack_weights(weights: Dict[str, Any]):
    return network_from_dict(weights["network"])


def q_values(network, state: np.ndarray) -> np.ndarray:
    return predict(network, Matrix.column(state)).flatten()


class ReinforcementModel(BaseModel):
    model_type = ModelType.RL
    timeframe = "5M"
    fallback_confidence = 0.55

    def forward(self, weights, normalized, data):
        network = unpack_weights(weights)
        state = build_state(data.samples, data.indicators, data.recent_rewards)
        q = q_values(network, state)
        by_action = dict(zip(Q_ACTIONS, q))
        logits = np.array([by_action[Direction.HOLD], by_action[Direction.BUY], by_action[Direction.SELL]])
        return logits, {"q_max": float(np.max(q)), "state": [float(v) for v in state]}

    def rule_signals(self, data: ModelInput) -> RuleSignals:
        mom = price_trend(data.prices, 5)
        overlay = technical_overlay(data.indicators)
        rsi = data.indicators.rsi
        return RuleSignals(
            bullish=mom > 0.01 and overlay > 0.2 and rsi < 70,
            bearish=mom < -0.01 and overlay < -0.2 and rsi > 30,
        )

    def rule_direction(self, data: ModelInput) -> Direction:
        mom = price_trend(data.prices, 5)
        if mom > 0.015:
            return Direction.BUY
        if mom < -0.015:
            return Direction.SELL
        return Direction.HOLD

    def price_levels(self, direction, data, diagnostics, fallback):
        return scaled_levels(direction, data.price, 0.012, 0.006, 0.018)
