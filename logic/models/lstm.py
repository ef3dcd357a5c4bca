"""Sequence model: LSTM cell chain feeding a dense regression head."""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from core.models import Direction, ModelType
from logic.indicators import price_trend, relative_volatility
from logic.models.base import BaseModel, ModelInput, RuleSignals, directional_logits, scaled_levels
from logic.tensor import Matrix, activate, network_from_dict, network_to_dict, predict

GATES = ("forget", "input", "candidate", "output")


@dataclass(frozen=True)
class LSTMCell:
    """Gate weights are hidden x (hidden + 1); the input is one scalar per step."""
    hidden_size: int
    weights: Dict[str, Matrix]
    biases: Dict[str, Matrix]

    def __post_init__(self):
        for gate in GATES:
            if self.weights[gate].shape != (self.hidden_size, self.hidden_size + 1):
                raise ValueError(f"{gate} gate weights have shape {self.weights[gate].shape}")
            if self.biases[gate].shape != (self.hidden_size, 1):
                raise ValueError(f"{gate} gate bias has shape {self.biases[gate].shape}")

    def to_dict(self) -> dict:
        return {
            "hidden_size": self.hidden_size,
            "weights": {g: m.to_list() for g, m in self.weights.items()},
            "biases": {g: m.to_list() for g, m in self.biases.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LSTMCell":
        return cls(
            hidden_size=int(data["hidden_size"]),
            weights={g: Matrix(data["weights"][g]) for g in GATES},
            biases={g: Matrix(data["biases"][g]) for g in GATES},
        )


def init_cell(hidden_size: int, rng: Optional[np.random.Generator] = None) -> LSTMCell:
    rng = rng or np.random.default_rng()
    return LSTMCell(
        hidden_size=hidden_size,
        weights={g: Matrix.random(hidden_size, hidden_size + 1, 0.1, rng) for g in GATES},
        # forget gate biased open
        biases={g: Matrix.zeros(hidden_size, 1) if g != "forget" else Matrix(np.ones((hidden_size, 1)))
                for g in GATES},
    )


def lstm_step(cell: LSTMCell, x: float, h: Matrix, c: Matrix) -> Tuple[Matrix, Matrix]:
    combined = h.vstack(Matrix([[x]]))
    gate = {g: cell.weights[g] @ combined + cell.biases[g] for g in GATES}
    f = gate["forget"].apply(lambda v: activate(v, "sigmoid"))
    i = gate["input"].apply(lambda v: activate(v, "sigmoid"))
    candidate = gate["candidate"].apply(np.tanh)
    o = gate["output"].apply(lambda v: activate(v, "sigmoid"))
    c_next = f.hadamard(c) + i.hadamard(candidate)
    h_next = o.hadamard(c_next.apply(np.tanh))
    return h_next, c_next


def run_cell(cell: LSTMCell, sequence: Sequence[float]) -> Matrix:
    """Final hidden state after consuming the whole sequence."""
    h = Matrix.zeros(cell.hidden_size, 1)
    c = Matrix.zeros(cell.hidden_size, 1)
    for x in sequence:
        h, c = lstm_step(cell, float(x), h, c)
    return h


def pack_weights(cell: LSTMCell, head) -> Dict[str, Any]:
    return {"architecture": "lstm", "cell": cell.to_dict(), "head": network_to_dict(head)}


def unpack_weights(weights: Dict[str, Any]):
    return LSTMCell.from_dict(weights["cell"]), network_from_dict(weights["head"])


class SequenceModel(BaseModel):
    model_type = ModelType.LSTM
    timeframe = "15M"
    fallback_confidence = 0.65

    def forward(self, weights, normalized, data):
        cell, head = unpack_weights(weights)
        hidden = run_cell(cell, normalized)
        predicted = float(predict(head, hidden).values[0, 0])
        delta = predicted - float(normalized[-1])
        return directional_logits(delta), {
            "predicted_next": predicted,
            "volatility": relative_volatility(data.prices, 20),
        }

    def rule_signals(self, data: ModelInput) -> RuleSignals:
        ind = data.indicators
        trend = price_trend(data.prices, 20)
        return RuleSignals(
            bullish=trend > 0.02 and 40 < ind.rsi < 70 and ind.macd > ind.macd_signal,
            bearish=trend < -0.02 and 30 < ind.rsi < 60 and ind.macd < ind.macd_signal,
        )

    def rule_direction(self, data: ModelInput) -> Direction:
        trend = price_trend(data.prices, 20)
        rsi = data.indicators.rsi
        if trend > 0.02 and rsi < 70:
            return Direction.BUY
        if trend < -0.02 and rsi > 30:
            return Direction.SELL
        return Direction.HOLD

    def price_levels(self, direction, data, diagnostics, fallback):
        if fallback:
            return scaled_levels(direction, data.price, 0.015, 0.005, 0.025)
        volatility = diagnostics.get("volatility", relative_volatility(data.prices, 20))
        return scaled_levels(direction, data.price, 2 * volatility, 0.005, 0.02)
