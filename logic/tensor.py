"""
Small owned matrix abstraction and dense-network math.

Matrix wraps a 2D float ndarray and checks shapes on every operation.
Network functions are pure: they take layers and return new layers,
never mutating their inputs, so training and inference share them.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from core.errors import InvalidShape

ACTIVATIONS = ("relu", "tanh", "sigmoid", "linear")


class Matrix:
    """Fixed-size 2D array."""

    __slots__ = ("_data",)

    def __init__(self, data):
        arr = np.array(data, dtype=float)
        if arr.ndim != 2:
            raise InvalidShape(f"Matrix needs 2 dimensions, got {arr.ndim}")
        arr.setflags(write=False)
        self._data = arr

    @classmethod
    def zeros(cls, rows: int, cols: int) -> "Matrix":
        return cls(np.zeros((rows, cols)))

    @classmethod
    def column(cls, values: Sequence[float]) -> "Matrix":
        return cls(np.asarray(values, dtype=float).reshape(-1, 1))

    @classmethod
    def random(cls, rows: int, cols: int, scale: float = 0.1,
               rng: Optional[np.random.Generator] = None) -> "Matrix":
        rng = rng or np.random.default_rng()
        return cls(rng.uniform(-scale, scale, size=(rows, cols)))

    @classmethod
    def xavier(cls, rows: int, cols: int, rng: Optional[np.random.Generator] = None) -> "Matrix":
        rng = rng or np.random.default_rng()
        limit = np.sqrt(6.0 / (rows + cols))
        return cls(rng.uniform(-limit, limit, size=(rows, cols)))

    @property
    def shape(self) -> Tuple[int, int]:
        return self._data.shape

    @property
    def rows(self) -> int:
        return self._data.shape[0]

    @property
    def cols(self) -> int:
        return self._data.shape[1]

    @property
    def values(self) -> np.ndarray:
        return self._data

    @property
    def T(self) -> "Matrix":
        return Matrix(self._data.T)

    def _same_shape(self, other: "Matrix", op: str) -> None:
        if self.shape != other.shape:
            raise InvalidShape(f"{op}: {self.shape} vs {other.shape}")

    def matmul(self, other: "Matrix") -> "Matrix":
        if self.cols != other.rows:
            raise InvalidShape(f"matmul: {self.shape} @ {other.shape}")
        return Matrix(self._data @ other._data)

    def __matmul__(self, other: "Matrix") -> "Matrix":
        return self.matmul(other)

    def __add__(self, other: "Matrix") -> "Matrix":
        self._same_shape(other, "add")
        return Matrix(self._data + other._data)

    def __sub__(self, other: "Matrix") -> "Matrix":
        self._same_shape(other, "sub")
        return Matrix(self._data - other._data)

    def hadamard(self, other: "Matrix") -> "Matrix":
        self._same_shape(other, "hadamard")
        return Matrix(self._data * other._data)

    def scale(self, k: float) -> "Matrix":
        return Matrix(self._data * k)

    def apply(self, fn) -> "Matrix":
        return Matrix(fn(self._data))

    def vstack(self, other: "Matrix") -> "Matrix":
        if self.cols != other.cols:
            raise InvalidShape(f"vstack: {self.shape} vs {other.shape}")
        return Matrix(np.vstack([self._data, other._data]))

    def flatten(self) -> np.ndarray:
        return self._data.reshape(-1).copy()

    def to_list(self) -> List[List[float]]:
        return self._data.tolist()

    def __repr__(self) -> str:
        return f"Matrix{self.shape}"


def activate(x: np.ndarray, name: str) -> np.ndarray:
    if name == "relu":
        return np.maximum(x, 0.0)
    if name == "tanh":
        return np.tanh(x)
    if name == "sigmoid":
        return 1.0 / (1.0 + np.exp(-np.clip(x, -50, 50)))
    if name == "linear":
        return x
    raise ValueError(f"unknown activation: {name}")


def activation_derivative(output: np.ndarray, name: str) -> np.ndarray:
    """Derivative expressed in terms of the activation output."""
    if name == "relu":
        return (output > 0).astype(float)
    if name == "tanh":
        return 1.0 - output ** 2
    if name == "sigmoid":
        return output * (1.0 - output)
    if name == "linear":
        return np.ones_like(output)
    raise ValueError(f"unknown activation: {name}")


def softmax(values: Sequence[float]) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    shifted = np.exp(arr - np.max(arr))
    return shifted / shifted.sum()


def zscore(values: Sequence[float]) -> Tuple[np.ndarray, float, float]:
    """Normalize to zero mean / unit std. A flat series maps to zeros."""
    arr = np.asarray(values, dtype=float)
    mean = float(arr.mean()) if arr.size else 0.0
    std = float(arr.std()) if arr.size else 0.0
    if std < 1e-12:
        return np.zeros_like(arr), mean, 1.0
    return (arr - mean) / std, mean, std


@dataclass(frozen=True)
class DenseLayer:
    weights: Matrix  # out x in
    bias: Matrix     # out x 1
    activation: str = "relu"

    def __post_init__(self):
        if self.bias.shape != (self.weights.rows, 1):
            raise InvalidShape(f"bias {self.bias.shape} for weights {self.weights.shape}")
        if self.activation not in ACTIVATIONS:
            raise ValueError(f"unknown activation: {self.activation}")

    @property
    def input_size(self) -> int:
        return self.weights.cols

    @property
    def output_size(self) -> int:
        return self.weights.rows


Network = Tuple[DenseLayer, ...]


def init_network(sizes: Sequence[int], activations: Optional[Sequence[str]] = None,
                 rng: Optional[np.random.Generator] = None) -> Network:
    """Xavier-initialized layers; hidden layers default to relu, output to tanh."""
    if len(sizes) < 2:
        raise InvalidShape("a network needs at least an input and an output size")
    n_layers = len(sizes) - 1
    if activations is None:
        activations = ["relu"] * (n_layers - 1) + ["tanh"]
    if len(activations) != n_layers:
        raise InvalidShape(f"{len(activations)} activations for {n_layers} layers")
    rng = rng or np.random.default_rng()
    return tuple(
        DenseLayer(
            weights=Matrix.xavier(sizes[i + 1], sizes[i], rng),
            bias=Matrix.zeros(sizes[i + 1], 1),
            activation=activations[i],
        )
        for i in range(n_layers)
    )


def forward(layers: Network, x: Matrix) -> List[Matrix]:
    """Return activations for every layer, input first."""
    outputs = [x]
    for layer in layers:
        z = layer.weights @ outputs[-1] + layer.bias
        outputs.append(z.apply(lambda v, a=layer.activation: activate(v, a)))
    return outputs


def predict(layers: Network, x: Matrix) -> Matrix:
    return forward(layers, x)[-1]


def backprop(layers: Network, outputs: List[Matrix], target: Matrix,
             learning_rate: float) -> Tuple[Network, float]:
    """One SGD step on mean squared error. Returns (new layers, loss)."""
    prediction = outputs[-1]
    if prediction.shape != target.shape:
        raise InvalidShape(f"target {target.shape} vs output {prediction.shape}")
    error = prediction - target
    loss = float(np.mean(error.values ** 2))

    updated: List[DenseLayer] = [None] * len(layers)  # type: ignore[list-item]
    delta = error.hadamard(prediction.apply(lambda v: activation_derivative(v, layers[-1].activation)))
    for i in range(len(layers) - 1, -1, -1):
        layer = layers[i]
        grad_w = delta @ outputs[i].T
        updated[i] = DenseLayer(
            weights=layer.weights - grad_w.scale(learning_rate),
            bias=layer.bias - delta.scale(learning_rate),
            activation=layer.activation,
        )
        if i > 0:
            prev_act = layers[i - 1].activation
            delta = (layer.weights.T @ delta).hadamard(
                outputs[i].apply(lambda v, a=prev_act: activation_derivative(v, a))
            )
    return tuple(updated), loss


def network_to_dict(layers: Network) -> List[dict]:
    return [
        {"weights": l.weights.to_list(), "bias": l.bias.to_list(), "activation": l.activation}
        for l in layers
    ]


def network_from_dict(data: List[dict]) -> Network:
    layers = tuple(
        DenseLayer(
            weights=Matrix(d["weights"]),
            bias=Matrix(d["bias"]),
            activation=d.get("activation", "relu"),
        )
        for d in data
    )
    for prev, nxt in zip(layers, layers[1:]):
        if prev.output_size != nxt.input_size:
            raise InvalidShape(f"layer sizes {prev.output_size} -> {nxt.input_size} do not chain")
    return layers
