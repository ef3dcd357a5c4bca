"""Training routines for the four model architectures.

All trainers are pure functions of (data, hyperparameters, previous
weights, rng): they never touch storage. Each keeps the checkpoint with
the best validation loss and stops early once ``patience`` epochs pass
without improvement.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from core.errors import TrainingFailed
from core.logging_utils import get_logger
from core.models import Direction, ModelType
from core.trading_interfaces import Hyperparameters
from logic.models import boosted, lstm, rl, transformer
from logic.tensor import Matrix, Network, backprop, forward, init_network, predict
from training.data import TrainingData

logger = get_logger(__name__)

LSTM_HIDDEN_SIZE = 16
ATTENTION_EMBED_DIM = 16
HEAD_HIDDEN_SIZE = 32
RL_LAYERS = (rl.STATE_SIZE, 64, 32, len(rl.Q_ACTIONS))
BOOSTED_SHRINKAGE = 0.1
MAX_TREES = 300
HOLD_PENALTY = -0.01
REWARD_SCALE = 100.0


@dataclass
class TrainingResult:
    weights: Dict[str, Any]
    final_accuracy: float
    training_metrics: List[dict] = field(default_factory=list)
    validation_metrics: List[dict] = field(default_factory=list)


def regression_accuracy(val_loss: float) -> float:
    return max(0.0, 1.0 - float(np.sqrt(max(val_loss, 0.0))))


def _epoch_indices(n: int, max_samples: int, rng: np.random.Generator) -> np.ndarray:
    if n <= max_samples:
        return rng.permutation(n)
    return rng.choice(n, size=max_samples, replace=False)


def _check_finite(loss: float, label: str) -> None:
    if not np.isfinite(loss):
        raise TrainingFailed(f"{label} loss diverged")


def _check_architecture(previous: Optional[Dict[str, Any]], expected: str) -> None:
    if previous is not None and previous.get("architecture") != expected:
        raise TrainingFailed(
            f"previous weights are {previous.get('architecture')!r}, expected {expected!r}"
        )


# Dense regression heads (sequence and attention models)

def _head_loss(head: Network, features: Sequence[Matrix], targets: np.ndarray) -> float:
    if len(features) == 0:
        return 0.0
    errors = [float(predict(head, f).values[0, 0]) - t for f, t in zip(features, targets)]
    return float(np.mean(np.square(errors)))


def fit_head(
    head: Network,
    train_features: Sequence[Matrix],
    train_targets: np.ndarray,
    val_features: Sequence[Matrix],
    val_targets: np.ndarray,
    hp: Hyperparameters,
    rng: np.random.Generator,
) -> Tuple[Network, float, List[dict], List[dict]]:
    """Online SGD on a dense head. Returns (best head, best val loss, metrics)."""
    best_head = head
    best_val = _head_loss(head, val_features, val_targets)
    train_metrics: List[dict] = []
    val_metrics: List[dict] = []
    stale = 0

    for epoch in range(1, hp.epochs + 1):
        losses = []
        for i in _epoch_indices(len(train_features), hp.max_samples_per_epoch, rng):
            outputs = forward(head, train_features[i])
            head, loss = backprop(head, outputs, Matrix([[train_targets[i]]]), hp.learning_rate)
            losses.append(loss)
        train_loss = float(np.mean(losses)) if losses else 0.0
        val_loss = _head_loss(head, val_features, val_targets)
        _check_finite(train_loss, "training")
        _check_finite(val_loss, "validation")
        train_metrics.append({"epoch": epoch, "loss": train_loss})
        val_metrics.append({"epoch": epoch, "loss": val_loss})

        if val_loss < best_val:
            best_head, best_val, stale = head, val_loss, 0
        else:
            stale += 1
            if hp.patience and stale >= hp.patience:
                logger.info("[TRAIN] Early stop at epoch %d (best val %.5f)", epoch, best_val)
                break
    return best_head, best_val, train_metrics, val_metrics


def train_lstm(data: TrainingData, hp: Hyperparameters,
               previous: Optional[Dict[str, Any]] = None,
               rng: Optional[np.random.Generator] = None) -> TrainingResult:
    rng = rng or np.random.default_rng(hp.seed)
    _check_architecture(previous, "lstm")
    if previous is not None:
        cell, head = lstm.unpack_weights(previous)
    else:
        cell = lstm.init_cell(LSTM_HIDDEN_SIZE, rng)
        head = init_network([LSTM_HIDDEN_SIZE, HEAD_HIDDEN_SIZE, 1], ["relu", "linear"], rng)

    # The recurrent cell is fixed; hidden states only need computing once.
    hidden = [lstm.run_cell(cell, w) for w in data.windows]
    best_head, best_val, train_m, val_m = fit_head(
        head,
        hidden[: data.split], data.train_targets,
        hidden[data.split:], data.val_targets,
        hp, rng,
    )
    return TrainingResult(
        weights=lstm.pack_weights(cell, best_head),
        final_accuracy=regression_accuracy(best_val),
        training_metrics=train_m,
        validation_metrics=val_m,
    )


def train_transformer(data: TrainingData, hp: Hyperparameters,
                      previous: Optional[Dict[str, Any]] = None,
                      rng: Optional[np.random.Generator] = None) -> TrainingResult:
    rng = rng or np.random.default_rng(hp.seed)
    _check_architecture(previous, "transformer")
    if previous is not None:
        projections, head = transformer.unpack_weights(previous)
    else:
        projections = transformer.init_projections(ATTENTION_EMBED_DIM, rng)
        head = init_network([ATTENTION_EMBED_DIM, HEAD_HIDDEN_SIZE, 1], ["relu", "linear"], rng)

    pooled = [transformer.attention_pool(projections, w) for w in data.windows]
    best_head, best_val, train_m, val_m = fit_head(
        head,
        pooled[: data.split], data.train_targets,
        pooled[data.split:], data.val_targets,
        hp, rng,
    )
    return TrainingResult(
        weights=transformer.pack_weights(projections, best_head),
        final_accuracy=regression_accuracy(best_val),
        training_metrics=train_m,
        validation_metrics=val_m,
    )


# Boosted trees

def fit_stump(features: np.ndarray, residuals: np.ndarray) -> Dict[str, Any]:
    """Single split minimizing squared error; a leaf if nothing splits."""
    best: Optional[Dict[str, Any]] = None
    best_sse = float(np.sum((residuals - residuals.mean()) ** 2))
    for f in range(features.shape[1]):
        column = features[:, f]
        for threshold in np.unique(np.quantile(column, np.linspace(0.1, 0.9, 9))):
            left = column <= threshold
            if left.all() or not left.any():
                continue
            lv = float(residuals[left].mean())
            rv = float(residuals[~left].mean())
            sse = float(np.sum((residuals[left] - lv) ** 2) + np.sum((residuals[~left] - rv) ** 2))
            if sse < best_sse:
                best_sse = sse
                best = {
                    "feature": f,
                    "threshold": float(threshold),
                    "left": {"value": lv},
                    "right": {"value": rv},
                }
    return best or {"value": float(residuals.mean())}


def _tree_outputs(tree: Dict[str, Any], features: np.ndarray) -> np.ndarray:
    return np.array([boosted.traverse(tree, row) for row in features])


def train_boosted(data: TrainingData, hp: Hyperparameters,
                  previous: Optional[Dict[str, Any]] = None,
                  rng: Optional[np.random.Generator] = None) -> TrainingResult:
    rng = rng or np.random.default_rng(hp.seed)
    _check_architecture(previous, "xgboost")
    x = np.array([boosted.window_features(w) for w in data.windows])
    x_train, x_val = x[: data.split], x[data.split:]
    y_train, y_val = data.train_targets, data.val_targets

    if previous is not None:
        trees = list(previous.get("trees", []))
        base = float(previous.get("base_score", 0.0))
        lr = float(previous.get("learning_rate", BOOSTED_SHRINKAGE))
    else:
        trees, base, lr = [], float(np.mean(y_train)), BOOSTED_SHRINKAGE

    pred_train = np.full(len(y_train), base)
    pred_val = np.full(len(y_val), base)
    for tree in trees:
        pred_train += lr * _tree_outputs(tree, x_train)
        pred_val += lr * _tree_outputs(tree, x_val)

    def val_loss() -> float:
        return float(np.mean((pred_val - y_val) ** 2)) if len(y_val) else 0.0

    best_val, best_count = val_loss(), len(trees)
    train_metrics: List[dict] = []
    val_metrics: List[dict] = []
    stale = 0
    for epoch in range(1, hp.epochs + 1):
        if len(trees) >= MAX_TREES:
            break
        idx = _epoch_indices(len(y_train), hp.max_samples_per_epoch, rng)
        stump = fit_stump(x_train[idx], y_train[idx] - pred_train[idx])
        trees.append(stump)
        pred_train += lr * _tree_outputs(stump, x_train)
        pred_val += lr * _tree_outputs(stump, x_val)

        current = val_loss()
        train_metrics.append({"epoch": epoch, "loss": float(np.mean((pred_train - y_train) ** 2))})
        val_metrics.append({"epoch": epoch, "loss": current})
        if current < best_val:
            best_val, best_count, stale = current, len(trees), 0
        else:
            stale += 1
            if hp.patience and stale >= hp.patience:
                break

    weights = {
        "architecture": "xgboost",
        "base_score": base,
        "learning_rate": lr,
        "trees": trees[:best_count],
    }
    return TrainingResult(
        weights=weights,
        final_accuracy=regression_accuracy(best_val),
        training_metrics=train_metrics,
        validation_metrics=val_metrics,
    )


# Reinforcement learning

def action_rewards(move: float) -> np.ndarray:
    """Reward per action in Q order (BUY, SELL, HOLD) for a relative price move."""
    return np.array([move * REWARD_SCALE, -move * REWARD_SCALE, HOLD_PENALTY])


def _greedy(network: Network, state: np.ndarray) -> int:
    return int(np.argmax(rl.q_values(network, state)))


def hit_rate(network: Network, states: Sequence[np.ndarray], moves: np.ndarray) -> float:
    """Share of directional greedy actions that matched the next move."""
    hits = total = 0
    for state, move in zip(states, moves):
        action = rl.Q_ACTIONS[_greedy(network, state)]
        if action == Direction.HOLD or move == 0:
            continue
        total += 1
        hits += int((move > 0) == (action == Direction.BUY))
    return hits / total if total else 0.0


def train_rl(data: TrainingData, hp: Hyperparameters,
             previous: Optional[Dict[str, Any]] = None,
             rng: Optional[np.random.Generator] = None) -> TrainingResult:
    rng = rng or np.random.default_rng(hp.seed)
    _check_architecture(previous, "rl")
    network = rl.unpack_weights(previous) if previous is not None else init_network(
        RL_LAYERS, ["relu", "tanh", "linear"], rng
    )

    prices = data.prices
    states, moves = [], []
    for end in data.end_index:
        window = data.samples[end - data.sequence_length + 1: end + 1]
        states.append(rl.state_for_window(window))
        moves.append((prices[end + 1] - prices[end]) / prices[end] if prices[end] > 0 else 0.0)
    moves = np.array(moves)
    train_states, val_states = states[: data.split], states[data.split:]
    train_moves, val_moves = moves[: data.split], moves[data.split:]

    def loss_on(net: Network, sts, mvs) -> float:
        if len(sts) == 0:
            return 0.0
        return float(np.mean([
            np.mean((rl.q_values(net, s) - action_rewards(m)) ** 2) for s, m in zip(sts, mvs)
        ]))

    best_net, best_val = network, loss_on(network, val_states, val_moves)
    train_metrics: List[dict] = []
    val_metrics: List[dict] = []
    stale = 0
    for epoch in range(1, hp.epochs + 1):
        episode_reward = 0.0
        losses = []
        # one episode walks the sampled steps in time order
        for i in np.sort(_epoch_indices(len(train_states), hp.max_samples_per_epoch, rng)):
            rewards = action_rewards(train_moves[i])
            outputs = forward(network, Matrix.column(train_states[i]))
            episode_reward += float(rewards[int(np.argmax(outputs[-1].flatten()))])
            network, loss = backprop(network, outputs, Matrix.column(rewards), hp.learning_rate)
            losses.append(loss)

        train_loss = float(np.mean(losses)) if losses else 0.0
        current = loss_on(network, val_states, val_moves)
        _check_finite(train_loss, "training")
        _check_finite(current, "validation")
        train_metrics.append({"epoch": epoch, "loss": train_loss, "episode_reward": episode_reward})
        val_metrics.append({"epoch": epoch, "loss": current})
        if current < best_val:
            best_net, best_val, stale = network, current, 0
        else:
            stale += 1
            if hp.patience and stale >= hp.patience:
                break

    return TrainingResult(
        weights=rl.pack_weights(best_net),
        final_accuracy=hit_rate(best_net, val_states, val_moves),
        training_metrics=train_metrics,
        validation_metrics=val_metrics,
    )


TRAINERS: Dict[ModelType, Callable[..., TrainingResult]] = {
    ModelType.LSTM: train_lstm,
    ModelType.TRANSFORMER: train_transformer,
    ModelType.XGBOOST: train_boosted,
    ModelType.RL: train_rl,
}
