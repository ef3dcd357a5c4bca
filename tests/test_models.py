"""Model inference: rule fallbacks, weighted forward passes, cross-checks."""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from core.models import ACTION_CLASSES, Direction, MarketSample, ModelType
from logic.models import (
    AttentionModel,
    BoostedTreeModel,
    ModelInput,
    ReinforcementModel,
    RuleSignals,
    SequenceModel,
    build_models,
)
from logic.models import lstm, rl, transformer
from logic.models.boosted import traverse, window_features
from logic.tensor import init_network
from tests.test_helpers import make_samples


def zigzag_samples(n=40, up=0.006, down=0.003, symbol="EURUSD"):
    """Alternating up/down ticks: trending but with RSI below the extremes."""
    now = datetime.now(timezone.utc)
    price = 1.1
    samples = []
    for i in range(n):
        samples.append(MarketSample(symbol, price * 0.99995, price * 1.00005, 1000.0,
                                    now - timedelta(seconds=n - i)))
        price *= (1 + up) if i % 2 == 0 else (1 - down)
    return samples


def random_weights(model_type: ModelType, rng: np.random.Generator) -> dict:
    if model_type == ModelType.LSTM:
        return lstm.pack_weights(lstm.init_cell(16, rng), init_network([16, 32, 1], ["relu", "linear"], rng))
    if model_type == ModelType.TRANSFORMER:
        return transformer.pack_weights(
            transformer.init_projections(16, rng), init_network([16, 32, 1], ["relu", "linear"], rng)
        )
    if model_type == ModelType.RL:
        return rl.pack_weights(init_network([8, 64, 32, 3], ["relu", "tanh", "linear"], rng))
    return {"architecture": "xgboost", "base_score": 0.0, "learning_rate": 0.1, "trees": []}


class TestRuleFallback:
    @pytest.mark.parametrize("model_type", list(ModelType))
    def test_flat_series_holds_at_neutral_confidence(self, model_type):
        model = build_models()[model_type]
        data = ModelInput.from_samples("EURUSD", make_samples(n=40, step_pct=0.0))
        pred = model.predict(data)
        assert pred.direction == Direction.HOLD
        assert pred.confidence == 0.5
        assert pred.model_id == model_type.value
        assert pred.target_price == pytest.approx(data.price)
        assert pred.features.extensions["rule_based"] is True

    def test_no_samples(self):
        pred = SequenceModel().predict(ModelInput.from_samples("EURUSD", []))
        assert pred.direction == Direction.HOLD
        assert (pred.target_price, pred.stop_loss, pred.take_profit) == (0.0, 0.0, 0.0)

    def test_sequence_rules_follow_trend(self):
        model = SequenceModel()
        up = model.predict(ModelInput.from_samples("EURUSD", zigzag_samples()))
        assert up.direction == Direction.BUY
        assert up.confidence == 0.65
        assert up.take_profit > up.target_price > up.stop_loss

        down = model.predict(ModelInput.from_samples("EURUSD", zigzag_samples(up=0.003, down=0.006)))
        assert down.direction == Direction.SELL
        assert down.take_profit < down.target_price < down.stop_loss

    def test_attention_rules_follow_trend(self):
        pred = AttentionModel().predict(ModelInput.from_samples("EURUSD", zigzag_samples()))
        assert pred.direction == Direction.BUY

    def test_short_history_ignores_weights(self):
        model = SequenceModel(sequence_length=30)
        weights = random_weights(ModelType.LSTM, np.random.default_rng(0))
        pred = model.predict(ModelInput.from_samples("EURUSD", make_samples(n=10)), weights, version=3)
        assert pred.features.extensions.get("rule_based") is True
        assert pred.features.weights_version is None


class TestWeightedInference:
    @pytest.mark.parametrize("model_type", list(ModelType))
    def test_forward_pass_produces_distribution(self, model_type):
        model = build_models()[model_type]
        weights = random_weights(model_type, np.random.default_rng(42))
        data = ModelInput.from_samples("EURUSD", make_samples(n=40, step_pct=0.0005))
        pred = model.predict(data, weights, version=2)

        probs = pred.features.extensions["probabilities"]
        assert len(probs) == 3
        assert sum(probs) == pytest.approx(1.0)
        assert pred.features.raw_direction in ACTION_CLASSES
        assert pred.features.weights_version == 2
        assert 0.0 < pred.confidence <= 1.0
        assert pred.direction in ACTION_CLASSES

    def test_boosted_trees_drive_direction(self):
        weights = {"architecture": "xgboost", "base_score": 5.0, "learning_rate": 0.1, "trees": []}
        data = ModelInput.from_samples("EURUSD", make_samples(n=40, step_pct=0.0))
        pred = BoostedTreeModel().predict(data, weights, version=1)
        assert pred.direction == Direction.BUY
        assert pred.confidence == pytest.approx(0.92, abs=0.01)
        assert pred.target_price == pytest.approx(data.price * 1.02)

    def test_tree_traversal(self):
        tree = {"feature": 7, "threshold": 0.0, "left": {"value": -1.0}, "right": {"value": 1.0}}
        assert traverse(tree, window_features([0.0, 1.0])) == 1.0
        assert traverse(tree, window_features([1.0, 0.0])) == -1.0

    def test_window_features_pad_short_windows(self):
        features = window_features([1.0, 2.0])
        assert len(features) == 8
        assert features[:3].tolist() == [0.0, 0.0, 0.0]

    def test_rl_state_has_eight_features(self):
        state = rl.state_for_window(make_samples(n=40), [1.0, -2.0])
        assert state.shape == (8,)
        assert np.all(np.isfinite(state))


class TestCrossCheck:
    def _model(self, bullish, bearish):
        model = SequenceModel(agree_boost=1.15, contradict_factor=0.7, boost_cap=0.95, hold_floor=0.6)
        model.rule_signals = lambda data: RuleSignals(bullish=bullish, bearish=bearish)
        return model

    def test_agreement_boosts_up_to_cap(self):
        data = ModelInput.from_samples("EURUSD", make_samples(n=5))
        assert self._model(True, False).cross_check(Direction.BUY, 0.7, data) == (
            Direction.BUY, pytest.approx(0.805), True)
        assert self._model(True, False).cross_check(Direction.BUY, 0.9, data)[1] == 0.95

    def test_contradiction_discounts_and_may_hold(self):
        data = ModelInput.from_samples("EURUSD", make_samples(n=5))
        direction, confidence, agreement = self._model(True, False).cross_check(Direction.SELL, 0.8, data)
        assert direction == Direction.HOLD
        assert confidence == pytest.approx(0.56)
        assert agreement is False

        direction, confidence, _ = self._model(True, False).cross_check(Direction.SELL, 0.95, data)
        assert direction == Direction.SELL
        assert confidence == pytest.approx(0.665)

    def test_hold_is_untouched(self):
        data = ModelInput.from_samples("EURUSD", make_samples(n=5))
        assert self._model(True, True).cross_check(Direction.HOLD, 0.4, data) == (Direction.HOLD, 0.4, None)

    def test_configured_multipliers_are_used(self):
        model = ReinforcementModel()
        assert (model.agree_boost, model.contradict_factor) == (1.2, 0.65)
