"""Versions, training pipeline, trainers and the auto-retrain scheduler."""

import asyncio
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from core.errors import TrainingFailed
from core.models import Direction, JobStatus, ModelType, ModelVersion, TrainingMode
from core.storage import MemoryObjectStore
from core.trading_interfaces import Hyperparameters, InferenceRequest, TrainingRequest, TrainingResponse
from logic.model_performance import ModelPerformanceTracker
from logic.predictor import LocalInferenceService
from training.data import prepare_training_data
from training.pipeline import TrainingPipeline, default_hyperparameters
from training.retrain import AutoRetrainer
from training.service import LocalTrainingService, run_training
from training.trainers import action_rewards, fit_stump, regression_accuracy
from training.versions import VersionRegistry
from tests.test_helpers import FailingStore, make_prediction, make_samples


class StubTrainingService:
    """Returns canned accuracies in order; records each request."""

    def __init__(self, *accuracies, error=None):
        self.accuracies = list(accuracies)
        self.error = error
        self.requests = []

    async def train(self, request: TrainingRequest) -> TrainingResponse:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        accuracy = self.accuracies.pop(0)
        return TrainingResponse(
            weights={"architecture": request.model_type.value, "marker": accuracy},
            training_metrics=[{"epoch": 1, "loss": 0.5}],
            validation_metrics=[{"epoch": 1, "loss": 0.4}],
            final_accuracy=accuracy,
            mode=request.mode,
        )


WEIGHTS = {"architecture": "lstm"}


class YieldingStore(MemoryObjectStore):
    """Memory store whose reads and writes suspend like real I/O."""

    async def get(self, path):
        await asyncio.sleep(0)
        return await super().get(path)

    async def put(self, path, data, content_type="application/json", metadata=None):
        await asyncio.sleep(0)
        await super().put(path, data, content_type, metadata)


class TestVersionRegistry:
    @pytest.mark.asyncio
    async def test_at_most_one_active(self, memory_store):
        registry = VersionRegistry(memory_store)
        first = await registry.register(ModelType.LSTM, "EURUSD", WEIGHTS, 0.7, 0.7, activate=True)
        second = await registry.register(ModelType.LSTM, "EURUSD", WEIGHTS, 0.75, 0.75, activate=True)

        assert (first.version, second.version) == (1, 2)
        assert await registry.active_count(ModelType.LSTM, "EURUSD") == 1
        assert (await registry.active(ModelType.LSTM, "EURUSD")).version == 2

        # the index on disk agrees after a fresh load
        reloaded = VersionRegistry(memory_store)
        assert [v.active for v in await reloaded.versions(ModelType.LSTM, "EURUSD")] == [False, True]

    @pytest.mark.asyncio
    async def test_inactive_registration_keeps_active(self, memory_store):
        registry = VersionRegistry(memory_store)
        await registry.register(ModelType.RL, "GOLD", WEIGHTS, 0.7, 0.7, activate=True)
        await registry.register(ModelType.RL, "GOLD", WEIGHTS, 0.5, 0.5, activate=False)
        assert (await registry.active(ModelType.RL, "GOLD")).version == 1

    @pytest.mark.asyncio
    async def test_pruning_keeps_newest_and_active(self, memory_store):
        registry = VersionRegistry(memory_store, max_versions=5)
        await registry.register(ModelType.LSTM, "EURUSD", WEIGHTS, 0.9, 0.9, activate=True)
        for _ in range(6):
            await registry.register(ModelType.LSTM, "EURUSD", WEIGHTS, 0.5, 0.5)

        versions = await registry.versions(ModelType.LSTM, "EURUSD")
        assert [v.version for v in versions] == [1, 3, 4, 5, 6, 7]
        assert await memory_store.get("models/lstm/EURUSD/v2.json") is None
        assert await memory_store.get("models/lstm/EURUSD/v1.json") is not None

    @pytest.mark.asyncio
    async def test_pairs_are_independent(self, memory_store):
        registry = VersionRegistry(memory_store)
        await registry.register(ModelType.LSTM, "EURUSD", WEIGHTS, 0.7, 0.7, activate=True)
        assert await registry.active(ModelType.LSTM, "GBPUSD") is None
        assert await registry.active(ModelType.RL, "EURUSD") is None

    @pytest.mark.asyncio
    async def test_find_and_weights(self, memory_store):
        registry = VersionRegistry(memory_store)
        await registry.register(ModelType.XGBOOST, "EURUSD", {"architecture": "xgboost", "trees": []},
                                0.7, 0.7, activate=True)
        found = await registry.find("xgboost:EURUSD:v1")
        assert found.version_id == "xgboost:EURUSD:v1"
        assert await registry.find("nonsense") is None

        version, weights = await VersionRegistry(memory_store).active_weights(ModelType.XGBOOST, "EURUSD")
        assert version.version == 1
        assert weights["architecture"] == "xgboost"

    @pytest.mark.asyncio
    async def test_registries_sharing_a_store_see_each_others_versions(self, memory_store):
        first = VersionRegistry(memory_store)
        second = VersionRegistry(memory_store)
        assert await first.active(ModelType.LSTM, "EURUSD") is None

        await second.register(ModelType.LSTM, "EURUSD", WEIGHTS, 0.9, 0.9, activate=True)
        late = await first.register(ModelType.LSTM, "EURUSD", WEIGHTS, 0.5, 0.5, promote_if_within=0.05)

        assert late.version == 2
        assert not late.active
        fresh = VersionRegistry(memory_store)
        assert [v.version for v in await fresh.versions(ModelType.LSTM, "EURUSD")] == [1, 2]
        assert (await fresh.active(ModelType.LSTM, "EURUSD")).training_accuracy == 0.9

    @pytest.mark.asyncio
    async def test_concurrent_promotions_decide_under_one_lock(self):
        store = YieldingStore()
        first, second = VersionRegistry(store), VersionRegistry(store)

        strong, weak = await asyncio.gather(
            first.register(ModelType.RL, "GOLD", WEIGHTS, 0.9, 0.9, promote_if_within=0.05),
            second.register(ModelType.RL, "GOLD", WEIGHTS, 0.5, 0.5, promote_if_within=0.05),
        )

        assert (strong.version, strong.active) == (1, True)
        assert (weak.version, weak.active) == (2, False)
        assert await VersionRegistry(store).active_count(ModelType.RL, "GOLD") == 1

    @pytest.mark.asyncio
    async def test_failed_index_write_leaves_no_orphan(self):
        store = FailingStore(fail_prefix="models/lstm/EURUSD/index")
        registry = VersionRegistry(store)
        with pytest.raises(Exception):
            await registry.register(ModelType.LSTM, "EURUSD", WEIGHTS, 0.7, 0.7, activate=True)
        assert await store.list("models/") == []

    def test_promotion_tolerance(self, memory_store):
        registry = VersionRegistry(memory_store)
        current = ModelVersion(ModelType.LSTM, "EURUSD", 1, "p", 0.7, 0.7, active=True)
        assert registry.should_activate(None, 0.1)
        assert registry.should_activate(current, 0.65)
        assert not registry.should_activate(current, 0.64)


class TestTrainingPipeline:
    @pytest.mark.asyncio
    async def test_promotes_only_within_tolerance(self, memory_store):
        registry = VersionRegistry(memory_store)
        pipeline = TrainingPipeline(registry, StubTrainingService(0.7, 0.6, 0.66), memory_store)

        first = await pipeline.run(ModelType.LSTM, "EURUSD", [])
        second = await pipeline.run(ModelType.LSTM, "EURUSD", [])
        third = await pipeline.run(ModelType.LSTM, "EURUSD", [])

        assert (first.promoted, second.promoted, third.promoted) == (True, False, True)
        assert second.status == JobStatus.COMPLETED
        assert (await registry.active(ModelType.LSTM, "EURUSD")).version == 3
        assert await registry.active_count(ModelType.LSTM, "EURUSD") == 1

    @pytest.mark.asyncio
    async def test_transfer_without_weights_runs_full(self, memory_store):
        service = StubTrainingService(0.7)
        pipeline = TrainingPipeline(VersionRegistry(memory_store), service, memory_store)
        job = await pipeline.run(ModelType.RL, "EURUSD", [], TrainingMode.FINE_TUNE)

        assert job.mode == TrainingMode.FULL
        assert job.requested_mode == TrainingMode.FINE_TUNE
        assert service.requests[0].mode == TrainingMode.FULL
        assert service.requests[0].previous_weights is None
        assert job.hyperparameters["epochs"] == 6

    @pytest.mark.asyncio
    async def test_fine_tune_gets_previous_weights(self, memory_store):
        service = StubTrainingService(0.7, 0.72)
        pipeline = TrainingPipeline(VersionRegistry(memory_store), service, memory_store)
        await pipeline.run(ModelType.RL, "EURUSD", [])
        job = await pipeline.run(ModelType.RL, "EURUSD", [], TrainingMode.FINE_TUNE)

        request = service.requests[1]
        assert request.mode == TrainingMode.FINE_TUNE
        assert request.previous_weights == {"architecture": "rl", "marker": 0.7}
        assert request.previous_weights_id == "rl:EURUSD:v1"
        assert request.hyperparameters.learning_rate == pytest.approx(0.0001)
        assert request.hyperparameters.patience == 10
        assert job.previous_version_id == "rl:EURUSD:v1"

    @pytest.mark.asyncio
    async def test_failed_job_is_stored_and_active_kept(self, memory_store):
        registry = VersionRegistry(memory_store)
        await TrainingPipeline(registry, StubTrainingService(0.7), memory_store).run(ModelType.LSTM, "EURUSD", [])

        failing = TrainingPipeline(registry, StubTrainingService(error=TrainingFailed("loss diverged")), memory_store)
        job = await failing.run(ModelType.LSTM, "EURUSD", [])

        assert job.status == JobStatus.FAILED
        assert "loss diverged" in job.error
        stored = await failing.load_job(job.job_id)
        assert stored["status"] == "failed"
        assert (await registry.active(ModelType.LSTM, "EURUSD")).version == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_job(self, memory_store):
        pipeline = TrainingPipeline(VersionRegistry(memory_store),
                                    StubTrainingService(error=RuntimeError("worker died")), memory_store)
        job = await pipeline.run(ModelType.LSTM, "EURUSD", [])
        assert job.status == JobStatus.FAILED
        assert job.error == "RuntimeError: worker died"

    @pytest.mark.asyncio
    async def test_jobs_are_journaled(self, memory_store, tmp_path):
        from core.journal import Journal

        journal = Journal("s1", tmp_path)
        pipeline = TrainingPipeline(VersionRegistry(memory_store), StubTrainingService(0.7), memory_store, journal)
        job = await pipeline.run(ModelType.LSTM, "EURUSD", [])
        records = journal.read("training")
        assert records[-1]["job_id"] == job.job_id
        assert records[-1]["status"] == "completed"

    def test_default_hyperparameters(self):
        full = default_hyperparameters(TrainingMode.FULL)
        assert (full.epochs, full.patience, full.sequence_length) == (6, None, 30)
        incremental = default_hyperparameters(TrainingMode.INCREMENTAL, seed=7)
        assert (incremental.epochs, incremental.seed) == (2, 7)


class TestLocalTraining:
    def test_data_needs_enough_samples(self):
        with pytest.raises(TrainingFailed, match="need at least 35"):
            prepare_training_data(make_samples(n=34), 30)

    def test_windows_are_normalized_and_split(self):
        data = prepare_training_data(make_samples(n=80), 30)
        assert len(data) == 50
        assert data.split == 40
        assert data.train_windows.shape == (40, 30)
        assert data.val_windows.shape == (10, 30)
        assert data.windows.shape == (50, 30)
        assert np.allclose(data.windows.mean(axis=1), 0.0, atol=1e-9)
        assert data.end_index[0] == 29

    @pytest.mark.parametrize("model_type", list(ModelType))
    @pytest.mark.asyncio
    async def test_quick_training_run(self, model_type, memory_store, rising_samples):
        registry = VersionRegistry(memory_store)
        pipeline = TrainingPipeline(registry, LocalTrainingService(), memory_store)
        hp = default_hyperparameters(TrainingMode.FULL, seed=1)
        job = await pipeline.run(model_type, "EURUSD", rising_samples, hyperparameters=hp)

        assert job.status == JobStatus.COMPLETED, job.error
        assert 0.0 <= job.final_accuracy <= 1.0
        assert job.promoted
        assert 1 <= len(job.loss_history) <= 6

        service = LocalInferenceService(registry)
        response = await service.infer(InferenceRequest(model_type, "EURUSD", rising_samples))
        assert response.features.weights_version == 1
        assert response.direction in (Direction.BUY, Direction.SELL, Direction.HOLD)

    @pytest.mark.asyncio
    async def test_fine_tune_on_trained_weights(self, memory_store, rising_samples):
        registry = VersionRegistry(memory_store)
        pipeline = TrainingPipeline(registry, LocalTrainingService(), memory_store, promotion_tolerance=1.0)
        await pipeline.run(ModelType.LSTM, "EURUSD", rising_samples)
        job = await pipeline.run(ModelType.LSTM, "EURUSD", rising_samples, TrainingMode.FINE_TUNE)
        assert job.status == JobStatus.COMPLETED, job.error
        assert job.mode == TrainingMode.FINE_TUNE
        assert len(await registry.versions(ModelType.LSTM, "EURUSD")) == 2

    def test_mismatched_previous_weights_fail(self, rising_samples):
        request = TrainingRequest(
            model_type=ModelType.LSTM,
            symbol="EURUSD",
            mode=TrainingMode.FINE_TUNE,
            model_id="lstm:EURUSD",
            historical_samples=rising_samples,
            hyperparameters=Hyperparameters(epochs=1, sequence_length=30),
            previous_weights={"architecture": "rl"},
        )
        with pytest.raises(TrainingFailed, match="expected 'lstm'"):
            run_training(request)

    def test_stump_splits_on_informative_feature(self):
        features = np.array([[0.0, float(i)] for i in range(10)])
        residuals = np.array([-1.0] * 5 + [1.0] * 5)
        stump = fit_stump(features, residuals)
        assert stump["feature"] == 1
        assert stump["left"]["value"] == pytest.approx(-1.0)
        assert fit_stump(np.zeros((4, 2)), np.ones(4)) == {"value": 1.0}

    def test_reward_shapes(self):
        assert action_rewards(0.01).tolist() == pytest.approx([1.0, -1.0, -0.01])
        assert regression_accuracy(0.25) == pytest.approx(0.5)
        assert regression_accuracy(4.0) == 0.0


class TestAutoRetrainer:
    def _retrainer(self, memory_store, service=None, tracker=None):
        registry = VersionRegistry(memory_store)
        pipeline = TrainingPipeline(registry, service or StubTrainingService(0.8, 0.8, 0.8, 0.8), memory_store)
        return AutoRetrainer(pipeline, registry, tracker or ModelPerformanceTracker()), registry

    def test_select_mode(self, memory_store):
        retrainer, _ = self._retrainer(memory_store)
        now = datetime.now(timezone.utc)
        fresh = ModelVersion(ModelType.LSTM, "EURUSD", 1, "p", 0.78, 0.78, active=True,
                             created_at=now.isoformat())
        old = ModelVersion(ModelType.LSTM, "EURUSD", 1, "p", 0.78, 0.78, active=True,
                           created_at=(now - timedelta(days=20)).isoformat())

        assert retrainer.select_mode(None, None, now) == TrainingMode.FULL
        assert retrainer.select_mode(fresh, 0.5, now) == TrainingMode.FULL
        assert retrainer.select_mode(fresh, 0.68, now) == TrainingMode.FINE_TUNE
        assert retrainer.select_mode(fresh, None, now) == TrainingMode.INCREMENTAL
        assert retrainer.select_mode(old, None, now) == TrainingMode.FINE_TUNE

    @pytest.mark.asyncio
    async def test_untrained_pairs_retrain_fully(self, memory_store):
        retrainer, _ = self._retrainer(memory_store)
        decision = await retrainer.evaluate(ModelType.LSTM, "EURUSD")
        assert decision.mode == TrainingMode.FULL
        assert decision.reasons == ["never trained"]

    @pytest.mark.asyncio
    async def test_healthy_model_is_left_alone(self, memory_store):
        retrainer, registry = self._retrainer(memory_store)
        await registry.register(ModelType.LSTM, "EURUSD", WEIGHTS, 0.8, 0.8, activate=True)
        assert await retrainer.evaluate(ModelType.LSTM, "EURUSD") is None
        decision = await retrainer.evaluate(ModelType.LSTM, "EURUSD", drawdown=0.2)
        assert decision.reasons == ["drawdown 20.00%"]

    @pytest.mark.asyncio
    async def test_poor_live_accuracy_triggers_retrain(self, memory_store):
        tracker = ModelPerformanceTracker()
        for _ in range(3):
            tracker.record_outcome({"lstm": make_prediction("lstm", Direction.BUY, 0.8)}, Direction.BUY, -0.01)
        retrainer, registry = self._retrainer(memory_store, tracker=tracker)
        await registry.register(ModelType.LSTM, "EURUSD", WEIGHTS, 0.8, 0.8, activate=True)

        decision = await retrainer.evaluate(ModelType.LSTM, "EURUSD")
        assert decision.reasons[0].startswith("accuracy 0.00")
        assert decision.mode == TrainingMode.FULL

    @pytest.mark.asyncio
    async def test_check_and_retrain_runs_jobs(self, memory_store):
        retrainer, registry = self._retrainer(memory_store)
        jobs = await retrainer.check_and_retrain("EURUSD", [], model_types=[ModelType.LSTM, ModelType.RL])
        assert [j.status for j in jobs] == [JobStatus.COMPLETED, JobStatus.COMPLETED]
        assert await registry.active(ModelType.RL, "EURUSD") is not None
        assert await retrainer.check_and_retrain("EURUSD", [], model_types=[ModelType.LSTM]) == []
