"""Training pipeline: run a job, compare against the active version, promote or keep.

A job that asks for fine_tune or incremental without usable active
weights trains from scratch instead of failing. A failed job is stored
with status=failed and leaves the active version alone.
"""

from typing import List, Optional

from core.config import settings
from core.errors import PersistenceFailure, TrainingFailed
from core.journal import Journal, utc_iso_str
from core.logging_utils import get_logger
from core.models import MarketSample, ModelType, TrainingJob, TrainingMode
from core.storage import get_json, put_json
from core.trading_interfaces import Hyperparameters, IObjectStore, ITrainingService, TrainingRequest
from training.versions import VersionRegistry

logger = get_logger(__name__)


def default_hyperparameters(mode: TrainingMode, **overrides) -> Hyperparameters:
    hp = Hyperparameters(
        epochs=settings.epochs_for(mode.value),
        learning_rate=settings.learning_rate_for(mode.value),
        batch_size=settings.batch_size,
        sequence_length=settings.sequence_length,
        patience=None if mode == TrainingMode.FULL else settings.early_stopping_patience,
        max_samples_per_epoch=settings.max_samples_per_epoch,
    )
    for key, value in overrides.items():
        if value is not None and hasattr(hp, key):
            setattr(hp, key, value)
    return hp


class TrainingPipeline:
    def __init__(
        self,
        registry: VersionRegistry,
        service: ITrainingService,
        store: IObjectStore,
        journal: Optional[Journal] = None,
        promotion_tolerance: Optional[float] = None,
    ):
        self.registry = registry
        self.service = service
        self.store = store
        self.journal = journal
        self.promotion_tolerance = (
            promotion_tolerance if promotion_tolerance is not None else settings.promotion_tolerance
        )

    @staticmethod
    def job_path(job_id: str) -> str:
        return f"training/jobs/{job_id}.json"

    async def _persist(self, job: TrainingJob) -> None:
        try:
            await put_json(self.store, self.job_path(job.job_id), job.to_dict())
        except PersistenceFailure as e:
            logger.error("[TRAIN] Could not persist job %s: %s", job.job_id, e.cause)

    def _journal(self, job: TrainingJob) -> None:
        if self.journal is None:
            return
        try:
            self.journal.training({"ts": utc_iso_str(), **job.to_dict()})
        except OSError as e:
            logger.error("[TRAIN] Journal write failed: %s", e)

    async def run(
        self,
        model_type: ModelType,
        symbol: str,
        samples: List[MarketSample],
        mode: TrainingMode = TrainingMode.FULL,
        hyperparameters: Optional[Hyperparameters] = None,
    ) -> TrainingJob:
        """Train one model for one symbol. Never raises for training errors."""
        requested = mode
        previous_weights = None
        previous_id = None
        if mode != TrainingMode.FULL:
            active, previous_weights = await self.registry.active_weights(model_type, symbol)
            if active is None or previous_weights is None:
                logger.info("[TRAIN] No active weights for %s/%s, %s falls back to full",
                            model_type.value, symbol, mode.value)
                mode = TrainingMode.FULL
                previous_weights = None
            else:
                previous_id = active.version_id

        hp = hyperparameters or default_hyperparameters(mode)
        if hyperparameters is not None and requested != mode:
            # transfer-mode budgets do not apply to a fresh start
            hp = default_hyperparameters(
                mode,
                sequence_length=hyperparameters.sequence_length,
                max_samples_per_epoch=hyperparameters.max_samples_per_epoch,
                seed=hyperparameters.seed,
            )

        job = TrainingJob(
            model_type=model_type,
            symbol=symbol,
            mode=mode,
            requested_mode=requested,
            hyperparameters=hp.to_dict(),
            previous_version_id=previous_id,
        )
        await self._persist(job)

        job.start()
        await self._persist(job)
        logger.info("[TRAIN] Job %s started: %s/%s %s", job.job_id, model_type.value, symbol, mode.value)

        try:
            response = await self.service.train(TrainingRequest(
                model_type=model_type,
                symbol=symbol,
                mode=mode,
                model_id=f"{model_type.value}:{symbol}",
                historical_samples=samples,
                hyperparameters=hp,
                previous_weights_id=previous_id,
                previous_weights=previous_weights,
            ))
            job.loss_history = [
                {"epoch": t.get("epoch"), "train": t.get("loss"), "validation": v.get("loss")}
                for t, v in zip(response.training_metrics, response.validation_metrics)
            ]
            job.accuracy_history.append(response.final_accuracy)

            version = await self.registry.register(
                model_type,
                symbol,
                response.weights,
                training_accuracy=response.final_accuracy,
                validation_accuracy=response.final_accuracy,
                mode=mode,
                promote_if_within=self.promotion_tolerance,
            )
            promote = version.active
        except (TrainingFailed, PersistenceFailure) as e:
            job.fail(str(e))
            logger.error("[TRAIN] Job %s failed: %s", job.job_id, e)
        except Exception as e:
            job.fail(f"{type(e).__name__}: {e}")
            logger.exception("[TRAIN] Job %s crashed", job.job_id)
        else:
            job.complete(response.final_accuracy, version.version, promote)
            if not promote:
                current = await self.registry.active(model_type, symbol)
                logger.info(
                    "[TRAIN] %s kept inactive: accuracy %.3f vs active %.3f",
                    version.version_id, response.final_accuracy,
                    current.training_accuracy if current else 0.0,
                )

        await self._persist(job)
        self._journal(job)
        return job

    async def load_job(self, job_id: str) -> Optional[dict]:
        return await get_json(self.store, self.job_path(job_id))
