"""In-process training service.

Training is CPU bound, so it runs in a worker thread and the event loop
keeps serving the trading cycles.
"""

import asyncio
import time

import numpy as np

from core.errors import TrainingFailed
from core.logging_utils import get_logger
from core.trading_interfaces import ITrainingService, TrainingRequest, TrainingResponse
from training.data import prepare_training_data
from training.trainers import TRAINERS

logger = get_logger(__name__)


def run_training(request: TrainingRequest) -> TrainingResponse:
    """Blocking training call; raises TrainingFailed on bad input."""
    trainer = TRAINERS.get(request.model_type)
    if trainer is None:
        raise TrainingFailed(f"no trainer for {request.model_type}")

    hp = request.hyperparameters
    data = prepare_training_data(request.historical_samples, hp.sequence_length)
    started = time.monotonic()
    result = trainer(data, hp, request.previous_weights, np.random.default_rng(hp.seed))
    logger.info(
        "[TRAIN] %s/%s %s: %d windows, %d epochs, accuracy %.3f in %.1fs",
        request.model_type.value, request.symbol, request.mode.value, len(data),
        len(result.training_metrics), result.final_accuracy, time.monotonic() - started,
    )
    return TrainingResponse(
        weights=result.weights,
        training_metrics=result.training_metrics,
        validation_metrics=result.validation_metrics,
        final_accuracy=result.final_accuracy,
        mode=request.mode,
    )


class LocalTrainingService(ITrainingService):
    async def train(self, request: TrainingRequest) -> TrainingResponse:
        return await asyncio.to_thread(run_training, request)
