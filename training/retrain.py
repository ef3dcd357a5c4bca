"""Auto-retrain scheduler.

Decides when a (model type, symbol) pair needs retraining and which
mode to use, then hands the job to the training pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set, Tuple

from core.config import settings
from core.logging_utils import get_logger
from core.models import MarketSample, ModelType, ModelVersion, TrainingJob, TrainingMode
from logic.model_performance import ModelPerformanceTracker
from training.pipeline import TrainingPipeline
from training.versions import VersionRegistry

logger = get_logger(__name__)


@dataclass
class RetrainDecision:
    model_type: ModelType
    symbol: str
    mode: TrainingMode
    reasons: List[str] = field(default_factory=list)


class AutoRetrainer:
    def __init__(
        self,
        pipeline: TrainingPipeline,
        registry: VersionRegistry,
        tracker: ModelPerformanceTracker,
        max_age_days: Optional[float] = None,
        min_accuracy: Optional[float] = None,
        min_win_rate: Optional[float] = None,
        min_trades: Optional[int] = None,
        max_drawdown: Optional[float] = None,
        expected_accuracy: Optional[float] = None,
    ):
        self.pipeline = pipeline
        self.registry = registry
        self.tracker = tracker
        self.max_age_days = max_age_days if max_age_days is not None else settings.retrain_max_age_days
        self.min_accuracy = min_accuracy if min_accuracy is not None else settings.retrain_min_accuracy
        self.min_win_rate = min_win_rate if min_win_rate is not None else settings.retrain_min_win_rate
        self.min_trades = min_trades if min_trades is not None else settings.retrain_min_trades
        self.max_drawdown = max_drawdown if max_drawdown is not None else settings.retrain_max_drawdown
        self.expected_accuracy = expected_accuracy if expected_accuracy is not None else settings.expected_accuracy
        self._running: Set[Tuple[ModelType, str]] = set()

    @staticmethod
    def _age_days(version: Optional[ModelVersion], now: datetime) -> float:
        if version is None:
            return float("inf")
        created = version.created
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (now - created).total_seconds() / 86400

    def select_mode(self, version: Optional[ModelVersion], accuracy: Optional[float],
                    now: Optional[datetime] = None) -> TrainingMode:
        if version is None:
            return TrainingMode.FULL
        now = now or datetime.now(timezone.utc)
        current = accuracy if accuracy is not None else version.training_accuracy
        drop = (self.expected_accuracy - current) / self.expected_accuracy if self.expected_accuracy > 0 else 0.0
        if drop > 0.3:
            return TrainingMode.FULL
        if drop > 0.1 or self._age_days(version, now) > 14:
            return TrainingMode.FINE_TUNE
        return TrainingMode.INCREMENTAL

    async def evaluate(self, model_type: ModelType, symbol: str, drawdown: float = 0.0,
                       now: Optional[datetime] = None) -> Optional[RetrainDecision]:
        now = now or datetime.now(timezone.utc)
        version = await self.registry.active(model_type, symbol)
        stats = self.tracker.summary(model_type.value, now)
        reasons = []

        age = self._age_days(version, now)
        if age > self.max_age_days:
            reasons.append("never trained" if version is None else f"{age:.1f} days since training")
        accuracy = stats.get("accuracy")
        if accuracy is not None and accuracy < self.min_accuracy:
            reasons.append(f"accuracy {accuracy:.2f} < {self.min_accuracy:.2f}")
        win_rate = stats.get("win_rate")
        if win_rate is not None and stats.get("trades", 0) > self.min_trades and win_rate < self.min_win_rate:
            reasons.append(f"win rate {win_rate:.2f} < {self.min_win_rate:.2f}")
        if drawdown > self.max_drawdown:
            reasons.append(f"drawdown {drawdown:.2%}")

        if not reasons:
            return None
        return RetrainDecision(
            model_type=model_type,
            symbol=symbol,
            mode=self.select_mode(version, accuracy, now),
            reasons=reasons,
        )

    async def check_and_retrain(
        self,
        symbol: str,
        samples: List[MarketSample],
        drawdown: float = 0.0,
        model_types: Iterable[ModelType] = tuple(ModelType),
    ) -> List[TrainingJob]:
        jobs = []
        for model_type in model_types:
            key = (model_type, symbol)
            if key in self._running:
                continue
            decision = await self.evaluate(model_type, symbol, drawdown)
            if decision is None:
                continue
            logger.info("[TRAIN] Retrain %s/%s (%s): %s", model_type.value, symbol,
                        decision.mode.value, "; ".join(decision.reasons))
            self._running.add(key)
            try:
                jobs.append(await self.pipeline.run(model_type, symbol, samples, decision.mode))
            finally:
                self._running.discard(key)
        return jobs
