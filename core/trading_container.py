"""Simple dependency injection container for one trading session's components."""

from pathlib import Path
from typing import Any, Dict, List, Optional

from core.audit import AuditLog
from core.config import settings
from core.events import EngineEventBus
from core.journal import Journal
from core.models import SampleHistory
from core.storage import BackgroundSaver, FileObjectStore, MemoryObjectStore
from core.trading_interfaces import (
    IInferenceService,
    IMarketFeed,
    IObjectStore,
    IOrderExecutor,
    ITrainingService,
)
from execution.feeds import SyntheticFeed
from execution.kill_switch import KillSwitch
from execution.paper_executor import PaperExecutor
from execution.risk import DailyStats, RiskEngine
from logic.ensemble import EnsembleEngine
from logic.model_performance import ModelPerformanceTracker
from logic.predictor import LocalInferenceService, PredictionCache, Predictor
from logic.regime import RegimeDetector
from logic.sentiment import SentimentEngine
from training.pipeline import TrainingPipeline
from training.retrain import AutoRetrainer
from training.service import LocalTrainingService
from training.versions import VersionRegistry


class SessionContainer:
    """Provides session-scoped component instances, built on first use.

    Anything passed in ``overrides`` (keyed by component name) is used
    as-is instead of the default, which is how tests swap in stubs.
    """

    def __init__(
        self,
        session_id: str,
        symbols: Optional[List[str]] = None,
        data_dir: Optional[str] = None,
        logs_dir: Optional[str] = None,
        in_memory: bool = False,
        **overrides: Any,
    ):
        self.session_id = session_id
        self.symbols = list(symbols or settings.symbols)
        self.data_dir = Path(data_dir or settings.data_dir)
        self.logs_dir = Path(logs_dir or settings.logs_dir)
        self.in_memory = in_memory
        self._instances: Dict[str, Any] = dict(overrides)

    def _get(self, name: str, build) -> Any:
        if name not in self._instances:
            self._instances[name] = build()
        return self._instances[name]

    # Infrastructure

    def get_store(self) -> IObjectStore:
        return self._get("store", lambda: MemoryObjectStore() if self.in_memory else FileObjectStore(self.data_dir))

    def get_saver(self) -> BackgroundSaver:
        return self._get("saver", lambda: BackgroundSaver(self.get_store()))

    def get_journal(self) -> Journal:
        return self._get("journal", lambda: Journal(self.session_id, self.logs_dir))

    def get_events(self) -> EngineEventBus:
        return self._get("events", lambda: EngineEventBus(self.session_id))

    def get_audit(self) -> AuditLog:
        return self._get("audit", lambda: AuditLog(
            self.session_id, self.get_store(), self.get_saver(), self.get_journal()
        ))

    # Market side

    def get_feed(self) -> IMarketFeed:
        return self._get("feed", lambda: SyntheticFeed(self.symbols))

    def get_executor(self) -> IOrderExecutor:
        return self._get("executor", lambda: PaperExecutor(settings.paper_start_balance))

    def get_history(self) -> SampleHistory:
        return self._get("history", lambda: SampleHistory(settings.history_limit))

    # Prediction and decisions

    def get_version_registry(self) -> VersionRegistry:
        return self._get("versions", lambda: VersionRegistry(self.get_store()))

    def get_inference(self) -> IInferenceService:
        return self._get("inference", lambda: LocalInferenceService(self.get_version_registry()))

    def get_predictor(self) -> Predictor:
        return self._get("predictor", lambda: Predictor(self.get_inference(), PredictionCache()))

    def get_sentiment(self) -> SentimentEngine:
        return self._get("sentiment", lambda: SentimentEngine(settings.min_history))

    def get_tracker(self) -> ModelPerformanceTracker:
        return self._get("tracker", lambda: ModelPerformanceTracker(settings.performance_window_days))

    def get_regime_detector(self) -> RegimeDetector:
        return self._get("regime", RegimeDetector)

    def get_ensemble(self) -> EnsembleEngine:
        def build() -> EnsembleEngine:
            risk = self.get_risk_engine()
            return EnsembleEngine(
                tracker=self.get_tracker(),
                regime_detector=self.get_regime_detector(),
                risk_assessor=lambda conf, target, stop, tp, sentiment: risk.assess(conf, target, stop, tp, sentiment),
            )
        return self._get("ensemble", build)

    # Risk

    def get_risk_engine(self) -> RiskEngine:
        return self._get("risk", lambda: RiskEngine(settings.base_position_size))

    def get_daily_stats(self) -> DailyStats:
        return self._get("daily_stats", DailyStats)

    def get_kill_switch(self) -> KillSwitch:
        return self._get("kill_switch", lambda: KillSwitch(
            self.session_id,
            store=self.get_store(),
            saver=self.get_saver(),
            journal=self.get_journal(),
            events=self.get_events(),
        ))

    # Training

    def get_training_service(self) -> ITrainingService:
        return self._get("training_service", LocalTrainingService)

    def get_training_pipeline(self) -> TrainingPipeline:
        return self._get("pipeline", lambda: TrainingPipeline(
            self.get_version_registry(),
            self.get_training_service(),
            self.get_store(),
            self.get_journal(),
        ))

    def get_retrainer(self) -> AutoRetrainer:
        return self._get("retrainer", lambda: AutoRetrainer(
            self.get_training_pipeline(),
            self.get_version_registry(),
            self.get_tracker(),
        ))
