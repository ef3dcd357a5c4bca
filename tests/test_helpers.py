"""Test helpers: sample builders, stub collaborators, session wiring."""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from core.models import Direction, FeatureBag, MarketSample, ModelType, Prediction
from core.session import SessionRegistry
from core.storage import MemoryObjectStore
from core.trading_interfaces import IInferenceService, InferenceRequest, InferenceResponse
from execution.feeds import ReplayFeed
from execution.orchestrator import TradingOrchestrator


def make_samples(
    symbol: str = "EURUSD",
    n: int = 60,
    start: float = 1.1,
    step_pct: float = 0.001,
    spread_pct: float = 0.0001,
    volume: float = 1000.0,
    end: Optional[datetime] = None,
) -> List[MarketSample]:
    """Geometric series of quotes one second apart, ending now."""
    end = end or datetime.now(timezone.utc)
    samples = []
    price = start
    for i in range(n):
        half = price * spread_pct / 2
        samples.append(MarketSample(
            symbol=symbol,
            bid=price - half,
            ask=price + half,
            volume=volume * (1 + 0.1 * (i % 3)),
            timestamp=end - timedelta(seconds=n - i),
        ))
        price *= 1 + step_pct
    return samples


def make_prediction(
    model_id: str,
    direction: Direction,
    confidence: float,
    price: float = 100.0,
    symbol: str = "EURUSD",
    fallback: bool = False,
) -> Prediction:
    sign = direction.sign
    return Prediction(
        symbol=symbol,
        direction=direction,
        confidence=confidence,
        target_price=price * (1 + 0.01 * sign) if sign else price,
        stop_loss=price * (1 - 0.005 * sign) if sign else price,
        take_profit=price * (1 + 0.02 * sign) if sign else price,
        timeframe="1H",
        model_id=model_id,
        features=FeatureBag(fallback=fallback),
    )


class StubInference(IInferenceService):
    """Returns a fixed response per model type, or fails a set number of times."""

    def __init__(
        self,
        direction: Direction = Direction.HOLD,
        confidence: float = 0.5,
        per_model: Optional[Dict[ModelType, Direction]] = None,
        failures: int = 0,
        always_fail: bool = False,
    ):
        self.direction = direction
        self.confidence = confidence
        self.per_model = per_model or {}
        self.failures = failures
        self.always_fail = always_fail
        self.calls = 0

    async def infer(self, request: InferenceRequest) -> InferenceResponse:
        self.calls += 1
        if self.always_fail or self.calls <= self.failures:
            raise ConnectionError("inference endpoint unreachable")
        direction = self.per_model.get(request.model_type, self.direction)
        price = request.recent_samples[-1].mid if request.recent_samples else 100.0
        sign = direction.sign
        return InferenceResponse(
            direction=direction,
            confidence=self.confidence,
            target_price=price * (1 + 0.01 * sign),
            stop_loss=price * (1 - 0.005 * sign) if sign else price,
            take_profit=price * (1 + 0.02 * sign) if sign else price,
            timeframe="1H",
            features=FeatureBag(rsi=60.0),
        )


class FailingStore(MemoryObjectStore):
    """Memory store whose writes under ``fail_prefix`` raise."""

    def __init__(self, fail_prefix: str = ""):
        super().__init__()
        self.fail_prefix = fail_prefix
        self.failing = True

    async def put(self, path, data, content_type="application/json", metadata=None):
        if self.failing and path.startswith(self.fail_prefix):
            raise OSError(f"disk full writing {path}")
        await super().put(path, data, content_type, metadata)


async def no_sleep(_seconds: float) -> None:
    return None


def build_orchestrator(
    tmp_path,
    symbols: Optional[List[str]] = None,
    samples: Optional[List[MarketSample]] = None,
    session_id: str = "test",
    registry: Optional[SessionRegistry] = None,
    **overrides,
) -> TradingOrchestrator:
    """Orchestrator over an in-memory store, replay feed and tmp journal."""
    symbols = symbols or ["EURUSD"]
    registry = registry or SessionRegistry()
    if "feed" not in overrides:
        overrides["feed"] = ReplayFeed(samples or [], batch=len(samples or []) or 1)
    context = registry.get_or_create(
        session_id,
        symbols=symbols,
        in_memory=True,
        logs_dir=str(tmp_path / "logs"),
        data_dir=str(tmp_path / "data"),
        **overrides,
    )
    return TradingOrchestrator(context, auto_retrain=False)
