"""Prediction cache and inference access.

Single source of truth for per-symbol model predictions within a time
bucket. Cache misses call the inference service with retry and linear
backoff; a model that stays unreachable degrades to a static HOLD.
"""

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from core.config import settings
from core.errors import InferenceUnavailable
from core.logging_utils import get_logger
from core.models import MarketSample, ModelType, Prediction, fallback_prediction
from core.trading_interfaces import IInferenceService, InferenceRequest, InferenceResponse
from logic.models import BaseModel, ModelInput, build_models
from training.versions import VersionRegistry

logger = get_logger(__name__)


class LocalInferenceService(IInferenceService):
    """Runs the in-process models against the active weight versions."""

    def __init__(self, registry: VersionRegistry, models: Optional[Dict[ModelType, BaseModel]] = None):
        self.registry = registry
        self.models = models or build_models()

    async def infer(self, request: InferenceRequest) -> InferenceResponse:
        model = self.models[request.model_type]
        version, weights = await self.registry.active_weights(request.model_type, request.symbol)
        data = ModelInput.from_samples(request.symbol, request.recent_samples, request.recent_rewards)
        prediction = model.predict(data, weights, version.version if version else None)
        return InferenceResponse(
            direction=prediction.direction,
            confidence=prediction.confidence,
            target_price=prediction.target_price,
            stop_loss=prediction.stop_loss,
            take_profit=prediction.take_profit,
            timeframe=prediction.timeframe,
            features=prediction.features,
        )


class PredictionCache:
    """Results keyed by (symbol, time bucket)."""

    def __init__(self, ttl: Optional[float] = None, clock: Callable[[], float] = time.time):
        self.ttl = ttl or settings.prediction_cache_ttl
        self.clock = clock
        self._entries: Dict[str, Dict[str, Prediction]] = {}

    def key(self, symbol: str) -> str:
        return f"{symbol}-{int(self.clock() // self.ttl)}"

    def get(self, symbol: str) -> Optional[Dict[str, Prediction]]:
        return self._entries.get(self.key(symbol))

    def put(self, symbol: str, predictions: Dict[str, Prediction]) -> None:
        key = self.key(symbol)
        stale = [k for k in self._entries if k.rsplit("-", 1)[0] == symbol and k != key]
        for k in stale:
            del self._entries[k]
        self._entries[key] = predictions

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class Predictor:
    """Produces one prediction per model type for a symbol."""

    def __init__(
        self,
        inference: IInferenceService,
        cache: Optional[PredictionCache] = None,
        retries: Optional[int] = None,
        backoff: Optional[float] = None,
        model_types: Sequence[ModelType] = tuple(ModelType),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.inference = inference
        self.cache = cache or PredictionCache()
        self.retries = retries if retries is not None else settings.prediction_retries
        self.backoff = backoff if backoff is not None else settings.prediction_backoff
        self.model_types = tuple(model_types)
        self._sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = {}
        self.upstream_calls = 0

    def _lock(self, symbol: str) -> asyncio.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[symbol] = lock
        return lock

    async def predict_all(
        self,
        symbol: str,
        samples: List[MarketSample],
        recent_rewards: Optional[List[float]] = None,
    ) -> Dict[str, Prediction]:
        cached = self.cache.get(symbol)
        if cached is not None:
            return cached

        async with self._lock(symbol):
            cached = self.cache.get(symbol)
            if cached is not None:
                return cached
            results = await asyncio.gather(*[
                self._predict_one(mt, symbol, samples, recent_rewards or [])
                for mt in self.model_types
            ])
            predictions = {mt.value: p for mt, p in zip(self.model_types, results)}
            self.cache.put(symbol, predictions)
            return predictions

    async def _predict_one(self, model_type: ModelType, symbol: str,
                           samples: List[MarketSample], rewards: List[float]) -> Prediction:
        request = InferenceRequest(
            model_type=model_type,
            symbol=symbol,
            recent_samples=samples,
            recent_rewards=rewards,
        )
        try:
            response = await self._call_with_retry(request)
        except InferenceUnavailable as e:
            logger.warning("[PREDICT] %s/%s degraded to fallback: %s", model_type.value, symbol, e)
            return fallback_prediction(symbol, error=str(e))
        return Prediction(
            symbol=symbol,
            direction=response.direction,
            confidence=response.confidence,
            target_price=response.target_price,
            stop_loss=response.stop_loss,
            take_profit=response.take_profit,
            timeframe=response.timeframe,
            model_id=model_type.value,
            features=response.features,
        )

    async def _call_with_retry(self, request: InferenceRequest) -> InferenceResponse:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            self.upstream_calls += 1
            try:
                return await self.inference.infer(request)
            except Exception as e:
                last_error = e
                logger.debug("[PREDICT] %s/%s attempt %d failed: %s",
                             request.model_type.value, request.symbol, attempt, e)
                if attempt < self.retries:
                    await self._sleep(self.backoff * attempt)
        raise InferenceUnavailable(f"{self.retries} attempts failed: {last_error}")
