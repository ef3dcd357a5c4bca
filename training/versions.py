"""Model version registry backed by the object store.

Each (model type, symbol) pair has an index object listing its versions.
The index is the only place the ``active`` flag lives, so activating a
version and deactivating the previous one is a single index write.

The index is always read from the store, never cached, because several
sessions may share one store. Writers to the same index take the same
process-wide lock, whichever registry instance they go through.
"""

import asyncio
import dataclasses
from typing import Any, Dict, List, Optional, Tuple

from core.config import settings
from core.errors import PersistenceFailure
from core.logging_utils import get_logger
from core.models import ModelType, ModelVersion, TrainingMode
from core.storage import get_json, put_json
from core.trading_interfaces import IObjectStore

logger = get_logger(__name__)

Key = Tuple[ModelType, str]

_INDEX_LOCKS: Dict[Tuple[str, str], asyncio.Lock] = {}


def store_location(store: IObjectStore) -> str:
    return getattr(store, "location", None) or f"{type(store).__name__}-{id(store)}"


class VersionRegistry:
    def __init__(self, store: IObjectStore, max_versions: Optional[int] = None, prefix: str = "models"):
        self.store = store
        self.max_versions = max_versions or settings.max_model_versions
        self.prefix = prefix
        self._weights_cache: Dict[str, Dict[str, Any]] = {}

    def _lock(self, key: Key) -> asyncio.Lock:
        lock_key = (store_location(self.store), self.index_path(*key))
        lock = _INDEX_LOCKS.get(lock_key)
        if lock is None:
            lock = asyncio.Lock()
            _INDEX_LOCKS[lock_key] = lock
        return lock

    def _base(self, model_type: ModelType, symbol: str) -> str:
        return f"{self.prefix}/{model_type.value}/{symbol}"

    def index_path(self, model_type: ModelType, symbol: str) -> str:
        return f"{self._base(model_type, symbol)}/index.json"

    async def _load(self, key: Key) -> List[ModelVersion]:
        data = await get_json(self.store, self.index_path(*key)) or {}
        return [ModelVersion.from_dict(v) for v in data.get("versions", [])]

    async def versions(self, model_type: ModelType, symbol: str) -> List[ModelVersion]:
        """Copies of all stored versions, oldest first."""
        versions = await self._load((model_type, symbol))
        return [dataclasses.replace(v) for v in versions]

    async def active(self, model_type: ModelType, symbol: str) -> Optional[ModelVersion]:
        for v in await self._load((model_type, symbol)):
            if v.active:
                return dataclasses.replace(v)
        return None

    async def load_weights(self, version: ModelVersion) -> Optional[Dict[str, Any]]:
        cached = self._weights_cache.get(version.weights_path)
        if cached is not None:
            return cached
        weights = await get_json(self.store, version.weights_path)
        if weights is not None:
            self._weights_cache[version.weights_path] = weights
        return weights

    async def active_weights(self, model_type: ModelType, symbol: str) -> Tuple[Optional[ModelVersion], Optional[Dict[str, Any]]]:
        version = await self.active(model_type, symbol)
        if version is None:
            return None, None
        weights = await self.load_weights(version)
        if weights is None:
            logger.warning("[VERSIONS] Active weights missing for %s", version.version_id)
            return version, None
        return version, weights

    async def find(self, version_id: str) -> Optional[ModelVersion]:
        try:
            mt, symbol, number = version_id.split(":")
            model_type = ModelType(mt)
            wanted = int(number.lstrip("v"))
        except ValueError:
            return None
        for v in await self._load((model_type, symbol)):
            if v.version == wanted:
                return dataclasses.replace(v)
        return None

    def should_activate(self, current: Optional[ModelVersion], accuracy: float,
                        tolerance: Optional[float] = None) -> bool:
        tolerance = settings.promotion_tolerance if tolerance is None else tolerance
        return current is None or accuracy >= current.training_accuracy - tolerance

    async def register(
        self,
        model_type: ModelType,
        symbol: str,
        weights: Dict[str, Any],
        training_accuracy: float,
        validation_accuracy: float,
        mode: TrainingMode = TrainingMode.FULL,
        activate: bool = False,
        promote_if_within: Optional[float] = None,
    ) -> ModelVersion:
        """Store a new version; when activated it becomes the only active one.

        With ``promote_if_within`` the promotion decision is taken against the
        active version read under the lock, and ``activate`` is ignored.
        """
        key = (model_type, symbol)
        async with self._lock(key):
            current = await self._load(key)
            if promote_if_within is not None:
                active_now = next((v for v in current if v.active), None)
                activate = self.should_activate(active_now, training_accuracy, promote_if_within)
            number = max((v.version for v in current), default=0) + 1
            weights_path = f"{self._base(model_type, symbol)}/v{number}.json"
            await put_json(self.store, weights_path, weights, {"model_type": model_type.value, "symbol": symbol})

            new = ModelVersion(
                model_type=model_type,
                symbol=symbol,
                version=number,
                weights_path=weights_path,
                training_accuracy=training_accuracy,
                validation_accuracy=validation_accuracy,
                active=activate,
                mode=mode,
            )
            updated = [
                dataclasses.replace(v, active=False if activate else v.active) for v in current
            ] + [new]
            kept, pruned = self._prune(updated)

            try:
                await put_json(self.store, self.index_path(model_type, symbol),
                               {"versions": [v.to_dict() for v in kept]})
            except PersistenceFailure:
                await self.store.delete(weights_path)
                raise
            self._weights_cache[weights_path] = weights

            for v in pruned:
                self._weights_cache.pop(v.weights_path, None)
                try:
                    await self.store.delete(v.weights_path)
                except Exception as e:
                    logger.warning("[VERSIONS] Failed to delete pruned %s: %s", v.version_id, e)

            if activate:
                logger.info("[VERSIONS] Activated %s (accuracy %.3f)", new.version_id, training_accuracy)
            else:
                logger.info("[VERSIONS] Stored %s inactive (accuracy %.3f)", new.version_id, training_accuracy)
            if pruned:
                logger.info("[VERSIONS] Pruned %d old versions of %s/%s", len(pruned), model_type.value, symbol)
            return dataclasses.replace(new)

    def _prune(self, versions: List[ModelVersion]) -> Tuple[List[ModelVersion], List[ModelVersion]]:
        """Keep the newest ``max_versions`` plus the active one."""
        newest = sorted(versions, key=lambda v: v.version, reverse=True)[: self.max_versions]
        keep_ids = {v.version for v in newest} | {v.version for v in versions if v.active}
        kept = [v for v in versions if v.version in keep_ids]
        pruned = [v for v in versions if v.version not in keep_ids]
        return kept, pruned

    async def active_count(self, model_type: ModelType, symbol: str) -> int:
        return sum(1 for v in await self._load((model_type, symbol)) if v.active)
