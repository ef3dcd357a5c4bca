"""Collaborator interfaces and service-boundary messages."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from core.models import (
    Direction,
    FeatureBag,
    MarketSample,
    ModelType,
    Position,
    TrainingMode,
)


class IObjectStore(Protocol):
    """Key-value object store. Callers never know which tier serves a path."""

    async def put(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/json",
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        ...

    async def get(self, path: str) -> Optional[bytes]:
        ...

    async def list(self, prefix: str) -> List[str]:
        ...

    async def delete(self, path: str) -> bool:
        ...


class IMarketFeed(Protocol):
    """Pull interface yielding ordered samples per symbol."""

    async def poll(self, symbol: str) -> List[MarketSample]:
        ...


class IOrderExecutor(Protocol):
    """Order execution collaborator."""

    async def open_position(
        self,
        symbol: str,
        direction: Direction,
        size: float,
        price: float,
        stop_loss: float,
        take_profit: float,
    ) -> Optional[str]:
        ...

    async def close_position(self, deal_id: str, price: Optional[float] = None) -> bool:
        ...

    async def update_stop_loss(self, deal_id: str, price: float) -> bool:
        ...

    async def get_positions(self) -> List[Position]:
        ...

    def get_balance(self) -> float:
        ...


@dataclass
class InferenceRequest:
    model_type: ModelType
    symbol: str
    recent_samples: List[MarketSample]
    recent_rewards: List[float] = field(default_factory=list)


@dataclass
class InferenceResponse:
    direction: Direction
    confidence: float
    target_price: float
    stop_loss: float
    take_profit: float
    timeframe: str
    features: FeatureBag = field(default_factory=FeatureBag)


class IInferenceService(Protocol):
    async def infer(self, request: InferenceRequest) -> InferenceResponse:
        ...


@dataclass
class Hyperparameters:
    epochs: int = 100
    learning_rate: float = 0.001
    batch_size: int = 32
    sequence_length: int = 60
    patience: Optional[int] = None
    max_samples_per_epoch: int = 100
    seed: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "epochs": self.epochs,
            "learning_rate": self.learning_rate,
            "batch_size": self.batch_size,
            "sequence_length": self.sequence_length,
            "patience": self.patience,
            "max_samples_per_epoch": self.max_samples_per_epoch,
            "seed": self.seed,
        }


@dataclass
class TrainingRequest:
    model_type: ModelType
    symbol: str
    mode: TrainingMode
    model_id: str
    historical_samples: List[MarketSample]
    hyperparameters: Hyperparameters
    previous_weights_id: Optional[str] = None
    previous_weights: Optional[Dict[str, Any]] = None


@dataclass
class TrainingResponse:
    weights: Dict[str, Any]
    training_metrics: List[dict]
    validation_metrics: List[dict]
    final_accuracy: float
    mode: TrainingMode = TrainingMode.FULL


class ITrainingService(Protocol):
    async def train(self, request: TrainingRequest) -> TrainingResponse:
        ...
