"""Model versions and training jobs."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ModelType(str, Enum):
    LSTM = "lstm"
    TRANSFORMER = "transformer"
    XGBOOST = "xgboost"
    RL = "rl"


class TrainingMode(str, Enum):
    FULL = "full"
    FINE_TUNE = "fine_tune"
    INCREMENTAL = "incremental"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ModelVersion:
    """Index entry for a stored weights blob.

    The blob itself lives in the object store at ``weights_path``.
    """
    model_type: ModelType
    symbol: str
    version: int
    weights_path: str
    training_accuracy: float
    validation_accuracy: float
    active: bool = False
    mode: TrainingMode = TrainingMode.FULL
    created_at: str = field(default_factory=_now_iso)

    @property
    def version_id(self) -> str:
        return f"{self.model_type.value}:{self.symbol}:v{self.version}"

    @property
    def created(self) -> datetime:
        return datetime.fromisoformat(self.created_at)

    def to_dict(self) -> dict:
        return {
            "model_type": self.model_type.value,
            "symbol": self.symbol,
            "version": self.version,
            "weights_path": self.weights_path,
            "training_accuracy": self.training_accuracy,
            "validation_accuracy": self.validation_accuracy,
            "active": self.active,
            "mode": self.mode.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ModelVersion":
        return cls(
            model_type=ModelType(data["model_type"]),
            symbol=data["symbol"],
            version=int(data["version"]),
            weights_path=data["weights_path"],
            training_accuracy=float(data.get("training_accuracy", 0.0)),
            validation_accuracy=float(data.get("validation_accuracy", 0.0)),
            active=bool(data.get("active", False)),
            mode=TrainingMode(data.get("mode", "full")),
            created_at=data.get("created_at") or _now_iso(),
        )


@dataclass
class TrainingJob:
    model_type: ModelType
    symbol: str
    mode: TrainingMode
    hyperparameters: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    requested_mode: Optional[TrainingMode] = None
    previous_version_id: Optional[str] = None
    loss_history: List[dict] = field(default_factory=list)
    accuracy_history: List[float] = field(default_factory=list)
    final_accuracy: Optional[float] = None
    promoted: bool = False
    version: Optional[int] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    finished_at: Optional[str] = None

    def start(self) -> None:
        self.status = JobStatus.RUNNING

    def complete(self, accuracy: float, version: int, promoted: bool) -> None:
        self.status = JobStatus.COMPLETED
        self.final_accuracy = accuracy
        self.version = version
        self.promoted = promoted
        self.finished_at = _now_iso()

    def fail(self, error: str) -> None:
        self.status = JobStatus.FAILED
        self.error = error
        self.finished_at = _now_iso()

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "model_type": self.model_type.value,
            "symbol": self.symbol,
            "mode": self.mode.value,
            "requested_mode": self.requested_mode.value if self.requested_mode else None,
            "hyperparameters": dict(self.hyperparameters),
            "status": self.status.value,
            "previous_version_id": self.previous_version_id,
            "loss_history": list(self.loss_history),
            "accuracy_history": list(self.accuracy_history),
            "final_accuracy": self.final_accuracy,
            "promoted": self.promoted,
            "version": self.version,
            "error": self.error,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }
