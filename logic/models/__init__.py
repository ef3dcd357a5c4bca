"""Model architectures used by the inference layer."""

from typing import Dict, Optional

from core.models import ModelType
from logic.models.base import BaseModel, ModelInput, RuleSignals
from logic.models.boosted import BoostedTreeModel
from logic.models.lstm import SequenceModel
from logic.models.rl import ReinforcementModel
from logic.models.transformer import AttentionModel

MODEL_CLASSES = {
    ModelType.LSTM: SequenceModel,
    ModelType.TRANSFORMER: AttentionModel,
    ModelType.XGBOOST: BoostedTreeModel,
    ModelType.RL: ReinforcementModel,
}


def build_models(sequence_length: Optional[int] = None) -> Dict[ModelType, BaseModel]:
    """One instance of every architecture."""
    return {mt: cls(sequence_length=sequence_length) for mt, cls in MODEL_CLASSES.items()}


__all__ = [
    "AttentionModel",
    "BaseModel",
    "BoostedTreeModel",
    "MODEL_CLASSES",
    "ModelInput",
    "ReinforcementModel",
    "RuleSignals",
    "SequenceModel",
    "build_models",
]
