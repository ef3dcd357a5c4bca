"""Training data preparation: sliding windows over mid prices."""

from dataclasses import dataclass, field
from typing import List

import numpy as np

from core.errors import TrainingFailed
from core.models import MarketSample
from logic.tensor import zscore

MIN_EXTRA_SAMPLES = 5
TRAIN_FRACTION = 0.8


@dataclass
class TrainingData:
    """Windows and next-step targets, split chronologically 80/20.

    ``end_index[i]`` is the index in ``samples`` of the last sample in
    window ``i``; the target is the sample right after it.
    """
    windows: np.ndarray
    targets: np.ndarray
    end_index: np.ndarray
    split: int
    sequence_length: int
    samples: List[MarketSample] = field(default_factory=list)

    @property
    def train_windows(self) -> np.ndarray:
        return self.windows[: self.split]

    @property
    def train_targets(self) -> np.ndarray:
        return self.targets[: self.split]

    @property
    def val_windows(self) -> np.ndarray:
        return self.windows[self.split:]

    @property
    def val_targets(self) -> np.ndarray:
        return self.targets[self.split:]

    @property
    def prices(self) -> np.ndarray:
        return np.array([s.mid for s in self.samples], dtype=float)

    def __len__(self) -> int:
        return len(self.windows)


def prepare_training_data(samples: List[MarketSample], sequence_length: int) -> TrainingData:
    """Build normalized windows; each window uses its own mean and std."""
    if len(samples) < sequence_length + MIN_EXTRA_SAMPLES:
        raise TrainingFailed(
            f"need at least {sequence_length + MIN_EXTRA_SAMPLES} samples, got {len(samples)}"
        )

    prices = np.array([s.mid for s in samples], dtype=float)
    windows, targets, ends = [], [], []
    for end in range(sequence_length - 1, len(prices) - 1):
        raw = prices[end - sequence_length + 1: end + 1]
        normalized, mean, std = zscore(raw)
        windows.append(normalized)
        targets.append((prices[end + 1] - mean) / std)
        ends.append(end)

    split = max(1, int(len(windows) * TRAIN_FRACTION))
    if split >= len(windows):
        split = len(windows) - 1
    return TrainingData(
        windows=np.array(windows),
        targets=np.array(targets),
        end_index=np.array(ends, dtype=int),
        split=split,
        sequence_length=sequence_length,
        samples=list(samples),
    )
