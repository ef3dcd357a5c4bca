"""Market samples and bounded per-symbol history."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional

import numpy as np


@dataclass(frozen=True)
class MarketSample:
    """One quote. Immutable once appended to history."""
    symbol: str
    bid: float
    ask: float
    volume: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2

    @property
    def high(self) -> float:
        return max(self.bid, self.ask)

    @property
    def low(self) -> float:
        return min(self.bid, self.ask)

    @property
    def spread_pct(self) -> float:
        mid = self.mid
        return (self.ask - self.bid) / mid if mid > 0 else float("inf")

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.timestamp).total_seconds()

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "bid": self.bid,
            "ask": self.ask,
            "volume": self.volume,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MarketSample":
        return cls(
            symbol=data["symbol"],
            bid=float(data["bid"]),
            ask=float(data["ask"]),
            volume=float(data.get("volume", 0.0)),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


def validate_sample(
    sample: MarketSample,
    max_spread_pct: float = 0.05,
    max_age_seconds: float = 300.0,
    now: Optional[datetime] = None,
) -> tuple[bool, str]:
    """Check a quote is sane enough to append to history."""
    if sample.bid <= 0 or sample.ask <= 0:
        return False, "non-positive price"
    if sample.bid > sample.ask:
        return False, "crossed quote"
    if sample.spread_pct > max_spread_pct:
        return False, f"spread {sample.spread_pct:.2%} too wide"
    if sample.age_seconds(now) > max_age_seconds:
        return False, "stale sample"
    return True, "OK"


class SampleHistory:
    """Most-recent-N samples per symbol."""

    def __init__(self, limit: int = 500):
        self.limit = limit
        self._samples: Dict[str, Deque[MarketSample]] = {}

    def append(self, sample: MarketSample) -> None:
        buf = self._samples.get(sample.symbol)
        if buf is None:
            buf = deque(maxlen=self.limit)
            self._samples[sample.symbol] = buf
        buf.append(sample)

    def extend(self, samples: List[MarketSample]) -> None:
        for sample in samples:
            self.append(sample)

    def get(self, symbol: str, n: Optional[int] = None) -> List[MarketSample]:
        buf = self._samples.get(symbol)
        if not buf:
            return []
        samples = list(buf)
        return samples[-n:] if n else samples

    def latest(self, symbol: str) -> Optional[MarketSample]:
        buf = self._samples.get(symbol)
        return buf[-1] if buf else None

    def count(self, symbol: str) -> int:
        return len(self._samples.get(symbol, ()))

    def symbols(self) -> List[str]:
        return list(self._samples.keys())

    def mids(self, symbol: str) -> np.ndarray:
        return np.array([s.mid for s in self.get(symbol)], dtype=float)
