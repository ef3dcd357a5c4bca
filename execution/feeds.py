"""Market feeds for paper sessions and tests.

SyntheticFeed generates a random-walk quote stream without any API
connection. ReplayFeed hands out pre-recorded samples in order.
"""

import random
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, Iterable, List, Optional

from core.logging_utils import get_logger
from core.models import MarketSample
from core.trading_interfaces import IMarketFeed

logger = get_logger(__name__)

DEFAULT_PRICES = {
    "EURUSD": 1.0850,
    "GBPUSD": 1.2650,
    "USDJPY": 149.50,
    "GOLD": 2030.0,
    "SILVER": 23.10,
}


class SyntheticFeed(IMarketFeed):
    """Random walk with occasional bursts, one sample per poll."""

    def __init__(
        self,
        symbols: Iterable[str],
        prices: Optional[Dict[str, float]] = None,
        spread_pct: float = 0.0002,
        seed: Optional[int] = None,
    ):
        self.symbols = list(symbols)
        self.spread_pct = spread_pct
        self._rng = random.Random(seed)
        self._prices = dict(DEFAULT_PRICES)
        self._prices.update(prices or {})

    async def poll(self, symbol: str) -> List[MarketSample]:
        base_price = self._prices.get(symbol, 100.0)

        change_pct = self._rng.gauss(0, 0.001)
        if self._rng.random() < 0.05:
            change_pct = self._rng.choice([-1, 1]) * self._rng.uniform(0.005, 0.015)
        price = base_price * (1 + change_pct)
        self._prices[symbol] = price

        half_spread = price * self.spread_pct / 2
        volume = self._rng.uniform(100, 10000) * (3 if abs(change_pct) > 0.005 else 1)
        return [MarketSample(
            symbol=symbol,
            bid=price - half_spread,
            ask=price + half_spread,
            volume=volume,
            timestamp=datetime.now(timezone.utc),
        )]

    def last_price(self, symbol: str) -> float:
        return self._prices.get(symbol, 0.0)


class ReplayFeed(IMarketFeed):
    """Replays recorded samples; ``batch`` samples per poll."""

    def __init__(self, samples: Iterable[MarketSample], batch: int = 1):
        self.batch = max(1, batch)
        self._queues: Dict[str, Deque[MarketSample]] = {}
        for sample in samples:
            self._queues.setdefault(sample.symbol, deque()).append(sample)

    async def poll(self, symbol: str) -> List[MarketSample]:
        queue = self._queues.get(symbol)
        if not queue:
            return []
        return [queue.popleft() for _ in range(min(self.batch, len(queue)))]

    def remaining(self, symbol: str) -> int:
        return len(self._queues.get(symbol, ()))
