"""Market regime classification from recent returns and sentiment."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence

import numpy as np

from core.logging_utils import get_logger
from core.models import MarketRegime

logger = get_logger(__name__)


@dataclass
class RegimeState:
    regime: MarketRegime = MarketRegime.NEUTRAL
    mean_return: float = 0.0
    volatility: float = 0.0
    sentiment: float = 0.0
    last_update: Optional[datetime] = None


@dataclass
class RegimeDetector:
    """Classifies bullish / bearish / neutral / volatile per symbol."""

    lookback: int = 20
    volatility_threshold: float = 0.02
    return_threshold: float = 0.001
    sentiment_threshold: float = 0.5
    _states: Dict[str, RegimeState] = field(default_factory=dict)

    def classify(self, prices: Sequence[float], sentiment: float) -> RegimeState:
        prices = np.asarray(prices, dtype=float)
        if len(prices) < self.lookback:
            return RegimeState(sentiment=sentiment, last_update=datetime.now(timezone.utc))

        window = prices[-self.lookback:]
        returns = np.diff(window) / window[:-1]
        mean_return = float(np.mean(returns))
        volatility = float(np.std(returns))

        if volatility > self.volatility_threshold:
            regime = MarketRegime.VOLATILE
        elif mean_return > self.return_threshold and sentiment > self.sentiment_threshold:
            regime = MarketRegime.BULLISH
        elif mean_return < -self.return_threshold and sentiment < -self.sentiment_threshold:
            regime = MarketRegime.BEARISH
        else:
            regime = MarketRegime.NEUTRAL

        return RegimeState(
            regime=regime,
            mean_return=mean_return,
            volatility=volatility,
            sentiment=sentiment,
            last_update=datetime.now(timezone.utc),
        )

    def update(self, symbol: str, prices: Sequence[float], sentiment: float) -> MarketRegime:
        state = self.classify(prices, sentiment)
        previous = self._states.get(symbol)
        if previous and previous.regime != state.regime:
            logger.info("[REGIME] %s %s -> %s", symbol, previous.regime.value, state.regime.value)
        self._states[symbol] = state
        return state.regime

    def regime(self, symbol: str) -> MarketRegime:
        state = self._states.get(symbol)
        return state.regime if state else MarketRegime.NEUTRAL
