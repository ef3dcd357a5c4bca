"""
Multi-factor market sentiment.

Four components, each in [-1, 1]:
- price action: short/medium/long momentum plus regression trend, with
  double-top / double-bottom modifiers
- volume: price/volume delta correlation scaled by the volume ratio
- volatility: recent vs historical return volatility (calm = positive)
- correlation: average price correlation with a reference basket

Fewer than ``min_samples`` samples yields the neutral snapshot.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np

from core.logging_utils import get_logger
from core.models import MarketSample, SentimentSnapshot

logger = get_logger(__name__)

REFERENCE_BASKET = ("EURUSD", "GBPUSD", "USDJPY", "GOLD", "SILVER")
COMPONENT_WEIGHTS = {"price_action": 0.35, "volume": 0.25, "volatility": 0.20, "correlation": 0.20}
PATTERN_TOLERANCE = 0.02


def _clip(value: float, lo: float = -1.0, hi: float = 1.0) -> float:
    if not np.isfinite(value):
        return 0.0
    return float(max(lo, min(hi, value)))


def correlation(x: Sequence[float], y: Sequence[float]) -> float:
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if len(x) != len(y) or len(x) < 2:
        return 0.0
    if np.std(x) == 0 or np.std(y) == 0:
        return 0.0
    return float(np.corrcoef(x, y)[0, 1])


def coefficient_of_variation(values: Sequence[float]) -> float:
    values = np.asarray(values, dtype=float)
    if len(values) == 0:
        return 0.0
    mean = float(np.mean(values))
    if mean == 0:
        return 0.0
    return float(np.std(values) / mean)


def momentum_score(prices: Sequence[float]) -> float:
    prices = np.asarray(prices, dtype=float)
    if len(prices) < 2:
        return 0.0
    returns = np.diff(prices) / prices[:-1]
    return _clip(float(np.mean(returns)) * 100)


def trend_strength(prices: Sequence[float]) -> float:
    """Regression slope normalized by the average price, clipped."""
    prices = np.asarray(prices, dtype=float)
    if len(prices) < 3:
        return 0.0
    slope = np.polyfit(np.arange(len(prices)), prices, 1)[0]
    avg = float(np.mean(prices))
    return _clip(slope / avg * 100) if avg else 0.0


def detect_patterns(prices: Sequence[float]) -> List[str]:
    prices = np.asarray(prices, dtype=float)
    if len(prices) < 10:
        return []
    recent = prices[-10:]
    max1, max2 = recent[:5].max(), recent[5:].max()
    min1, min2 = recent[:5].min(), recent[5:].min()
    patterns = []
    if max1 > 0 and abs(max1 - max2) / max1 < PATTERN_TOLERANCE and recent[-1] < max2:
        patterns.append("double_top")
    if min1 > 0 and abs(min1 - min2) / min1 < PATTERN_TOLERANCE and recent[-1] > min2:
        patterns.append("double_bottom")
    return patterns


def price_action_sentiment(prices: Sequence[float]) -> float:
    prices = np.asarray(prices, dtype=float)
    score = (
        momentum_score(prices[-5:]) * 0.4
        + momentum_score(prices[-14:]) * 0.3
        + momentum_score(prices[-30:]) * 0.2
        + trend_strength(prices) * 0.1
    )
    patterns = detect_patterns(prices)
    if "double_top" in patterns:
        score -= 0.2
    if "double_bottom" in patterns:
        score += 0.2
    return _clip(score)


def volume_sentiment(samples: List[MarketSample]) -> float:
    paired = [(s.mid, s.volume) for s in samples if s.volume > 0]
    if len(paired) < 10:
        return 0.0
    prices = np.array([p for p, _ in paired])
    volumes = np.array([v for _, v in paired])
    ratio = float(np.mean(volumes[-5:]) / np.mean(volumes))
    corr = correlation(np.diff(prices), np.diff(volumes))
    return _clip(corr * (ratio - 1))


def volatility_sentiment(prices: Sequence[float]) -> float:
    prices = np.asarray(prices, dtype=float)
    if len(prices) < 3:
        return 0.0
    returns = np.diff(prices) / prices[:-1]
    avg = float(np.mean(returns))
    historical = float(np.sqrt(np.mean((returns - avg) ** 2)))
    if historical == 0:
        return 0.0
    recent = float(np.sqrt(np.mean((returns[-5:] - avg) ** 2)))
    stability = 1 - min(recent / historical, 2) / 2
    return _clip(stability * 2 - 1)


def correlation_sentiment(symbol: str, prices: Sequence[float],
                          references: Optional[Dict[str, Sequence[float]]]) -> float:
    if not references:
        return 0.0
    related = [s for s in REFERENCE_BASKET if s != symbol][:3]
    correlations = []
    for ref in related:
        ref_prices = references.get(ref)
        if ref_prices is None or len(ref_prices) < 10:
            continue
        n = min(len(prices), len(ref_prices))
        correlations.append(correlation(np.asarray(prices)[-n:], np.asarray(ref_prices)[-n:]))
    if not correlations:
        return 0.0
    return float(np.mean(correlations)) * 0.5


class SentimentEngine:
    """Computes a SentimentSnapshot from a sample window."""

    def __init__(self, min_samples: int = 20):
        self.min_samples = min_samples

    def analyze(
        self,
        symbol: str,
        samples: List[MarketSample],
        references: Optional[Dict[str, Sequence[float]]] = None,
    ) -> SentimentSnapshot:
        if len(samples) < self.min_samples:
            return SentimentSnapshot()

        prices = np.array([s.mid for s in samples])
        pa = price_action_sentiment(prices)
        vol = volume_sentiment(samples)
        volat = volatility_sentiment(prices)
        corr = correlation_sentiment(symbol, prices, references)

        overall = _clip(
            pa * COMPONENT_WEIGHTS["price_action"]
            + vol * COMPONENT_WEIGHTS["volume"]
            + volat * COMPONENT_WEIGHTS["volatility"]
            + corr * COMPONENT_WEIGHTS["correlation"]
        )
        fear_greed = _clip((pa + 1) * 50 * 0.5 + (vol + 1) * 50 * 0.3 + (1 - volat) * 50 * 0.2, 0, 100)

        positive_volumes = [s.volume for s in samples if s.volume > 0]
        volume_cv = coefficient_of_variation(positive_volumes) if positive_volumes else 0.5
        strength = _clip(
            abs(trend_strength(prices)) * 0.5
            + (1 - volume_cv) * 0.3
            + (1 - coefficient_of_variation(prices)) * 0.2,
            0, 1,
        )
        confidence = min(len(samples) / 100, 1.0) * 0.6 + min(len(samples), 20) / 20 * 0.4

        snapshot = SentimentSnapshot(
            overall=overall,
            price_action=pa,
            volume=vol,
            volatility=volat,
            correlation=corr,
            fear_greed=fear_greed,
            strength=strength,
            confidence=confidence,
        )
        logger.debug("[SENTIMENT] %s overall=%.3f fg=%.1f", symbol, overall, fear_greed)
        return snapshot
