"""
Technical indicators over a mid-price window.

Indicators:
- RSI (momentum oscillator, neutral 50 without enough history)
- EMA / MACD (12/26 with a 9-period signal line)
- ATR (mean true range over 14 periods, highs/lows from the quote)
- Bollinger Bands (20-period SMA +/- 2 population std)

Insufficient history never raises; each indicator has a neutral value.
"""

from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from core.models import MarketSample


@dataclass
class TechnicalIndicators:
    """Indicator snapshot for the latest sample of a window."""
    price: float = 0.0
    rsi: float = 50.0
    ema_fast: float = 0.0
    ema_slow: float = 0.0
    macd: float = 0.0
    macd_signal: float = 0.0
    atr: float = 0.0
    bb_upper: float = 0.0
    bb_middle: float = 0.0
    bb_lower: float = 0.0
    samples: int = 0

    @property
    def macd_histogram(self) -> float:
        return self.macd - self.macd_signal

    @property
    def bb_position(self) -> float:
        """Where price sits in the band (0 = lower, 1 = upper)."""
        width = self.bb_upper - self.bb_lower
        if width <= 0:
            return 0.5
        return float(np.clip((self.price - self.bb_lower) / width, 0.0, 1.0))

    @property
    def atr_pct(self) -> float:
        return self.atr / self.price if self.price > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "price": self.price,
            "rsi": self.rsi,
            "macd": self.macd,
            "macd_signal": self.macd_signal,
            "macd_histogram": self.macd_histogram,
            "atr": self.atr,
            "bb_upper": self.bb_upper,
            "bb_middle": self.bb_middle,
            "bb_lower": self.bb_lower,
            "bb_position": self.bb_position,
        }


def compute_rsi(closes: Sequence[float], period: int = 14) -> float:
    closes = np.asarray(closes, dtype=float)
    if len(closes) < period + 1:
        return 50.0

    deltas = np.diff(closes[-(period + 1):])
    avg_gain = np.mean(np.where(deltas > 0, deltas, 0.0))
    avg_loss = np.mean(np.where(deltas < 0, -deltas, 0.0))

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return float(100 - (100 / (1 + rs)))


def ema_series(data: Sequence[float], period: int) -> np.ndarray:
    """EMA at every point, seeded with the first value."""
    data = np.asarray(data, dtype=float)
    if len(data) == 0:
        return data
    k = 2 / (period + 1)
    out = np.empty_like(data)
    out[0] = data[0]
    for i in range(1, len(data)):
        out[i] = (data[i] - out[i - 1]) * k + out[i - 1]
    return out


def compute_ema(data: Sequence[float], period: int) -> float:
    series = ema_series(data, period)
    return float(series[-1]) if len(series) else 0.0


def compute_macd(closes: Sequence[float], fast: int = 12, slow: int = 26,
                 signal: int = 9) -> tuple[float, float]:
    """(macd, signal). Both 0 on an empty window."""
    closes = np.asarray(closes, dtype=float)
    if len(closes) == 0:
        return 0.0, 0.0
    macd_line = ema_series(closes, fast) - ema_series(closes, slow)
    signal_line = ema_series(macd_line, signal)
    return float(macd_line[-1]), float(signal_line[-1])


def compute_atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float],
                period: int = 14) -> float:
    highs = np.asarray(highs, dtype=float)
    lows = np.asarray(lows, dtype=float)
    closes = np.asarray(closes, dtype=float)
    if len(closes) < 2:
        return float(highs[-1] - lows[-1]) if len(closes) else 0.0

    prev_close = closes[:-1]
    true_range = np.maximum.reduce([
        highs[1:] - lows[1:],
        np.abs(highs[1:] - prev_close),
        np.abs(lows[1:] - prev_close),
    ])
    return float(np.mean(true_range[-period:]))


def compute_bollinger(closes: Sequence[float], period: int = 20,
                      num_std: float = 2.0) -> tuple[float, float, float]:
    """(upper, middle, lower) using population std."""
    closes = np.asarray(closes, dtype=float)
    if len(closes) == 0:
        return 0.0, 0.0, 0.0
    window = closes[-period:]
    middle = float(np.mean(window))
    std = float(np.std(window))
    return middle + num_std * std, middle, middle - num_std * std


def compute_indicators(samples: List[MarketSample], rsi_period: int = 14) -> TechnicalIndicators:
    if not samples:
        return TechnicalIndicators()
    closes = np.array([s.mid for s in samples])
    highs = np.array([s.high for s in samples])
    lows = np.array([s.low for s in samples])
    macd, macd_signal = compute_macd(closes)
    upper, middle, lower = compute_bollinger(closes)
    return TechnicalIndicators(
        price=float(closes[-1]),
        rsi=compute_rsi(closes, rsi_period),
        ema_fast=compute_ema(closes, 12),
        ema_slow=compute_ema(closes, 26),
        macd=macd,
        macd_signal=macd_signal,
        atr=compute_atr(highs, lows, closes),
        bb_upper=upper,
        bb_middle=middle,
        bb_lower=lower,
        samples=len(samples),
    )


def price_trend(prices: Sequence[float], lookback: int) -> float:
    """Simple return over the last ``lookback`` prices."""
    window = np.asarray(prices, dtype=float)[-lookback:]
    if len(window) < 2 or window[0] == 0:
        return 0.0
    return float(window[-1] / window[0] - 1)


def momentum(prices: Sequence[float], lookback: int) -> float:
    """Mean simple return over the last ``lookback`` prices."""
    window = np.asarray(prices, dtype=float)[-lookback:]
    if len(window) < 2:
        return 0.0
    returns = np.diff(window) / window[:-1]
    return float(np.mean(returns))


def relative_volatility(prices: Sequence[float], lookback: int = 20) -> float:
    """Coefficient of variation over the last ``lookback`` prices."""
    window = np.asarray(prices, dtype=float)[-lookback:]
    if len(window) < 2:
        return 0.0
    mean = float(np.mean(window))
    return float(np.std(window) / mean) if mean else 0.0
