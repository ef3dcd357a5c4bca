"""
Model Performance Tracker - live learning signal for the ensemble.

Every closed trade is attributed to each model that voted in its
decision. Daily records of accuracy, Sharpe and win rate feed the
ensemble's weighting over a trailing window.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

import numpy as np

from core.models import Direction, Prediction

FLAT_MOVE_PCT = 0.002


@dataclass
class DailyModelRecord:
    """One model's results for one UTC day."""
    model_id: str
    day: str
    trades: int = 0
    correct: int = 0
    votes: int = 0
    wins: int = 0
    returns: List[float] = field(default_factory=list)

    @property
    def accuracy(self) -> float:
        return self.correct / self.trades if self.trades else 0.5

    @property
    def win_rate(self) -> float:
        return self.wins / self.votes if self.votes else 0.5

    @property
    def sharpe(self) -> float:
        if len(self.returns) < 2:
            return 0.0
        std = float(np.std(self.returns))
        if std == 0:
            return 0.0
        return float(np.clip(np.mean(self.returns) / std, -3.0, 3.0))

    @property
    def composite(self) -> float:
        return self.accuracy * 0.4 + self.sharpe * 0.3 + self.win_rate * 0.3

    def to_dict(self) -> dict:
        return {
            "model_id": self.model_id,
            "day": self.day,
            "trades": self.trades,
            "correct": self.correct,
            "votes": self.votes,
            "wins": self.wins,
            "returns": list(self.returns),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DailyModelRecord":
        return cls(
            model_id=data["model_id"],
            day=data["day"],
            trades=int(data.get("trades", 0)),
            correct=int(data.get("correct", 0)),
            votes=int(data.get("votes", 0)),
            wins=int(data.get("wins", 0)),
            returns=[float(r) for r in data.get("returns", [])],
        )


def _day(ts: Optional[datetime] = None) -> str:
    return (ts or datetime.now(timezone.utc)).strftime("%Y-%m-%d")


class ModelPerformanceTracker:
    """Tracks how each model's votes turned out."""

    def __init__(self, window_days: int = 7):
        self.window_days = window_days
        self._records: Dict[str, Dict[str, DailyModelRecord]] = {}

    def _record(self, model_id: str, day: str) -> DailyModelRecord:
        by_day = self._records.setdefault(model_id, {})
        rec = by_day.get(day)
        if rec is None:
            rec = DailyModelRecord(model_id=model_id, day=day)
            by_day[day] = rec
        return rec

    def record_outcome(
        self,
        predictions: Dict[str, Prediction],
        trade_direction: Direction,
        pnl_pct: float,
        when: Optional[datetime] = None,
    ) -> None:
        """Attribute one closed trade to every voting model."""
        day = _day(when)
        favorable = trade_direction if pnl_pct > 0 else (
            Direction.SELL if trade_direction == Direction.BUY else Direction.BUY
        )
        flat = abs(pnl_pct) < FLAT_MOVE_PCT
        for model_id, pred in predictions.items():
            if pred.is_fallback:
                continue
            rec = self._record(model_id, day)
            rec.trades += 1
            if pred.direction == Direction.HOLD:
                rec.correct += int(flat)
                continue
            model_return = pnl_pct if pred.direction == trade_direction else -pnl_pct
            rec.correct += int(not flat and pred.direction == favorable)
            rec.votes += 1
            rec.wins += int(model_return > 0)
            rec.returns.append(model_return)

    def _window(self, model_id: str, now: Optional[datetime] = None) -> List[DailyModelRecord]:
        now = now or datetime.now(timezone.utc)
        cutoff = _day(now - timedelta(days=self.window_days))
        return [r for d, r in self._records.get(model_id, {}).items() if d > cutoff]

    def score(self, model_id: str, now: Optional[datetime] = None) -> Optional[float]:
        """Mean daily composite over the window; None without history."""
        records = self._window(model_id, now)
        if not records:
            return None
        return float(np.mean([r.composite for r in records]))

    def scores(self, model_ids: Iterable[str], now: Optional[datetime] = None) -> Dict[str, Optional[float]]:
        return {m: self.score(m, now) for m in model_ids}

    def summary(self, model_id: str, now: Optional[datetime] = None) -> dict:
        records = self._window(model_id, now)
        trades = sum(r.trades for r in records)
        votes = sum(r.votes for r in records)
        return {
            "trades": trades,
            "accuracy": sum(r.correct for r in records) / trades if trades else None,
            "win_rate": sum(r.wins for r in records) / votes if votes else None,
        }

    def to_dict(self) -> dict:
        return {
            model_id: [r.to_dict() for r in by_day.values()]
            for model_id, by_day in self._records.items()
        }

    def restore(self, data: dict) -> None:
        """Load persisted records, replacing any for the same (model, day)."""
        for model_id, records in (data or {}).items():
            for raw in records:
                rec = DailyModelRecord.from_dict(raw)
                self._records.setdefault(model_id, {})[rec.day] = rec

    @classmethod
    def from_dict(cls, data: dict, window_days: int = 7) -> "ModelPerformanceTracker":
        tracker = cls(window_days=window_days)
        tracker.restore(data)
        return tracker
