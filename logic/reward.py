"""Daily reward / punishment signal from realized trading results."""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from core.models import TradeResult

R_POS = 10.0
R_NEG = 12.0
ALPHA = 0.2   # win-rate bonus
BETA = 0.15   # efficiency bonus
GAMMA = 0.3   # loss-severity penalty


@dataclass
class DailyReport:
    day: str
    trades: int = 0
    wins: int = 0
    pnl: float = 0.0
    gross_notional: float = 0.0
    worst_loss: float = 0.0

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0

    @property
    def efficiency(self) -> float:
        return self.pnl / self.gross_notional if self.gross_notional > 0 else 0.0

    def loss_severity(self, loss_limit: float) -> float:
        return min(abs(self.worst_loss) / loss_limit, 1.0) if loss_limit > 0 else 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["win_rate"] = self.win_rate
        data["efficiency"] = self.efficiency
        return data

    @classmethod
    def from_trades(cls, trades: Iterable[TradeResult], day: Optional[str] = None) -> "DailyReport":
        report = cls(day=day or datetime.now(timezone.utc).strftime("%Y-%m-%d"))
        for t in trades:
            report.trades += 1
            report.wins += int(t.is_win)
            report.pnl += t.pnl
            report.gross_notional += t.notional
            report.worst_loss = min(report.worst_loss, t.pnl)
        return report


def profit_cap(balance: float, total_profit: float) -> float:
    return 0.4 * balance + 0.1 * max(total_profit, 0.0)


def loss_limit(balance: float) -> float:
    return 0.05 * balance


def compute_daily_reward(report: DailyReport, balance: float, total_profit: float = 0.0) -> float:
    """Positive for a profitable day, negative for a losing one, 0 when flat.

    Magnitude grows with |pnl| and saturates at the profit cap / loss limit.
    """
    if report.pnl > 0:
        cap = profit_cap(balance, total_profit)
        norm = min(report.pnl / cap, 1.0) if cap > 0 else 1.0
        efficiency = min(max(report.efficiency, 0.0), 1.0)
        return R_POS * norm * (1 + ALPHA * report.win_rate + BETA * efficiency)
    if report.pnl < 0:
        limit = loss_limit(balance)
        norm = min(abs(report.pnl) / limit, 1.0) if limit > 0 else 1.0
        return -(R_NEG * norm * (1 + GAMMA * report.loss_severity(limit)))
    return 0.0
