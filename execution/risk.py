"""Risk management components - daily stats, adaptive state, risk engine."""

from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, List, Optional, Tuple

from core.config import settings
from core.logging_utils import get_logger
from core.models import (
    Direction,
    Position,
    PositionAction,
    RiskAssessment,
    RiskLevel,
    RiskMetrics,
    SentimentSnapshot,
    TradeResult,
    TradeValidation,
)

logger = get_logger(__name__)


@dataclass
class DailyStats:
    """Realized results for the current UTC day plus running totals."""
    trades: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0
    consecutive_losses: int = 0
    all_time_pnl: float = 0.0
    stats_date: str = ""
    closed: List[TradeResult] = field(default_factory=list)

    def check_reset(self, now: Optional[datetime] = None) -> Optional["DailyStats"]:
        """Roll over on a new UTC day. Returns the finished day's stats, if any."""
        today = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
        if self.stats_date == today:
            return None
        finished = None
        if self.stats_date:
            logger.info("[STATS] New day detected (%s -> %s), resetting daily stats", self.stats_date, today)
            finished = DailyStats(
                trades=self.trades, wins=self.wins, losses=self.losses,
                total_pnl=self.total_pnl, consecutive_losses=self.consecutive_losses,
                all_time_pnl=self.all_time_pnl, stats_date=self.stats_date,
                closed=list(self.closed),
            )
        self.trades = 0
        self.wins = 0
        self.losses = 0
        self.total_pnl = 0.0
        self.closed = []
        self.stats_date = today
        return finished

    def record_trade(self, result: TradeResult) -> None:
        self.trades += 1
        if result.pnl > 0:
            self.wins += 1
            self.consecutive_losses = 0
        elif result.pnl < 0:
            self.losses += 1
            self.consecutive_losses += 1
        self.total_pnl += result.pnl
        self.all_time_pnl += result.pnl
        self.closed.append(result)

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "trades": self.trades,
            "wins": self.wins,
            "losses": self.losses,
            "total_pnl": self.total_pnl,
            "consecutive_losses": self.consecutive_losses,
            "all_time_pnl": self.all_time_pnl,
            "stats_date": self.stats_date,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DailyStats":
        return cls(
            trades=int(data.get("trades", 0)),
            wins=int(data.get("wins", 0)),
            losses=int(data.get("losses", 0)),
            total_pnl=float(data.get("total_pnl", 0.0)),
            consecutive_losses=int(data.get("consecutive_losses", 0)),
            all_time_pnl=float(data.get("all_time_pnl", 0.0)),
            stats_date=data.get("stats_date", ""),
        )


@dataclass
class AdaptiveState:
    """Self-tuning risk appetite, nudged by each realized outcome."""
    confidence: float = 0.6
    aggression: float = 0.3
    risk_tolerance: float = 0.4
    performance_score: float = 0.0
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    outcomes: int = 0

    def learn(self, success: bool) -> None:
        self.outcomes += 1
        if success:
            self.consecutive_wins += 1
            self.consecutive_losses = 0
            self.performance_score += 0.1
        else:
            self.consecutive_losses += 1
            self.consecutive_wins = 0
            self.performance_score -= 0.1

        if self.consecutive_wins >= 5:
            self.confidence = min(0.95, self.confidence + 0.05)
            self.aggression = min(0.7, self.aggression + 0.05)
        if self.consecutive_losses >= 3:
            self.confidence = max(0.3, self.confidence - 0.1)
            self.aggression = max(0.1, self.aggression - 0.1)
            self.risk_tolerance = max(0.2, self.risk_tolerance - 0.05)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AdaptiveState":
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)


def risk_bucket(score: float) -> RiskLevel:
    if score < 0.4:
        return RiskLevel.LOW
    if score < 0.7:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


class RiskEngine:
    """Scores, sizes and gates trades; recommends actions for open positions."""

    def __init__(self, base_position_size: Optional[float] = None, state: Optional[AdaptiveState] = None):
        self.base_position_size = base_position_size if base_position_size is not None else settings.base_position_size
        self.state = state or AdaptiveState()
        self.metrics = RiskMetrics()
        self._peak_value = 0.0
        self._opens: Dict[str, Deque[datetime]] = defaultdict(deque)

    # Metrics

    def refresh_metrics(self, balance: float, positions: List[Position],
                        stats: DailyStats) -> RiskMetrics:
        """Recompute the portfolio snapshot; always read-most-recent."""
        open_positions = [p for p in positions if p.is_open]
        unrealized = sum(p.pnl for p in open_positions)
        value = balance + unrealized
        self._peak_value = max(self._peak_value, value)
        exposure = sum(abs(p.size * p.current_price) for p in open_positions)
        self.metrics = RiskMetrics(
            drawdown=(self._peak_value - value) / self._peak_value if self._peak_value > 0 else 0.0,
            daily_pnl=stats.total_pnl + unrealized,
            exposure=exposure,
            portfolio_value=value,
            utilization=exposure / value if value > 0 else 0.0,
            consecutive_losses=stats.consecutive_losses,
            open_positions=len(open_positions),
        )
        return self.metrics

    # Per-decision assessment

    def risk_score(self, confidence: float, sentiment: SentimentSnapshot,
                   metrics: Optional[RiskMetrics] = None) -> float:
        m = metrics or self.metrics
        value = m.portfolio_value
        denom = value + m.daily_pnl
        pnl_term = 1 - value / denom if denom > 0 else 1.0
        score = (
            0.3 * (m.drawdown / 0.2)
            + 0.2 * pnl_term
            + 0.3 * abs(sentiment.volatility)
            + 0.2 * (1 - confidence)
        )
        return min(max(score, 0.0), 1.0)

    def assess(self, confidence: float, target: float, stop: float, take_profit: float,
               sentiment: SentimentSnapshot, metrics: Optional[RiskMetrics] = None) -> RiskAssessment:
        score = self.risk_score(confidence, sentiment, metrics)
        risk_distance = abs(target - stop)
        return RiskAssessment(
            risk_score=score,
            risk_level=risk_bucket(score),
            max_position_size=self.base_position_size * (1 - 0.5 * score) * self.state.risk_tolerance,
            stop_loss_distance=risk_distance / target if target > 0 else 0.0,
            risk_reward=abs(take_profit - target) / risk_distance if risk_distance > 0 else 0.0,
        )

    # Trade gate

    def _trades_last_hour(self, symbol: str, now: datetime) -> int:
        opens = self._opens[symbol]
        cutoff = now - timedelta(hours=1)
        while opens and opens[0] < cutoff:
            opens.popleft()
        return len(opens)

    def validate_trade(
        self,
        symbol: str,
        size: float,
        price: float,
        positions: List[Position],
        balance: float,
        total_profit: float = 0.0,
        metrics: Optional[RiskMetrics] = None,
        now: Optional[datetime] = None,
    ) -> TradeValidation:
        m = metrics or self.metrics
        now = now or datetime.now(timezone.utc)
        open_positions = [p for p in positions if p.is_open]
        profit_cap = settings.profit_cap_balance_pct * balance + settings.profit_cap_total_pct * max(total_profit, 0.0)

        if m.drawdown > settings.max_drawdown:
            return TradeValidation(False, f"drawdown {m.drawdown:.2%} exceeds {settings.max_drawdown:.0%}")
        if m.daily_pnl > profit_cap:
            return TradeValidation(False, "daily profit cap reached")
        if m.daily_pnl < -settings.daily_loss_limit_pct * balance:
            return TradeValidation(False, "daily loss limit reached")
        if len(open_positions) >= settings.max_open_positions:
            return TradeValidation(False, f"max open positions ({settings.max_open_positions})")
        if sum(1 for p in open_positions if p.symbol == symbol) >= settings.max_positions_per_symbol:
            return TradeValidation(False, f"max positions for {symbol}")
        if self._trades_last_hour(symbol, now) >= settings.max_trades_per_symbol_hour:
            return TradeValidation(False, f"hourly trade limit for {symbol}")

        adjusted = min(size, settings.max_position_size)
        if adjusted < settings.min_position_size:
            return TradeValidation(False, f"size {adjusted:.4f} below minimum", adjusted)

        value = m.portfolio_value or balance
        exposure_after = m.exposure + abs(adjusted * price)
        if value > 0 and exposure_after > settings.max_exposure_pct * value:
            return TradeValidation(False, "exposure cap exceeded", adjusted)
        return TradeValidation(True, "OK", adjusted)

    def record_open(self, symbol: str, when: Optional[datetime] = None) -> None:
        self._opens[symbol].append(when or datetime.now(timezone.utc))

    # Learning

    def learn_from_outcome(self, success: bool) -> AdaptiveState:
        self.state.learn(success)
        logger.info(
            "[RISK] Outcome %s: confidence=%.2f aggression=%.2f tolerance=%.2f score=%.1f",
            "win" if success else "loss", self.state.confidence, self.state.aggression,
            self.state.risk_tolerance, self.state.performance_score,
        )
        return self.state

    # Open positions

    def trailing_stop(self, position: Position, price: Optional[float] = None) -> Optional[float]:
        """New stop if profit is past the trigger and the stop would tighten."""
        price = position.current_price if price is None else price
        if position.entry_price <= 0:
            return None
        move = (price - position.entry_price) / position.entry_price
        if position.direction == Direction.SELL:
            move = -move
        if move <= settings.trailing_trigger_pct:
            return None
        if position.direction == Direction.BUY:
            candidate = price * (1 - settings.trailing_distance_pct)
            return candidate if candidate > position.stop_loss else None
        candidate = price * (1 + settings.trailing_distance_pct)
        if position.stop_loss <= 0 or candidate < position.stop_loss:
            return candidate
        return None

    def position_action(self, position: Position, balance: float,
                        now: Optional[datetime] = None) -> Tuple[PositionAction, str, Optional[float]]:
        """(action, reason, new stop) for one open position."""
        price = position.current_price
        if position.notional > 0 and position.pnl <= -settings.position_loss_close_pct * position.notional:
            return PositionAction.CLOSE, "loss_limit", None
        if position.stop_hit(price):
            return PositionAction.CLOSE, "stop", None
        if position.take_profit_hit(price):
            return PositionAction.CLOSE, "take_profit", None
        if position.held_hours(now) > settings.max_hold_hours:
            return PositionAction.CLOSE, "max_hold", None

        new_stop = self.trailing_stop(position, price)
        if new_stop is not None:
            return PositionAction.ADJUST_STOP, "trailing", new_stop
        if balance > 0 and position.pnl > settings.position_profit_adjust_pct * balance:
            breakeven = position.entry_price
            improves = (
                breakeven > position.stop_loss if position.direction == Direction.BUY
                else position.stop_loss <= 0 or breakeven < position.stop_loss
            )
            if improves:
                return PositionAction.ADJUST_STOP, "lock_profit", breakeven
        return PositionAction.HOLD, "", None
