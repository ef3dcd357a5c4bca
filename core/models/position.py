"""Position model and lifecycle state."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from core.models.prediction import Direction


class PositionState(Enum):
    OPEN = "open"
    CLOSED = "closed"


class PositionAction(Enum):
    """Risk engine recommendation for an open position."""
    HOLD = "hold"
    CLOSE = "close"
    ADJUST_STOP = "adjust_stop"


@dataclass
class Position:
    """Open position owned by the orchestrator."""
    deal_id: str
    symbol: str
    direction: Direction
    size: float
    entry_price: float
    current_price: float
    stop_loss: float
    take_profit: float
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: PositionState = PositionState.OPEN
    decision_id: Optional[str] = None
    closed_at: Optional[datetime] = None
    exit_price: Optional[float] = None
    close_reason: str = ""

    @property
    def pnl(self) -> float:
        price = self.exit_price if self.exit_price is not None else self.current_price
        return self.pnl_at(price)

    @property
    def notional(self) -> float:
        return abs(self.size * self.entry_price)

    @property
    def pnl_pct(self) -> float:
        return self.pnl / self.notional if self.notional > 0 else 0.0

    @property
    def is_open(self) -> bool:
        return self.state == PositionState.OPEN

    def pnl_at(self, price: float) -> float:
        if self.direction == Direction.BUY:
            return (price - self.entry_price) * self.size
        return (self.entry_price - price) * self.size

    def stop_hit(self, price: float) -> bool:
        if self.stop_loss <= 0:
            return False
        if self.direction == Direction.BUY:
            return price <= self.stop_loss
        return price >= self.stop_loss

    def take_profit_hit(self, price: float) -> bool:
        if self.take_profit <= 0:
            return False
        if self.direction == Direction.BUY:
            return price >= self.take_profit
        return price <= self.take_profit

    def held_hours(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.opened_at).total_seconds() / 3600

    def close(self, price: float, reason: str) -> None:
        self.current_price = price
        self.exit_price = price
        self.close_reason = reason
        self.closed_at = datetime.now(timezone.utc)
        self.state = PositionState.CLOSED

    def to_dict(self) -> dict:
        return {
            "deal_id": self.deal_id,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "size": self.size,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "opened_at": self.opened_at.isoformat(),
            "state": self.state.value,
            "decision_id": self.decision_id,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "exit_price": self.exit_price,
            "close_reason": self.close_reason,
            "pnl": self.pnl,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        closed_at = data.get("closed_at")
        return cls(
            deal_id=data["deal_id"],
            symbol=data["symbol"],
            direction=Direction(data["direction"]),
            size=float(data["size"]),
            entry_price=float(data["entry_price"]),
            current_price=float(data.get("current_price", data["entry_price"])),
            stop_loss=float(data.get("stop_loss", 0.0)),
            take_profit=float(data.get("take_profit", 0.0)),
            opened_at=datetime.fromisoformat(data["opened_at"]),
            state=PositionState(data.get("state", "open")),
            decision_id=data.get("decision_id"),
            closed_at=datetime.fromisoformat(closed_at) if closed_at else None,
            exit_price=data.get("exit_price"),
            close_reason=data.get("close_reason", ""),
        )
