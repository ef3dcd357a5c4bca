"""Completed trade result model."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from core.models.position import Position
from core.models.prediction import Direction


@dataclass
class TradeResult:
    """Completed trade result."""
    deal_id: str
    symbol: str
    direction: Direction
    entry_price: float
    exit_price: float
    size: float
    opened_at: datetime
    closed_at: datetime
    pnl: float
    exit_reason: str  # "stop", "take_profit", "risk_close", "max_hold", "emergency"
    decision_id: Optional[str] = None

    @property
    def notional(self) -> float:
        return abs(self.size * self.entry_price)

    @property
    def is_win(self) -> bool:
        return self.pnl > 0

    @classmethod
    def from_position(cls, position: Position) -> "TradeResult":
        return cls(
            deal_id=position.deal_id,
            symbol=position.symbol,
            direction=position.direction,
            entry_price=position.entry_price,
            exit_price=position.exit_price if position.exit_price is not None else position.current_price,
            size=position.size,
            opened_at=position.opened_at,
            closed_at=position.closed_at or position.opened_at,
            pnl=position.pnl,
            exit_reason=position.close_reason,
            decision_id=position.decision_id,
        )
