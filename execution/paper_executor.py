"""Paper executor implementation with simple slippage simulation."""

import random
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from core.config import settings
from core.logging_utils import get_logger
from core.models import Direction, Position
from core.trading_interfaces import IOrderExecutor

logger = get_logger(__name__)


class PaperExecutor(IOrderExecutor):
    """Executes simulated orders; balance moves by realized pnl on close."""

    def __init__(
        self,
        start_balance: Optional[float] = None,
        slippage_bps: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        self.balance = start_balance if start_balance is not None else settings.paper_start_balance
        self.slippage_bps = slippage_bps
        self._rng = rng or random.Random()
        self._positions: Dict[str, Position] = {}
        self.realized_pnl = 0.0

    def _slip(self, price: float, direction: Direction, opening: bool) -> float:
        if self.slippage_bps <= 0:
            return price
        slippage = self._rng.uniform(0, self.slippage_bps / 10000)
        # Slippage always works against the trader
        adverse = (direction == Direction.BUY) == opening
        return price * (1 + slippage) if adverse else price * (1 - slippage)

    async def open_position(
        self,
        symbol: str,
        direction: Direction,
        size: float,
        price: float,
        stop_loss: float,
        take_profit: float,
    ) -> Optional[str]:
        if direction == Direction.HOLD or size <= 0 or price <= 0:
            return None
        fill_price = self._slip(price, direction, opening=True)
        deal_id = f"PAPER-{uuid.uuid4().hex[:12]}"
        self._positions[deal_id] = Position(
            deal_id=deal_id,
            symbol=symbol,
            direction=direction,
            size=size,
            entry_price=fill_price,
            current_price=fill_price,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )
        logger.info("[PAPER] Opened %s %s %.4f @ %.5f (%s)", direction.value, symbol, size, fill_price, deal_id)
        return deal_id

    async def close_position(self, deal_id: str, price: Optional[float] = None) -> bool:
        position = self._positions.get(deal_id)
        if position is None or not position.is_open:
            return False
        exit_price = price if price is not None else position.current_price
        exit_price = self._slip(exit_price, position.direction, opening=False)
        position.close(exit_price, position.close_reason or "closed")
        self.balance += position.pnl
        self.realized_pnl += position.pnl
        del self._positions[deal_id]
        logger.info("[PAPER] Closed %s %s @ %.5f pnl=%.2f", position.symbol, deal_id, exit_price, position.pnl)
        return True

    async def update_stop_loss(self, deal_id: str, price: float) -> bool:
        position = self._positions.get(deal_id)
        if position is None or price <= 0:
            return False
        position.stop_loss = price
        return True

    async def get_positions(self) -> List[Position]:
        return list(self._positions.values())

    def mark(self, symbol: str, price: float) -> None:
        """Update current price on every open position for a symbol."""
        for position in self._positions.values():
            if position.symbol == symbol:
                position.current_price = price

    def get_balance(self) -> float:
        return self.balance

    def unrealized_pnl(self) -> float:
        return sum(p.pnl for p in self._positions.values())

    def snapshot(self) -> dict:
        return {
            "balance": self.balance,
            "realized_pnl": self.realized_pnl,
            "positions": [p.to_dict() for p in self._positions.values()],
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
