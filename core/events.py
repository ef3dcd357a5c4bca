"""Lightweight event definitions and bus for decision/order lifecycle.

Subscribers (console status, tests) see the same shapes regardless of
which executor or feed backs the session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from core.models import Direction

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DecisionEvent:
    session_id: str
    symbol: str
    action: Direction
    confidence: float
    decision_id: str
    executed: bool = False
    reason: str = ""
    ts: datetime = field(default_factory=_utc_now)


@dataclass
class OrderEvent:
    """Normalized order lifecycle event."""

    event_type: str  # "open", "close", "adjust_stop"
    session_id: str
    symbol: str
    deal_id: str
    direction: Optional[Direction] = None
    price: float = 0.0
    size: float = 0.0
    reason: str = ""
    pnl: float = 0.0
    ts: datetime = field(default_factory=_utc_now)


@dataclass
class KillSwitchEvent:
    session_id: str
    previous_level: int
    level: int
    reason: str
    ts: datetime = field(default_factory=_utc_now)


class EngineEventBus:
    """Minimal sync bus; handler errors never reach the emitting loop."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._decision_handlers: List[Callable[[DecisionEvent], None]] = []
        self._order_handlers: List[Callable[[OrderEvent], None]] = []
        self._kill_handlers: List[Callable[[KillSwitchEvent], None]] = []

    def on_decision(self, handler: Callable[[DecisionEvent], None]) -> None:
        self._decision_handlers.append(handler)

    def on_order(self, handler: Callable[[OrderEvent], None]) -> None:
        self._order_handlers.append(handler)

    def on_kill_switch(self, handler: Callable[[KillSwitchEvent], None]) -> None:
        self._kill_handlers.append(handler)

    def _emit(self, handlers: list, event, label: str) -> None:
        for handler in list(handlers):
            try:
                handler(event)
            except Exception as e:
                logger.warning("[EVENT] %s handler error: %s", label, e)

    def emit_decision(self, event: DecisionEvent) -> None:
        self._emit(self._decision_handlers, event, "Decision")

    def emit_order(self, event: OrderEvent) -> None:
        self._emit(self._order_handlers, event, "Order")

    def emit_kill_switch(self, event: KillSwitchEvent) -> None:
        self._emit(self._kill_handlers, event, "Kill switch")
