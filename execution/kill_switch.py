"""Multi-level kill switch.

Levels:
  0 normal      no restriction
  1 warning     new trade size halved
  2 caution     no new entries, open positions still managed
  3 emergency   close everything and stop the orchestrator

Each evaluation checks every rule first, then escalates to the highest
breached level. The level only drops, straight to 0, when nothing is
breached. All readers go through the same lock.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from core.config import settings
from core.events import EngineEventBus, KillSwitchEvent
from core.journal import Journal, utc_iso_str
from core.logging_utils import get_logger
from core.models import KillSwitchLevel, KillSwitchState, RiskMetrics
from core.storage import BackgroundSaver, get_json
from core.trading_interfaces import IObjectStore

logger = get_logger(__name__)

CONDITIONS: Dict[str, Callable[[RiskMetrics], float]] = {
    "drawdown": lambda m: m.drawdown,
    "daily_loss_pct": lambda m: m.daily_loss_pct,
    "consecutive_losses": lambda m: float(m.consecutive_losses),
    "utilization": lambda m: m.utilization,
}

# Counts trip on reaching the threshold; ratios on exceeding it.
COUNT_CONDITIONS = {"consecutive_losses"}

LEVEL_SIZE_MULTIPLIER = {0: 1.0, 1: 0.5, 2: 0.0, 3: 0.0}


@dataclass(frozen=True)
class KillSwitchRule:
    level: int
    condition: str
    threshold: float

    def value(self, metrics: RiskMetrics) -> float:
        return CONDITIONS[self.condition](metrics)

    @property
    def operator(self) -> str:
        return ">=" if self.condition in COUNT_CONDITIONS else ">"

    def breached(self, metrics: RiskMetrics) -> bool:
        value = self.value(metrics)
        if self.operator == ">=":
            return value >= self.threshold
        return value > self.threshold

    def describe(self, metrics: RiskMetrics) -> str:
        return f"{self.condition} {self.value(metrics):.4g} {self.operator} {self.threshold:g} (level {self.level})"

    @classmethod
    def from_dict(cls, data: dict) -> "KillSwitchRule":
        level = int(data["level"])
        condition = data["condition"]
        if level not in (1, 2, 3):
            raise ValueError(f"invalid kill switch level: {level}")
        if condition not in CONDITIONS:
            raise ValueError(f"unknown kill switch condition: {condition}")
        return cls(level=level, condition=condition, threshold=float(data["threshold"]))


def parse_rules(raw: Iterable[dict]) -> List[KillSwitchRule]:
    rules = []
    for entry in raw:
        try:
            rules.append(KillSwitchRule.from_dict(entry))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("[KILL] Skipping invalid rule %s: %s", entry, e)
    return rules


def size_multiplier(level: int) -> float:
    return LEVEL_SIZE_MULTIPLIER.get(level, 0.0)


def entries_halted(level: int) -> bool:
    return level >= KillSwitchLevel.CAUTION


class KillSwitch:
    """Session-wide halt state owned by the risk layer."""

    def __init__(
        self,
        session_id: str,
        rules: Optional[List[KillSwitchRule]] = None,
        store: Optional[IObjectStore] = None,
        saver: Optional[BackgroundSaver] = None,
        journal: Optional[Journal] = None,
        events: Optional[EngineEventBus] = None,
    ):
        self.session_id = session_id
        self.rules = rules if rules is not None else parse_rules(settings.kill_switch_rules)
        self.store = store
        self.saver = saver
        self.journal = journal
        self.events = events
        self._state = KillSwitchState()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> str:
        return f"state/{self.session_id}/kill_switch.json"

    async def load(self) -> KillSwitchState:
        """Re-hydrate the persisted level and reason."""
        if self.store is None:
            return await self.snapshot()
        data = await get_json(self.store, self.path)
        async with self._lock:
            if data:
                self._state = KillSwitchState.from_dict(data)
                if self._state.active:
                    logger.warning("[KILL] Restored level %d: %s", self._state.level, self._state.reason)
            return KillSwitchState(**vars(self._state))

    async def snapshot(self) -> KillSwitchState:
        async with self._lock:
            return KillSwitchState(**vars(self._state))

    async def level(self) -> int:
        async with self._lock:
            return self._state.level

    def breached_rules(self, metrics: RiskMetrics) -> List[KillSwitchRule]:
        return [r for r in self.rules if r.breached(metrics)]

    async def evaluate(self, metrics: RiskMetrics) -> KillSwitchState:
        """Check every rule, then move to the resulting level."""
        breached = self.breached_rules(metrics)
        async with self._lock:
            previous = self._state.level
            if breached:
                top = max(r.level for r in breached)
                level = max(previous, top)
                worst = [r for r in breached if r.level == top]
                reason = "; ".join(r.describe(metrics) for r in worst) if level == top else self._state.reason
            else:
                level = 0
                reason = ""
            if level != previous:
                self._transition(previous, level, reason)
            return KillSwitchState(**vars(self._state))

    async def reset(self, reason: str = "manual reset") -> KillSwitchState:
        async with self._lock:
            previous = self._state.level
            self._transition(previous, 0, "")
            logger.info("[KILL] Reset from level %d (%s)", previous, reason)
            return KillSwitchState(**vars(self._state))

    async def trip(self, level: int, reason: str) -> KillSwitchState:
        """Escalate directly, e.g. when evaluation itself fails."""
        async with self._lock:
            previous = self._state.level
            if level > previous:
                self._transition(previous, level, reason)
            return KillSwitchState(**vars(self._state))

    def _transition(self, previous: int, level: int, reason: str) -> None:
        self._state = KillSwitchState(level=level, reason=reason, updated_at=utc_iso_str())
        if level == KillSwitchLevel.EMERGENCY:
            logger.critical("[KILL] Level %d -> %d: %s", previous, level, reason)
        elif level > previous:
            logger.warning("[KILL] Level %d -> %d: %s", previous, level, reason)
        else:
            logger.info("[KILL] Level %d -> %d: conditions cleared", previous, level)

        record = {
            "ts": self._state.updated_at,
            "type": "kill_switch",
            "session_id": self.session_id,
            "previous_level": previous,
            **self._state.to_dict(),
        }
        if self.journal is not None:
            try:
                self.journal.risk(record)
            except OSError as e:
                logger.error("[KILL] Journal write failed: %s", e)
        if self.saver is not None:
            self.saver.submit(self.path, self._state.to_dict(), {"session_id": self.session_id})
        if self.events is not None:
            self.events.emit_kill_switch(KillSwitchEvent(
                session_id=self.session_id,
                previous_level=previous,
                level=level,
                reason=reason,
                ts=datetime.now(timezone.utc),
            ))
