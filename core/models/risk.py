"""Risk metrics, per-decision risk assessment and kill-switch state."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class KillSwitchLevel(IntEnum):
    NORMAL = 0
    WARNING = 1
    CAUTION = 2
    EMERGENCY = 3


@dataclass
class RiskMetrics:
    """Portfolio snapshot refreshed each assessment cycle."""
    drawdown: float = 0.0
    daily_pnl: float = 0.0
    exposure: float = 0.0
    portfolio_value: float = 0.0
    utilization: float = 0.0
    consecutive_losses: int = 0
    open_positions: int = 0
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def daily_loss_pct(self) -> float:
        if self.daily_pnl >= 0 or self.portfolio_value <= 0:
            return 0.0
        return abs(self.daily_pnl) / self.portfolio_value

    def to_dict(self) -> dict:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat()
        data["daily_loss_pct"] = self.daily_loss_pct
        return data


@dataclass(frozen=True)
class RiskAssessment:
    risk_score: float
    risk_level: RiskLevel
    max_position_size: float
    stop_loss_distance: float
    risk_reward: float

    def to_dict(self) -> dict:
        data = asdict(self)
        data["risk_level"] = self.risk_level.value
        return data


@dataclass
class TradeValidation:
    allowed: bool
    reason: str = "OK"
    adjusted_size: float = 0.0


@dataclass
class KillSwitchState:
    """Session-wide trading halt state."""
    level: int = 0
    reason: str = ""
    updated_at: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.level > 0

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "reason": self.reason,
            "active": self.active,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "KillSwitchState":
        level = int(data.get("level", 0))
        if level not in (0, 1, 2, 3):
            level = 0
        return cls(level=level, reason=data.get("reason", ""), updated_at=data.get("updated_at"))
