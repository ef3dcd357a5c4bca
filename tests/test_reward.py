"""Daily reward signal."""

from datetime import datetime, timedelta, timezone

import pytest

from core.models import Direction, TradeResult
from logic.reward import DailyReport, compute_daily_reward


def trade(pnl: float, size: float = 1.0, entry: float = 100.0) -> TradeResult:
    now = datetime.now(timezone.utc)
    return TradeResult(
        deal_id=f"D{pnl}",
        symbol="EURUSD",
        direction=Direction.BUY,
        entry_price=entry,
        exit_price=entry + pnl / size,
        size=size,
        opened_at=now - timedelta(hours=1),
        closed_at=now,
        pnl=pnl,
        exit_reason="take_profit" if pnl > 0 else "stop",
    )


def reward_for(*pnls, balance=10000.0, total_profit=0.0):
    return compute_daily_reward(DailyReport.from_trades([trade(p) for p in pnls], "2024-03-01"),
                                balance, total_profit)


class TestDailyReport:
    def test_from_trades(self):
        report = DailyReport.from_trades([trade(30.0), trade(-10.0), trade(-25.0)], "2024-03-01")
        assert report.trades == 3
        assert report.wins == 1
        assert report.pnl == pytest.approx(-5.0)
        assert report.gross_notional == pytest.approx(300.0)
        assert report.worst_loss == pytest.approx(-25.0)
        assert report.win_rate == pytest.approx(1 / 3)
        assert report.to_dict()["efficiency"] == pytest.approx(-5.0 / 300.0)

    def test_empty_day(self):
        report = DailyReport.from_trades([], "2024-03-01")
        assert (report.trades, report.win_rate, report.efficiency) == (0, 0.0, 0.0)
        assert compute_daily_reward(report, 10000.0) == 0.0


class TestDailyReward:
    def test_sign_follows_pnl(self):
        assert reward_for(50.0) > 0
        assert reward_for(-50.0) < 0
        assert reward_for(20.0, -20.0) == 0.0

    def test_profit_value(self):
        # cap 4000, norm 0.025, full win rate and efficiency bonus
        assert reward_for(100.0) == pytest.approx(10 * 0.025 * 1.35)

    def test_loss_value(self):
        # limit 500, norm 0.2, severity 0.2
        assert reward_for(-100.0) == pytest.approx(-12 * 0.2 * 1.06)

    def test_monotonic_in_pnl(self):
        gains = [reward_for(p) for p in (1.0, 10.0, 100.0, 1000.0)]
        losses = [reward_for(-p) for p in (1.0, 10.0, 100.0, 400.0)]
        assert gains == sorted(gains)
        assert losses == sorted(losses, reverse=True)

    def test_saturates(self):
        assert reward_for(-1000.0) == pytest.approx(-15.6)
        assert reward_for(-5000.0) == pytest.approx(-15.6)
        assert reward_for(5000.0) == reward_for(8000.0)

    def test_total_profit_raises_cap(self):
        assert reward_for(1000.0, total_profit=10000.0) < reward_for(1000.0)
