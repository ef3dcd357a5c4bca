"""End-to-end orchestrator scenarios over paper execution and stub inference."""

import asyncio
import signal
from datetime import datetime, timezone

import pytest

from core.config import settings
from core.errors import TradeRejected
from core.models import Direction, MarketSample, RiskMetrics, TradeResult
from core.session import SessionRegistry
from core.storage import get_json
from execution.orchestrator import OrchestratorState
from execution.paper_executor import PaperExecutor
from logic.indicators import price_trend
from logic.sentiment import trend_strength
from run import install_signal_handlers
from tests.test_helpers import StubInference, build_orchestrator, make_samples


def bullish_orchestrator(tmp_path, samples, **overrides):
    overrides.setdefault("inference", StubInference(Direction.BUY, 0.7))
    return build_orchestrator(tmp_path, samples=samples, **overrides)


def capture_decisions(orch):
    seen = []
    orch.events.on_decision(seen.append)
    return seen


def quote(price: float, symbol: str = "EURUSD") -> MarketSample:
    return MarketSample(symbol, price * 0.99995, price * 1.00005, 1000.0, datetime.now(timezone.utc))


class YieldingExecutor(PaperExecutor):
    """Paper executor whose order calls suspend like a network round trip."""

    async def open_position(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().open_position(*args, **kwargs)

    async def close_position(self, deal_id, price=None):
        await asyncio.sleep(0)
        return await super().close_position(deal_id, price)


class RecordingLoop:
    """Real loop for tasks; signal handlers are recorded instead of installed."""

    def __init__(self, loop):
        self.loop = loop
        self.handlers = {}

    def add_signal_handler(self, sig, callback):
        self.handlers[sig] = callback

    def create_task(self, coro):
        return self.loop.create_task(coro)


class TestTradingCycle:
    @pytest.mark.asyncio
    async def test_buy_signal_opens_position(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        seen = capture_decisions(orch)
        assert await orch.initialize()

        decisions = await orch.trading_cycle()

        assert len(decisions) == 1
        decision = decisions[0]
        assert decision.action == Direction.BUY
        assert decision.sentiment.price_action > 0
        assert len(orch.positions) == 1
        position = next(iter(orch.positions.values()))
        assert position.direction == Direction.BUY
        assert position.decision_id == decision.decision_id
        assert position.entry_price == pytest.approx(rising_samples[-1].mid)
        assert position.size == pytest.approx(decision.risk.max_position_size)
        assert len(await orch.executor.get_positions()) == 1

        assert seen[0].executed
        assert seen[0].reason == ""
        assert [r["type"] for r in orch.journal.read("trades")] == ["open"]
        assert await orch.audit.load(decision) is not None

    @pytest.mark.asyncio
    async def test_short_steady_rise_leans_buy(self, tmp_path):
        samples = make_samples("EURUSD", n=25, step_pct=0.001)
        prices = [s.mid for s in samples]
        assert trend_strength(prices) > 0
        assert price_trend(prices, 20) > 0

        orch = bullish_orchestrator(tmp_path, samples)
        await orch.initialize()
        decisions = await orch.trading_cycle()

        assert len(decisions) == 1
        assert decisions[0].sentiment.price_action > 0
        assert decisions[0].action == Direction.BUY

    @pytest.mark.asyncio
    async def test_waits_for_history(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples[:10])
        await orch.initialize()
        assert await orch.trading_cycle() == []
        assert orch.history.count("EURUSD") == 10

    @pytest.mark.asyncio
    async def test_hold_is_recorded_not_executed(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples, inference=StubInference(Direction.HOLD, 0.5))
        seen = capture_decisions(orch)
        await orch.initialize()
        await orch.trading_cycle()
        assert orch.positions == {}
        assert (seen[0].executed, seen[0].reason) == (False, "hold")

    @pytest.mark.asyncio
    async def test_rejected_trade_never_reaches_executor(self, tmp_path, rising_samples, monkeypatch):
        monkeypatch.setattr(settings, "max_open_positions", 0)
        orch = bullish_orchestrator(tmp_path, rising_samples)
        seen = capture_decisions(orch)
        await orch.initialize()
        await orch.trading_cycle()

        assert orch.positions == {}
        assert await orch.executor.get_positions() == []
        assert seen[0].action == Direction.BUY
        assert (seen[0].executed, seen[0].reason) == (False, "max open positions (0)")

    @pytest.mark.asyncio
    async def test_level_two_halts_entries(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        seen = capture_decisions(orch)
        await orch.initialize()
        await orch.kill_switch.trip(2, "drawdown caution")
        await orch.trading_cycle()
        assert orch.positions == {}
        assert seen[0].reason == "entries halted"

    @pytest.mark.asyncio
    async def test_level_one_halves_size(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        await orch.initialize()
        await orch.kill_switch.trip(1, "warning")
        decision = (await orch.trading_cycle())[0]
        position = next(iter(orch.positions.values()))
        assert position.size == pytest.approx(decision.risk.max_position_size * 0.5)

    @pytest.mark.asyncio
    async def test_failed_kill_check_blocks_entries(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        seen = capture_decisions(orch)
        await orch.initialize()

        async def broken(metrics):
            raise RuntimeError("metrics unavailable")

        orch.kill_switch.evaluate = broken
        assert await orch.kill_switch_cycle() is None
        await orch.trading_cycle()
        assert orch.positions == {}
        assert seen[0].reason == "entries halted"


class TestPositionManagement:
    @pytest.mark.asyncio
    async def test_price_drop_closes_at_loss_limit(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        closes = []
        orch.events.on_order(lambda e: closes.append(e) if e.event_type == "close" else None)
        await orch.initialize()
        decision = (await orch.trading_cycle())[0]
        deal_id = next(iter(orch.positions))
        entry = orch.positions[deal_id].entry_price

        orch.history.append(quote(entry * 0.94))
        await orch.monitor_cycle()

        assert orch.positions == {}
        assert closes[0].reason == "loss_limit"
        assert closes[0].pnl < 0
        assert orch.executor.get_balance() < settings.paper_start_balance
        assert (orch.daily_stats.trades, orch.daily_stats.losses) == (1, 1)
        assert orch.risk.state.consecutive_losses == 1
        assert orch.tracker.summary("lstm")["trades"] == 1
        assert decision.outcome.success is False

        await orch.saver.drain()
        archived = await get_json(orch.store, f"archive/test/positions/{deal_id}.json")
        assert archived["close_reason"] == "loss_limit"
        assert await get_json(orch.store, orch.audit.outcome_path(decision)) is not None
        assert [r["type"] for r in orch.journal.read("trades")] == ["open", "close"]

    @pytest.mark.asyncio
    async def test_profit_tightens_stop(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        await orch.initialize()
        await orch.trading_cycle()
        position = next(iter(orch.positions.values()))
        position.take_profit = position.entry_price * 1.5

        orch.history.append(quote(position.entry_price * 1.03))
        await orch.monitor_cycle()

        assert position.is_open
        assert position.stop_loss == pytest.approx(position.entry_price * 1.03 * 0.99)
        assert orch.journal.read("trades")[-1]["reason"] == "trailing"

    @pytest.mark.asyncio
    async def test_flat_close_teaches_nothing(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        await orch.initialize()
        await orch.trading_cycle()
        deal_id = next(iter(orch.positions))
        entry = orch.positions[deal_id].entry_price

        result = await orch.close_position(deal_id, "emergency", price=entry)

        assert result.pnl == 0
        assert (orch.daily_stats.trades, orch.daily_stats.wins, orch.daily_stats.losses) == (1, 0, 0)
        assert orch.risk.state.consecutive_losses == 0
        assert orch.risk.state.performance_score == 0.0
        assert orch.risk.state.outcomes == 0

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        await orch.initialize()
        await orch.trading_cycle()
        deal_id = next(iter(orch.positions))
        assert await orch.close_position(deal_id, "manual") is not None
        assert await orch.close_position(deal_id, "manual") is None
        assert orch.daily_stats.trades == 1


class TestEmergency:
    @pytest.mark.asyncio
    async def test_drawdown_triggers_shutdown_and_survives_restart(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        await orch.initialize()
        await orch.trading_cycle()
        assert len(orch.positions) == 1

        orch.risk.metrics = RiskMetrics(drawdown=0.25, portfolio_value=10000.0)
        state = await orch.kill_switch_cycle()

        assert state.level == 3
        assert orch.positions == {}
        assert await orch.executor.get_positions() == []
        assert orch.state == OrchestratorState.STOPPED
        assert "drawdown" in orch.stop_reason
        assert await orch.trading_cycle() == []
        assert not await orch.emergency_shutdown("again")

        await orch.saver.drain()
        stored = await get_json(orch.store, "state/test/kill_switch.json")
        assert stored["level"] == 3
        risk_types = [r["type"] for r in orch.journal.read("risk")]
        assert "emergency_shutdown" in risk_types
        assert "kill_switch" in risk_types

        restarted = build_orchestrator(tmp_path, samples=rising_samples, registry=SessionRegistry(),
                                       store=orch.store, inference=StubInference(Direction.BUY, 0.7))
        assert not await restarted.initialize()
        assert restarted.state == OrchestratorState.STOPPED
        assert "drawdown" in restarted.stop_reason

        await restarted.reset()
        assert await restarted.initialize()

    @pytest.mark.asyncio
    async def test_emergency_without_positions(self, tmp_path):
        orch = build_orchestrator(tmp_path)
        await orch.initialize()
        assert await orch.emergency_shutdown("manual")
        assert orch.stop_reason == "manual"


    @pytest.mark.asyncio
    async def test_entry_waiting_on_shutdown_is_rejected(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples, executor=YieldingExecutor())
        await orch.initialize()
        decision = (await orch.trading_cycle())[0]
        assert len(orch.positions) == 1

        shutdown, entry = await asyncio.gather(
            orch.emergency_shutdown("drawdown 0.25 > 0.2"),
            orch.execute(decision, rising_samples[-1].mid, 0),
            return_exceptions=True,
        )

        assert shutdown is True
        assert isinstance(entry, TradeRejected)
        assert entry.reason == "emergency shutdown"
        assert orch.positions == {}
        assert await orch.executor.get_positions() == []
        assert orch.state == OrchestratorState.STOPPED

    @pytest.mark.asyncio
    async def test_entry_in_flight_is_closed_by_shutdown(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples, executor=YieldingExecutor())
        await orch.initialize()
        decision = (await orch.trading_cycle())[0]

        entry, shutdown = await asyncio.gather(
            orch.execute(decision, rising_samples[-1].mid, 0),
            orch.emergency_shutdown("drawdown 0.25 > 0.2"),
        )

        assert entry is not None
        assert shutdown is True
        assert orch.positions == {}
        assert await orch.executor.get_positions() == []
        record = [r for r in orch.journal.read("risk") if r["type"] == "emergency_shutdown"][0]
        assert (record["closed_positions"], record["remaining_positions"]) == (2, 0)


class TestStateAndLoops:
    @pytest.mark.asyncio
    async def test_learning_state_survives_restart(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        await orch.initialize()
        await orch.trading_cycle()
        deal_id = next(iter(orch.positions))
        await orch.close_position(deal_id, "manual", price=orch.positions[deal_id].entry_price * 0.99)
        await orch.stop()

        restarted = build_orchestrator(tmp_path, registry=SessionRegistry(), store=orch.store)
        assert await restarted.initialize()
        assert restarted.risk.state.consecutive_losses == 1
        assert restarted.daily_stats.trades == 1
        assert restarted.tracker.summary("lstm")["trades"] == 1

    @pytest.mark.asyncio
    async def test_day_rollover_produces_reward(self, tmp_path):
        orch = build_orchestrator(tmp_path)
        await orch.initialize()
        orch.daily_stats.stats_date = "2024-03-01"
        now = datetime.now(timezone.utc)
        orch.daily_stats.record_trade(TradeResult(
            deal_id="D1", symbol="EURUSD", direction=Direction.BUY, entry_price=100.0, exit_price=150.0,
            size=1.0, opened_at=now, closed_at=now, pnl=50.0, exit_reason="take_profit",
        ))

        await orch.risk_cycle()

        assert len(orch.rewards) == 1
        assert orch.rewards[0] > 0
        assert orch.daily_stats.trades == 0
        await orch.saver.drain()
        stored = await get_json(orch.store, "state/test/rewards.json")
        assert stored["last_report"]["day"] == "2024-03-01"
        assert any(r["type"] == "daily_reward" for r in orch.journal.read("risk"))

    @pytest.mark.asyncio
    async def test_status(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        await orch.initialize()
        await orch.trading_cycle()
        await orch.risk_cycle()
        status = orch.status()
        assert status["session_id"] == "test"
        assert status["open_positions"] == 1
        assert status["exposure"] > 0
        assert status["persistence_failures"] == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        orch.intervals.update(trading=0.01, monitor=0.01, risk=0.01, kill_switch=0.01)
        task = asyncio.create_task(orch.start())
        await asyncio.sleep(0.2)
        assert orch.state == OrchestratorState.RUNNING
        assert len(orch.positions) >= 1

        await orch.stop("operator")
        await asyncio.wait_for(task, timeout=5)
        assert orch.state == OrchestratorState.STOPPED
        assert orch.stop_reason == "operator"
        assert len(orch.positions) >= 1

    @pytest.mark.asyncio
    async def test_signal_handler_holds_stop_task(self, tmp_path, rising_samples):
        orch = bullish_orchestrator(tmp_path, rising_samples)
        await orch.initialize()
        orch.state = OrchestratorState.RUNNING
        loop = RecordingLoop(asyncio.get_running_loop())

        pending = install_signal_handlers(loop, orch)
        assert set(loop.handlers) == {signal.SIGINT, signal.SIGTERM}

        loop.handlers[signal.SIGTERM]()
        assert len(pending) == 1
        await asyncio.gather(*list(pending))
        await asyncio.sleep(0)

        assert pending == set()
        assert orch.state == OrchestratorState.STOPPED
        assert orch.stop_reason == "signal"
