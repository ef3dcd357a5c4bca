"""
Trading orchestrator - the session's main loop.

Four independent periodic actions run while RUNNING:
- trading cycle: ingest quotes, predict, decide, audit, gate, execute
- position monitor: close or tighten stops per risk recommendation
- risk refresh: recompute portfolio metrics, daily rollover
- kill-switch check: escalate / clear, emergency shutdown at level 3

Shared position state sits behind one lock. The kill-switch level is
read only through the kill switch's own accessor.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from core.config import settings
from core.errors import TradeRejected
from core.events import DecisionEvent, OrderEvent
from core.journal import utc_iso_str
from core.logging_utils import get_logger
from core.models import (
    EnsembleDecision,
    KillSwitchLevel,
    KillSwitchState,
    MarketSample,
    Position,
    PositionAction,
    RiskMetrics,
    TradeResult,
    validate_sample,
)
from core.session import SessionContext
from core.storage import get_json
from execution.kill_switch import entries_halted, size_multiplier
from execution.risk import AdaptiveState, DailyStats
from logic.reward import DailyReport, compute_daily_reward

logger = get_logger(__name__)

MAX_STORED_REWARDS = 30


class OrchestratorState(str, Enum):
    STOPPED = "stopped"
    INITIALIZING = "initializing"
    RUNNING = "running"
    EMERGENCY_SHUTDOWN = "emergency_shutdown"


class TradingOrchestrator:
    """Owns one session's positions and drives its periodic cycles."""

    def __init__(
        self,
        context: SessionContext,
        symbols: Optional[List[str]] = None,
        trading_interval: Optional[float] = None,
        monitor_interval: Optional[float] = None,
        risk_interval: Optional[float] = None,
        kill_switch_interval: Optional[float] = None,
        retrain_interval: Optional[float] = None,
        auto_retrain: Optional[bool] = None,
    ):
        c = context.container
        self.context = context
        self.session_id = context.session_id
        self.symbols = list(symbols or c.symbols)

        self.intervals = {
            "trading": trading_interval or settings.trading_interval,
            "monitor": monitor_interval or settings.monitor_interval,
            "risk": risk_interval or settings.risk_interval,
            "kill_switch": kill_switch_interval or settings.kill_switch_interval,
            "retrain": retrain_interval or settings.retrain_check_interval,
        }
        self.auto_retrain = settings.auto_retrain if auto_retrain is None else auto_retrain

        self.store = c.get_store()
        self.saver = c.get_saver()
        self.journal = c.get_journal()
        self.events = c.get_events()
        self.audit = c.get_audit()
        self.feed = c.get_feed()
        self.executor = c.get_executor()
        self.history = c.get_history()
        self.predictor = c.get_predictor()
        self.sentiment = c.get_sentiment()
        self.tracker = c.get_tracker()
        self.ensemble = c.get_ensemble()
        self.risk = c.get_risk_engine()
        self.daily_stats: DailyStats = c.get_daily_stats()
        self.kill_switch = c.get_kill_switch()
        self.retrainer = c.get_retrainer()

        self.state = OrchestratorState.STOPPED
        self.stop_reason = ""
        self.positions: Dict[str, Position] = {}
        self.rewards: List[float] = []
        self.last_decisions: Dict[str, EnsembleDecision] = {}

        self._lock = asyncio.Lock()
        self._emergency_lock = asyncio.Lock()
        self._emergency_done = False
        self._kill_check_failed = False
        self._open_decisions: Dict[str, EnsembleDecision] = {}
        self._tasks: List[asyncio.Task] = []

    # Persistence paths

    def _state_path(self, name: str) -> str:
        return f"state/{self.session_id}/{name}.json"

    def _archive_path(self, deal_id: str) -> str:
        return f"archive/{self.session_id}/positions/{deal_id}.json"

    # Lifecycle

    async def initialize(self) -> bool:
        """Re-hydrate persisted state. False if a level-3 halt is still in force."""
        self.state = OrchestratorState.INITIALIZING
        logger.info("[ORCH] Initializing session %s (%d symbols)", self.session_id, len(self.symbols))

        kill = await self.kill_switch.load()
        if kill.level >= KillSwitchLevel.EMERGENCY:
            self.state = OrchestratorState.STOPPED
            self.stop_reason = kill.reason
            self._emergency_done = True
            logger.critical("[ORCH] Session %s halted at level 3 (%s); reset required", self.session_id, kill.reason)
            return False

        adaptive = await get_json(self.store, self._state_path("adaptive"))
        if adaptive:
            self.risk.state = AdaptiveState.from_dict(adaptive)
        performance = await get_json(self.store, self._state_path("performance"))
        if performance:
            self.tracker.restore(performance)
        rewards = await get_json(self.store, self._state_path("rewards"))
        if rewards:
            self.rewards = [float(r) for r in rewards.get("rewards", [])][-MAX_STORED_REWARDS:]
        stats = await get_json(self.store, self._state_path("daily_stats"))
        if stats:
            self.daily_stats = DailyStats.from_dict(stats)
        await self._rollover()

        for position in await self.executor.get_positions():
            if position.is_open:
                self.positions.setdefault(position.deal_id, position)
        await self.risk_cycle()
        return True

    async def start(self) -> None:
        if self.state == OrchestratorState.RUNNING:
            return
        if not await self.initialize():
            return
        self.state = OrchestratorState.RUNNING
        self.stop_reason = ""
        logger.info("[ORCH] Session %s running", self.session_id)

        cycles = [
            ("trading", self.trading_cycle),
            ("monitor", self.monitor_cycle),
            ("risk", self.risk_cycle),
            ("kill_switch", self.kill_switch_cycle),
        ]
        if self.auto_retrain:
            cycles.append(("retrain", self.retrain_cycle))
        self._tasks = [
            asyncio.create_task(self._loop(name, self.intervals[name], fn), name=f"{self.session_id}-{name}")
            for name, fn in cycles
        ]
        try:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            await self.stop()

    async def _loop(self, name: str, interval: float, cycle: Callable[[], Awaitable]) -> None:
        while self.state == OrchestratorState.RUNNING:
            try:
                await cycle()
            except Exception as e:
                logger.exception("[ORCH] %s cycle error: %s", name, e)
            if self.state != OrchestratorState.RUNNING:
                break
            await asyncio.sleep(interval)

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

    async def stop(self, reason: str = "") -> None:
        """Graceful stop; open positions stay open."""
        if self.state == OrchestratorState.RUNNING:
            self.state = OrchestratorState.STOPPED
            self.stop_reason = reason or "stopped"
            logger.info("[ORCH] Session %s stopping (%s)", self.session_id, self.stop_reason)
        self._cancel_tasks()
        self._persist_state()
        await self.saver.drain()

    async def reset(self) -> None:
        """Manual re-initialization after an emergency shutdown."""
        await self.kill_switch.reset("operator reset")
        self._emergency_done = False
        self._kill_check_failed = False
        self.stop_reason = ""
        self.state = OrchestratorState.STOPPED
        await self.saver.drain()

    def _persist_state(self) -> None:
        self.saver.submit(self._state_path("adaptive"), self.risk.state.to_dict())
        self.saver.submit(self._state_path("performance"), self.tracker.to_dict())
        self.saver.submit(self._state_path("daily_stats"), self.daily_stats.to_dict())
        self.saver.submit(self._state_path("rewards"), {"rewards": self.rewards})

    # Market data

    async def ingest(self, symbol: str, now: Optional[datetime] = None) -> int:
        """Poll the feed, keep valid samples, mark open positions."""
        accepted = 0
        for sample in await self.feed.poll(symbol):
            ok, reason = validate_sample(
                sample, settings.max_sample_spread_pct, settings.max_sample_age_seconds, now
            )
            if not ok:
                logger.debug("[ORCH] Rejected %s sample: %s", symbol, reason)
                continue
            self.history.append(sample)
            accepted += 1
        latest = self.history.latest(symbol)
        if accepted and latest is not None:
            self._mark(symbol, latest)
        return accepted

    def _mark(self, symbol: str, sample: MarketSample) -> None:
        for position in self.positions.values():
            if position.symbol == symbol and position.is_open:
                position.current_price = sample.mid
        mark = getattr(self.executor, "mark", None)
        if mark is not None:
            mark(symbol, sample.mid)

    # Trading cycle

    async def _current_level(self) -> Optional[int]:
        """Kill-switch level, or None when it cannot be trusted."""
        if self._kill_check_failed:
            return None
        try:
            return await self.kill_switch.level()
        except Exception as e:
            logger.error("[KILL] Level unavailable, treating as halted: %s", e)
            return None

    async def trading_cycle(self) -> List[EnsembleDecision]:
        decisions = []
        for symbol in self.symbols:
            if self._emergency_done or self.state == OrchestratorState.EMERGENCY_SHUTDOWN:
                break
            try:
                await self.ingest(symbol)
                decision = await self.trade_symbol(symbol)
                if decision is not None:
                    decisions.append(decision)
            except Exception as e:
                logger.exception("[ORCH] %s trading error: %s", symbol, e)
        return decisions

    async def trade_symbol(self, symbol: str) -> Optional[EnsembleDecision]:
        samples = self.history.get(symbol)
        if len(samples) < settings.min_history:
            logger.debug("[ORCH] %s has %d samples, waiting for %d", symbol, len(samples), settings.min_history)
            return None

        predictions = await self.predictor.predict_all(symbol, samples, self.rewards)
        references = {s: self.history.mids(s) for s in self.history.symbols() if s != symbol}
        sentiment = self.sentiment.analyze(symbol, samples, references)
        decision = self.ensemble.decide(symbol, predictions, sentiment, [s.mid for s in samples])
        self.last_decisions[symbol] = decision

        await self.audit.record(decision)

        executed = False
        reason = ""
        if not decision.is_actionable:
            reason = "hold"
        elif decision.confidence < settings.action_threshold:
            reason = "low confidence"
        else:
            level = await self._current_level()
            if level is None or entries_halted(level):
                reason = "entries halted"
            else:
                try:
                    executed = await self.execute(decision, samples[-1].mid, level) is not None
                except TradeRejected as e:
                    reason = e.reason
                    logger.info("[RISK] %s rejected: %s", symbol, e.reason)

        self.events.emit_decision(DecisionEvent(
            session_id=self.session_id,
            symbol=symbol,
            action=decision.action,
            confidence=decision.confidence,
            decision_id=decision.decision_id,
            executed=executed,
            reason=reason,
        ))
        return decision

    async def execute(self, decision: EnsembleDecision, price: float, level: int = 0) -> Optional[Position]:
        """Size, validate and open. Raises TradeRejected on a risk veto."""
        symbol = decision.symbol
        base = decision.risk.max_position_size if decision.risk else self.risk.base_position_size
        size = base * size_multiplier(level)

        async with self._lock:
            if self._emergency_done or self.state == OrchestratorState.EMERGENCY_SHUTDOWN:
                raise TradeRejected(symbol, "emergency shutdown")
            validation = self.risk.validate_trade(
                symbol,
                size,
                price,
                list(self.positions.values()),
                self.executor.get_balance(),
                total_profit=self.daily_stats.all_time_pnl,
            )
            if not validation.allowed:
                raise TradeRejected(symbol, validation.reason)

            deal_id = await self.executor.open_position(
                symbol, decision.action, validation.adjusted_size, price,
                decision.stop_loss, decision.take_profit,
            )
            if deal_id is None:
                logger.warning("[ORCH] Executor did not open %s %s", decision.action.value, symbol)
                return None

            position = Position(
                deal_id=deal_id,
                symbol=symbol,
                direction=decision.action,
                size=validation.adjusted_size,
                entry_price=price,
                current_price=price,
                stop_loss=decision.stop_loss,
                take_profit=decision.take_profit,
                decision_id=decision.decision_id,
            )
            self.positions[deal_id] = position
            self._open_decisions[deal_id] = decision
            self.risk.record_open(symbol)

        logger.info("[ORCH] Opened %s %s size=%.4f @ %.5f conf=%.3f",
                    decision.action.value, symbol, position.size, price, decision.confidence)
        self.journal.trade({"ts": utc_iso_str(), "type": "open", "session_id": self.session_id, **position.to_dict()})
        self.events.emit_order(OrderEvent(
            event_type="open",
            session_id=self.session_id,
            symbol=symbol,
            deal_id=deal_id,
            direction=position.direction,
            price=price,
            size=position.size,
        ))
        return position

    # Position monitoring

    async def monitor_cycle(self) -> None:
        async with self._lock:
            positions = [p for p in self.positions.values() if p.is_open]
        balance = self.executor.get_balance()
        for position in positions:
            try:
                latest = self.history.latest(position.symbol)
                if latest is not None:
                    position.current_price = latest.mid
                action, reason, new_stop = self.risk.position_action(position, balance)
                if action == PositionAction.CLOSE:
                    await self.close_position(position.deal_id, reason)
                elif action == PositionAction.ADJUST_STOP and new_stop is not None:
                    await self._adjust_stop(position, new_stop, reason)
            except Exception as e:
                logger.exception("[ORCH] Monitor error on %s: %s", position.deal_id, e)

    async def _adjust_stop(self, position: Position, new_stop: float, reason: str) -> bool:
        if not await self.executor.update_stop_loss(position.deal_id, new_stop):
            logger.warning("[ORCH] Stop update failed for %s", position.deal_id)
            return False
        old = position.stop_loss
        position.stop_loss = new_stop
        logger.info("[ORCH] %s stop %.5f -> %.5f (%s)", position.deal_id, old, new_stop, reason)
        self.journal.trade({
            "ts": utc_iso_str(), "type": "adjust_stop", "session_id": self.session_id,
            "deal_id": position.deal_id, "symbol": position.symbol,
            "old_stop": old, "new_stop": new_stop, "reason": reason,
        })
        self.events.emit_order(OrderEvent(
            event_type="adjust_stop",
            session_id=self.session_id,
            symbol=position.symbol,
            deal_id=position.deal_id,
            price=new_stop,
            reason=reason,
        ))
        return True

    async def close_position(self, deal_id: str, reason: str,
                             price: Optional[float] = None) -> Optional[TradeResult]:
        """Close one position. Already-closed or unknown deals are skipped."""
        async with self._lock:
            position = self.positions.get(deal_id)
            if position is None or not position.is_open:
                return None
            exit_price = price if price is not None else position.current_price
            if not await self.executor.close_position(deal_id, exit_price):
                logger.error("[ORCH] Executor failed to close %s", deal_id)
                return None
            position.close(exit_price, reason)
            del self.positions[deal_id]
            decision = self._open_decisions.pop(deal_id, None)

        result = TradeResult.from_position(position)
        await self._on_closed(position, result, decision)
        return result

    async def _on_closed(self, position: Position, result: TradeResult,
                         decision: Optional[EnsembleDecision]) -> None:
        await self._rollover()
        self.daily_stats.record_trade(result)
        if result.pnl != 0:
            self.risk.learn_from_outcome(result.is_win)

        if decision is not None:
            self.tracker.record_outcome(decision.predictions, position.direction, position.pnl_pct)
            if decision.outcome is None:
                outcome = decision.annotate_outcome(result.pnl)
                self.audit.record_outcome(decision, outcome)

        self.saver.submit(self._archive_path(position.deal_id), position.to_dict(),
                          {"session_id": self.session_id, "symbol": position.symbol})
        self._persist_state()

        logger.info("[ORCH] Closed %s %s (%s) pnl=%.2f", position.symbol, position.deal_id,
                    result.exit_reason, result.pnl)
        self.journal.trade({"ts": utc_iso_str(), "type": "close", "session_id": self.session_id, **position.to_dict()})
        self.events.emit_order(OrderEvent(
            event_type="close",
            session_id=self.session_id,
            symbol=position.symbol,
            deal_id=position.deal_id,
            direction=position.direction,
            price=result.exit_price,
            size=position.size,
            reason=result.exit_reason,
            pnl=result.pnl,
        ))

    # Risk refresh and daily rollover

    async def risk_cycle(self) -> RiskMetrics:
        await self._rollover()
        async with self._lock:
            positions = list(self.positions.values())
        metrics = self.risk.refresh_metrics(self.executor.get_balance(), positions, self.daily_stats)
        self.journal.risk({"ts": utc_iso_str(), "type": "metrics", "session_id": self.session_id, **metrics.to_dict()})
        return metrics

    async def _rollover(self, now: Optional[datetime] = None) -> Optional[float]:
        """Close out the previous UTC day: report, reward, persist."""
        finished = self.daily_stats.check_reset(now)
        if finished is None:
            return None
        report = DailyReport.from_trades(finished.closed, finished.stats_date)
        if finished.trades and not finished.closed:
            # restored stats carry totals but not the individual trades
            report.trades, report.wins, report.pnl = finished.trades, finished.wins, finished.total_pnl
        reward = compute_daily_reward(report, self.executor.get_balance(), finished.all_time_pnl)
        self.rewards = (self.rewards + [reward])[-MAX_STORED_REWARDS:]
        logger.info("[ORCH] Day %s closed: %d trades pnl=%.2f reward=%.2f",
                    report.day, report.trades, report.pnl, reward)
        self.journal.risk({"ts": utc_iso_str(), "type": "daily_reward", "session_id": self.session_id,
                           "reward": reward, **report.to_dict()})
        self.saver.submit(self._state_path("rewards"), {"rewards": self.rewards, "last_report": report.to_dict()})
        return reward

    # Kill switch

    async def kill_switch_cycle(self) -> Optional[KillSwitchState]:
        try:
            state = await self.kill_switch.evaluate(self.risk.metrics)
        except Exception as e:
            self._kill_check_failed = True
            logger.error("[KILL] Evaluation failed, entries halted this cycle: %s", e)
            return None
        self._kill_check_failed = False
        if state.level >= KillSwitchLevel.EMERGENCY:
            await self.emergency_shutdown(state.reason)
        return state

    async def emergency_shutdown(self, reason: str) -> bool:
        """Close everything and stop. Runs at most once until reset()."""
        async with self._emergency_lock:
            if self._emergency_done:
                return False
            self.state = OrchestratorState.EMERGENCY_SHUTDOWN
            self.stop_reason = reason
            logger.critical("[ORCH] EMERGENCY SHUTDOWN for %s: %s", self.session_id, reason)

            # let an entry already past the gate land so it is closed below
            async with self._lock:
                pass

            closed = 0
            attempted = set()
            while True:
                pending = [d for d in self.positions if d not in attempted]
                if not pending:
                    break
                for deal_id in pending:
                    attempted.add(deal_id)
                    try:
                        if await self.close_position(deal_id, "emergency") is not None:
                            closed += 1
                    except Exception as e:
                        logger.error("[ORCH] Emergency close failed for %s: %s", deal_id, e)

            self.journal.risk({
                "ts": utc_iso_str(), "type": "emergency_shutdown", "session_id": self.session_id,
                "reason": reason, "closed_positions": closed, "remaining_positions": len(self.positions),
            })
            self._emergency_done = True
            self.state = OrchestratorState.STOPPED
        self._cancel_tasks()
        return True

    # Auto-retrain

    async def retrain_cycle(self) -> int:
        jobs = 0
        for symbol in self.symbols:
            samples = self.history.get(symbol)
            if len(samples) < settings.sequence_length + 5:
                continue
            try:
                done = await self.retrainer.check_and_retrain(symbol, samples, self.risk.metrics.drawdown)
                jobs += len(done)
            except Exception as e:
                logger.exception("[ORCH] Retrain check failed for %s: %s", symbol, e)
        return jobs

    # Status

    def status(self) -> dict:
        metrics = self.risk.metrics
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "stop_reason": self.stop_reason,
            "balance": self.executor.get_balance(),
            "open_positions": len(self.positions),
            "drawdown": metrics.drawdown,
            "daily_pnl": metrics.daily_pnl,
            "exposure": metrics.exposure,
            "trades_today": self.daily_stats.trades,
            "win_rate": self.daily_stats.win_rate,
            "persistence_failures": self.saver.failures,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
