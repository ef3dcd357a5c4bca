#!/usr/bin/env python3
"""
Decision engine runner.

Usage:
    python run.py                       # Paper session on WATCH_SYMBOLS
    python run.py -s demo -y EURUSD,GOLD
    python run.py --in-memory -d 300    # Throwaway run for five minutes
    python run.py --reset               # Clear a level-3 halt, then start
"""

import argparse
import asyncio
import signal
from datetime import datetime, timezone
from typing import Optional, Set

from rich.console import Console
from rich.live import Live
from rich.table import Table

from core.config import settings
from core.logging_utils import get_logger, setup_logging
from core.session import SessionRegistry
from execution.orchestrator import OrchestratorState, TradingOrchestrator

logger = get_logger(__name__)


def render_status(orch: TradingOrchestrator) -> Table:
    status = orch.status()
    table = Table(title=f"Session {status['session_id']}", expand=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("State", status["state"] + (f" ({status['stop_reason']})" if status["stop_reason"] else ""))
    table.add_row("Balance", f"{status['balance']:,.2f}")
    table.add_row("Open positions", str(status["open_positions"]))
    table.add_row("Drawdown", f"{status['drawdown']:.2%}")
    table.add_row("Daily P&L", f"{status['daily_pnl']:+,.2f}")
    table.add_row("Exposure", f"{status['exposure']:,.2f}")
    table.add_row("Trades today", f"{status['trades_today']} ({status['win_rate']:.0%} win)")
    if status["persistence_failures"]:
        table.add_row("Persistence failures", f"[red]{status['persistence_failures']}[/red]")

    for symbol, decision in sorted(orch.last_decisions.items()):
        table.add_row(f"{symbol}", f"{decision.action.value} {decision.confidence:.2f} [{decision.regime.value}]")
    return table


async def display_loop(orch: TradingOrchestrator, console: Console) -> None:
    await asyncio.sleep(1)
    with Live(render_status(orch), console=console, refresh_per_second=1) as live:
        while orch.state in (OrchestratorState.RUNNING, OrchestratorState.INITIALIZING):
            live.update(render_status(orch))
            await asyncio.sleep(1)
        live.update(render_status(orch))


def install_signal_handlers(loop: asyncio.AbstractEventLoop, orch: TradingOrchestrator) -> Set[asyncio.Task]:
    """Stop the session on SIGINT/SIGTERM. The returned set holds the stop tasks until they finish."""
    pending: Set[asyncio.Task] = set()

    def on_signal() -> None:
        task = loop.create_task(orch.stop("signal"))
        pending.add(task)
        task.add_done_callback(pending.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal)
        except NotImplementedError:
            pass  # Windows
    return pending


async def run(session_id: str, symbols: Optional[list], in_memory: bool,
              duration: Optional[float], reset: bool, display: bool) -> None:
    registry = SessionRegistry()
    context = registry.get_or_create(session_id, symbols=symbols, in_memory=in_memory)
    orch = TradingOrchestrator(context)

    if reset:
        await orch.kill_switch.load()
        await orch.reset()
        logger.info("[RUN] Kill switch cleared for %s", session_id)

    stopping = install_signal_handlers(asyncio.get_running_loop(), orch)

    tasks = [asyncio.create_task(orch.start())]
    if display:
        tasks.append(asyncio.create_task(display_loop(orch, Console())))

    started = datetime.now(timezone.utc)
    try:
        if duration:
            done, _ = await asyncio.wait(tasks[:1], timeout=duration)
            if not done:
                await orch.stop("duration elapsed")
        await asyncio.gather(*tasks, return_exceptions=True)
        if stopping:
            await asyncio.gather(*list(stopping), return_exceptions=True)
    finally:
        elapsed = (datetime.now(timezone.utc) - started).total_seconds()
        logger.info("[RUN] Session %s ended after %.0fs: %s %s", session_id, elapsed,
                    orch.state.value, orch.stop_reason)
        registry.remove(session_id)


def main():
    parser = argparse.ArgumentParser(
        prog="engine",
        description="Autonomous trading-decision engine (paper execution)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py -s demo               Run (or resume) session "demo"
  python run.py -y EURUSD,GBPUSD      Override WATCH_SYMBOLS
  python run.py --no-display          Plain log output
""",
    )
    parser.add_argument("-s", "--session", default="default", help="Session id (default: default)")
    parser.add_argument("-y", "--symbols", help="Comma-separated symbols (default: WATCH_SYMBOLS)")
    parser.add_argument("--in-memory", action="store_true", help="Keep state in memory only")
    parser.add_argument("-d", "--duration", type=float, help="Stop after N seconds")
    parser.add_argument("--reset", action="store_true", help="Clear a persisted emergency halt first")
    parser.add_argument("--no-display", action="store_true", help="Disable the live status table")
    parser.add_argument("--log-level", default=settings.log_level, help="Log level (default: LOG_LEVEL)")
    args = parser.parse_args()

    log_file = f"{settings.logs_dir}/engine_{args.session}.log"
    setup_logging(args.log_level, log_file)

    symbols = [s.strip() for s in args.symbols.split(",") if s.strip()] if args.symbols else None
    asyncio.run(run(args.session, symbols, args.in_memory, args.duration, args.reset, not args.no_display))


if __name__ == "__main__":
    main()
