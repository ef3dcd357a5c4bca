"""Quote validation, sample history, feeds and the paper executor."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from core.models import Direction, MarketSample, SampleHistory, validate_sample
from execution.feeds import ReplayFeed, SyntheticFeed
from execution.paper_executor import PaperExecutor
from tests.test_helpers import make_samples


class TestValidateSample:
    def test_accepts_sane_quote(self):
        assert validate_sample(MarketSample("EURUSD", 1.0849, 1.0851)) == (True, "OK")

    @pytest.mark.parametrize("bid,ask,reason", [
        (0.0, 1.0, "non-positive price"),
        (1.1, 1.0, "crossed quote"),
        (1.0, 1.2, "too wide"),
    ])
    def test_rejects_bad_prices(self, bid, ask, reason):
        ok, why = validate_sample(MarketSample("EURUSD", bid, ask))
        assert not ok
        assert reason in why

    def test_rejects_stale_quote(self):
        old = datetime.now(timezone.utc) - timedelta(minutes=10)
        assert validate_sample(MarketSample("EURUSD", 1.0, 1.0001, timestamp=old)) == (False, "stale sample")


class TestSampleHistory:
    def test_bounded_per_symbol(self):
        history = SampleHistory(limit=5)
        history.extend(make_samples("EURUSD", n=8))
        history.extend(make_samples("GOLD", n=2, start=2000.0))
        assert history.count("EURUSD") == 5
        assert history.count("GOLD") == 2
        assert len(history.get("EURUSD", 3)) == 3
        assert history.latest("SILVER") is None
        assert history.mids("GOLD")[0] == pytest.approx(2000.0)


class TestFeeds:
    @pytest.mark.asyncio
    async def test_replay_in_order(self):
        samples = make_samples("EURUSD", n=5) + make_samples("GOLD", n=2, start=2000.0)
        feed = ReplayFeed(samples, batch=2)
        first = await feed.poll("EURUSD")
        assert first == samples[:2]
        assert feed.remaining("EURUSD") == 3
        assert await feed.poll("SILVER") == []

    @pytest.mark.asyncio
    async def test_synthetic_walk(self):
        feed = SyntheticFeed(["EURUSD"], seed=3)
        quotes = [(await feed.poll("EURUSD"))[0] for _ in range(20)]
        assert all(validate_sample(q)[0] for q in quotes)
        assert feed.last_price("EURUSD") == pytest.approx(quotes[-1].mid)


class TestPaperExecutor:
    @pytest.mark.asyncio
    async def test_open_mark_close(self):
        executor = PaperExecutor(1000.0)
        deal_id = await executor.open_position("EURUSD", Direction.SELL, 10.0, 1.10, 1.11, 1.08)
        executor.mark("EURUSD", 1.09)
        assert executor.unrealized_pnl() == pytest.approx(0.1)

        assert await executor.update_stop_loss(deal_id, 1.095)
        assert (await executor.get_positions())[0].stop_loss == 1.095
        assert await executor.close_position(deal_id)
        assert not await executor.close_position(deal_id)
        assert executor.get_balance() == pytest.approx(1000.1)
        assert executor.snapshot()["positions"] == []

    @pytest.mark.asyncio
    async def test_rejects_hold_and_zero_size(self):
        executor = PaperExecutor(1000.0)
        assert await executor.open_position("EURUSD", Direction.HOLD, 1.0, 1.1, 0, 0) is None
        assert await executor.open_position("EURUSD", Direction.BUY, 0.0, 1.1, 0, 0) is None

    @pytest.mark.asyncio
    async def test_slippage_is_adverse(self):
        executor = PaperExecutor(1000.0, slippage_bps=10, rng=random.Random(1))
        deal_id = await executor.open_position("EURUSD", Direction.BUY, 1.0, 100.0, 99.0, 102.0)
        position = (await executor.get_positions())[0]
        assert position.entry_price >= 100.0
        await executor.close_position(deal_id, 100.0)
        assert executor.realized_pnl <= 0.0
