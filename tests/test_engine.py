"""
Tests for the trading engine cycle, health reporting and the cycle scheduler.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from supportbot.core.errors import (
    CriticalExecutionGap,
    ExchangeError,
    TradeNotFoundError,
    TradeNotOpenError,
)
from supportbot.database.models import utc_now
from supportbot.engine.scheduler import CycleScheduler
from supportbot.engine.trading_engine import TradingEngine
from supportbot.exchange.bybit_client import OrderResponse
from supportbot.reconciliation.reconciler import ReconciliationReport
from tests.conftest import USER_ID, make_candles, remote_order


@pytest.fixture
def engine(exchange, store):
    return TradingEngine(USER_ID, exchange, store)


def add_config(store, **overrides):
    row = {
        "user_id": USER_ID,
        "is_active": True,
        "trading_pairs": ["ETHUSDT"],
        "max_order_amount_usd": 100.0,
        "entry_offset_percent": 0.5,
        "main_loop_interval_seconds": 5,
    }
    row.update(overrides)
    store.tables["trading_configs"].append(row)
    return row


class TestRunOneCycle:
    """A single synchronous pass through the pipeline."""

    @pytest.mark.asyncio
    async def test_cycle_generates_and_executes(self, engine, exchange, store):
        """Support touch -> signal -> entry plus take-profit, all in one cycle."""
        add_config(store)
        exchange.klines["ETHUSDT"] = make_candles([2000.0] * 19 + [1950.0])
        exchange.prices["ETHUSDT"] = 1960.0

        report = await engine.run_one_cycle()

        assert report.error is None and report.skipped is None
        assert report.signals_emitted == ["ETHUSDT"]
        assert [e["status"] for e in report.executions] == ["executed"]
        assert [o["side"] for o in exchange.placed] == ["Buy", "Sell"]
        assert report.finished_at is not None
        # Loop interval follows the configuration, clamped to the minimum
        assert engine._loop_interval == 10

    @pytest.mark.asyncio
    async def test_no_signal_reasons_reported(self, engine, exchange, store):
        add_config(store)
        exchange.klines["ETHUSDT"] = make_candles([2000.0] * 19 + [1950.0])
        exchange.prices["ETHUSDT"] = 2500.0

        report = await engine.run_one_cycle()

        assert report.signals_emitted == []
        assert "ETHUSDT" in report.no_signal
        assert exchange.placed == []

    @pytest.mark.asyncio
    async def test_missing_config_skips_cycle(self, engine, exchange):
        """No configuration row: skipped, surfaced in health, no orders."""
        report = await engine.run_one_cycle()

        assert report.skipped.startswith("configuration error")
        assert exchange.placed == []
        assert any("configuration error" in i for i in engine.get_health()["issues"])

    @pytest.mark.asyncio
    async def test_invalid_config_skips_cycle(self, engine, store):
        add_config(store, take_profit_percent=250)
        report = await engine.run_one_cycle()
        assert "take_profit_percent" in report.skipped

    @pytest.mark.asyncio
    async def test_inactive_config_skips_cycle(self, engine, exchange, store):
        add_config(store, is_active=False)
        exchange.get_order_status = AsyncMock()

        report = await engine.run_one_cycle()

        assert "paused" in report.skipped
        exchange.get_order_status.assert_not_called()
        assert not any("configuration error" in i for i in engine.get_health()["issues"])

    @pytest.mark.asyncio
    async def test_failure_is_contained_and_reported(self, engine, store):
        """An unexpected error ends the cycle, not the engine."""
        add_config(store)
        engine.generator.generate = AsyncMock(side_effect=RuntimeError("boom"))

        report = await engine.run_one_cycle()

        assert report.error == "boom"
        assert any("last cycle failed" in i for i in engine.get_health()["issues"])
        assert store.rows("trading_logs", log_type="cycle_error")

    @pytest.mark.asyncio
    async def test_success_clears_previous_failure(self, engine, store):
        add_config(store)
        engine.generator.generate = AsyncMock(side_effect=[RuntimeError("boom"), []])

        await engine.run_one_cycle()
        await engine.run_one_cycle()

        assert engine.health.last_cycle_error is None

    @pytest.mark.asyncio
    async def test_cycles_never_overlap(self, engine, store):
        """Concurrent calls run one after the other."""
        add_config(store)
        active = 0
        peak = 0

        async def slow_generate(config):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return []

        engine.generator.generate = slow_generate
        await asyncio.gather(engine.run_one_cycle(), engine.run_one_cycle())
        assert peak == 1


class TestHealth:
    """The {ok, issues} view."""

    def test_not_running_is_an_issue(self, engine):
        health = engine.get_health()
        assert health == {"ok": False, "issues": ["engine is not running"]}

    @pytest.mark.asyncio
    async def test_healthy_when_running_and_cycles_succeed(self, engine, store):
        add_config(store)
        engine.health.running = True
        await engine.run_one_cycle()
        assert engine.get_health() == {"ok": True, "issues": []}

    def test_critical_gap_until_acknowledged(self, engine):
        """Critical gaps stay in health until the operator acknowledges them."""
        engine.health.running = True
        engine.health.record_critical_gap(
            CriticalExecutionGap("BTCUSDT", "ENTRY-1", "0.0015", "Insufficient balance.")
        )
        health = engine.get_health()
        assert health["ok"] is False
        assert "ENTRY-1" in health["issues"][0]

        assert engine.acknowledge_critical() == 1
        assert engine.get_health()["ok"] is True
        assert engine.acknowledge_critical() == 0


class TestReconcileNow:
    """On-demand reconciliation."""

    @pytest.mark.asyncio
    async def test_reconcile_now_returns_report(self, engine, exchange, store):
        exchange.coins = {"BTC": 1.0}
        exchange.history = [remote_order("B1")]

        report = await engine.reconcile_now(2)

        assert report.created == 1
        assert engine.health.last_reconciliation_at is not None

    @pytest.mark.asyncio
    async def test_reconcile_failure_raises_and_reports(self, engine, exchange):
        exchange.get_order_history = AsyncMock(side_effect=ExchangeError("down"))

        with pytest.raises(ExchangeError):
            await engine.reconcile_now(2)

        assert any("reconciliation failed" in i for i in engine.get_health()["issues"])

    @pytest.mark.asyncio
    async def test_startup_lookback_at_least_72_hours(self, exchange, store):
        engine = TradingEngine(USER_ID, exchange, store, startup_reconcile_hours=24)
        assert engine.startup_reconcile_hours == 72


class TestCloseTrade:
    """Operator-requested close of one open position."""

    @pytest.mark.asyncio
    async def test_close_releases_take_profit_and_sells(self, engine, exchange, store, seed_trade):
        """The resting take-profit is cancelled, then the quantity is sold at market."""
        now = utc_now()
        buy = seed_trade(symbol="ETHUSDT", price=2000.0, quantity=0.05, order_id="B1",
                         created_at=now - timedelta(hours=1))
        seed_trade(symbol="ETHUSDT", side="sell", status="pending", price=2030.0, quantity=0.05,
                   order_id="TP1", created_at=now - timedelta(minutes=59))
        exchange.prices["ETHUSDT"] = 2100.0

        profit_loss = await engine.close_trade(buy["id"])

        assert profit_loss == pytest.approx(5.0)
        assert exchange.cancelled == ["TP1"]
        assert [(o["side"], o["order_type"]) for o in exchange.placed] == [("Sell", "Market")]
        assert store.rows("trades", id=buy["id"])[0]["status"] == "closed"
        assert store.rows("trades", bybit_order_id="TP1")[0]["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_unknown_trade(self, engine, exchange, seed_trade):
        """Another user's trade is as unknown as a missing one."""
        other = seed_trade(symbol="ETHUSDT", user_id="someone-else")

        with pytest.raises(TradeNotFoundError):
            await engine.close_trade("missing")
        with pytest.raises(TradeNotFoundError):
            await engine.close_trade(other["id"])
        assert exchange.placed == []

    @pytest.mark.asyncio
    async def test_pending_trade_is_not_open(self, engine, exchange, seed_trade):
        pending = seed_trade(symbol="ETHUSDT", status="pending", order_id="B2")

        with pytest.raises(TradeNotOpenError):
            await engine.close_trade(pending["id"])
        assert exchange.placed == []

    @pytest.mark.asyncio
    async def test_rejected_sell_keeps_position(self, engine, exchange, store, seed_trade):
        buy = seed_trade(symbol="ETHUSDT", price=2000.0, quantity=0.05, order_id="B3")
        exchange.prices["ETHUSDT"] = 2100.0
        exchange.responses = [OrderResponse(ret_code=170131, ret_msg="Insufficient balance")]

        with pytest.raises(ExchangeError):
            await engine.close_trade(buy["id"])
        assert store.rows("trades", id=buy["id"])[0]["status"] == "filled"


class TestEngineLifecycle:
    """start() and stop()."""

    @pytest.mark.asyncio
    async def test_start_reconciles_then_runs_cycles(self, engine, store):
        add_config(store)
        engine.reconciler.reconcile = AsyncMock(return_value=ReconciliationReport(lookback_hours=72))

        await engine.start()
        try:
            assert engine.running is True
            assert engine.reconciler.reconcile.await_args_list[0].args == (72,)

            async def first_cycle():
                while engine.cycle_scheduler.cycles == 0:
                    await asyncio.sleep(0.01)

            await asyncio.wait_for(first_cycle(), timeout=2)
        finally:
            await engine.stop()

        assert engine.running is False
        assert engine.cycle_scheduler.running is False
        assert engine.reconcile_scheduler.running is False

    @pytest.mark.asyncio
    async def test_start_survives_reconciliation_failure(self, engine, exchange, store):
        add_config(store)
        exchange.get_order_history = AsyncMock(side_effect=ExchangeError("down"))

        await engine.start()
        await engine.stop()

        assert engine.health.reconciliation_error == "down"

    @pytest.mark.asyncio
    async def test_stop_when_not_running_is_noop(self, engine):
        await engine.stop()
        assert engine.running is False


class TestCycleScheduler:
    """Interval loop with failure isolation."""

    @pytest.mark.asyncio
    async def test_tick_counts_failures(self):
        run = AsyncMock(side_effect=[RuntimeError("boom"), RuntimeError("boom"), None])
        scheduler = CycleScheduler("test", run, lambda: 10)

        assert await scheduler.tick() is False
        assert await scheduler.tick() is False
        assert scheduler.consecutive_failures == 2
        assert await scheduler.tick() is True
        assert scheduler.consecutive_failures == 0

    def test_interval_is_clamped(self):
        assert CycleScheduler("t", AsyncMock(), lambda: 5)._delay() == 10
        assert CycleScheduler("t", AsyncMock(), lambda: 99999)._delay() == 3600
        assert CycleScheduler("t", AsyncMock(), lambda: "soon")._delay() == 30

    def test_broken_interval_falls_back_to_default(self):
        def broken():
            raise KeyError("main_loop_interval_seconds")
        assert CycleScheduler("t", AsyncMock(), broken)._delay() == 30

    @pytest.mark.asyncio
    async def test_loop_continues_after_failure(self):
        """A raising cycle does not stop the loop."""
        calls = 0
        reached = asyncio.Event()

        async def cycle():
            nonlocal calls
            calls += 1
            if calls >= 3:
                reached.set()
            if calls == 1:
                raise RuntimeError("first cycle fails")

        scheduler = CycleScheduler("test", cycle, lambda: 0.001, clamp=False)
        scheduler.start()
        await asyncio.wait_for(reached.wait(), timeout=2)
        await scheduler.stop()

        assert calls >= 3
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_stop_waits_for_cycle_in_flight(self):
        """Stopping lets the running cycle finish and schedules nothing after it."""
        entered = asyncio.Event()
        release = asyncio.Event()
        finished = []

        async def cycle():
            entered.set()
            await release.wait()
            finished.append(True)

        scheduler = CycleScheduler("test", cycle, lambda: 0.001, clamp=False)
        scheduler.start()
        await asyncio.wait_for(entered.wait(), timeout=2)

        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()

        release.set()
        await asyncio.wait_for(stopping, timeout=2)

        assert finished == [True]
        assert scheduler.cycles == 1
