"""
Tests for position and exposure tracking and excess-position cleanup.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from supportbot.core.errors import ExposureLimitError, StoreError
from supportbot.database.models import utc_now
from supportbot.database.repositories import TradeRepository
from supportbot.positions.cleanup import PositionCleanup
from supportbot.positions.exposure_tracker import ExposureTracker
from tests.conftest import USER_ID


@pytest.fixture
def trades(store):
    return TradeRepository(store, USER_ID)


@pytest.fixture
def tracker(trades):
    return ExposureTracker(trades)


class TestExposureTracker:
    """Counting filled positions against the caps."""

    @pytest.mark.asyncio
    async def test_fourth_symbol_rejected_at_active_pair_cap(self, tracker, seed_trade, make_config):
        """Three active symbols with max_active_pairs=3 blocks a fourth, new symbol."""
        for symbol in ("BTCUSDT", "ETHUSDT", "SOLUSDT"):
            seed_trade(symbol=symbol)
        result = await tracker.check_limits("XRPUSDT", make_config(max_active_pairs=3))
        assert result.ok is False
        assert "max active pairs" in result.reason
        assert result.active_symbols == 3

    @pytest.mark.asyncio
    async def test_existing_symbol_allowed_at_active_pair_cap(self, tracker, seed_trade, make_config):
        """A symbol that is already active does not count as a new pair."""
        for symbol in ("BTCUSDT", "ETHUSDT", "SOLUSDT"):
            seed_trade(symbol=symbol)
        result = await tracker.check_limits("BTCUSDT", make_config(max_active_pairs=3))
        assert result.ok is True
        assert result.open_positions == 1

    @pytest.mark.asyncio
    async def test_position_cap_per_symbol(self, tracker, seed_trade, make_config):
        """open positions >= max_positions_per_pair blocks the symbol."""
        seed_trade(symbol="BTCUSDT")
        seed_trade(symbol="BTCUSDT", status="partial_filled")
        result = await tracker.check_limits("BTCUSDT", make_config(max_positions_per_pair=2))
        assert result.ok is False
        assert "max positions" in result.reason

    @pytest.mark.asyncio
    async def test_pending_and_closed_not_counted(self, tracker, seed_trade, make_config):
        """Only filled and partially filled buys are exposure."""
        seed_trade(symbol="BTCUSDT", status="pending")
        seed_trade(symbol="ETHUSDT", status="closed")
        seed_trade(symbol="SOLUSDT", side="sell", status="filled")
        assert await tracker.count_open_positions("BTCUSDT") == 0
        assert await tracker.count_active_symbols() == 0

    @pytest.mark.asyncio
    async def test_other_users_ignored(self, tracker, seed_trade):
        """Counts are scoped to the user."""
        seed_trade(symbol="BTCUSDT", user_id="someone-else")
        assert await tracker.count_open_positions("BTCUSDT") == 0

    @pytest.mark.asyncio
    async def test_store_failure_fails_closed(self, make_config):
        """If exposure cannot be read, nothing is allowed."""
        trades = AsyncMock()
        trades.open_buys.side_effect = StoreError("connection reset")
        result = await ExposureTracker(trades).check_limits("BTCUSDT", make_config())
        assert result.ok is False

    @pytest.mark.asyncio
    async def test_ensure_within_limits_raises(self, tracker, seed_trade, make_config):
        """ensure_within_limits turns a rejection into ExposureLimitError."""
        seed_trade(symbol="BTCUSDT")
        with pytest.raises(ExposureLimitError) as exc:
            await tracker.ensure_within_limits("BTCUSDT", make_config(max_positions_per_pair=1))
        assert exc.value.symbol == "BTCUSDT"


class TestPositionCleanup:
    """Cancelling pending buys beyond the per-pair cap."""

    @pytest.mark.asyncio
    async def test_cancels_newest_excess_pending(self, exchange, trades, store, seed_trade, make_config):
        """With one filled and two pending on a cap of 2, the newest pending is cancelled."""
        now = utc_now()
        seed_trade(symbol="BTCUSDT", created_at=now - timedelta(hours=3))
        older = seed_trade(symbol="BTCUSDT", status="pending", order_id="OLD", created_at=now - timedelta(hours=2))
        newer = seed_trade(symbol="BTCUSDT", status="pending", order_id="NEW", created_at=now - timedelta(hours=1))

        cancelled = await PositionCleanup(exchange, trades).run(make_config(max_positions_per_pair=2))

        assert cancelled == 1
        assert exchange.cancelled == ["NEW"]
        assert store.rows("trades", id=newer["id"])[0]["status"] == "cancelled"
        assert store.rows("trades", id=older["id"])[0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_never_touches_filled_positions(self, exchange, trades, store, seed_trade, make_config):
        """Over-cap filled positions are left alone."""
        for _ in range(3):
            seed_trade(symbol="BTCUSDT")
        cancelled = await PositionCleanup(exchange, trades).run(make_config(max_positions_per_pair=2))
        assert cancelled == 0
        assert exchange.cancelled == []
        assert all(r["status"] == "filled" for r in store.rows("trades"))

    @pytest.mark.asyncio
    async def test_failed_cancel_keeps_trade_pending(self, exchange, trades, store, seed_trade, make_config):
        """A cancel the exchange refuses leaves the local row untouched."""
        seed_trade(symbol="BTCUSDT")
        seed_trade(symbol="BTCUSDT", status="pending", order_id="P1")
        exchange.cancel_order = AsyncMock(return_value=False)

        cancelled = await PositionCleanup(exchange, trades).run(make_config(max_positions_per_pair=1))

        assert cancelled == 0
        assert store.rows("trades", bybit_order_id="P1")[0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_paired_take_profit_cancelled_with_entry(self, exchange, trades, store, seed_trade, make_config):
        """The take-profit placed with a cancelled entry is cancelled too; the older pair stays."""
        now = utc_now()
        seed_trade(symbol="BTCUSDT", created_at=now - timedelta(hours=3))
        seed_trade(symbol="BTCUSDT", status="pending", order_id="OLD", created_at=now - timedelta(hours=2))
        seed_trade(symbol="BTCUSDT", side="sell", status="pending", order_id="TP-OLD",
                   created_at=now - timedelta(hours=2) + timedelta(seconds=1))
        seed_trade(symbol="BTCUSDT", status="pending", order_id="NEW", created_at=now - timedelta(hours=1))
        seed_trade(symbol="BTCUSDT", side="sell", status="pending", order_id="TP-NEW",
                   created_at=now - timedelta(hours=1) + timedelta(seconds=1))

        cancelled = await PositionCleanup(exchange, trades).run(make_config(max_positions_per_pair=2))

        assert cancelled == 1
        assert exchange.cancelled == ["NEW", "TP-NEW"]
        assert store.rows("trades", bybit_order_id="TP-NEW")[0]["status"] == "cancelled"
        assert store.rows("trades", bybit_order_id="TP-OLD")[0]["status"] == "pending"
