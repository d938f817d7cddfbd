"""
Tests for instrument metadata parsing and the instrument cache.
"""

from decimal import Decimal

import pytest

from supportbot.core.errors import ExchangeError, PrecisionError
from supportbot.exchange.instruments import InstrumentCache, InstrumentInfo


def info_for(symbol):
    return InstrumentInfo(
        symbol=symbol, tick_size=Decimal("0.01"), lot_size=Decimal("0.001"),
        min_order_qty=Decimal("0.001"), min_notional=Decimal("5"),
    )


class CountingFetcher:
    def __init__(self, missing=()):
        self.calls = []
        self.missing = set(missing)

    async def __call__(self, symbol):
        self.calls.append(symbol)
        if symbol in self.missing:
            raise ExchangeError(f"Instrument {symbol} not listed for spot")
        return info_for(symbol)


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestInstrumentInfo:
    """Parsing /v5/market/instruments-info spot entries."""

    def test_from_bybit(self):
        """Tick from priceFilter, lot from basePrecision, minimums from lotSizeFilter."""
        info = InstrumentInfo.from_bybit({
            "symbol": "BTCUSDT",
            "baseCoin": "BTC",
            "quoteCoin": "USDT",
            "priceFilter": {"tickSize": "0.01"},
            "lotSizeFilter": {"basePrecision": "0.000001", "minOrderQty": "0.000048", "minOrderAmt": "1"},
        })
        assert info.tick_size == Decimal("0.01")
        assert info.lot_size == Decimal("0.000001")
        assert info.min_order_qty == Decimal("0.000048")
        assert info.min_notional == Decimal("1")
        assert info.price_decimals == 2
        assert info.quantity_decimals == 6
        assert info.base_coin == "BTC"

    def test_missing_tick_size_raises(self):
        """No fallback precision when metadata is incomplete."""
        with pytest.raises(PrecisionError):
            InstrumentInfo.from_bybit({"symbol": "BTCUSDT", "lotSizeFilter": {"basePrecision": "0.001"}})

    def test_zero_step_raises(self):
        """A zero tick size can never be aligned to."""
        with pytest.raises(PrecisionError):
            InstrumentInfo.from_bybit({
                "symbol": "BTCUSDT",
                "priceFilter": {"tickSize": "0"},
                "lotSizeFilter": {"basePrecision": "0.001"},
            })


class TestInstrumentCache:
    """TTL, eviction and error handling."""

    @pytest.mark.asyncio
    async def test_served_from_cache_within_ttl(self):
        """A second lookup inside the TTL does not refetch."""
        fetcher, clock = CountingFetcher(), Clock()
        cache = InstrumentCache(fetcher, ttl_seconds=3600, clock=clock)
        await cache.get("BTCUSDT")
        clock.now += 3599
        await cache.get("BTCUSDT")
        assert fetcher.calls == ["BTCUSDT"]

    @pytest.mark.asyncio
    async def test_refetched_after_expiry(self):
        """Expired entries are fetched again."""
        fetcher, clock = CountingFetcher(), Clock()
        cache = InstrumentCache(fetcher, ttl_seconds=3600, clock=clock)
        await cache.get("BTCUSDT")
        clock.now += 3600
        assert cache.stats() == {"size": 1, "expired": 1}
        await cache.get("BTCUSDT")
        assert fetcher.calls == ["BTCUSDT", "BTCUSDT"]

    @pytest.mark.asyncio
    async def test_fetch_failure_becomes_precision_error(self):
        """Transport errors surface as PrecisionError."""
        cache = InstrumentCache(CountingFetcher(missing={"DOGEUSDT"}))
        with pytest.raises(PrecisionError):
            await cache.get("DOGEUSDT")

    @pytest.mark.asyncio
    async def test_none_result_raises(self):
        """A fetcher returning nothing is not cached."""
        async def fetcher(symbol):
            return None

        cache = InstrumentCache(fetcher)
        with pytest.raises(PrecisionError):
            await cache.get("BTCUSDT")
        assert cache.stats()["size"] == 0

    @pytest.mark.asyncio
    async def test_evicts_oldest_when_full(self):
        """At capacity the oldest tenth is dropped."""
        fetcher, clock = CountingFetcher(), Clock()
        cache = InstrumentCache(fetcher, max_size=10, clock=clock)
        for i in range(10):
            clock.now += 1
            await cache.get(f"SYM{i}USDT")
        clock.now += 1
        await cache.get("NEWUSDT")

        assert cache.stats()["size"] == 10
        await cache.get("SYM0USDT")
        assert fetcher.calls.count("SYM0USDT") == 2
        assert fetcher.calls.count("SYM1USDT") == 1

    @pytest.mark.asyncio
    async def test_cleanup_and_clear(self):
        """cleanup_expired drops only stale entries; clear drops all."""
        fetcher, clock = CountingFetcher(), Clock()
        cache = InstrumentCache(fetcher, ttl_seconds=100, clock=clock)
        await cache.get("BTCUSDT")
        clock.now += 150
        await cache.get("ETHUSDT")

        assert cache.cleanup_expired() == 1
        assert cache.stats() == {"size": 1, "expired": 0}
        cache.clear()
        assert cache.stats()["size"] == 0

    @pytest.mark.asyncio
    async def test_invalidate(self):
        """invalidate forces a refetch."""
        fetcher = CountingFetcher()
        cache = InstrumentCache(fetcher)
        await cache.get("BTCUSDT")
        cache.invalidate("BTCUSDT")
        await cache.get("BTCUSDT")
        assert len(fetcher.calls) == 2
