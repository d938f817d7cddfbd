"""
Test configuration and shared fixtures for the support bot tests.
"""

import itertools
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from supportbot.config.trading_config import TradingConfig
from supportbot.core.errors import ExchangeError
from supportbot.core.types import Candle
from supportbot.database.models import parse_timestamp, utc_now
from supportbot.exchange.bybit_client import AccountBalance, OrderResponse, RemoteOrder, Ticker
from supportbot.exchange.instruments import InstrumentInfo

USER_ID = "user-1"


# =============================================================================
# In-memory relational store
# =============================================================================

def _comparable(column: str, value: Any) -> Any:
    if column.endswith("_at") and value is not None:
        return parse_timestamp(value)
    return value


class InMemoryStore:
    """SupabaseStore query surface over dicts; counts every write"""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.writes = 0

    async def select(
        self,
        table,
        filters=None,
        in_filters=None,
        gte=None,
        lte=None,
        order_by=None,
        desc=False,
        limit=None,
    ):
        rows = []
        for row in self.tables[table]:
            if any(row.get(k) != v for k, v in (filters or {}).items()):
                continue
            if any(row.get(k) not in list(v) for k, v in (in_filters or {}).items()):
                continue
            if any(
                row.get(k) is None or _comparable(k, row.get(k)) < _comparable(k, v)
                for k, v in (gte or {}).items()
            ):
                continue
            if any(
                row.get(k) is None or _comparable(k, row.get(k)) > _comparable(k, v)
                for k, v in (lte or {}).items()
            ):
                continue
            rows.append(dict(row))
        if order_by:
            rows.sort(key=lambda r: _comparable(order_by, r.get(order_by)), reverse=desc)
        if limit:
            rows = rows[:limit]
        return rows

    async def insert(self, table, row):
        stored = dict(row)
        stored.setdefault("id", str(uuid.uuid4()))
        if not stored.get("created_at"):
            stored["created_at"] = utc_now().isoformat()
        self.tables[table].append(stored)
        self.writes += 1
        return dict(stored)

    async def update(self, table, row_id, changes):
        for row in self.tables[table]:
            if row.get("id") == row_id:
                row.update(changes)
                self.writes += 1
                return dict(row)
        return {}

    async def ping(self):
        return True

    def rows(self, table, **filters) -> List[Dict[str, Any]]:
        return [r for r in self.tables[table] if all(r.get(k) == v for k, v in filters.items())]


# =============================================================================
# Scripted exchange
# =============================================================================

INSTRUMENTS = {
    "BTCUSDT": InstrumentInfo(
        symbol="BTCUSDT", tick_size=Decimal("0.5"), lot_size=Decimal("0.0001"),
        min_order_qty=Decimal("0.0001"), min_notional=Decimal("5"),
        base_coin="BTC", quote_coin="USDT",
    ),
    "ETHUSDT": InstrumentInfo(
        symbol="ETHUSDT", tick_size=Decimal("0.01"), lot_size=Decimal("0.0001"),
        min_order_qty=Decimal("0.0001"), min_notional=Decimal("5"),
        base_coin="ETH", quote_coin="USDT",
    ),
    "SOLUSDT": InstrumentInfo(
        symbol="SOLUSDT", tick_size=Decimal("0.01"), lot_size=Decimal("0.001"),
        min_order_qty=Decimal("0.001"), min_notional=Decimal("5"),
        base_coin="SOL", quote_coin="USDT",
    ),
    "XRPUSDT": InstrumentInfo(
        symbol="XRPUSDT", tick_size=Decimal("0.0001"), lot_size=Decimal("0.1"),
        min_order_qty=Decimal("1"), min_notional=Decimal("5"),
        base_coin="XRP", quote_coin="USDT",
    ),
}


class FakeExchange:
    """Deterministic stand-in for BybitClient"""

    def __init__(self):
        self.prices: Dict[str, float] = {}
        self.instruments: Dict[str, InstrumentInfo] = dict(INSTRUMENTS)
        self.klines: Dict[str, List[Candle]] = {}
        self.orders: Dict[str, RemoteOrder] = {}
        self.history: List[RemoteOrder] = []
        self.coins: Dict[str, float] = {}
        self.placed: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.responses: List[Any] = []
        self.instrument_calls = 0
        self._ids = itertools.count(1)

    async def get_ticker(self, symbol):
        if symbol not in self.prices:
            raise ExchangeError(f"No ticker returned for {symbol}")
        price = self.prices[symbol]
        return Ticker(symbol=symbol, last_price=price, bid_price=price, ask_price=price,
                      timestamp=datetime.now(timezone.utc))

    async def get_instrument_info(self, symbol):
        self.instrument_calls += 1
        if symbol not in self.instruments:
            raise ExchangeError(f"Instrument {symbol} not listed for spot")
        return self.instruments[symbol]

    async def get_klines(self, symbol, interval, limit=200):
        return list(self.klines.get(symbol, []))[-limit:]

    async def place_order(self, symbol, side, order_type, qty, price=None, time_in_force=None):
        self.placed.append({
            "symbol": symbol, "side": side.value, "order_type": order_type.value,
            "qty": qty, "price": price,
        })
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return OrderResponse(ret_code=0, ret_msg="OK", order_id=f"ORD-{next(self._ids)}")

    async def cancel_order(self, symbol, order_id):
        self.cancelled.append(order_id)
        return True

    async def get_order_status(self, order_id):
        return self.orders.get(order_id)

    async def get_order_history(self, limit=200, start_time=None):
        orders = [o for o in self.history if start_time is None or o.created_at is None or o.created_at >= start_time]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)[:limit]

    async def get_account_balance(self):
        return AccountBalance(total_equity=1000.0, available_balance=1000.0,
                              coins=dict(self.coins), timestamp=datetime.now(timezone.utc))

    async def ping(self):
        return True


def remote_order(
    order_id: str,
    symbol: str = "BTCUSDT",
    side: str = "buy",
    status: str = "Filled",
    price: float = 100.0,
    qty: float = 1.0,
    filled: Optional[float] = None,
    avg_price: Optional[float] = None,
    created_at: Optional[datetime] = None,
) -> RemoteOrder:
    if filled is None:
        filled = qty if status in ("Filled", "PartiallyFilledCanceled") else 0.0
    return RemoteOrder(
        order_id=order_id,
        symbol=symbol,
        side=side,
        order_type="limit",
        exchange_status=status,
        price=price,
        avg_price=avg_price if avg_price is not None else (price if filled else 0.0),
        qty=qty,
        cum_exec_qty=filled,
        created_at=created_at or datetime.now(timezone.utc) - timedelta(minutes=30),
    )


def make_candles(lows: List[float], spread: float = 1.0, volume: float = 10.0, start: int = 1_700_000_000_000):
    """Candles with the given lows; each closes `spread` above its low"""
    candles = []
    for i, low in enumerate(lows):
        candles.append(Candle(
            timestamp=start + i * 3_600_000,
            open=low + spread / 2,
            high=low + spread * 1.5,
            low=low,
            close=low + spread,
            volume=volume,
        ))
    return candles


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def make_config():
    def factory(**overrides) -> TradingConfig:
        values = {
            "user_id": USER_ID,
            "trading_pairs": ["BTCUSDT", "ETHUSDT"],
            "max_active_pairs": 3,
            "max_positions_per_pair": 2,
            "max_order_amount_usd": 100.0,
        }
        values.update(overrides)
        return TradingConfig(**values)
    return factory


@pytest.fixture
def seed_trade(store):
    """Insert a trades row directly, bypassing the repositories"""
    def factory(
        symbol="BTCUSDT",
        side="buy",
        status="filled",
        price=100.0,
        quantity=1.0,
        order_id=None,
        created_at=None,
        buy_fill_price=None,
        user_id=USER_ID,
    ):
        row = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "symbol": symbol,
            "side": side,
            "order_type": "limit",
            "price": price,
            "quantity": quantity,
            "status": status,
            "bybit_order_id": order_id,
            "created_at": (created_at or utc_now() - timedelta(hours=1)).isoformat(),
            "updated_at": utc_now().isoformat(),
        }
        if buy_fill_price is not None:
            row["buy_fill_price"] = buy_fill_price
        store.tables["trades"].append(row)
        return row
    return factory
