"""
User-scoped repositories over the relational store
"""
import asyncio
import weakref
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from supportbot.core.errors import StoreError
from supportbot.database.models import (
    ActivityLog,
    OPEN_STATUSES,
    Signal,
    Trade,
    TradeSide,
    TradeStatus,
    utc_now,
)

# Ledger writes keyed by exchange order id are serialized per store and user
_ORDER_WRITE_LOCKS: "weakref.WeakKeyDictionary" = weakref.WeakKeyDictionary()

TAKE_PROFIT_QTY_TOLERANCE = 0.05


def closing_changes(trade: Trade, profit_loss: float) -> Dict[str, Any]:
    """Changes that mark a trade closed with its realized P/L; none when already closed"""
    if trade.status == TradeStatus.CLOSED:
        return {}
    return {"status": TradeStatus.CLOSED, "profit_loss": profit_loss}


class TradeRepository:
    """Trade ledger for one user"""

    TABLE = "trades"

    def __init__(self, store, user_id: str):
        self.store = store
        self.user_id = user_id

    async def _query(
        self,
        symbol: Optional[str] = None,
        side: Optional[str] = None,
        statuses: Optional[Iterable[TradeStatus]] = None,
        since: Optional[datetime] = None,
    ) -> List[Trade]:
        filters: Dict[str, Any] = {"user_id": self.user_id}
        if symbol:
            filters["symbol"] = symbol
        if side:
            filters["side"] = side
        in_filters = {"status": [s.value for s in statuses]} if statuses else None
        gte = {"created_at": since.isoformat()} if since else None
        rows = await self.store.select(
            self.TABLE,
            filters=filters,
            in_filters=in_filters,
            gte=gte,
            order_by="created_at",
        )
        return [Trade.from_row(r) for r in rows]

    async def open_buys(self, symbol: Optional[str] = None) -> List[Trade]:
        """Filled or partially filled buy trades, oldest first"""
        return await self._query(symbol=symbol, side=TradeSide.BUY.value, statuses=OPEN_STATUSES)

    async def pending_buys(self, symbol: Optional[str] = None) -> List[Trade]:
        return await self._query(
            symbol=symbol, side=TradeSide.BUY.value, statuses=[TradeStatus.PENDING]
        )

    async def pending_sells(self, symbol: Optional[str] = None) -> List[Trade]:
        return await self._query(
            symbol=symbol, side=TradeSide.SELL.value, statuses=[TradeStatus.PENDING]
        )

    async def unsettled(self) -> List[Trade]:
        """Orders the exchange may still be working on"""
        trades = await self._query(statuses=[TradeStatus.PENDING, TradeStatus.PARTIAL_FILLED])
        return [t for t in trades if t.bybit_order_id]

    async def since(self, since: datetime) -> List[Trade]:
        return await self._query(since=since)

    async def get(self, trade_id: str) -> Optional[Trade]:
        rows = await self.store.select(
            self.TABLE, filters={"user_id": self.user_id, "id": trade_id}, limit=1
        )
        return Trade.from_row(rows[0]) if rows else None

    async def find_by_order_id(self, order_id: str) -> Optional[Trade]:
        rows = await self.store.select(
            self.TABLE,
            filters={"user_id": self.user_id, "bybit_order_id": order_id},
            limit=1,
        )
        return Trade.from_row(rows[0]) if rows else None

    async def paired_take_profit(self, entry: Trade) -> Optional[Trade]:
        """Earliest pending sell placed at or after the entry for about the same quantity"""
        for sell in await self.pending_sells(entry.symbol):
            if entry.created_at and sell.created_at and sell.created_at < entry.created_at:
                continue
            if abs(sell.quantity - entry.quantity) > entry.quantity * TAKE_PROFIT_QTY_TOLERANCE:
                continue
            return sell
        return None

    async def insert(self, trade: Trade) -> Trade:
        trade.user_id = self.user_id
        row = await self.store.insert(self.TABLE, trade.to_row())
        return Trade.from_row(row)

    def _order_write_lock(self) -> asyncio.Lock:
        locks = _ORDER_WRITE_LOCKS.setdefault(self.store, {})
        if self.user_id not in locks:
            locks[self.user_id] = asyncio.Lock()
        return locks[self.user_id]

    async def upsert_by_order_id(
        self,
        trade: Trade,
        merge: Optional[Callable[[Trade], Dict[str, Any]]] = None,
    ) -> Trade:
        """
        Write a trade at most once per exchange order id.

        The executor and the reconciliation task can both learn about the
        same order; whichever writes second finds the first row instead of
        inserting a duplicate.

        Args:
            trade: Trade carrying the exchange order id
            merge: Computes changes for an already stored row; without it the
                stored row is kept as is

        Returns:
            The stored trade, new or existing
        """
        if not trade.bybit_order_id:
            return await self.insert(trade)

        async with self._order_write_lock():
            existing = await self.find_by_order_id(trade.bybit_order_id)
            if existing is None:
                return await self.insert(trade)

            if merge is not None:
                await self.update(existing, merge(existing))
            logger.debug(f"Order {trade.bybit_order_id} already recorded as trade {existing.id}")
            return existing

    async def update(self, trade: Trade, changes: Dict[str, Any]) -> bool:
        """Apply changes to a trade; no write when nothing changed"""
        if not changes:
            return False
        payload = dict(changes)
        if isinstance(payload.get("status"), TradeStatus):
            payload["status"] = payload["status"].value
        payload["updated_at"] = utc_now().isoformat()
        await self.store.update(self.TABLE, trade.id, payload)

        for key, value in changes.items():
            setattr(trade, key, TradeStatus(value) if key == "status" else value)
        return True


class SignalRepository:
    """Signals queue for one user"""

    TABLE = "trading_signals"

    def __init__(self, store, user_id: str):
        self.store = store
        self.user_id = user_id

    async def create(self, signal: Signal) -> Signal:
        signal.user_id = self.user_id
        row = await self.store.insert(self.TABLE, signal.to_row())
        return Signal.from_row(row)

    async def unprocessed(self) -> List[Signal]:
        rows = await self.store.select(
            self.TABLE,
            filters={"user_id": self.user_id, "processed": False},
            order_by="created_at",
        )
        return [Signal.from_row(r) for r in rows]

    async def mark_processed(self, signal: Signal) -> None:
        await self.store.update(
            self.TABLE,
            signal.id,
            {"processed": True, "updated_at": utc_now().isoformat()},
        )
        signal.processed = True


class ActivityLogRepository:
    """trading_logs writer/reader. Write failures never abort trading."""

    TABLE = "trading_logs"

    def __init__(self, store, user_id: str):
        self.store = store
        self.user_id = user_id

    async def log(self, log_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        try:
            await self.store.insert(self.TABLE, {
                "user_id": self.user_id,
                "log_type": log_type,
                "message": message,
                "data": data or {},
                "created_at": utc_now().isoformat(),
            })
        except StoreError as e:
            logger.warning(f"Failed to record {log_type} activity: {e}")

    async def recent(self, log_type: str, since: datetime) -> List[ActivityLog]:
        rows = await self.store.select(
            self.TABLE,
            filters={"user_id": self.user_id, "log_type": log_type},
            gte={"created_at": since.isoformat()},
            order_by="created_at",
            desc=True,
        )
        return [ActivityLog.from_row(r) for r in rows]
