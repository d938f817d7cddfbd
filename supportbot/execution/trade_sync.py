"""
Order-status sync - keeps pending trades in step with the exchange
"""
from typing import Any, Dict, Optional

from loguru import logger

from supportbot.database.models import Trade, TradeStatus
from supportbot.database.repositories import TradeRepository
from supportbot.exchange.bybit_client import RemoteOrder

EPSILON = 1e-6

_PROGRESS = {
    TradeStatus.PENDING: 0,
    TradeStatus.PARTIAL_FILLED: 1,
    TradeStatus.FILLED: 2,
}


def effective_status(remote: RemoteOrder) -> Optional[TradeStatus]:
    """Exchange status as a ledger status; a cancelled remainder keeps its fills"""
    if remote.exchange_status == "PartiallyFilledCanceled" and remote.cum_exec_qty > 0:
        return TradeStatus.FILLED
    return remote.status


def diff_trade(trade: Trade, remote: RemoteOrder) -> Dict[str, Any]:
    """
    Changes needed for a local trade to match the exchange order. Terminal
    trades are left alone and status never moves backwards.
    """
    if trade.is_terminal:
        return {}
    status = effective_status(remote)
    if status is None:
        return {}

    changes: Dict[str, Any] = {}
    if status != trade.status:
        if status in (TradeStatus.CANCELLED, TradeStatus.REJECTED):
            if remote.cum_exec_qty <= 0:
                changes["status"] = status
        elif _PROGRESS.get(status, -1) > _PROGRESS.get(trade.status, -1):
            changes["status"] = status

    if remote.cum_exec_qty > 0 and status in (TradeStatus.PARTIAL_FILLED, TradeStatus.FILLED):
        fill_price = remote.fill_price
        if fill_price > 0 and abs(trade.price - fill_price) > EPSILON:
            changes["price"] = fill_price
        if abs(trade.quantity - remote.cum_exec_qty) > EPSILON:
            changes["quantity"] = remote.cum_exec_qty
        if trade.side == "buy" and status == TradeStatus.FILLED and fill_price > 0:
            if trade.buy_fill_price is None or abs(trade.buy_fill_price - fill_price) > EPSILON:
                changes["buy_fill_price"] = fill_price
    return changes


class TradeSyncService:
    """Polls order status for pending and partially filled trades"""

    def __init__(self, exchange, trades: TradeRepository):
        self.exchange = exchange
        self.trades = trades
        logger.info("Trade sync service initialized")

    async def sync_open_orders(self) -> int:
        updated = 0
        for trade in await self.trades.unsettled():
            try:
                remote = await self.exchange.get_order_status(trade.bybit_order_id)
                if remote is None:
                    logger.debug(f"Order {trade.bybit_order_id} not found on exchange yet")
                    continue
                changes = diff_trade(trade, remote)
                if await self.trades.update(trade, changes):
                    updated += 1
                    logger.info(f"Synced {trade.symbol} {trade.side} order {trade.bybit_order_id}: {changes}")
            except Exception as e:
                logger.error(f"Failed to sync order {trade.bybit_order_id}: {e}")
        if updated:
            logger.info(f"Order sync updated {updated} trade(s)")
        return updated
