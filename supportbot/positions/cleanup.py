"""
Excess-position cleanup run at the start of every cycle
"""
from collections import defaultdict
from typing import Dict, List

from loguru import logger

from supportbot.config.trading_config import TradingConfig
from supportbot.database.models import Trade, TradeStatus
from supportbot.database.repositories import TradeRepository


class PositionCleanup:
    """
    Cancels the newest pending buys that would push a symbol past
    max_positions_per_pair once filled. Filled positions are never touched.
    """

    def __init__(self, exchange, trades: TradeRepository):
        self.exchange = exchange
        self.trades = trades
        logger.info("Position cleanup initialized")

    async def run(self, config: TradingConfig) -> int:
        open_counts: Dict[str, int] = defaultdict(int)
        for trade in await self.trades.open_buys():
            open_counts[trade.symbol] += 1

        pending_by_symbol: Dict[str, List[Trade]] = defaultdict(list)
        for trade in await self.trades.pending_buys():
            pending_by_symbol[trade.symbol].append(trade)

        cancelled = 0
        for symbol, count in open_counts.items():
            if count > config.max_positions_per_pair:
                logger.warning(
                    f"{symbol} has {count} open positions, above the cap of "
                    f"{config.max_positions_per_pair}; leaving them to take-profit"
                )

        for symbol, pending in pending_by_symbol.items():
            allowed = max(0, config.max_positions_per_pair - open_counts[symbol])
            for trade in pending[allowed:]:
                if await self._cancel(trade):
                    cancelled += 1

        if cancelled:
            logger.info(f"Cleanup cancelled {cancelled} excess pending order(s)")
        return cancelled

    async def _cancel(self, trade: Trade) -> bool:
        if trade.bybit_order_id:
            if not await self.exchange.cancel_order(trade.symbol, trade.bybit_order_id):
                logger.warning(f"Could not cancel excess order {trade.bybit_order_id} for {trade.symbol}")
                return False
        await self.trades.update(trade, {"status": TradeStatus.CANCELLED})
        logger.info(f"Cancelled excess pending buy {trade.bybit_order_id} for {trade.symbol}")
        await self._cancel_take_profit(trade)
        return True

    async def _cancel_take_profit(self, entry: Trade) -> None:
        """The take-profit sell placed with a cancelled entry goes too"""
        sell = await self.trades.paired_take_profit(entry)
        if sell is None:
            return
        if sell.bybit_order_id and not await self.exchange.cancel_order(sell.symbol, sell.bybit_order_id):
            logger.warning(f"Could not cancel take-profit {sell.bybit_order_id} for {sell.symbol}")
            return
        await self.trades.update(sell, {"status": TradeStatus.CANCELLED})
        logger.info(f"Cancelled take-profit {sell.bybit_order_id} paired with {entry.bybit_order_id}")
