"""
Position Closer - market-sells an open buy and books realized P/L
"""
from typing import Optional

from loguru import logger

from supportbot.database.models import Trade, TradeStatus
from supportbot.database.repositories import ActivityLogRepository, TradeRepository, closing_changes
from supportbot.exchange.bybit_client import OrderSide, OrderType
from supportbot.precision.formatter import PrecisionFormatter


class PositionCloser:
    """Closes a filled buy at market, releasing its resting take-profit first"""

    def __init__(
        self,
        exchange,
        precision: PrecisionFormatter,
        trades: TradeRepository,
        activity: ActivityLogRepository,
        notifier=None,
    ):
        self.exchange = exchange
        self.precision = precision
        self.trades = trades
        self.activity = activity
        self.notifier = notifier
        logger.info("Position closer initialized")

    async def _release_take_profit(self, trade: Trade) -> None:
        """Spot sell orders lock the base coin, so the resting take-profit goes first"""
        sell = await self.trades.paired_take_profit(trade)
        if sell and sell.bybit_order_id and await self.exchange.cancel_order(sell.symbol, sell.bybit_order_id):
            await self.trades.update(sell, {"status": TradeStatus.CANCELLED})

    async def close(self, trade: Trade, reason: str) -> Optional[float]:
        """Returns realized P/L, or None when the sale was not accepted"""
        if trade.status not in (TradeStatus.FILLED, TradeStatus.PARTIAL_FILLED):
            logger.warning(f"Trade {trade.id} is {trade.status.value}, nothing to close")
            return None

        try:
            await self._release_take_profit(trade)
            quantity = await self.precision.round_quantity(trade.symbol, trade.quantity)
            ticker = await self.exchange.get_ticker(trade.symbol)
            response = await self.exchange.place_order(
                symbol=trade.symbol,
                side=OrderSide.SELL,
                order_type=OrderType.MARKET,
                qty=quantity,
            )
        except Exception as e:
            logger.error(f"Failed to close {trade.symbol} trade {trade.id}: {e}")
            return None

        if not response.accepted:
            logger.error(f"Close order rejected for {trade.symbol}: {response.ret_code} {response.ret_msg}")
            return None

        exit_price = ticker.last_price
        profit_loss = round((exit_price - trade.entry_price) * float(quantity), 8)

        await self.trades.upsert_by_order_id(Trade(
            symbol=trade.symbol,
            side="sell",
            order_type="market",
            price=exit_price,
            quantity=float(quantity),
            status=TradeStatus.CLOSED,
            bybit_order_id=response.order_id,
            profit_loss=profit_loss,
        ), merge=lambda existing: closing_changes(existing, profit_loss))
        await self.trades.update(trade, closing_changes(trade, profit_loss))

        logger.info(f"Closed {trade.symbol} {quantity} @ ~{exit_price} ({reason}), P/L {profit_loss:+.4f}")
        await self.activity.log(
            "position_closed",
            f"{trade.symbol} closed ({reason}), P/L {profit_loss:+.4f}",
            {"symbol": trade.symbol, "trade_id": trade.id, "order_id": response.order_id,
             "exit_price": exit_price, "profit_loss": profit_loss, "reason": reason},
        )
        if self.notifier:
            await self.notifier.send_position_closed(trade.symbol, float(quantity), profit_loss, reason)
        return profit_loss
