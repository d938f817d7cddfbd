"""
Order Execution - entry limit buy followed by the paired take-profit limit sell
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from loguru import logger

from supportbot.config.trading_config import TradingConfig
from supportbot.core.errors import CriticalExecutionGap, ExchangeError, ExchangeRejection
from supportbot.database.models import Trade, TradeStatus
from supportbot.database.repositories import ActivityLogRepository, TradeRepository
from supportbot.engine.health import EngineHealth
from supportbot.exchange.bybit_client import OrderSide, OrderType, TimeInForce
from supportbot.precision.formatter import PrecisionFormatter, to_decimal
from supportbot.risk.order_validator import OrderValidator


@dataclass
class PlacedOrder:
    """Order the exchange accepted"""
    order_id: str
    symbol: str
    side: str
    price: str
    quantity: str
    trade_id: Optional[str] = None


@dataclass
class OpenedPosition:
    entry: PlacedOrder
    take_profit: PlacedOrder


class OrderExecutor:
    """
    Places orders and writes the local ledger. A trade row is written only
    after the exchange accepts the order.
    """

    def __init__(
        self,
        exchange,
        precision: PrecisionFormatter,
        validator: OrderValidator,
        trades: TradeRepository,
        activity: ActivityLogRepository,
        health: EngineHealth,
        notifier=None,
    ):
        self.exchange = exchange
        self.precision = precision
        self.validator = validator
        self.trades = trades
        self.activity = activity
        self.health = health
        self.notifier = notifier
        logger.info("Order executor initialized")

    async def _submit(
        self,
        symbol: str,
        side: OrderSide,
        quantity: str,
        price: str,
    ) -> PlacedOrder:
        request: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.value,
            "orderType": OrderType.LIMIT.value,
            "qty": quantity,
            "price": price,
            "timeInForce": TimeInForce.GTC.value,
        }
        try:
            response = await self.exchange.place_order(
                symbol=symbol,
                side=side,
                order_type=OrderType.LIMIT,
                qty=quantity,
                price=price,
                time_in_force=TimeInForce.GTC,
            )
        except ExchangeError as e:
            raise ExchangeRejection(
                f"{symbol} {side.value} order failed in transport: {e}",
                ret_msg=str(e),
                request=request,
            ) from e

        if not response.accepted:
            raise ExchangeRejection(
                f"{symbol} {side.value} order rejected ({response.ret_code}): {response.ret_msg}",
                ret_code=response.ret_code,
                ret_msg=response.ret_msg,
                request=request,
                response=response.raw,
            )
        return PlacedOrder(
            order_id=response.order_id,
            symbol=symbol,
            side=side.value.lower(),
            price=price,
            quantity=quantity,
        )

    async def _record(self, order: PlacedOrder) -> None:
        """Ledger write after acceptance; a lost write is backfilled by reconciliation"""
        try:
            trade = await self.trades.upsert_by_order_id(Trade(
                symbol=order.symbol,
                side=order.side,
                order_type="limit",
                price=float(order.price),
                quantity=float(order.quantity),
                status=TradeStatus.PENDING,
                bybit_order_id=order.order_id,
            ))
            order.trade_id = trade.id
        except Exception as e:
            logger.error(
                f"Order {order.order_id} accepted but local trade write failed: {e}. "
                f"Reconciliation will backfill it."
            )

    async def place_entry(self, symbol: str, quantity: str, price: str) -> PlacedOrder:
        """
        Place a GTC limit buy and record it as a pending trade

        Args:
            symbol: Trading symbol
            quantity: Lot-aligned quantity
            price: Tick-aligned limit price

        Returns:
            The accepted order

        Raises:
            ExchangeRejection: The exchange refused the order or could not be reached
        """
        order = await self._submit(symbol, OrderSide.BUY, quantity, price)
        await self._record(order)
        logger.info(f"Entry placed: {symbol} buy {quantity} @ {price} (order {order.order_id})")
        await self.activity.log(
            "order_placed",
            f"Entry buy {symbol} {quantity} @ {price}",
            {"symbol": symbol, "side": "buy", "order_id": order.order_id,
             "quantity": quantity, "price": price},
        )
        return order

    async def place_take_profit(
        self,
        symbol: str,
        quantity: str,
        price: str,
        related_entry_id: str,
    ) -> PlacedOrder:
        """Limit sell GTC for the same quantity as the entry"""
        order = await self._submit(symbol, OrderSide.SELL, quantity, price)
        await self._record(order)
        logger.info(
            f"Take-profit placed: {symbol} sell {quantity} @ {price} "
            f"(order {order.order_id}, entry {related_entry_id})"
        )
        await self.activity.log(
            "order_placed",
            f"Take-profit sell {symbol} {quantity} @ {price}",
            {"symbol": symbol, "side": "sell", "order_id": order.order_id,
             "entry_order_id": related_entry_id, "quantity": quantity, "price": price},
        )
        return order

    async def take_profit_price(self, symbol: str, entry_price: str, config: TradingConfig) -> str:
        multiplier = 1 + to_decimal(config.take_profit_percent) / Decimal(100)
        return await self.precision.round_price(symbol, to_decimal(entry_price) * multiplier)

    async def open_position(
        self,
        symbol: str,
        quantity: str,
        price: str,
        config: TradingConfig,
    ) -> OpenedPosition:
        """
        Entry buy followed by its take-profit sell

        Args:
            symbol: Trading symbol
            quantity: Lot-aligned quantity for both legs
            price: Tick-aligned entry price
            config: Supplies take_profit_percent

        Returns:
            Both accepted orders

        Raises:
            ExchangeRejection: The entry was not accepted; nothing is open
            CriticalExecutionGap: The entry was accepted but the take-profit
                could not be placed
        """
        entry = await self.place_entry(symbol, quantity, price)

        try:
            tp_price = await self.take_profit_price(symbol, price, config)
            check = await self.validator.check(
                symbol, quantity, tp_price, config, enforce_max_notional=False
            )
            if not check.is_valid:
                raise ValueError(f"take-profit invalid: {'; '.join(check.rejection_reasons)}")
            take_profit = await self.place_take_profit(symbol, quantity, tp_price, entry.order_id)
        except Exception as e:
            gap = CriticalExecutionGap(symbol, entry.order_id, quantity, str(e))
            await self._raise_alarm(gap)
            raise gap from e

        return OpenedPosition(entry=entry, take_profit=take_profit)

    async def _raise_alarm(self, gap: CriticalExecutionGap) -> None:
        logger.critical(f"CRITICAL EXECUTION GAP: {gap}")
        self.health.record_critical_gap(gap)
        await self.activity.log(
            "critical_execution_gap",
            str(gap),
            {"symbol": gap.symbol, "entry_order_id": gap.entry_order_id,
             "quantity": gap.quantity, "cause": gap.cause},
        )
        if self.notifier:
            try:
                await self.notifier.send_critical_alert(
                    "Position without take-profit",
                    f"Symbol: {gap.symbol}\nEntry order: {gap.entry_order_id}\n"
                    f"Quantity: {gap.quantity}\nCause: {gap.cause}",
                )
            except Exception as e:
                logger.error(f"Failed to send critical alert: {e}")
