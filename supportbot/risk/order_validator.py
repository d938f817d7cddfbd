"""
Order Validator - last gate before an order reaches the exchange
"""
from dataclasses import dataclass, field
from typing import List

from loguru import logger

from supportbot.config.trading_config import TradingConfig
from supportbot.core.errors import PrecisionError
from supportbot.precision.formatter import (
    PrecisionFormatter,
    Number,
    check_order,
    format_price,
    format_quantity,
    to_decimal,
)


@dataclass
class OrderValidation:
    """Order validation result"""
    is_valid: bool
    price: str = ""
    quantity: str = ""
    rejection_reasons: List[str] = field(default_factory=list)


class OrderValidator:
    """Re-derives precision and value limits without trusting upstream checks"""

    def __init__(self, precision: PrecisionFormatter):
        self.precision = precision
        logger.info("Order validator initialized")

    async def check(
        self,
        symbol: str,
        quantity: Number,
        price: Number,
        config: TradingConfig,
        enforce_max_notional: bool = True,
    ) -> OrderValidation:
        """
        Final gate before an order reaches the exchange

        Args:
            symbol: Trading symbol
            quantity: Proposed quantity
            price: Proposed limit price
            config: Supplies max_order_amount_usd
            enforce_max_notional: False for take-profit legs, priced above the
                entry and so above its budget

        Returns:
            OrderValidation with the aligned price and quantity, or the
            rejection reasons
        """
        reasons: List[str] = []
        try:
            info = await self.precision.info(symbol)
            rounded_price = format_price(info, price)
            rounded_qty = format_quantity(info, quantity)
        except PrecisionError as e:
            return OrderValidation(is_valid=False, rejection_reasons=[str(e)])

        # 1. Tick/lot alignment
        if to_decimal(rounded_price) != to_decimal(price):
            reasons.append(f"price {price} not aligned to tick {info.tick_size}")
        if to_decimal(rounded_qty) != to_decimal(quantity):
            reasons.append(f"quantity {quantity} not aligned to lot {info.lot_size}")

        # 2. Exchange minimums
        if not check_order(info, rounded_price, rounded_qty):
            reasons.append(
                f"below exchange minimums (minQty={info.min_order_qty}, minNotional={info.min_notional})"
            )

        # 3. Configured maximum order value
        notional = to_decimal(rounded_price) * to_decimal(rounded_qty)
        if enforce_max_notional and notional > to_decimal(config.max_order_amount_usd):
            reasons.append(f"order value {notional} exceeds max {config.max_order_amount_usd}")

        result = OrderValidation(
            is_valid=not reasons,
            price=rounded_price,
            quantity=rounded_qty,
            rejection_reasons=reasons,
        )
        if not result.is_valid:
            logger.warning(f"Order validation failed for {symbol}: {'; '.join(reasons)}")
        return result

    async def validate(self, symbol: str, quantity: Number, price: Number, config: TradingConfig) -> bool:
        return (await self.check(symbol, quantity, price, config)).is_valid
