"""
Numeric precision layer - aligns prices and quantities to exchange rules
"""
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Union

from loguru import logger

from supportbot.core.errors import PrecisionError
from supportbot.exchange.instruments import InstrumentCache, InstrumentInfo

Number = Union[str, int, float, Decimal]


def to_decimal(value: Number) -> Decimal:
    """Convert via str() so floats keep their shortest repr (0.1 -> '0.1')"""
    if isinstance(value, Decimal):
        return value
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise PrecisionError(f"Not a number: {value!r}") from e
    if not result.is_finite():
        raise PrecisionError(f"Not a finite number: {value!r}")
    return result


def _fixed(value: Decimal, decimals: int) -> str:
    return f"{value:.{decimals}f}"


def format_price(info: InstrumentInfo, raw_price: Number) -> str:
    """Round to the nearest tick (half-up), formatted with the tick's decimals"""
    price = to_decimal(raw_price)
    if price <= 0:
        raise PrecisionError(f"{info.symbol}: price must be positive, got {raw_price}")
    ticks = (price / info.tick_size).to_integral_value(rounding=ROUND_HALF_UP)
    rounded = ticks * info.tick_size
    if rounded <= 0:
        raise PrecisionError(f"{info.symbol}: price {raw_price} rounds below one tick")
    return _fixed(rounded, info.price_decimals)


def format_quantity(info: InstrumentInfo, raw_qty: Number) -> str:
    """Floor to the lot size; never more than the caller asked for"""
    qty = to_decimal(raw_qty)
    if qty < 0:
        raise PrecisionError(f"{info.symbol}: quantity must not be negative, got {raw_qty}")
    lots = (qty / info.lot_size).to_integral_value(rounding=ROUND_DOWN)
    return _fixed(lots * info.lot_size, info.quantity_decimals)


def is_aligned(value: Number, step: Decimal) -> bool:
    return to_decimal(value) % step == 0


def check_order(info: InstrumentInfo, price: Number, qty: Number) -> bool:
    """Minimum quantity and minimum notional checks"""
    p = to_decimal(price)
    q = to_decimal(qty)
    if q <= 0 or q < info.min_order_qty:
        logger.debug(f"{info.symbol}: qty {q} below minimum {info.min_order_qty}")
        return False
    if p * q < info.min_notional:
        logger.debug(f"{info.symbol}: notional {p * q} below minimum {info.min_notional}")
        return False
    return True


class PrecisionFormatter:
    """Symbol-aware rounding backed by the instrument cache"""

    def __init__(self, instruments: InstrumentCache):
        self.instruments = instruments
        logger.info("Precision formatter initialized")

    async def info(self, symbol: str) -> InstrumentInfo:
        return await self.instruments.get(symbol)

    async def round_price(self, symbol: str, raw_price: Number) -> str:
        return format_price(await self.info(symbol), raw_price)

    async def round_quantity(self, symbol: str, raw_qty: Number) -> str:
        return format_quantity(await self.info(symbol), raw_qty)

    async def validate_order(self, symbol: str, price: Number, qty: Number) -> bool:
        return check_order(await self.info(symbol), price, qty)

    async def quantity_for_notional(self, symbol: str, notional: Any, price: Number) -> str:
        """Largest lot-aligned quantity whose value does not exceed notional"""
        p = to_decimal(price)
        if p <= 0:
            raise PrecisionError(f"{symbol}: price must be positive, got {price}")
        return await self.round_quantity(symbol, to_decimal(notional) / p)
