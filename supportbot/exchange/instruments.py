"""
Instrument metadata and its time-expiring cache
"""
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from loguru import logger

from supportbot.core.errors import PrecisionError


def step_decimals(step: Decimal) -> int:
    """Decimal places implied by a step such as 0.0010 -> 3"""
    exponent = step.normalize().as_tuple().exponent
    return max(0, -exponent)


def _decimal(value: Any, field_name: str, symbol: str) -> Decimal:
    if value is None or value == "":
        raise PrecisionError(f"{symbol}: missing {field_name} in instrument info")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise PrecisionError(f"{symbol}: invalid {field_name} {value!r}") from e
    return result


@dataclass(frozen=True)
class InstrumentInfo:
    """Exchange-mandated precision rules for one symbol"""
    symbol: str
    tick_size: Decimal
    lot_size: Decimal
    min_order_qty: Decimal
    min_notional: Decimal
    base_coin: str = ""
    quote_coin: str = ""

    @property
    def price_decimals(self) -> int:
        return step_decimals(self.tick_size)

    @property
    def quantity_decimals(self) -> int:
        return step_decimals(self.lot_size)

    @classmethod
    def from_bybit(cls, item: Dict[str, Any]) -> "InstrumentInfo":
        """Build from a /v5/market/instruments-info spot entry"""
        symbol = item.get("symbol", "")
        price_filter = item.get("priceFilter") or {}
        lot_filter = item.get("lotSizeFilter") or {}

        tick_size = _decimal(price_filter.get("tickSize"), "tickSize", symbol)
        lot_size = _decimal(
            lot_filter.get("basePrecision") or lot_filter.get("qtyStep"), "basePrecision", symbol
        )
        if tick_size <= 0 or lot_size <= 0:
            raise PrecisionError(f"{symbol}: non-positive tick/lot size ({tick_size}/{lot_size})")

        min_qty = _decimal(lot_filter.get("minOrderQty", "0"), "minOrderQty", symbol)
        min_notional = _decimal(
            lot_filter.get("minOrderAmt") or lot_filter.get("minNotionalValue") or "0",
            "minOrderAmt",
            symbol,
        )
        return cls(
            symbol=symbol,
            tick_size=tick_size,
            lot_size=lot_size,
            min_order_qty=min_qty,
            min_notional=min_notional,
            base_coin=item.get("baseCoin", ""),
            quote_coin=item.get("quoteCoin", ""),
        )


class InstrumentCache:
    """
    Process-wide symbol -> InstrumentInfo cache.

    Entries are served until their TTL expires, then refetched. Fetch errors
    propagate; there is no default precision.
    """

    def __init__(
        self,
        fetcher: Callable[[str], Awaitable[InstrumentInfo]],
        ttl_seconds: float = 3600,
        max_size: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: Dict[str, Tuple[InstrumentInfo, float]] = {}
        logger.info(f"Instrument cache initialized (ttl={ttl_seconds}s, max={max_size})")

    def _fresh(self, symbol: str) -> Optional[InstrumentInfo]:
        entry = self._entries.get(symbol)
        if entry and self._clock() - entry[1] < self.ttl_seconds:
            return entry[0]
        return None

    async def get(self, symbol: str) -> InstrumentInfo:
        cached = self._fresh(symbol)
        if cached:
            return cached

        try:
            info = await self._fetcher(symbol)
        except PrecisionError:
            raise
        except Exception as e:
            logger.error(f"Failed to fetch instrument info for {symbol}: {e}")
            raise PrecisionError(f"{symbol}: instrument info unavailable ({e})") from e
        if info is None:
            raise PrecisionError(f"{symbol}: instrument not found")

        self._store(symbol, info)
        logger.debug(
            f"Cached {symbol}: tick={info.tick_size} lot={info.lot_size} "
            f"minQty={info.min_order_qty} minNotional={info.min_notional}"
        )
        return info

    def _store(self, symbol: str, info: InstrumentInfo) -> None:
        if symbol not in self._entries and len(self._entries) >= self.max_size:
            # Evict the oldest 10%
            evict = max(1, self.max_size // 10)
            oldest = sorted(self._entries.items(), key=lambda kv: kv[1][1])[:evict]
            for key, _ in oldest:
                del self._entries[key]
        self._entries[symbol] = (info, self._clock())

    def invalidate(self, symbol: str) -> None:
        self._entries.pop(symbol, None)

    def clear(self) -> None:
        self._entries.clear()

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [s for s, (_, at) in self._entries.items() if now - at >= self.ttl_seconds]
        for symbol in expired:
            del self._entries[symbol]
        return len(expired)

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        expired = sum(1 for _, at in self._entries.values() if now - at >= self.ttl_seconds)
        return {"size": len(self._entries), "expired": expired}
