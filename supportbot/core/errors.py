"""
Error taxonomy for the trading core.

Validation and limit failures are handled where they occur and turned into
"no action taken" outcomes. Exchange and transport failures are converted into
these types at the component boundary before reaching the scheduler.
"""
from typing import Any, Dict, Optional


class TradingError(Exception):
    """Base class for all trading core errors"""


class ConfigurationError(TradingError):
    """Missing or out-of-range trading configuration. The cycle is skipped."""


class PrecisionError(TradingError):
    """Instrument metadata unavailable or an order fails tick/lot alignment."""


class ExposureLimitError(TradingError):
    """Position or active-symbol cap reached."""

    def __init__(self, symbol: str, reason: str):
        self.symbol = symbol
        self.reason = reason
        super().__init__(f"{symbol}: {reason}")


class ExchangeError(TradingError):
    """Transport-level failure talking to the exchange."""


class ExchangeRejection(TradingError):
    """The exchange refused an order (non-zero return code or no order id)."""

    def __init__(
        self,
        message: str,
        ret_code: Optional[int] = None,
        ret_msg: str = "",
        request: Optional[Dict[str, Any]] = None,
        response: Optional[Dict[str, Any]] = None,
    ):
        self.ret_code = ret_code
        self.ret_msg = ret_msg
        self.request = request or {}
        self.response = response or {}
        super().__init__(message)


class StoreError(TradingError):
    """Persistence layer failure."""


class CriticalExecutionGap(TradingError):
    """Entry order accepted but the take-profit leg could not be placed."""

    def __init__(self, symbol: str, entry_order_id: str, quantity: str, cause: str):
        self.symbol = symbol
        self.entry_order_id = entry_order_id
        self.quantity = quantity
        self.cause = cause
        super().__init__(
            f"Open position without exit order: {symbol} entry {entry_order_id} "
            f"qty {quantity} ({cause})"
        )


class TradeNotFoundError(TradingError):
    """No trade with this id for the engine's user."""


class TradeNotOpenError(TradingError):
    """The trade is not a filled or partially filled buy."""
