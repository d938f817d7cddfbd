"""
Position & exposure tracking against the local trade ledger
"""
from dataclasses import dataclass

from loguru import logger

from supportbot.config.trading_config import TradingConfig
from supportbot.core.errors import ExposureLimitError, StoreError
from supportbot.database.repositories import TradeRepository

MAX_ORDERS_WITH_EOD_RULE = 2


@dataclass
class LimitCheck:
    """Exposure check result"""
    ok: bool
    reason: str = ""
    open_positions: int = 0
    active_symbols: int = 0


class ExposureTracker:
    """
    Counts filled and partially filled buy trades. Pending orders are not
    counted. Store failures fail closed.
    """

    def __init__(self, trades: TradeRepository):
        self.trades = trades
        logger.info("Exposure tracker initialized")

    async def count_open_positions(self, symbol: str) -> int:
        """Filled or partially filled buys for symbol"""
        return len(await self.trades.open_buys(symbol))

    async def active_symbols(self) -> set:
        return {t.symbol for t in await self.trades.open_buys()}

    async def count_active_symbols(self) -> int:
        return len(await self.active_symbols())

    async def check_limits(self, symbol: str, config: TradingConfig) -> LimitCheck:
        """
        Check the active-pair and per-pair caps for a new position

        Args:
            symbol: Pair a position would be opened on
            config: Supplies max_active_pairs and max_positions_per_pair

        Returns:
            LimitCheck with ok False and a reason when a cap is reached or
            the ledger cannot be read
        """
        try:
            open_buys = await self.trades.open_buys()
        except StoreError as e:
            logger.error(f"Exposure check failed for {symbol}, rejecting: {e}")
            return LimitCheck(ok=False, reason=f"exposure check unavailable: {e}")

        active = {t.symbol for t in open_buys}
        positions = sum(1 for t in open_buys if t.symbol == symbol)

        if symbol not in active and len(active) >= config.max_active_pairs:
            return LimitCheck(
                ok=False,
                reason=f"max active pairs reached ({len(active)}/{config.max_active_pairs})",
                open_positions=positions,
                active_symbols=len(active),
            )
        if positions >= config.max_positions_per_pair:
            return LimitCheck(
                ok=False,
                reason=f"max positions for {symbol} reached ({positions}/{config.max_positions_per_pair})",
                open_positions=positions,
                active_symbols=len(active),
            )
        return LimitCheck(ok=True, open_positions=positions, active_symbols=len(active))

    async def ensure_within_limits(self, symbol: str, config: TradingConfig) -> LimitCheck:
        """check_limits that raises ExposureLimitError on rejection"""
        result = await self.check_limits(symbol, config)
        if not result.ok:
            raise ExposureLimitError(symbol, result.reason)
        return result

    async def count_working_orders(self, symbol: str) -> int:
        """Open positions plus entries still waiting on the book"""
        open_buys = await self.trades.open_buys(symbol)
        pending = await self.trades.pending_buys(symbol)
        return len(open_buys) + len(pending)

    async def ensure_order_slot(self, symbol: str, config: TradingConfig) -> None:
        """
        Re-applies the two-order rule right before an entry is placed.

        Args:
            symbol: Pair about to receive an entry order
            config: Active trading configuration

        Raises:
            ExposureLimitError: The rule is on and the symbol already has
                MAX_ORDERS_WITH_EOD_RULE working orders
        """
        if not config.require_eod_loss_for_second_order:
            return
        existing = await self.count_working_orders(symbol)
        if existing >= MAX_ORDERS_WITH_EOD_RULE:
            raise ExposureLimitError(
                symbol, f"{existing} orders already working for {symbol}, no further entries"
            )
