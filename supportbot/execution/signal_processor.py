"""
Signal execution - turns each unprocessed signal into at most one entry order
"""
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from loguru import logger

from supportbot.config.trading_config import TradingConfig
from supportbot.core.errors import (
    CriticalExecutionGap,
    ExchangeRejection,
    ExposureLimitError,
    PrecisionError,
)
from supportbot.database.models import Signal
from supportbot.database.repositories import ActivityLogRepository, SignalRepository
from supportbot.positions.exposure_tracker import ExposureTracker
from supportbot.precision.formatter import PrecisionFormatter
from supportbot.risk.order_validator import OrderValidator
from .order_executor import OrderExecutor


class ExecutionStatus(str, Enum):
    EXECUTED = "executed"
    REJECTED = "rejected"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class ExecutionResult:
    """Outcome of one signal"""
    signal_id: Optional[str]
    symbol: str
    status: ExecutionStatus
    reason: str = ""
    entry_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None


class SignalExecutionService:
    """Consumes unprocessed signals oldest first; every signal ends processed"""

    def __init__(
        self,
        signals: SignalRepository,
        activity: ActivityLogRepository,
        exposure: ExposureTracker,
        precision: PrecisionFormatter,
        validator: OrderValidator,
        executor: OrderExecutor,
    ):
        self.signals = signals
        self.activity = activity
        self.exposure = exposure
        self.precision = precision
        self.validator = validator
        self.executor = executor
        logger.info("Signal execution service initialized")

    async def process_pending(self, config: TradingConfig) -> List[ExecutionResult]:
        pending = await self.signals.unprocessed()
        if not pending:
            logger.debug("No unprocessed signals")
            return []

        logger.info(f"Executing {len(pending)} unprocessed signal(s)")
        results = []
        for signal in pending:
            results.append(await self.execute_signal(signal, config))
        return results

    async def execute_signal(self, signal: Signal, config: TradingConfig) -> ExecutionResult:
        symbol = signal.symbol
        try:
            result = await self._execute(signal, config)
        except ExposureLimitError as e:
            logger.info(f"Signal {signal.id} for {symbol} skipped: {e.reason}")
            result = ExecutionResult(signal.id, symbol, ExecutionStatus.REJECTED, e.reason)
        except PrecisionError as e:
            logger.warning(f"Signal {signal.id} for {symbol} abandoned on precision: {e}")
            result = ExecutionResult(signal.id, symbol, ExecutionStatus.REJECTED, str(e))
        except ExchangeRejection as e:
            logger.error(f"Exchange rejected entry for {symbol}: {e} | request={e.request} response={e.response}")
            await self.activity.log(
                "order_rejected",
                str(e),
                {"symbol": symbol, "ret_code": e.ret_code, "ret_msg": e.ret_msg,
                 "request": e.request, "response": e.response},
            )
            result = ExecutionResult(signal.id, symbol, ExecutionStatus.REJECTED, str(e))
        except CriticalExecutionGap as e:
            result = ExecutionResult(
                signal.id, symbol, ExecutionStatus.CRITICAL, str(e), entry_order_id=e.entry_order_id
            )
        except Exception as e:
            logger.error(f"Failed to execute signal {signal.id} for {symbol}: {e}")
            result = ExecutionResult(signal.id, symbol, ExecutionStatus.ERROR, str(e))
        finally:
            try:
                await self.signals.mark_processed(signal)
            except Exception as e:
                logger.error(f"Failed to mark signal {signal.id} processed: {e}")

        return result

    async def _execute(self, signal: Signal, config: TradingConfig) -> ExecutionResult:
        symbol = signal.symbol
        if signal.signal_type != "buy":
            return ExecutionResult(
                signal.id, symbol, ExecutionStatus.REJECTED, f"signal type {signal.signal_type} not actionable"
            )
        if symbol not in config.trading_pairs:
            return ExecutionResult(
                signal.id, symbol, ExecutionStatus.REJECTED, f"{symbol} is no longer a configured pair"
            )

        # Re-check exposure right before money moves
        await self.exposure.ensure_within_limits(symbol, config)
        await self.exposure.ensure_order_slot(symbol, config)

        price = await self.precision.round_price(symbol, signal.price)
        quantity = await self.precision.quantity_for_notional(symbol, config.max_order_amount_usd, price)
        check = await self.validator.check(symbol, quantity, price, config)
        if not check.is_valid:
            return ExecutionResult(
                signal.id, symbol, ExecutionStatus.REJECTED, "; ".join(check.rejection_reasons)
            )

        opened = await self.executor.open_position(symbol, check.quantity, check.price, config)
        return ExecutionResult(
            signal.id,
            symbol,
            ExecutionStatus.EXECUTED,
            f"entry {check.quantity} @ {check.price}, take-profit @ {opened.take_profit.price}",
            entry_order_id=opened.entry.order_id,
            take_profit_order_id=opened.take_profit.order_id,
        )
