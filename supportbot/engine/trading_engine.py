"""
Trading Engine - wires the trading core together and exposes start/stop,
single-cycle, health and reconciliation controls
"""
import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from supportbot.config.trading_config import TradingConfig, load_trading_config
from supportbot.core.errors import (
    ConfigurationError,
    ExchangeError,
    TradeNotFoundError,
    TradeNotOpenError,
)
from supportbot.controls.end_of_day import EndOfDayManager
from supportbot.controls.position_closer import PositionCloser
from supportbot.database.models import OPEN_STATUSES, TradeSide
from supportbot.database.repositories import (
    ActivityLogRepository,
    SignalRepository,
    TradeRepository,
)
from supportbot.exchange.instruments import InstrumentCache
from supportbot.execution.order_executor import OrderExecutor
from supportbot.execution.signal_processor import ExecutionStatus, SignalExecutionService
from supportbot.execution.trade_sync import TradeSyncService
from supportbot.positions.cleanup import PositionCleanup
from supportbot.positions.exposure_tracker import ExposureTracker
from supportbot.precision.formatter import PrecisionFormatter
from supportbot.reconciliation.reconciler import ReconciliationReport, ReconciliationService
from supportbot.risk.order_validator import OrderValidator
from supportbot.signals.generator import SignalGenerator
from .health import EngineHealth
from .scheduler import CycleScheduler

DEFAULT_LOOP_INTERVAL = 30


@dataclass
class CycleReport:
    """What one cycle did"""
    started_at: str
    finished_at: Optional[str] = None
    skipped: Optional[str] = None
    error: Optional[str] = None
    orders_synced: int = 0
    pending_cancelled: int = 0
    eod_in_loss: List[str] = field(default_factory=list)
    eod_closed: List[str] = field(default_factory=list)
    signals_emitted: List[str] = field(default_factory=list)
    no_signal: Dict[str, str] = field(default_factory=dict)
    executions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TradingEngine:
    """Owns one user's trading loop and its collaborators"""

    def __init__(
        self,
        user_id: str,
        exchange,
        store,
        notifier=None,
        startup_reconcile_hours: int = 72,
        periodic_reconcile_hours: int = 2,
        reconcile_interval_seconds: int = 300,
        instrument_cache_ttl_seconds: int = 3600,
        instrument_cache_max_size: int = 500,
    ):
        self.user_id = user_id
        self.exchange = exchange
        self.store = store
        self.notifier = notifier
        self.startup_reconcile_hours = max(72, startup_reconcile_hours)
        self.periodic_reconcile_hours = periodic_reconcile_hours
        self.reconcile_interval_seconds = reconcile_interval_seconds

        self.health = EngineHealth()
        self.trades = TradeRepository(store, user_id)
        self.signals = SignalRepository(store, user_id)
        self.activity = ActivityLogRepository(store, user_id)

        self.instruments = InstrumentCache(
            exchange.get_instrument_info,
            ttl_seconds=instrument_cache_ttl_seconds,
            max_size=instrument_cache_max_size,
        )
        self.precision = PrecisionFormatter(self.instruments)
        self.validator = OrderValidator(self.precision)
        self.exposure = ExposureTracker(self.trades)

        self.closer = PositionCloser(exchange, self.precision, self.trades, self.activity, notifier)
        self.eod_manager = EndOfDayManager(exchange, self.trades, self.activity, self.closer)
        self.cleanup = PositionCleanup(exchange, self.trades)
        self.trade_sync = TradeSyncService(exchange, self.trades)
        self.generator = SignalGenerator(
            exchange, self.trades, self.signals, self.activity,
            self.exposure, self.precision, self.eod_manager,
        )
        self.executor = OrderExecutor(
            exchange, self.precision, self.validator, self.trades,
            self.activity, self.health, notifier,
        )
        self.execution = SignalExecutionService(
            self.signals, self.activity, self.exposure,
            self.precision, self.validator, self.executor,
        )
        self.reconciler = ReconciliationService(exchange, self.trades, self.activity, self.precision)

        self._cycle_lock = asyncio.Lock()
        self._loop_interval = DEFAULT_LOOP_INTERVAL
        self.cycle_scheduler = CycleScheduler("trading", self.run_one_cycle, lambda: self._loop_interval)
        self.reconcile_scheduler = CycleScheduler(
            "reconciliation", self._periodic_reconcile, lambda: self.reconcile_interval_seconds
        )
        logger.info(f"Trading engine initialized for user {user_id}")

    @classmethod
    def from_settings(cls, settings, exchange, store, notifier=None) -> "TradingEngine":
        engine = settings.engine
        return cls(
            user_id=engine.user_id,
            exchange=exchange,
            store=store,
            notifier=notifier,
            startup_reconcile_hours=engine.startup_reconcile_hours,
            periodic_reconcile_hours=engine.periodic_reconcile_hours,
            reconcile_interval_seconds=engine.reconcile_interval_seconds,
            instrument_cache_ttl_seconds=engine.instrument_cache_ttl_seconds,
            instrument_cache_max_size=engine.instrument_cache_max_size,
        )

    @property
    def running(self) -> bool:
        return self.health.running

    async def start(self) -> None:
        """Startup reconciliation, then the cycle and reconciliation loops"""
        if self.running:
            logger.warning("Trading engine already running")
            return

        logger.info("=" * 60)
        logger.info(f"Starting trading engine (startup reconcile {self.startup_reconcile_hours}h)")
        await self._reconcile_safely(self.startup_reconcile_hours)

        self.health.running = True
        self.cycle_scheduler.start()
        self.reconcile_scheduler.start()
        logger.info("Trading engine started")

    async def stop(self) -> None:
        """Stops scheduling; a cycle already in flight completes"""
        if not self.running:
            return
        logger.info("Stopping trading engine...")
        self.health.running = False
        await self.cycle_scheduler.stop()
        await self.reconcile_scheduler.stop()
        logger.info("Trading engine stopped")

    async def run_one_cycle(self) -> CycleReport:
        """Sync, cleanup, end of day, signal generation and execution"""
        async with self._cycle_lock:
            report = CycleReport(started_at=datetime.now(timezone.utc).isoformat())
            try:
                await self._run_cycle(report)
            except ConfigurationError as e:
                report.skipped = f"configuration error: {e}"
                self.health.record_config_error(str(e))
                logger.error(f"Cycle skipped, configuration error: {e}")
            except Exception as e:
                report.error = str(e)
                self.health.record_cycle_failure(str(e))
                logger.exception(f"Trading cycle failed: {e}")
                await self.activity.log("cycle_error", f"Trading cycle failed: {e}", {"error": str(e)})
            else:
                self.health.record_cycle_success()
            report.finished_at = datetime.now(timezone.utc).isoformat()
            return report

    async def _run_cycle(self, report: CycleReport) -> None:
        config = await load_trading_config(self.store, self.user_id)
        self._loop_interval = config.loop_interval_seconds
        if not config.is_active:
            report.skipped = "trading is paused for this user"
            logger.info("Trading inactive for this user, skipping cycle")
            return

        report.orders_synced = await self.trade_sync.sync_open_orders()
        report.pending_cancelled = await self.cleanup.run(config)

        if self.eod_manager.is_due(config):
            eod = await self.eod_manager.run(config)
            report.eod_in_loss = eod.in_loss
            report.eod_closed = eod.closed

        for outcome in await self.generator.generate(config):
            if outcome.emitted:
                report.signals_emitted.append(outcome.symbol)
            else:
                report.no_signal[outcome.symbol] = outcome.reason

        for result in await self.execution.process_pending(config):
            report.executions.append({
                "signal_id": result.signal_id,
                "symbol": result.symbol,
                "status": result.status.value,
                "reason": result.reason,
                "entry_order_id": result.entry_order_id,
                "take_profit_order_id": result.take_profit_order_id,
            })
        self._log_summary(config, report)

    @staticmethod
    def _log_summary(config: TradingConfig, report: CycleReport) -> None:
        executed = sum(1 for e in report.executions if e["status"] == ExecutionStatus.EXECUTED.value)
        logger.info(
            f"Cycle complete: {len(config.trading_pairs)} pairs, "
            f"{len(report.signals_emitted)} signal(s), {executed} order(s) placed, "
            f"{report.orders_synced} synced, {report.pending_cancelled} cancelled"
        )

    async def reconcile_now(self, lookback_hours: float) -> ReconciliationReport:
        """Reconcile against the last lookback_hours of exchange history"""
        try:
            report = await self.reconciler.reconcile(lookback_hours)
        except Exception as e:
            self.health.record_reconciliation(str(e))
            logger.error(f"Reconciliation ({lookback_hours}h) failed: {e}")
            raise
        self.health.record_reconciliation()
        return report

    async def close_trade(self, trade_id: str, reason: str = "manual close") -> float:
        """
        Market-sell one open position on operator request.

        Runs under the cycle lock so it never races the end-of-day pass.

        Args:
            trade_id: Local id of a filled or partially filled buy
            reason: Recorded with the close in the activity log

        Returns:
            Realized P/L of the close

        Raises:
            TradeNotFoundError: No such trade for this user
            TradeNotOpenError: The trade is not an open buy
            ExchangeError: The exchange did not accept the sell
        """
        async with self._cycle_lock:
            trade = await self.trades.get(trade_id)
            if trade is None:
                raise TradeNotFoundError(f"Trade {trade_id} not found")
            if trade.side != TradeSide.BUY.value or trade.status not in OPEN_STATUSES:
                raise TradeNotOpenError(
                    f"Trade {trade_id} is a {trade.side} in status {trade.status.value}, not an open position"
                )

            logger.info(f"Closing {trade.symbol} trade {trade_id} on request ({reason})")
            profit_loss = await self.closer.close(trade, reason)
            if profit_loss is None:
                raise ExchangeError(f"Close order for {trade.symbol} trade {trade_id} was not accepted")
            return profit_loss

    async def _reconcile_safely(self, lookback_hours: float) -> Optional[ReconciliationReport]:
        try:
            return await self.reconcile_now(lookback_hours)
        except Exception:
            return None

    async def _periodic_reconcile(self) -> None:
        await self.reconcile_now(self.periodic_reconcile_hours)
        self.instruments.cleanup_expired()

    def get_health(self) -> Dict[str, Any]:
        return self.health.snapshot()

    def acknowledge_critical(self) -> int:
        return self.health.acknowledge_critical()
