"""
End-of-day process - records losing positions and optionally closes winners
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

from loguru import logger

from supportbot.config.trading_config import TradingConfig
from supportbot.database.repositories import ActivityLogRepository, TradeRepository
from .position_closer import PositionCloser

EOD_LOSS_LOG_TYPE = "eod_loss"


@dataclass
class EndOfDayReport:
    evaluated: int = 0
    in_loss: List[str] = field(default_factory=list)
    closed: List[str] = field(default_factory=list)


class EndOfDayManager:
    """Runs once per UTC day after the configured reset time"""

    def __init__(
        self,
        exchange,
        trades: TradeRepository,
        activity: ActivityLogRepository,
        closer: PositionCloser,
    ):
        self.exchange = exchange
        self.trades = trades
        self.activity = activity
        self.closer = closer
        self.last_run_date: Optional[date] = None
        logger.info("End-of-day manager initialized")

    @staticmethod
    def _utc_now() -> datetime:
        return datetime.now(timezone.utc)

    def is_due(self, config: TradingConfig, now: Optional[datetime] = None) -> bool:
        now = now or self._utc_now()
        if self.last_run_date == now.date():
            return False
        hour, minute = config.reset_hour_minute
        return (now.hour, now.minute) >= (hour, minute)

    async def run(self, config: TradingConfig, now: Optional[datetime] = None) -> EndOfDayReport:
        now = now or self._utc_now()
        self.last_run_date = now.date()
        report = EndOfDayReport()

        for trade in await self.trades.open_buys():
            report.evaluated += 1
            try:
                ticker = await self.exchange.get_ticker(trade.symbol)
            except Exception as e:
                logger.error(f"EOD: no price for {trade.symbol}, skipping: {e}")
                continue

            entry = trade.entry_price
            profit_pct = (ticker.last_price - entry) / entry * 100 if entry > 0 else 0.0

            if profit_pct < 0:
                report.in_loss.append(trade.symbol)
                await self.activity.log(
                    EOD_LOSS_LOG_TYPE,
                    f"{trade.symbol} in loss at end of day ({profit_pct:.2f}%)",
                    {"symbol": trade.symbol, "trade_id": trade.id,
                     "profit_percent": round(profit_pct, 4), "price": ticker.last_price},
                )
                logger.info(f"EOD: {trade.symbol} in loss ({profit_pct:.2f}%)")
            elif config.auto_close_at_end_of_day and profit_pct >= config.eod_close_premium_percent:
                result = await self.closer.close(trade, f"end of day +{profit_pct:.2f}%")
                if result is not None:
                    report.closed.append(trade.symbol)

        logger.info(
            f"EOD complete: {report.evaluated} evaluated, {len(report.in_loss)} in loss, "
            f"{len(report.closed)} closed"
        )
        return report

    async def was_in_loss(self, symbol: str, within_hours: int = 24) -> bool:
        """Whether an end-of-day loss was recorded for symbol recently"""
        since = self._utc_now() - timedelta(hours=within_hours)
        logs = await self.activity.recent(EOD_LOSS_LOG_TYPE, since)
        return any(log.data.get("symbol") == symbol for log in logs)
