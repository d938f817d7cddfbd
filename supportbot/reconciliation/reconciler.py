"""
Reconciliation Service - aligns the local trade ledger with exchange order history
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from supportbot.core.errors import ExchangeError, PrecisionError
from supportbot.database.models import Trade, TradeStatus
from supportbot.database.repositories import ActivityLogRepository, TradeRepository, closing_changes
from supportbot.exchange.bybit_client import RemoteOrder
from supportbot.execution.trade_sync import diff_trade, effective_status
from supportbot.precision.formatter import PrecisionFormatter

MATCH_WINDOW = timedelta(minutes=10)
MATCH_QTY_TOLERANCE = 0.01
CLOSE_QTY_TOLERANCE = 0.05
HISTORY_LIMIT = 500


@dataclass
class DriftCorrection:
    """One automatic correction of local state"""
    kind: str
    symbol: str
    order_id: Optional[str]
    changes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconciliationReport:
    lookback_hours: float
    remote_orders: int = 0
    matched: int = 0
    updated: int = 0
    created: int = 0
    closed: int = 0
    corrections: List[DriftCorrection] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.updated or self.created or self.closed)

    def summary(self) -> Dict[str, Any]:
        return {
            "lookback_hours": self.lookback_hours,
            "remote_orders": self.remote_orders,
            "matched": self.matched,
            "updated": self.updated,
            "created": self.created,
            "closed": self.closed,
        }


def _remote_qty(order: RemoteOrder) -> float:
    return order.cum_exec_qty if order.cum_exec_qty > 0 else order.qty


class ReconciliationService:
    """
    Matches remote orders to local trades (order id first, then symbol, side,
    quantity and time), corrects drift, backfills missing fills and detects
    positions closed outside the bot. Running it twice with no new exchange
    activity writes nothing the second time.
    """

    def __init__(
        self,
        exchange,
        trades: TradeRepository,
        activity: ActivityLogRepository,
        precision: PrecisionFormatter,
    ):
        self.exchange = exchange
        self.trades = trades
        self.activity = activity
        self.precision = precision
        logger.info("Reconciliation service initialized")

    async def reconcile(self, lookback_hours: float) -> ReconciliationReport:
        """
        Align the local ledger with exchange order history

        Matches remote orders to local trades, corrects status, price and
        quantity drift, backfills fills the ledger never saw and closes buys
        whose sell already executed. Running it twice in a row writes nothing
        the second time.

        Args:
            lookback_hours: How far back to read exchange order history

        Returns:
            Report of every correction made
        """
        report = ReconciliationReport(lookback_hours=lookback_hours)
        start = datetime.now(timezone.utc) - timedelta(hours=lookback_hours)

        remote = await self.exchange.get_order_history(limit=HISTORY_LIMIT, start_time=start)
        remote = sorted(
            (o for o in remote if o.created_at is None or o.created_at >= start),
            key=lambda o: o.created_at or start,
        )
        report.remote_orders = len(remote)

        local = await self.trades.since(start - MATCH_WINDOW)
        linked = await self._match_orders(remote, local, report)
        await self._detect_closed_positions(remote, linked, report)

        if report.changed:
            logger.info(f"Reconciliation ({lookback_hours}h) corrected drift: {report.summary()}")
            await self.activity.log("reconciliation", "Reconciliation corrected local state", report.summary())
        else:
            logger.info(f"Reconciliation ({lookback_hours}h): ledger in sync, {report.remote_orders} orders checked")
        return report

    async def _match_orders(
        self,
        remote: List[RemoteOrder],
        local: List[Trade],
        report: ReconciliationReport,
    ) -> Dict[str, Trade]:
        """Returns remote order id -> local trade for every linked order"""
        by_order_id = {t.bybit_order_id: t for t in local if t.bybit_order_id}
        remote_ids = {o.order_id for o in remote}
        matched_ids: Set[Any] = set()
        linked: Dict[str, Trade] = {}

        for order in remote:
            if effective_status(order) is None:
                continue

            trade = by_order_id.get(order.order_id)
            if trade is None:
                trade = await self.trades.find_by_order_id(order.order_id)
            relink = False
            if trade is None:
                trade = self._fallback_match(order, local, remote_ids, matched_ids)
                relink = trade is not None

            if trade is not None:
                report.matched += 1
                matched_ids.add(trade.id)
                linked[order.order_id] = trade
                changes = diff_trade(trade, order)
                if relink and not trade.is_terminal:
                    changes["bybit_order_id"] = order.order_id
                if await self.trades.update(trade, changes):
                    report.updated += 1
                    self._record(report, "corrected", trade.symbol, order.order_id, changes)
                continue

            if order.has_fills or effective_status(order) == TradeStatus.FILLED:
                created = await self._synthesize(order)
                linked[order.order_id] = created
                report.created += 1
                self._record(report, "backfilled", order.symbol, order.order_id, {
                    "side": order.side, "price": order.fill_price, "quantity": order.cum_exec_qty,
                })

        return linked

    @staticmethod
    def _fallback_match(
        order: RemoteOrder,
        local: List[Trade],
        remote_ids: Set[str],
        matched_ids: Set[Any],
    ) -> Optional[Trade]:
        """Symbol, side, quantity within 1% and creation within 10 minutes"""
        quantity = _remote_qty(order)
        for trade in local:
            if trade.id in matched_ids or (trade.bybit_order_id and trade.bybit_order_id in remote_ids):
                continue
            if trade.symbol != order.symbol or trade.side != order.side:
                continue
            if quantity <= 0 or abs(trade.quantity - quantity) / quantity > MATCH_QTY_TOLERANCE:
                continue
            if trade.created_at and order.created_at and abs(trade.created_at - order.created_at) > MATCH_WINDOW:
                continue
            return trade
        return None

    async def _synthesize(self, order: RemoteOrder) -> Trade:
        status = effective_status(order)
        if status not in (TradeStatus.FILLED, TradeStatus.PARTIAL_FILLED):
            status = TradeStatus.FILLED
        trade = Trade(
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type or "limit",
            price=order.fill_price,
            quantity=order.cum_exec_qty,
            status=status,
            bybit_order_id=order.order_id,
            buy_fill_price=order.fill_price if order.side == "buy" else None,
            created_at=order.created_at,
        )
        logger.info(
            f"Backfilling missing {order.symbol} {order.side} trade from order {order.order_id}: "
            f"{order.cum_exec_qty} @ {order.fill_price}"
        )
        return await self.trades.upsert_by_order_id(trade, merge=lambda existing: diff_trade(existing, order))

    async def _detect_closed_positions(
        self,
        remote: List[RemoteOrder],
        linked: Dict[str, Trade],
        report: ReconciliationReport,
    ) -> None:
        sells = [
            o for o in remote
            if o.side == "sell" and effective_status(o) == TradeStatus.FILLED and o.cum_exec_qty > 0
        ]
        consumed = {
            o.order_id for o in sells
            if o.order_id in linked and linked[o.order_id].status == TradeStatus.CLOSED
        }

        still_open: List[Trade] = []
        for buy in await self.trades.open_buys():
            sell = self._closing_sell(buy, sells, consumed)
            if sell is None:
                still_open.append(buy)
                continue
            consumed.add(sell.order_id)
            await self._close_with_sell(buy, sell, linked.get(sell.order_id), report)

        if still_open:
            await self._close_by_balance(still_open, report)

    @staticmethod
    def _closing_sell(buy: Trade, sells: List[RemoteOrder], consumed: Set[str]) -> Optional[RemoteOrder]:
        """Closest-quantity filled sell for the symbol placed after the buy"""
        best: Optional[RemoteOrder] = None
        for sell in sells:
            if sell.order_id in consumed or sell.symbol != buy.symbol:
                continue
            if buy.created_at and sell.created_at and sell.created_at < buy.created_at - MATCH_WINDOW:
                continue
            if buy.quantity <= 0 or abs(sell.cum_exec_qty - buy.quantity) > buy.quantity * CLOSE_QTY_TOLERANCE:
                continue
            if best is None or abs(sell.cum_exec_qty - buy.quantity) < abs(best.cum_exec_qty - buy.quantity):
                best = sell
        return best

    async def _close_with_sell(
        self,
        buy: Trade,
        sell: RemoteOrder,
        sell_trade: Optional[Trade],
        report: ReconciliationReport,
    ) -> None:
        profit_loss = round((sell.fill_price - buy.entry_price) * buy.quantity, 8)
        await self.trades.update(buy, {"status": TradeStatus.CLOSED, "profit_loss": profit_loss})

        if sell_trade is not None:
            if sell_trade.status != TradeStatus.CLOSED:
                await self.trades.update(sell_trade, {"status": TradeStatus.CLOSED, "profit_loss": profit_loss})
        else:
            await self.trades.upsert_by_order_id(Trade(
                symbol=sell.symbol,
                side="sell",
                order_type=sell.order_type or "limit",
                price=sell.fill_price,
                quantity=sell.cum_exec_qty,
                status=TradeStatus.CLOSED,
                bybit_order_id=sell.order_id,
                profit_loss=profit_loss,
                created_at=sell.created_at,
            ), merge=lambda existing: closing_changes(existing, profit_loss))

        report.closed += 1
        self._record(report, "closed", buy.symbol, sell.order_id, {
            "trade_id": buy.id, "exit_price": sell.fill_price, "profit_loss": profit_loss,
        })
        self._log_close(buy, sell.fill_price, profit_loss, f"sell order {sell.order_id}")
        await self.activity.log(
            "position_closed",
            f"{buy.symbol} closed by sell {sell.order_id}, P/L {profit_loss:+.4f}",
            {"symbol": buy.symbol, "trade_id": buy.id, "order_id": sell.order_id,
             "exit_price": sell.fill_price, "profit_loss": profit_loss, "source": "reconciliation"},
        )

    async def _close_by_balance(self, open_buys: List[Trade], report: ReconciliationReport) -> None:
        """Close buys whose base coin has left the account without a matching sell"""
        by_symbol: Dict[str, List[Trade]] = defaultdict(list)
        for trade in open_buys:
            if trade.status == TradeStatus.FILLED:
                by_symbol[trade.symbol].append(trade)
        if not by_symbol:
            return

        try:
            balance = await self.exchange.get_account_balance()
        except ExchangeError as e:
            logger.warning(f"Skipping balance check, balance unavailable: {e}")
            return

        for symbol, trades in by_symbol.items():
            try:
                info = await self.precision.info(symbol)
                held = balance.coins.get(info.base_coin, 0.0)
                if not info.base_coin or (held > 0 and held >= float(info.min_order_qty)):
                    continue
                ticker = await self.exchange.get_ticker(symbol)
            except (ExchangeError, PrecisionError) as e:
                logger.warning(f"Skipping balance check for {symbol}: {e}")
                continue

            for trade in trades:
                profit_loss = round((ticker.last_price - trade.entry_price) * trade.quantity, 8)
                await self.trades.update(trade, {"status": TradeStatus.CLOSED, "profit_loss": profit_loss})
                report.closed += 1
                self._record(report, "closed_by_balance", symbol, trade.bybit_order_id, {
                    "trade_id": trade.id, "exit_price": ticker.last_price, "profit_loss": profit_loss,
                })
                logger.warning(
                    f"{symbol} balance is {held} {info.base_coin}; closing trade {trade.id} "
                    f"with estimated P/L {profit_loss:+.4f}"
                )
                await self.activity.log(
                    "position_closed",
                    f"{symbol} closed: {info.base_coin} balance gone, estimated P/L {profit_loss:+.4f}",
                    {"symbol": symbol, "trade_id": trade.id, "exit_price": ticker.last_price,
                     "profit_loss": profit_loss, "source": "balance"},
                )

    @staticmethod
    def _record(report: ReconciliationReport, kind: str, symbol: str, order_id: Optional[str], changes: Dict[str, Any]) -> None:
        report.corrections.append(DriftCorrection(kind=kind, symbol=symbol, order_id=order_id, changes=changes))
        logger.info(f"Reconciliation {kind}: {symbol} order {order_id} {changes}")

    @staticmethod
    def _log_close(buy: Trade, exit_price: float, profit_loss: float, via: str) -> None:
        message = (
            f"Detected closed position {buy.symbol} trade {buy.id}: "
            f"entry {buy.entry_price} exit {exit_price} via {via}, P/L {profit_loss:+.4f}"
        )
        if profit_loss < 0:
            logger.warning(message)
        else:
            logger.info(message)
