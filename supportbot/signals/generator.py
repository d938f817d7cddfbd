"""
Signal Generator - decides per symbol whether to open or average down a position
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from loguru import logger

from supportbot.config.trading_config import TradingConfig
from supportbot.database.models import Signal, Trade
from supportbot.database.repositories import ActivityLogRepository, SignalRepository, TradeRepository
from supportbot.positions.exposure_tracker import MAX_ORDERS_WITH_EOD_RULE, ExposureTracker
from supportbot.precision.formatter import PrecisionFormatter, to_decimal
from supportbot.strategies.factory import get_strategy

NEW_POSITION_CONFIDENCE = 0.8
AVERAGING_CONFIDENCE = 0.7

def percent_change(current, reference) -> Decimal:
    """Percentage change of current against reference, exact in decimal"""
    ref = to_decimal(reference)
    return (to_decimal(current) - ref) / ref * 100


def within_averaging_band(change_pct: Decimal, lower_pct, upper_pct) -> bool:
    """True when -lower <= change <= +upper (both edges inclusive)"""
    return -to_decimal(lower_pct) <= change_pct <= to_decimal(upper_pct)


@dataclass
class SignalOutcome:
    """Definite per-symbol result of one generation pass"""
    symbol: str
    emitted: bool
    reason: str
    path: str = ""
    signal: Optional[Signal] = None


@dataclass
class _Candidate:
    path: str
    entry_price: float
    confidence: float
    reasoning: str


class SignalGenerator:
    """Runs strategy, exposure and precision checks and persists buy signals"""

    def __init__(
        self,
        exchange,
        trades: TradeRepository,
        signals: SignalRepository,
        activity: ActivityLogRepository,
        exposure: ExposureTracker,
        precision: PrecisionFormatter,
        eod_manager,
    ):
        self.exchange = exchange
        self.trades = trades
        self.signals = signals
        self.activity = activity
        self.exposure = exposure
        self.precision = precision
        self.eod_manager = eod_manager
        logger.info("Signal generator initialized")

    async def generate(self, config: TradingConfig) -> List[SignalOutcome]:
        """One pass over every configured symbol, sequentially"""
        outcomes = []
        for symbol in config.trading_pairs:
            outcome = await self.generate_for_symbol(symbol, config)
            outcomes.append(outcome)
        emitted = sum(1 for o in outcomes if o.emitted)
        logger.info(f"Signal generation complete: {emitted}/{len(outcomes)} symbols emitted a signal")
        return outcomes

    async def generate_for_symbol(self, symbol: str, config: TradingConfig) -> SignalOutcome:
        """
        Decide whether symbol gets a buy signal this cycle

        A symbol without open positions goes through the support strategy;
        one with open positions is considered for averaging down.

        Args:
            symbol: Trading symbol
            config: Active trading configuration

        Returns:
            SignalOutcome with the persisted signal, or the reason none was
            emitted. Never raises.
        """
        try:
            limits = await self.exposure.check_limits(symbol, config)
            if not limits.ok:
                return self._skip(symbol, limits.reason)

            ticker = await self.exchange.get_ticker(symbol)
            current_price = ticker.last_price
            open_buys = await self.trades.open_buys(symbol)

            if open_buys:
                candidate, reason = await self._averaging_down(symbol, current_price, open_buys, config)
            else:
                candidate, reason = await self._new_position(symbol, current_price, config)
            if candidate is None:
                return self._skip(symbol, reason)

            price = await self.precision.round_price(symbol, candidate.entry_price)
            quantity = await self.precision.quantity_for_notional(
                symbol, config.max_order_amount_usd, price
            )
            if not await self.precision.validate_order(symbol, price, quantity):
                return self._skip(
                    symbol, f"order {quantity} @ {price} below exchange minimums", candidate.path
                )

            signal = await self.signals.create(Signal(
                symbol=symbol,
                signal_type="buy",
                price=float(price),
                confidence=candidate.confidence,
                reasoning=candidate.reasoning,
            ))
            logger.info(
                f"Signal {symbol} ({candidate.path}): buy {quantity} @ {price} "
                f"conf={candidate.confidence} - {candidate.reasoning}"
            )
            await self.activity.log(
                "signal_generated",
                f"{symbol} {candidate.path} signal at {price}",
                {"symbol": symbol, "price": price, "quantity": quantity, "path": candidate.path},
            )
            return SignalOutcome(
                symbol=symbol, emitted=True, reason=candidate.reasoning,
                path=candidate.path, signal=signal,
            )

        except Exception as e:
            logger.error(f"Signal generation failed for {symbol}: {e}")
            await self.activity.log(
                "signal_rejected", f"{symbol} signal generation error: {e}", {"symbol": symbol}
            )
            return SignalOutcome(symbol=symbol, emitted=False, reason=f"error: {e}")

    @staticmethod
    def _skip(symbol: str, reason: str, path: str = "") -> SignalOutcome:
        logger.info(f"No signal for {symbol}: {reason}")
        return SignalOutcome(symbol=symbol, emitted=False, reason=reason, path=path)

    async def _new_position(self, symbol: str, current_price: float, config: TradingConfig):
        strategy = get_strategy(config.trading_logic_type)
        candles = await self.exchange.get_klines(
            symbol, config.kline_interval, config.support_candle_count
        )
        levels = strategy.analyze(candles, config)
        if not levels:
            return None, f"no support levels found ({strategy.name})"

        support = levels[0]
        lower, upper = strategy.bounds(candles, config)
        distance = float(percent_change(current_price, support.price))
        if distance > upper or distance < -lower:
            return None, (
                f"price {distance:.2f}% from support {support.price} "
                f"outside band [-{lower}%, +{upper}%]"
            )

        entry_price = support.price * (1 + config.entry_offset_percent / 100)
        reasoning = (
            f"{strategy.name}: support {support.price} ({support.source or 'level'}, "
            f"{support.touches} touches, strength {support.strength:.2f}), "
            f"price {distance:+.2f}% from support"
        )
        return _Candidate("new_position", entry_price, NEW_POSITION_CONFIDENCE, reasoning), ""

    async def _averaging_down(
        self,
        symbol: str,
        current_price: float,
        open_buys: List[Trade],
        config: TradingConfig,
    ):
        latest = max(open_buys, key=lambda t: t.created_at.timestamp() if t.created_at else 0)
        last_fill = latest.entry_price
        change = percent_change(current_price, last_fill)

        if not within_averaging_band(
            change, config.support_lower_bound_percent, config.support_upper_bound_percent
        ):
            return None, (
                f"change {change:.2f}% from last fill {last_fill} outside averaging band "
                f"[-{config.support_lower_bound_percent}%, +{config.support_upper_bound_percent}%]"
            )

        entry_price = current_price * (1 - config.entry_offset_percent / 100)

        if config.require_eod_loss_for_second_order:
            existing = await self.exposure.count_working_orders(symbol)
            if existing >= MAX_ORDERS_WITH_EOD_RULE:
                return None, f"{existing} orders already open for {symbol}, no further averaging"

            required = to_decimal(last_fill) * (1 - to_decimal(config.support_lower_bound_percent) / 100)
            if to_decimal(entry_price) > required:
                return None, (
                    f"second order needs entry <= {required:.8f} "
                    f"({config.support_lower_bound_percent}% below last fill)"
                )
            if not await self.eod_manager.was_in_loss(symbol):
                return None, f"second order needs an end-of-day loss record for {symbol}"

        reasoning = (
            f"averaging down: price {change:+.2f}% from last fill {last_fill}, "
            f"{len(open_buys)} open position(s)"
        )
        return _Candidate("averaging_down", entry_price, AVERAGING_CONFIDENCE, reasoning), ""
