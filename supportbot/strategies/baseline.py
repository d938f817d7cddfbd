from typing import List

from supportbot.config.trading_config import TradingConfig
from supportbot.core.types import Candle, SupportLevel
from .base_strategy import SupportStrategy, candles_to_dataframe

MIN_CANDLES = 10
TOUCH_TOLERANCE = 0.002


class BaselineSupportStrategy(SupportStrategy):
    def __init__(self):
        super().__init__(
            name="logic1_base",
            description="Lowest low over the configured lookback window."
        )

    def analyze(self, candles: List[Candle], config: TradingConfig) -> List[SupportLevel]:
        window = candles[-config.support_candle_count:]
        if len(window) < MIN_CANDLES:
            return []

        df = candles_to_dataframe(window)
        idx = df["low"].idxmin()
        support = float(df.at[idx, "low"])
        if support <= 0:
            return []

        # Lows within 0.2% of the support count as touches
        touches = int((((df["low"] - support).abs() / support) <= TOUCH_TOLERANCE).sum())
        return [SupportLevel(
            price=support,
            strength=min(1.0, touches / len(df) * 10),
            touches=touches,
            timestamp=int(df.at[idx, "timestamp"]),
            source="lowest_low",
        )]
