from abc import ABC, abstractmethod
from typing import List, Tuple

import pandas as pd

from supportbot.config.trading_config import TradingConfig
from supportbot.core.types import Candle, SupportLevel

# Static bounds used when there is not enough history for ATR
DEFAULT_LOWER_BOUND_PCT = 5.0
DEFAULT_UPPER_BOUND_PCT = 2.0


def candles_to_dataframe(candles: List[Candle]) -> pd.DataFrame:
    """Convert candles to a DataFrame sorted oldest first"""
    df = pd.DataFrame([c.__dict__ for c in candles])
    if df.empty:
        return df
    df = df.sort_values("timestamp").reset_index(drop=True)
    for col in ["open", "high", "low", "close", "volume"]:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    return df


class SupportStrategy(ABC):
    """Abstract base class for support/entry analyzers"""

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description

    @abstractmethod
    def analyze(self, candles: List[Candle], config: TradingConfig) -> List[SupportLevel]:
        """
        Find support levels in recent price history.

        Returns:
            Support levels ordered strongest first; empty when none found
        """
        pass

    def bounds(self, candles: List[Candle], config: TradingConfig) -> Tuple[float, float]:
        """(lower %, upper %) tolerance band around a support level"""
        return config.support_lower_bound_percent, config.support_upper_bound_percent
