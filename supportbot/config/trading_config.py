"""
Per-user trading configuration, read from the trading_configs table
"""
from typing import Any, Dict, List, Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from supportbot.core.errors import ConfigurationError


MIN_LOOP_INTERVAL_SECONDS = 10
MAX_LOOP_INTERVAL_SECONDS = 3600

# Bybit v5 kline intervals
TIMEFRAME_TO_INTERVAL = {
    "1m": "1", "3m": "3", "5m": "5", "15m": "15", "30m": "30",
    "1h": "60", "2h": "120", "4h": "240", "6h": "360", "12h": "720",
    "1d": "D", "1w": "W", "1M": "M",
}


class TradingConfig(BaseModel):
    """Risk and strategy parameters for one user"""
    model_config = {"extra": "ignore"}

    user_id: Optional[str] = None
    is_active: bool = True
    trading_pairs: List[str] = Field(default_factory=list)

    # Exposure limits
    max_active_pairs: int = Field(5, ge=1)
    max_positions_per_pair: int = Field(2, ge=1)
    max_order_amount_usd: float = Field(100.0, gt=0)

    # Percentages are expressed as 0..100
    take_profit_percent: float = Field(1.0, ge=0, le=100)
    entry_offset_percent: float = Field(0.5, ge=0, le=100)
    support_lower_bound_percent: float = Field(5.0, ge=0, le=100)
    support_upper_bound_percent: float = Field(2.0, ge=0, le=100)

    # Strategy
    trading_logic_type: Literal["logic1_base", "logic2_data_driven"] = "logic1_base"
    chart_timeframe: str = "4h"
    support_candle_count: int = Field(128, ge=10, le=1000)
    swing_analysis_bars: int = Field(20, ge=2, le=200)
    volume_lookback_periods: int = Field(50, ge=5, le=1000)
    fibonacci_sensitivity: float = Field(0.618, gt=0, le=1)
    atr_multiplier: float = Field(1.0, gt=0, le=10)

    # End of day
    auto_close_at_end_of_day: bool = False
    eod_close_premium_percent: float = Field(0.1, ge=0, le=100)
    daily_reset_time: str = "00:00:00"
    require_eod_loss_for_second_order: bool = True

    main_loop_interval_seconds: int = 30

    @field_validator("trading_pairs", mode="before")
    @classmethod
    def _normalize_pairs(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [p for p in value.split(",")]
        return [str(p).strip().upper() for p in value if str(p).strip()]

    @field_validator("chart_timeframe")
    @classmethod
    def _known_timeframe(cls, value: str) -> str:
        if value not in TIMEFRAME_TO_INTERVAL:
            raise ValueError(f"unsupported chart timeframe {value!r}")
        return value

    @field_validator("daily_reset_time")
    @classmethod
    def _valid_reset_time(cls, value: str) -> str:
        parts = value.split(":")
        if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
            raise ValueError(f"daily_reset_time must be HH:MM[:SS], got {value!r}")
        hour, minute = int(parts[0]), int(parts[1])
        if hour > 23 or minute > 59:
            raise ValueError(f"daily_reset_time out of range: {value!r}")
        return value

    @property
    def kline_interval(self) -> str:
        return TIMEFRAME_TO_INTERVAL[self.chart_timeframe]

    @property
    def loop_interval_seconds(self) -> int:
        """Main loop interval clamped to a safe range"""
        return clamp_interval(self.main_loop_interval_seconds)

    @property
    def reset_hour_minute(self) -> tuple[int, int]:
        parts = self.daily_reset_time.split(":")
        return int(parts[0]), int(parts[1])

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TradingConfig":
        """Validate a trading_configs row, raising ConfigurationError on bad input"""
        clean = {k: v for k, v in row.items() if v is not None}
        try:
            return cls(**clean)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigurationError(f"Invalid trading configuration: {problems}") from e


def clamp_interval(seconds: Any) -> int:
    try:
        value = int(seconds)
    except (TypeError, ValueError):
        return 30
    return max(MIN_LOOP_INTERVAL_SECONDS, min(MAX_LOOP_INTERVAL_SECONDS, value))


async def load_trading_config(store, user_id: str) -> TradingConfig:
    """Fetch and validate the active configuration for a user"""
    rows = await store.select(
        "trading_configs",
        filters={"user_id": user_id},
        limit=1,
    )
    if not rows:
        raise ConfigurationError(f"No trading configuration found for user {user_id}")

    config = TradingConfig.from_row(rows[0])
    if not config.trading_pairs:
        raise ConfigurationError("Trading configuration has no trading pairs")

    logger.debug(
        f"Loaded trading config: {len(config.trading_pairs)} pairs, "
        f"logic={config.trading_logic_type}, active={config.is_active}"
    )
    return config
