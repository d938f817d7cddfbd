"""
Composite support analysis - swing lows, volume profile and Fibonacci levels
"""
from typing import List, Tuple

import numpy as np
import pandas as pd
from loguru import logger

from supportbot.config.trading_config import TradingConfig
from supportbot.core.types import Candle, SupportLevel
from .base_strategy import (
    DEFAULT_LOWER_BOUND_PCT,
    DEFAULT_UPPER_BOUND_PCT,
    SupportStrategy,
    candles_to_dataframe,
)

MIN_CANDLES = 20
MIN_FIB_CANDLES = 50
FIB_WINDOW = 100
FIB_RATIOS = (0.236, 0.382, 0.5, 0.618, 0.786)
FIB_TOLERANCE = 0.005
TOUCH_TOLERANCE = 0.002
VOLUME_BUCKETS = 24
VOLUME_ZONE_FACTOR = 1.5
MAX_LEVELS = 5

ATR_PERIOD = 14
MAX_LOWER_BOUND_PCT = 10.0
MAX_UPPER_BOUND_PCT = 5.0

WEIGHT_VOLUME = 0.4
WEIGHT_TOUCHES = 0.3
WEIGHT_FIBONACCI = 0.3


def count_touches(lows: np.ndarray, price: float, tolerance: float = TOUCH_TOLERANCE) -> int:
    if price <= 0:
        return 0
    return int((np.abs(lows - price) / price <= tolerance).sum())


def find_swing_lows(df: pd.DataFrame, bars: int) -> List[SupportLevel]:
    """Candles whose low is strictly below every other low within +/- bars"""
    lows = df["low"].to_numpy()
    timestamps = df["timestamp"].to_numpy()
    n = len(lows)
    bars = max(1, min(bars, (n - 1) // 2))

    levels = []
    for i in range(bars, n - bars):
        neighbours = np.concatenate((lows[i - bars:i], lows[i + 1:i + bars + 1]))
        if lows[i] < neighbours.min():
            levels.append(SupportLevel(
                price=float(lows[i]),
                strength=0.0,
                touches=count_touches(lows, float(lows[i])),
                timestamp=int(timestamps[i]),
                source="swing_low",
            ))
    return levels


def volume_profile(df: pd.DataFrame, lookback: int) -> pd.DataFrame:
    """Aggregate volume per price bucket of the typical price"""
    recent = df.tail(lookback).copy()
    recent["typical"] = (recent["high"] + recent["low"] + recent["close"]) / 3
    recent["bucket"] = pd.cut(recent["typical"], bins=VOLUME_BUCKETS)
    recent["weighted"] = recent["typical"] * recent["volume"]

    grouped = recent.groupby("bucket", observed=True).agg(
        volume=("volume", "sum"),
        weighted=("weighted", "sum"),
        touches=("typical", "count"),
        timestamp=("timestamp", "max"),
    )
    grouped = grouped[grouped["volume"] > 0]
    grouped["price"] = grouped["weighted"] / grouped["volume"]
    return grouped


def find_volume_zones(profile: pd.DataFrame) -> List[SupportLevel]:
    if profile.empty:
        return []
    average = profile["volume"].mean()
    zones = profile[profile["volume"] > average * VOLUME_ZONE_FACTOR]
    return [
        SupportLevel(
            price=float(row.price),
            strength=0.0,
            touches=int(row.touches),
            timestamp=int(row.timestamp),
            source="volume_zone",
        )
        for row in zones.itertuples()
    ]


def fibonacci_levels(df: pd.DataFrame) -> List[Tuple[float, float]]:
    """(price, ratio) retracements of the most recent swing range"""
    if len(df) < MIN_FIB_CANDLES:
        return []
    recent = df.tail(FIB_WINDOW)
    high = float(recent["high"].max())
    low = float(recent["low"].min())
    span = high - low
    if span <= 0:
        return []
    return [(high - span * ratio, ratio) for ratio in FIB_RATIOS]


def find_fibonacci_supports(df: pd.DataFrame, levels: List[Tuple[float, float]]) -> List[SupportLevel]:
    """Retracement levels with at least two historical touches"""
    lows = df["low"].to_numpy()
    timestamps = df["timestamp"].to_numpy()
    supports = []
    for price, ratio in levels:
        near = np.abs(lows - price) / price <= FIB_TOLERANCE
        touches = int(near.sum())
        if touches >= 2:
            supports.append(SupportLevel(
                price=price,
                strength=0.0,
                touches=touches,
                timestamp=int(timestamps[near].max()),
                source=f"fibonacci_{ratio}",
            ))
    return supports


def average_true_range(df: pd.DataFrame, period: int = ATR_PERIOD) -> float:
    recent = df.tail(period)
    prev_close = recent["close"].shift(1)
    true_range = pd.concat(
        [
            recent["high"] - recent["low"],
            (recent["high"] - prev_close).abs(),
            (recent["low"] - prev_close).abs(),
        ],
        axis=1,
    ).max(axis=1)
    # First row has no previous close
    return float(true_range.iloc[1:].mean())


def dynamic_bounds(candles: List[Candle], atr_multiplier: float) -> Tuple[float, float]:
    """
    Lower/upper tolerance band (percent) from ATR as a share of the last close.

    lower = 2 x ATR% x multiplier (max 10%), upper = ATR% x multiplier (max 5%).
    Falls back to static bounds with fewer than 14 candles.
    """
    if len(candles) < ATR_PERIOD:
        return DEFAULT_LOWER_BOUND_PCT, DEFAULT_UPPER_BOUND_PCT

    df = candles_to_dataframe(candles)
    last_close = float(df["close"].iloc[-1])
    if last_close <= 0:
        return DEFAULT_LOWER_BOUND_PCT, DEFAULT_UPPER_BOUND_PCT

    atr_pct = average_true_range(df) / last_close * 100
    lower = min(MAX_LOWER_BOUND_PCT, atr_pct * atr_multiplier * 2)
    upper = min(MAX_UPPER_BOUND_PCT, atr_pct * atr_multiplier)
    return round(lower, 4), round(upper, 4)


def _merge_nearby(levels: List[SupportLevel]) -> List[SupportLevel]:
    """Collapse candidates within the touch tolerance, keeping the most touched"""
    merged: List[SupportLevel] = []
    for level in sorted(levels, key=lambda lv: lv.price):
        if merged and abs(level.price - merged[-1].price) / merged[-1].price <= TOUCH_TOLERANCE:
            keep = merged[-1]
            if level.touches > keep.touches:
                level.timestamp = max(level.timestamp, keep.timestamp)
                merged[-1] = level
            else:
                keep.timestamp = max(level.timestamp, keep.timestamp)
            continue
        merged.append(level)
    return merged


class DataDrivenSupportStrategy(SupportStrategy):
    def __init__(self):
        super().__init__(
            name="logic2_data_driven",
            description="Swing lows, volume zones and Fibonacci retracements scored together."
        )

    def analyze(self, candles: List[Candle], config: TradingConfig) -> List[SupportLevel]:
        window = candles[-config.support_candle_count:]
        if len(window) < MIN_CANDLES:
            return []

        df = candles_to_dataframe(window)
        current_price = float(df["close"].iloc[-1])
        lows = df["low"].to_numpy()

        profile = volume_profile(df, config.volume_lookback_periods)
        fibs = fibonacci_levels(df)

        candidates = (
            find_swing_lows(df, config.swing_analysis_bars)
            + find_volume_zones(profile)
            + find_fibonacci_supports(df, fibs)
        )
        candidates = [c for c in _merge_nearby(candidates) if c.price < current_price]
        if not candidates:
            return []

        max_touches = max(count_touches(lows, c.price) for c in candidates) or 1
        max_volume = float(profile["volume"].max()) if not profile.empty else 0.0

        for level in candidates:
            level.touches = max(level.touches, count_touches(lows, level.price))
            touch_score = min(1.0, level.touches / max_touches)
            volume_score = self._volume_score(profile, level.price, max_volume)
            fib_score = self._fib_score(fibs, level.price, config.fibonacci_sensitivity)
            level.strength = (
                WEIGHT_VOLUME * volume_score
                + WEIGHT_TOUCHES * touch_score
                + WEIGHT_FIBONACCI * fib_score
            )

        ranked = sorted(candidates, key=lambda lv: (-round(lv.strength, 6), -lv.timestamp))
        logger.debug(
            f"{len(candidates)} support candidates, top: "
            f"{[(round(lv.price, 8), round(lv.strength, 3)) for lv in ranked[:MAX_LEVELS]]}"
        )
        return ranked[:MAX_LEVELS]

    def bounds(self, candles: List[Candle], config: TradingConfig) -> Tuple[float, float]:
        return dynamic_bounds(candles, config.atr_multiplier)

    @staticmethod
    def _volume_score(profile: pd.DataFrame, price: float, max_volume: float) -> float:
        if profile.empty or max_volume <= 0:
            return 0.0
        for interval, volume in profile["volume"].items():
            if price in interval:
                return float(volume) / max_volume
        return 0.0

    @staticmethod
    def _fib_score(fibs: List[Tuple[float, float]], price: float, sensitivity: float) -> float:
        best = 0.0
        for level, _ in fibs:
            distance = abs(price - level) / level
            if distance <= FIB_TOLERANCE:
                best = max(best, 1.0 - distance / FIB_TOLERANCE)
        return min(1.0, best * sensitivity / 0.618)
