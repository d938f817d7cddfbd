"""
Shared market data structures
"""
from dataclasses import dataclass
from typing import Any, Dict


@dataclass
class Candle:
    """OHLCV candle, timestamp in epoch milliseconds"""
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candle":
        return cls(
            timestamp=int(data["timestamp"]),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data.get("volume", 0) or 0),
        )


@dataclass
class SupportLevel:
    """Candidate support price proposed by a strategy"""
    price: float
    strength: float
    touches: int
    timestamp: int = 0
    source: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": self.price,
            "strength": round(self.strength, 4),
            "touches": self.touches,
            "timestamp": self.timestamp,
            "source": self.source,
        }
