"""
Row models for signals, trades and activity logs
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class TradeStatus(str, Enum):
    PENDING = "pending"
    PARTIAL_FILLED = "partial_filled"
    FILLED = "filled"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


TERMINAL_STATUSES = {TradeStatus.CLOSED, TradeStatus.CANCELLED, TradeStatus.REJECTED}
OPEN_STATUSES = {TradeStatus.FILLED, TradeStatus.PARTIAL_FILLED}


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings, epoch milliseconds or datetimes into aware UTC datetimes"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.isdigit():
            dt = datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
        else:
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _f(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


@dataclass
class Signal:
    """Buy signal produced by the signal generator, consumed once by execution"""
    symbol: str
    signal_type: str
    price: float
    confidence: float
    reasoning: str = ""
    processed: bool = False
    id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Signal":
        return cls(
            id=row.get("id"),
            user_id=row.get("user_id"),
            symbol=row["symbol"],
            signal_type=row.get("signal_type", "buy"),
            price=float(row["price"]),
            confidence=float(row.get("confidence") or 0),
            reasoning=row.get("reasoning") or "",
            processed=bool(row.get("processed")),
            created_at=parse_timestamp(row.get("created_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "symbol": self.symbol,
            "signal_type": self.signal_type,
            "price": self.price,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "processed": self.processed,
            "created_at": (self.created_at or utc_now()).isoformat(),
        }


@dataclass
class Trade:
    """Local ledger entry for one exchange order"""
    symbol: str
    side: str
    order_type: str
    price: float
    quantity: float
    status: TradeStatus
    bybit_order_id: Optional[str] = None
    bybit_trade_id: Optional[str] = None
    profit_loss: Optional[float] = None
    buy_fill_price: Optional[float] = None
    id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def entry_price(self) -> float:
        """Fill price of the buy leg, falling back to the limit price"""
        return self.buy_fill_price if self.buy_fill_price else self.price

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Trade":
        return cls(
            id=row.get("id"),
            user_id=row.get("user_id"),
            symbol=row["symbol"],
            side=str(row.get("side", "buy")).lower(),
            order_type=str(row.get("order_type", "limit")).lower(),
            price=float(row.get("price") or 0),
            quantity=float(row.get("quantity") or 0),
            status=TradeStatus(row.get("status", "pending")),
            bybit_order_id=row.get("bybit_order_id"),
            bybit_trade_id=row.get("bybit_trade_id"),
            profit_loss=_f(row.get("profit_loss")),
            buy_fill_price=_f(row.get("buy_fill_price")),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        now = utc_now()
        row = {
            "user_id": self.user_id,
            "symbol": self.symbol,
            "side": self.side,
            "order_type": self.order_type,
            "price": self.price,
            "quantity": self.quantity,
            "status": self.status.value,
            "bybit_order_id": self.bybit_order_id,
            "created_at": (self.created_at or now).isoformat(),
            "updated_at": (self.updated_at or now).isoformat(),
        }
        if self.bybit_trade_id is not None:
            row["bybit_trade_id"] = self.bybit_trade_id
        if self.profit_loss is not None:
            row["profit_loss"] = self.profit_loss
        if self.buy_fill_price is not None:
            row["buy_fill_price"] = self.buy_fill_price
        return row


@dataclass
class ActivityLog:
    """trading_logs row read back for preconditions and dashboards"""
    log_type: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ActivityLog":
        return cls(
            id=row.get("id"),
            log_type=row.get("log_type", ""),
            message=row.get("message", ""),
            data=row.get("data") or {},
            created_at=parse_timestamp(row.get("created_at")),
        )
