"""
Bybit Exchange Client - spot trading over the v5 REST API
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import requests
from loguru import logger
from pybit import _helpers
from pybit.exceptions import InvalidRequestError
from pybit.unified_trading import HTTP

from supportbot.core.errors import ExchangeError
from supportbot.core.types import Candle
from supportbot.database.models import TradeStatus, parse_timestamp
from supportbot.exchange.instruments import InstrumentInfo
from supportbot.exchange.rate_limiter import SlidingWindowRateLimiter


CATEGORY = "spot"
SERVER_OFFSET_MS = 0


def _server_timestamp() -> int:
    """pybit signs requests with this clock, shifted to Bybit server time"""
    return round(time.time() * 1000) + SERVER_OFFSET_MS


_helpers.generate_timestamp = _server_timestamp


class OrderType(str, Enum):
    MARKET = "Market"
    LIMIT = "Limit"


class OrderSide(str, Enum):
    BUY = "Buy"
    SELL = "Sell"


class TimeInForce(str, Enum):
    GTC = "GTC"
    IOC = "IOC"


ORDER_STATUS_MAP = {
    "New": TradeStatus.PENDING,
    "Untriggered": TradeStatus.PENDING,
    "Triggered": TradeStatus.PENDING,
    "PartiallyFilled": TradeStatus.PARTIAL_FILLED,
    "Filled": TradeStatus.FILLED,
    "Cancelled": TradeStatus.CANCELLED,
    "PartiallyFilledCanceled": TradeStatus.CANCELLED,
    "Deactivated": TradeStatus.CANCELLED,
    "Rejected": TradeStatus.REJECTED,
}


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value) if value not in (None, "") else default
    except (ValueError, TypeError):
        return default


@dataclass
class Ticker:
    """Latest spot ticker"""
    symbol: str
    last_price: float
    bid_price: float
    ask_price: float
    timestamp: datetime


@dataclass
class OrderResponse:
    """Outcome of an order placement call"""
    ret_code: int
    ret_msg: str
    order_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.ret_code == 0 and bool(self.order_id)


@dataclass
class RemoteOrder:
    """Order as reported by the exchange history or realtime endpoints"""
    order_id: str
    symbol: str
    side: str
    order_type: str
    exchange_status: str
    price: float
    avg_price: float
    qty: float
    cum_exec_qty: float
    created_at: Optional[datetime]
    updated_at: Optional[datetime] = None

    @property
    def status(self) -> Optional[TradeStatus]:
        return ORDER_STATUS_MAP.get(self.exchange_status)

    @property
    def has_fills(self) -> bool:
        return self.cum_exec_qty > 0 and self.exchange_status in ("Filled", "PartiallyFilled")

    @property
    def fill_price(self) -> float:
        return self.avg_price if self.avg_price > 0 else self.price

    @classmethod
    def from_bybit(cls, item: Dict[str, Any]) -> "RemoteOrder":
        return cls(
            order_id=str(item.get("orderId", "")),
            symbol=item.get("symbol", ""),
            side=str(item.get("side", "")).lower(),
            order_type=str(item.get("orderType", "")).lower(),
            exchange_status=item.get("orderStatus", ""),
            price=_safe_float(item.get("price")),
            avg_price=_safe_float(item.get("avgPrice")),
            qty=_safe_float(item.get("qty")),
            cum_exec_qty=_safe_float(item.get("cumExecQty")),
            created_at=parse_timestamp(item.get("createdTime")),
            updated_at=parse_timestamp(item.get("updatedTime")),
        )


@dataclass
class AccountBalance:
    """Unified wallet snapshot; coins maps coin to wallet balance"""
    total_equity: float
    available_balance: float
    coins: Dict[str, float]
    timestamp: datetime


class BybitClient:
    """Bybit spot client. Every call passes through the shared rate limiter."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        testnet: bool = True,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        recv_window: int = 20000,
        time_sync: bool = True,
        http: Optional[HTTP] = None,
    ):
        """Initialize Bybit client"""
        self.testnet = testnet
        self.base_url = "https://api-testnet.bybit.com" if testnet else "https://api.bybit.com"
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.time_sync_enabled = time_sync

        self.http = http or HTTP(
            testnet=testnet,
            api_key=api_key,
            api_secret=api_secret,
            recv_window=recv_window,
            max_retries=3,
            retry_delay=2,
        )

        self._last_time_sync: float = 0.0
        if self.time_sync_enabled:
            self._sync_time(initial=True)

        logger.info(f"Bybit client initialized ({'Testnet' if testnet else 'Mainnet'}, {CATEGORY})")

    def _sync_time(self, force: bool = False, initial: bool = False) -> None:
        """Measure the local clock offset against /v5/market/time"""
        global SERVER_OFFSET_MS

        if not self.time_sync_enabled:
            return

        # at most once a minute outside startup and forced resyncs
        now = time.time()
        if not force and not initial and (now - self._last_time_sync) < 60:
            return

        try:
            response = requests.get(f"{self.base_url}/v5/market/time", timeout=5)
            response.raise_for_status()
            data = response.json()

            if data.get("retCode") != 0:
                raise ValueError(data.get("retMsg", "Unknown error"))

            result = data.get("result", {})
            server_time_ms = int(result.get("timeNano", 0)) // 1_000_000
            if server_time_ms == 0:
                server_time_ms = int(result.get("timeSecond", 0)) * 1000

            offset = server_time_ms - int(time.time() * 1000)
            SERVER_OFFSET_MS = offset
            self._last_time_sync = now

            label = "initial" if initial else "forced" if force else "periodic"
            logger.info(f"Clock offset vs Bybit is {offset} ms ({label} sync)")
        except Exception as exc:
            if initial or force:
                logger.warning(f"Could not read Bybit server time: {exc}")
            else:
                logger.debug(f"Time sync skipped: {exc}")

    def _signed_call(self, func, *args, **kwargs):
        """Run a pybit call, retrying once after a clock resync on retCode 10002"""
        self._sync_time()
        try:
            return func(*args, **kwargs)
        except Exception as exc:
            message = str(exc)
            if self.time_sync_enabled and ("10002" in message or "timestamp" in message.lower()):
                logger.warning("Request timestamp rejected, resyncing clock and retrying once")
                self._sync_time(force=True)
                time.sleep(0.1)
                return func(*args, **kwargs)
            raise

    async def _call(self, func, **params) -> Dict[str, Any]:
        """Rate-limited pybit call on a worker thread"""
        await self.rate_limiter.acquire()
        return await asyncio.to_thread(self._signed_call, func, **params)

    @staticmethod
    def _result(response: Dict[str, Any], action: str) -> Dict[str, Any]:
        if response.get("retCode") != 0:
            raise ExchangeError(f"API error {action}: {response.get('retMsg', 'Unknown error')}")
        result = response.get("result", {})
        return result if isinstance(result, dict) else {}

    async def get_ticker(self, symbol: str) -> Ticker:
        """Get ticker data for a symbol"""
        try:
            response = await self._call(self.http.get_tickers, category=CATEGORY, symbol=symbol)
            ticker_list = self._result(response, "getting ticker").get("list", [])
            if not ticker_list:
                raise ExchangeError(f"No ticker returned for {symbol}")

            ticker = ticker_list[0]
            last_price = _safe_float(ticker.get("lastPrice"))
            if last_price <= 0:
                raise ExchangeError(f"Invalid last price for {symbol}: {ticker.get('lastPrice')}")
            return Ticker(
                symbol=ticker.get("symbol", symbol),
                last_price=last_price,
                bid_price=_safe_float(ticker.get("bid1Price")),
                ask_price=_safe_float(ticker.get("ask1Price")),
                timestamp=datetime.now(timezone.utc),
            )
        except ExchangeError:
            raise
        except Exception as e:
            logger.error(f"Ticker request for {symbol} failed: {e}")
            raise ExchangeError(f"get_ticker {symbol} failed: {e}") from e

    async def get_instrument_info(self, symbol: str) -> InstrumentInfo:
        """Fetch tick size, lot size and order minimums for a spot symbol"""
        try:
            response = await self._call(
                self.http.get_instruments_info, category=CATEGORY, symbol=symbol
            )
            items = self._result(response, "getting instrument info").get("list", [])
        except ExchangeError:
            raise
        except Exception as e:
            logger.error(f"Failed to get instrument info for {symbol}: {e}")
            raise ExchangeError(f"get_instrument_info {symbol} failed: {e}") from e

        if not items:
            raise ExchangeError(f"Instrument {symbol} not listed for {CATEGORY}")
        return InstrumentInfo.from_bybit(items[0])

    async def get_klines(self, symbol: str, interval: str, limit: int = 200) -> List[Candle]:
        """Get historical candles, oldest first"""
        try:
            response = await self._call(
                self.http.get_kline,
                category=CATEGORY,
                symbol=symbol,
                interval=interval,  # 1, 3, 5, 15, 30, 60, 120, 240, 360, 720, D, W, M
                limit=min(limit, 1000),
            )
            klines_list = self._result(response, "getting klines").get("list", [])
        except ExchangeError:
            raise
        except Exception as e:
            logger.error(f"Kline request for {symbol} failed: {e}")
            raise ExchangeError(f"get_klines {symbol} failed: {e}") from e

        candles = []
        for kline in klines_list:
            try:
                candles.append(Candle(
                    timestamp=int(kline[0]),
                    open=float(kline[1]),
                    high=float(kline[2]),
                    low=float(kline[3]),
                    close=float(kline[4]),
                    volume=float(kline[5]),
                ))
            except (IndexError, ValueError, TypeError) as e:
                logger.warning(f"Dropping malformed kline row: {e}")
                continue
        # Bybit returns newest first
        candles.sort(key=lambda c: c.timestamp)
        return candles

    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        qty: str,
        price: Optional[str] = None,
        time_in_force: Optional[TimeInForce] = None,
    ) -> OrderResponse:
        """
        Place a spot order. Business rejections come back as a non-zero
        ret_code; transport failures raise ExchangeError.
        """
        effective_tif = time_in_force
        if effective_tif is None:
            effective_tif = TimeInForce.IOC if order_type == OrderType.MARKET else TimeInForce.GTC

        order_params = {
            "category": CATEGORY,
            "symbol": symbol,
            "side": side.value,
            "orderType": order_type.value,
            "qty": qty,
            "timeInForce": effective_tif.value,
        }
        if order_type == OrderType.LIMIT:
            if not price:
                raise ValueError("Limit orders require a price")
            order_params["price"] = price
        elif side == OrderSide.BUY:
            # Spot market buys are sized in base coin
            order_params["marketUnit"] = "baseCoin"

        try:
            response = await self._call(self.http.place_order, **order_params)
        except InvalidRequestError as e:
            ret_code = getattr(e, "status_code", -1)
            ret_msg = getattr(e, "message", str(e))
            logger.error(f"Order rejected by Bybit ({ret_code}): {ret_msg} | {order_params}")
            return OrderResponse(ret_code=int(ret_code or -1), ret_msg=str(ret_msg), raw={})
        except Exception as e:
            logger.error(f"Order request for {symbol} failed: {e}")
            raise ExchangeError(f"place_order {symbol} failed: {e}") from e

        result = response.get("result") or {}
        order_response = OrderResponse(
            ret_code=int(response.get("retCode", -1)),
            ret_msg=str(response.get("retMsg", "")),
            order_id=result.get("orderId") if isinstance(result, dict) else None,
            raw=response,
        )
        if order_response.accepted:
            logger.info(f"Order placed successfully: {symbol} {side.value} {qty} @ {price or 'market'} -> {order_response.order_id}")
        else:
            logger.error(f"Order not accepted for {symbol}: {response}")
        return order_response

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        """Cancel an order"""
        try:
            response = await self._call(
                self.http.cancel_order, category=CATEGORY, symbol=symbol, orderId=order_id
            )
            if response.get("retCode") == 0:
                logger.info(f"Cancelled {order_id} on {symbol}")
                return True
            logger.error(f"Cancel of {order_id} refused: {response.get('retMsg')}")
            return False
        except Exception as e:
            logger.error(f"Failed to cancel order {order_id}: {e}")
            return False

    async def get_order_status(self, order_id: str) -> Optional[RemoteOrder]:
        """Look an order up in realtime orders first, then in history"""
        try:
            response = await self._call(
                self.http.get_open_orders, category=CATEGORY, orderId=order_id
            )
            items = self._result(response, "getting open order").get("list", [])
            if not items:
                response = await self._call(
                    self.http.get_order_history, category=CATEGORY, orderId=order_id
                )
                items = self._result(response, "getting order history").get("list", [])
        except ExchangeError:
            raise
        except Exception as e:
            logger.error(f"Failed to get order status for {order_id}: {e}")
            raise ExchangeError(f"get_order_status {order_id} failed: {e}") from e

        return RemoteOrder.from_bybit(items[0]) if items else None

    async def get_order_history(
        self,
        limit: int = 200,
        start_time: Optional[datetime] = None,
    ) -> List[RemoteOrder]:
        """Recent orders across all spot symbols, newest first, paginated by cursor"""
        orders: List[RemoteOrder] = []
        cursor: Optional[str] = None
        try:
            while len(orders) < limit:
                params: Dict[str, Any] = {"category": CATEGORY, "limit": min(50, limit - len(orders))}
                if start_time:
                    params["startTime"] = int(start_time.timestamp() * 1000)
                if cursor:
                    params["cursor"] = cursor
                response = await self._call(self.http.get_order_history, **params)
                result = self._result(response, "getting order history")
                page = result.get("list", [])
                orders.extend(RemoteOrder.from_bybit(item) for item in page)
                cursor = result.get("nextPageCursor")
                if not page or not cursor:
                    break
        except ExchangeError:
            raise
        except Exception as e:
            logger.error(f"Failed to get order history: {e}")
            raise ExchangeError(f"get_order_history failed: {e}") from e
        return orders[:limit]

    async def get_account_balance(self) -> AccountBalance:
        """Get unified account balance with per-coin wallet balances"""
        try:
            response = await self._call(self.http.get_wallet_balance, accountType="UNIFIED")
            result_list = self._result(response, "getting balance").get("list", [])
        except ExchangeError:
            raise
        except Exception as e:
            logger.error(f"Wallet balance request failed: {e}")
            raise ExchangeError(f"get_account_balance failed: {e}") from e

        if not result_list:
            raise ExchangeError("Empty balance list in Bybit response")

        account_data = result_list[0]
        coins = {
            coin.get("coin", ""): _safe_float(coin.get("walletBalance"))
            for coin in account_data.get("coin", [])
        }
        return AccountBalance(
            total_equity=_safe_float(account_data.get("totalEquity")),
            available_balance=_safe_float(account_data.get("totalAvailableBalance")),
            coins=coins,
            timestamp=datetime.now(timezone.utc),
        )

    async def get_coin_balance(self, coin: str) -> float:
        balance = await self.get_account_balance()
        return balance.coins.get(coin, 0.0)

    async def ping(self) -> bool:
        """Connectivity check for health reporting"""
        try:
            response = await self._call(self.http.get_server_time)
            return response.get("retCode") == 0
        except Exception as e:
            logger.warning(f"Bybit connectivity check failed: {e}")
            return False
