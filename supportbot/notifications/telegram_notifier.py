"""
Telegram operator alerts
"""
from typing import Optional

import aiohttp
from loguru import logger

TELEGRAM_API = "https://api.telegram.org"


class TelegramNotifier:
    """Posts HTML messages to one chat. Delivery problems are logged, never raised."""

    def __init__(self, bot_token: str, chat_id: str, timeout_seconds: float = 10.0):
        self.chat_id = chat_id
        self.endpoint = f"{TELEGRAM_API}/bot{bot_token}/sendMessage"
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.session: Optional[aiohttp.ClientSession] = None
        logger.info(f"Telegram notifier initialized for chat {chat_id}")

    async def initialize(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

    async def send_message(self, text: str, silent: bool = False) -> bool:
        """True when Telegram accepted the message"""
        if self.session is None:
            await self.initialize()

        body = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_notification": silent,
        }
        try:
            async with self.session.post(self.endpoint, json=body) as response:
                result = await response.json()
        except Exception as e:
            logger.error(f"Telegram delivery failed: {e}")
            return False

        if not result.get("ok"):
            logger.error(f"Telegram rejected message: {result.get('description', result)}")
            return False
        return True

    async def send_critical_alert(self, title: str, details: str) -> bool:
        return await self.send_message(
            f"🚨 <b>CRITICAL: {title}</b>\n\n{details}\n\n<i>Manual action required.</i>"
        )

    async def send_position_closed(self, symbol: str, quantity: float, profit_loss: float, reason: str) -> bool:
        marker = "✅" if profit_loss >= 0 else "🔻"
        return await self.send_message(
            f"{marker} <b>{symbol} closed</b>\n"
            f"Qty {quantity} | P/L ${profit_loss:+.4f}\n"
            f"{reason}",
            silent=True,
        )

    async def send_engine_status(self, running: bool, detail: str = "") -> bool:
        state = "started" if running else "stopped"
        text = f"⚙️ <b>Support bot {state}</b>"
        if detail:
            text += f"\n{detail}"
        return await self.send_message(text, silent=True)

    async def close(self):
        if self.session is not None:
            await self.session.close()
            self.session = None
