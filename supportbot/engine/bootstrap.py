"""
Process wiring shared by the bot runner and the API server
"""
import sys

from loguru import logger

from supportbot.config.settings import LoggingSettings, Settings
from supportbot.database.supabase_store import SupabaseStore
from supportbot.exchange.bybit_client import BybitClient
from supportbot.exchange.rate_limiter import SlidingWindowRateLimiter
from supportbot.notifications.telegram_notifier import TelegramNotifier
from .trading_engine import TradingEngine


def setup_logging(config: LoggingSettings) -> None:
    """Console sink plus an optional rotating file sink"""
    logger.remove()

    logger.add(
        sys.stderr,
        level=config.log_level,
        format=config.log_format,
    )

    if config.log_to_file:
        logger.add(
            config.log_file_path,
            level=config.log_level,
            format=config.log_format,
            rotation=f"{config.log_max_size_mb} MB",
            retention=config.log_backup_count,
        )


def build_engine(settings: Settings) -> TradingEngine:
    """Exchange client, store and notifier for one account, wired into an engine"""
    rate_limiter = SlidingWindowRateLimiter(
        max_requests=settings.rate_limit.max_requests,
        window_seconds=settings.rate_limit.window_seconds,
        buffer_seconds=settings.rate_limit.buffer_seconds,
    )
    exchange = BybitClient(
        api_key=settings.bybit.api_key,
        api_secret=settings.bybit.api_secret,
        testnet=settings.bybit.testnet,
        rate_limiter=rate_limiter,
        recv_window=settings.bybit.recv_window,
        time_sync=settings.bybit.time_sync,
    )
    store = SupabaseStore(settings.database.supabase_url, settings.database.supabase_anon_key)

    notifier = None
    notifications = settings.notifications
    if notifications.telegram_enabled and notifications.telegram_bot_token and notifications.telegram_chat_id:
        notifier = TelegramNotifier(notifications.telegram_bot_token, notifications.telegram_chat_id)
    elif notifications.telegram_enabled:
        logger.warning("Telegram enabled but bot token or chat id missing; alerts go to the log only")

    logger.info(f"Mode: {'TESTNET' if settings.bybit.testnet else 'LIVE'}")
    return TradingEngine.from_settings(settings, exchange, store, notifier)
