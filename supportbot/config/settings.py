"""
Process settings read from the environment or a .env file
"""
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


class BybitSettings(BaseSettings):
    """Spot account credentials and transport options"""
    model_config = {"env_file": ".env", "env_prefix": "BYBIT_", "extra": "ignore"}

    api_key: str = Field(..., description="Spot trading API key")
    api_secret: str = Field(..., description="Spot trading API secret")
    testnet: bool = Field(True, description="Trade on api-testnet.bybit.com")
    recv_window: int = Field(20000, ge=1000, le=60000)
    time_sync: bool = Field(True, description="Correct local clock drift against Bybit server time")


class RateLimitSettings(BaseSettings):
    """Sliding-window throttle shared by every exchange call"""
    model_config = {"env_file": ".env", "env_prefix": "RATE_LIMIT_", "extra": "ignore"}

    max_requests: int = Field(10, ge=1)
    window_seconds: float = Field(1.0, gt=0)
    buffer_seconds: float = Field(0.1, ge=0)


class EngineSettings(BaseSettings):
    """Engine wiring and reconciliation cadence"""
    model_config = {"env_file": ".env", "env_prefix": "ENGINE_", "extra": "ignore"}

    user_id: str = Field(..., description="Owner of the trading configuration, signals and trades")
    startup_reconcile_hours: int = Field(72, ge=72)
    periodic_reconcile_hours: int = Field(2, ge=1)
    reconcile_interval_seconds: int = Field(300, ge=30)
    instrument_cache_ttl_seconds: int = Field(3600, ge=60)
    instrument_cache_max_size: int = Field(500, ge=10)


class NotificationSettings(BaseSettings):
    model_config = {"env_file": ".env", "extra": "ignore"}

    telegram_enabled: bool = False
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None


class LoggingSettings(BaseSettings):
    """loguru sinks: stderr always, a rotating file when enabled"""
    model_config = {"env_file": ".env", "extra": "ignore"}

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_to_file: bool = True
    log_file_path: Path = Path("logs/supportbot.log")
    log_max_size_mb: int = Field(50, ge=1)
    log_backup_count: int = Field(7, ge=1)
    log_format: str = LOG_FORMAT


class DatabaseSettings(BaseSettings):
    """Supabase project holding trading_configs, trading_signals, trades and trading_logs"""
    model_config = {"env_file": ".env", "extra": "ignore"}

    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None


class Settings(BaseSettings):
    """All settings groups; each group reads its own environment variables"""
    model_config = {"extra": "ignore"}

    bybit: BybitSettings = Field(default_factory=BybitSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)

    @classmethod
    def load(cls) -> "Settings":
        return cls(
            bybit=BybitSettings(),
            rate_limit=RateLimitSettings(),
            engine=EngineSettings(),
            notifications=NotificationSettings(),
            logging=LoggingSettings(),
            database=DatabaseSettings(),
        )
