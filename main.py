"""
Support Bot - support-level spot trading engine for Bybit
"""
import asyncio
import signal

from loguru import logger

from supportbot.config.settings import Settings
from supportbot.core.errors import TradingError
from supportbot.engine.bootstrap import build_engine, setup_logging


class SupportBot:
    """Process runner: logging, wiring, start and graceful shutdown"""

    def __init__(self):
        self.settings = Settings.load()
        setup_logging(self.settings.logging)

        logger.info(f"Support bot for user {self.settings.engine.user_id}")

        self.engine = build_engine(self.settings)
        self._stopped = asyncio.Event()

    async def initialize(self):
        if self.engine.notifier:
            try:
                await self.engine.notifier.initialize()
                logger.info("Telegram notifications enabled")
            except Exception as e:
                logger.warning(f"Telegram session could not be opened, alerts go to the log only: {e}")

        if not await self.engine.store.ping():
            raise TradingError("Database unreachable, refusing to start")
        if not await self.engine.exchange.ping():
            raise TradingError("Bybit unreachable, refusing to start")
        logger.info("Initialization complete")

    async def run(self):
        await self.engine.start()
        if self.engine.notifier:
            mode = "testnet" if self.settings.bybit.testnet else "live"
            await self.engine.notifier.send_engine_status(True, f"User {self.engine.user_id}, {mode}")
        await self._stopped.wait()

    def request_shutdown(self):
        self._stopped.set()

    async def shutdown(self):
        """Graceful shutdown"""
        logger.info("Shutting down support bot...")
        await self.engine.stop()
        if self.engine.notifier:
            await self.engine.notifier.send_engine_status(False)
            await self.engine.notifier.close()
        logger.info("Support bot stopped")


async def main():
    """Run until SIGINT or SIGTERM, then stop the engine"""
    bot = SupportBot()

    loop = asyncio.get_running_loop()

    def on_signal():
        logger.info("Stop signal received")
        bot.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal)
        except NotImplementedError:
            signal.signal(sig, lambda *_: on_signal())

    try:
        await bot.initialize()
        await bot.run()
    except Exception as e:
        logger.exception(f"Support bot stopped on error: {e}")
    finally:
        await bot.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
