"""
Support Bot Control API Server
Serves the FastAPI control surface for the dashboard with uvicorn
"""
import os
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from loguru import logger

from supportbot.api.server import create_app
from supportbot.config.settings import Settings
from supportbot.engine.bootstrap import build_engine, setup_logging

load_dotenv()

settings = Settings.load()
setup_logging(settings.logging)
engine = build_engine(settings)


@asynccontextmanager
async def lifespan(_app):
    if engine.notifier:
        await engine.notifier.initialize()
    if os.getenv("ENGINE_AUTO_START", "false").lower() == "true":
        await engine.start()
    yield
    await engine.stop()
    if engine.notifier:
        await engine.notifier.close()


app = create_app(engine, lifespan=lifespan)


if __name__ == "__main__":
    port = int(os.getenv("PORT", 8001))
    logger.info(f"Starting control API on http://0.0.0.0:{port}")
    uvicorn.run(
        "api_server:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        log_level="info",
    )
