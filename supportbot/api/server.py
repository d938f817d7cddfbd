"""
Control API - FastAPI surface over the trading engine for the dashboard
"""
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel

from supportbot import __version__
from supportbot.core.errors import TradeNotFoundError, TradeNotOpenError


class HealthResponse(BaseModel):
    ok: bool
    issues: List[str]


class EngineStatusResponse(BaseModel):
    success: bool
    running: bool
    message: str


class CloseTradeResponse(BaseModel):
    success: bool
    trade_id: str
    profit_loss: float


class ReconcileResponse(BaseModel):
    lookback_hours: float
    remote_orders: int
    matched: int
    updated: int
    created: int
    closed: int
    corrections: List[Dict[str, Any]]


def create_app(engine, lifespan=None) -> FastAPI:
    """Build the control API for one engine instance"""
    app = FastAPI(
        title="Support Bot Control API",
        description="Start/stop, single-cycle, health, reconciliation and manual close controls",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        return {"message": "Support Bot Control API", "version": __version__, "running": engine.running}

    @app.post("/engine/start", response_model=EngineStatusResponse)
    async def start_engine():
        if engine.running:
            return {"success": True, "running": True, "message": "Engine already running"}
        logger.info("Received START command from dashboard")
        await engine.start()
        return {"success": True, "running": engine.running, "message": "Engine started"}

    @app.post("/engine/stop", response_model=EngineStatusResponse)
    async def stop_engine():
        logger.info("Received STOP command from dashboard")
        await engine.stop()
        return {"success": True, "running": engine.running, "message": "Engine stopped"}

    @app.post("/engine/cycle")
    async def run_cycle():
        report = await engine.run_one_cycle()
        return report.to_dict()

    @app.get("/health", response_model=HealthResponse)
    async def get_health():
        return engine.get_health()

    @app.post("/health/acknowledge")
    async def acknowledge_critical():
        cleared = engine.acknowledge_critical()
        return {"success": True, "acknowledged": cleared}

    @app.post("/trades/{trade_id}/close", response_model=CloseTradeResponse)
    async def close_trade(trade_id: str):
        logger.info(f"Received CLOSE command for trade {trade_id}")
        try:
            profit_loss = await engine.close_trade(trade_id)
        except TradeNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except TradeNotOpenError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            logger.error(f"Close request for trade {trade_id} failed: {e}")
            raise HTTPException(status_code=502, detail=str(e))
        return {"success": True, "trade_id": trade_id, "profit_loss": profit_loss}

    @app.post("/reconcile", response_model=ReconcileResponse)
    async def reconcile(lookback_hours: float = Query(2.0, gt=0, le=24 * 30)):
        try:
            report = await engine.reconcile_now(lookback_hours)
        except Exception as e:
            logger.error(f"Reconcile request failed: {e}")
            raise HTTPException(status_code=502, detail=str(e))
        return {
            **report.summary(),
            "corrections": [
                {"kind": c.kind, "symbol": c.symbol, "order_id": c.order_id, "changes": c.changes}
                for c in report.corrections
            ],
        }

    return app
