"""
Health & metrics HTTP surface

    GET  /health              200 ok/degraded, 503 while shutting down
    GET  /metrics             prometheus text exposition
    POST /rebalance/trigger   manual rebalance (forwarded to the worker)

Served by uvicorn from a background thread (see yieldkeeper.app).
"""

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from yieldkeeper import __version__
from yieldkeeper.metrics.registry import REGISTRY
from yieldkeeper.monitor.health_check import HealthChecker
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)


def create_app(health: HealthChecker, worker_supervisor: Optional[Any] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        health: HealthChecker used by /health
        worker_supervisor: Receives manual triggers (None disables the route)
    """
    app = FastAPI(title="YieldKeeper", version=__version__)

    @app.get("/health")
    async def get_health():
        status = health.check_all()
        code = 200 if status.healthy else 503
        return JSONResponse(status_code=code, content=status.to_dict())

    @app.get("/metrics")
    async def get_metrics():
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    @app.post("/rebalance/trigger")
    async def trigger_rebalance():
        if worker_supervisor is None:
            raise HTTPException(status_code=404, detail="Rebalance loop is disabled")
        if not worker_supervisor.trigger():
            raise HTTPException(status_code=503, detail="Rebalance worker is not running")
        logger.info("Manual rebalance trigger accepted via API")
        return {'status': 'triggered'}

    return app
