"""Trigger API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that opens the DB pool and builds the orchestrator
- Sync trigger at POST /api/calendar/sync
- Health endpoint at GET /api/health
- Prometheus exposition at GET /metrics
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from calsync.api.deps import init_orchestrator, shutdown_orchestrator
from calsync.api.routers.sync import router as sync_router
from calsync.config import SyncConfig, load_config

logger = logging.getLogger(__name__)


def create_app(config: SyncConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded sync configuration.  When omitted, it is loaded from the
        default location at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = config if config is not None else load_config()
        await init_orchestrator(resolved)
        logger.info("Calendar sync API ready")

        yield

        await shutdown_orchestrator()

    app = FastAPI(
        title="Calendar Sync API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    app.include_router(sync_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app
