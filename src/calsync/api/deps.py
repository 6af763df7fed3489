"""Dependency wiring for the trigger API."""

from __future__ import annotations

import logging

from calsync.config import SyncConfig
from calsync.db import Database
from calsync.orchestrator import SyncOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singletons for FastAPI dependency injection
# ---------------------------------------------------------------------------

_database: Database | None = None
_orchestrator: SyncOrchestrator | None = None


async def init_orchestrator(config: SyncConfig) -> SyncOrchestrator:
    """Open the database pool and build the orchestrator singleton.

    Called once during app startup (in the lifespan handler).
    """
    global _database, _orchestrator  # noqa: PLW0603

    database = Database.from_config(config.database)
    pool = await database.connect()
    _database = database
    _orchestrator = build_orchestrator(config, pool)
    return _orchestrator


async def shutdown_orchestrator() -> None:
    """Close the provider client and the pool. Called during app shutdown."""
    global _database, _orchestrator  # noqa: PLW0603

    if _orchestrator is not None:
        await _orchestrator.aclose()
        _orchestrator = None
    if _database is not None:
        await _database.close()
        _database = None


def get_orchestrator() -> SyncOrchestrator:
    """FastAPI dependency: provides the SyncOrchestrator singleton.

    Usage::

        @router.post("/sync")
        async def sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
            return await orchestrator.sync_now(tenant_id)
    """
    if _orchestrator is None:
        raise RuntimeError("SyncOrchestrator not initialized; call init_orchestrator() first")
    return _orchestrator
