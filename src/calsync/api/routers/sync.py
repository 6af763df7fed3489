"""Calendar sync trigger endpoint.

POST /api/calendar/sync runs one sync for a tenant and maps the outcome:

- done or skipped: 200 with the counts (or the skip reason)
- reauthorization required: 401 with ``requires_reconnect: true``
- any other failure: 502; the next scheduled run retries
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from calsync.api.deps import get_orchestrator
from calsync.models import RunStatus
from calsync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar", "sync"])


class SyncRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    force: bool = False


@router.post("/sync")
async def trigger_sync(
    request: SyncRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    outcome = await orchestrator.sync_now(request.tenant_id, force=request.force)

    if outcome.status is RunStatus.failed:
        status_code = 401 if outcome.requires_reconnect else 502
    else:
        status_code = 200
    return JSONResponse(status_code=status_code, content=outcome.to_payload())
