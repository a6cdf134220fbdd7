"""
backend/tourneyflow/routers/admin.py

Purpose:
    Operator endpoints: pipeline health, handler registrations and the
    dead-letter backlog.

Dependencies:
    - fastapi
    - tourneyflow.services.pipeline
    - tourneyflow.services.pipeline_monitor
"""

import secrets
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from tourneyflow.config import settings
from tourneyflow.services.pipeline import EventPipeline, get_pipeline
from tourneyflow.services.pipeline_monitor import PipelineMonitor

router = APIRouter(prefix="/api/admin", tags=["admin"])


async def verify_admin_key(x_admin_key: str = Header(...)):
    if not settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured on server.",
        )
    if not secrets.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key.",
        )


def get_monitor(request: Request) -> PipelineMonitor:
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline monitor not running.",
        )
    return monitor


@router.get("/event-bus/status", dependencies=[Depends(verify_admin_key)])
async def event_bus_status(monitor: PipelineMonitor = Depends(get_monitor)):
    """Operational pipeline status for debugging and monitoring."""
    return await monitor.get_current_health()


@router.get("/event-bus/handlers", dependencies=[Depends(verify_admin_key)])
async def event_bus_handlers(pipeline: EventPipeline = Depends(get_pipeline)):
    """Static dispatch table as registered at startup."""
    items = [
        {"event_type": event_type, "handlers": [handler.name for handler in handlers]}
        for event_type, handlers in pipeline.dispatch_table.items()
    ]
    return {"items": items, "policy": asdict(pipeline.orchestrator.policy)}


@router.get("/dead-letters", dependencies=[Depends(verify_admin_key)])
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=500),
    reason: Optional[str] = Query(
        None, pattern="^(invalid_payload|data_consistency_error|max_retries_exceeded)$"
    ),
    pipeline: EventPipeline = Depends(get_pipeline),
):
    """Most recent dead-letter entries, newest first."""
    items = await pipeline.dead_letters.list_recent(limit=limit, reason=reason)
    total = await pipeline.dead_letters.count(reason=reason)
    return {"total": total, "items": items}
