"""
backend/tourneyflow/routers/events.py

Purpose:
    HTTP ingress for envelopes published by sibling services.

Dependencies:
    - fastapi
    - tourneyflow.services.pipeline
"""

import logging
import secrets
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from tourneyflow.config import settings
from tourneyflow.models.events import EventEnvelope, make_correlation_id
from tourneyflow.services.pipeline import EventPipeline, get_pipeline

logger = logging.getLogger("tourneyflow.routers.events")

router = APIRouter(prefix="/api/events", tags=["events"])


async def verify_events_key(x_events_key: str = Header(...)):
    """Verify the shared key sibling services send with each envelope."""
    if not settings.EVENTS_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Events API key not configured on server.",
        )
    if not secrets.compare_digest(x_events_key, settings.EVENTS_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid events API key.",
        )


class EventIngressRequest(BaseModel):
    event_id: str = Field(min_length=1, max_length=200)
    event_type: str = Field(min_length=1, max_length=120)
    payload: dict[str, Any] = Field(default_factory=dict)
    service: str = "unknown"
    timestamp: Optional[datetime] = None
    version: str = "1.0"
    correlation_id: str = Field(default_factory=make_correlation_id)


@router.post("", status_code=status.HTTP_202_ACCEPTED, dependencies=[Depends(verify_events_key)])
async def ingest_event(
    body: EventIngressRequest,
    pipeline: EventPipeline = Depends(get_pipeline),
):
    """Queue one envelope for every handler subscribed to its type."""
    envelope = EventEnvelope(**body.model_dump())
    handlers = pipeline.handlers_for(envelope.event_type)
    if not handlers:
        logger.debug("Ignoring event with no subscribers event_type=%s", envelope.event_type)
        return {"accepted": False, "event_id": envelope.event_id, "handlers": []}
    if not await pipeline.ingest(envelope):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event queue is full, retry later.",
        )
    return {
        "accepted": True,
        "event_id": envelope.event_id,
        "handlers": [handler.name for handler in handlers],
    }
