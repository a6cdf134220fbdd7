"""
backend/tourneyflow/services/event_publisher.py

Purpose:
    Best-effort emission of derived events (standings/statistics updates).
    Failures are retried briefly and then logged; they never fail the handler
    that produced the event.

Dependencies:
    - pydantic
    - tourneyflow.models.events
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from pydantic import BaseModel

from tourneyflow.models.events import EventEnvelope
from tourneyflow.utils import utcnow

logger = logging.getLogger("tourneyflow.event_publisher")


class EventSink(Protocol):
    async def publish(self, event: EventEnvelope) -> bool: ...


class EventPublisher:
    def __init__(
        self,
        sink: EventSink,
        *,
        service_name: str,
        schema_version: str = "1.0",
        max_attempts: int = 3,
        retry_delay_seconds: float = 0.1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._sink = sink
        self._service_name = service_name
        self._schema_version = schema_version
        self._max_attempts = max(1, int(max_attempts))
        self._retry_delay = max(0.0, float(retry_delay_seconds))
        self._sleep = sleep

    async def publish(
        self,
        event_type: str,
        payload: BaseModel | dict[str, Any],
        *,
        correlation_id: str | None = None,
    ) -> bool:
        body = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else dict(payload)
        now = utcnow()
        extra = {"correlation_id": correlation_id} if correlation_id else {}
        envelope = EventEnvelope(
            event_type=event_type,
            payload=body,
            service=self._service_name,
            version=self._schema_version,
            timestamp=now,
            received_at=now,
            **extra,
        )
        for attempt in range(1, self._max_attempts + 1):
            try:
                if await self._sink.publish(envelope):
                    logger.debug("Published event_type=%s event_id=%s", event_type, envelope.event_id)
                    return True
                error = "sink rejected event"
            except Exception as exc:
                error = str(exc)
            logger.warning(
                "Publish attempt failed event_type=%s attempt=%d/%d error=%s",
                event_type,
                attempt,
                self._max_attempts,
                error,
            )
            if attempt < self._max_attempts:
                await self._sleep(self._retry_delay)
        logger.error("Failed to publish event_type=%s event_id=%s", event_type, envelope.event_id)
        return False
