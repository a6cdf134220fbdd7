"""
backend/tourneyflow/services/dead_letter_store.py

Purpose:
    Append-only sink for events the pipeline gave up on, plus the optional
    operator alert fired for each entry. Alerts run as detached tasks so a slow
    or failing webhook never holds up the worker that produced the entry.

Dependencies:
    - httpx
    - tourneyflow.models.events
    - tourneyflow.models.results
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from tourneyflow.models.events import EventEnvelope
from tourneyflow.models.results import DeadLetterEntry, DeadLetterReason

logger = logging.getLogger("tourneyflow.dead_letters")

AlertHook = Callable[[DeadLetterEntry], Awaitable[None]]


class DeadLetterStore:
    def __init__(self, collection, *, service_name: str) -> None:
        self._collection = collection
        self._service_name = service_name

    async def push(
        self,
        envelope: EventEnvelope,
        *,
        reason: DeadLetterReason,
        error: str,
        handler: str | None = None,
        attempts: int = 0,
    ) -> DeadLetterEntry:
        entry = DeadLetterEntry(
            original_event=envelope.model_dump(mode="json"),
            reason=reason,
            error=error,
            service=self._service_name,
            handler=handler,
            attempts=attempts,
        )
        await self._collection.insert_one(entry.model_dump())
        logger.error(
            "Event dead-lettered event_id=%s event_type=%s handler=%s reason=%s attempts=%d error=%s",
            envelope.event_id,
            envelope.event_type,
            handler,
            reason,
            attempts,
            error,
        )
        return entry

    async def count(self, *, reason: str | None = None) -> int:
        query: dict[str, Any] = {"reason": reason} if reason else {}
        return int(await self._collection.count_documents(query))

    async def list_recent(self, *, limit: int = 50, reason: str | None = None) -> list[dict[str, Any]]:
        query: dict[str, Any] = {"reason": reason} if reason else {}
        docs = await self._collection.find(query).sort("failed_at", -1).to_list(length=max(1, int(limit)))
        for doc in docs:
            doc["_id"] = str(doc.get("_id"))
        return docs


class WebhookAlerter:
    """Posts a compact JSON alert; without a URL it only logs at critical."""

    def __init__(self, url: str, *, timeout: float = 5.0) -> None:
        self._url = url
        self._timeout = timeout

    async def __call__(self, entry: DeadLetterEntry) -> None:
        event = entry.original_event
        body = {
            "service": entry.service,
            "handler": entry.handler,
            "reason": entry.reason,
            "error": entry.error,
            "event_id": event.get("event_id"),
            "event_type": event.get("event_type"),
            "failed_at": entry.failed_at.isoformat(),
        }
        if not self._url:
            logger.critical("ALERT: event processing failed %s", body)
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(self._url, json=body)
            resp.raise_for_status()


class AlertDispatcher:
    def __init__(self, hook: AlertHook | None, *, enabled: bool) -> None:
        self._hook = hook
        self._enabled = bool(enabled and hook is not None)
        self._tasks: set[asyncio.Task] = set()

    def notify(self, entry: DeadLetterEntry) -> None:
        if not self._enabled:
            return
        task = asyncio.create_task(self._run(entry), name="dead_letter_alert")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, entry: DeadLetterEntry) -> None:
        try:
            await self._hook(entry)
        except Exception:
            logger.exception("Dead-letter alert hook failed reason=%s handler=%s", entry.reason, entry.handler)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
