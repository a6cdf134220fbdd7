"""
backend/tourneyflow/services/event_handlers/base.py

Purpose:
    Contract every pipeline handler implements. The orchestrator owns retries,
    ledger bookkeeping and dead-lettering; a handler only parses its payload
    and reports the outcome of one attempt.

Dependencies:
    - tourneyflow.models.events
    - tourneyflow.services.retry_orchestrator
"""

from __future__ import annotations

from typing import Any

from tourneyflow.models.events import EventEnvelope
from tourneyflow.services.retry_orchestrator import HandlerResult


class EventHandler:
    name: str = "handler"
    event_types: tuple[str, ...] = ()

    def parse(self, envelope: EventEnvelope) -> Any:
        """Return the typed payload or raise InvalidPayloadError."""
        return envelope.payload

    async def handle(self, payload: Any, envelope: EventEnvelope) -> HandlerResult:
        raise NotImplementedError

    async def fallback_is_processed(self, envelope: EventEnvelope) -> bool:
        """Secondary duplicate check used while the ledger store is down."""
        return False
