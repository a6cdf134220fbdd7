"""
backend/tourneyflow/services/pipeline.py

Purpose:
    Explicit construction of the whole pipeline (stores, services, handlers,
    orchestrator, bus) and the glue between bus subscriptions and the retry
    orchestrator.

Dependencies:
    - tourneyflow.config
    - tourneyflow.services.*
    - tourneyflow.clients.sibling_services
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from fastapi import HTTPException, Request, status

from tourneyflow.clients.sibling_services import SiblingServiceClient
from tourneyflow.config import settings
from tourneyflow.models.events import EventEnvelope
from tourneyflow.services.dead_letter_store import AlertDispatcher, DeadLetterStore, WebhookAlerter
from tourneyflow.services.event_bus import InMemoryEventBus
from tourneyflow.services.event_handlers import build_dispatch_table, build_handlers
from tourneyflow.services.event_handlers.base import EventHandler
from tourneyflow.services.event_publisher import EventPublisher
from tourneyflow.services.idempotency_ledger import IdempotencyLedger
from tourneyflow.services.match_schedule_service import MatchScheduleService
from tourneyflow.services.public_cache import MongoPublicCache
from tourneyflow.services.retry_orchestrator import ProcessingOutcome, RetryOrchestrator, RetryPolicy
from tourneyflow.services.standings_service import StandingsService

logger = logging.getLogger("tourneyflow.pipeline")


@dataclass
class EventPipeline:
    bus: InMemoryEventBus
    orchestrator: RetryOrchestrator
    dispatch_table: dict[str, tuple[EventHandler, ...]]
    dead_letters: DeadLetterStore
    alerts: AlertDispatcher
    cache: MongoPublicCache
    standings: StandingsService
    publisher: EventPublisher
    siblings: SiblingServiceClient | None = None

    def handlers_for(self, event_type: str) -> tuple[EventHandler, ...]:
        return self.dispatch_table.get(event_type, ())

    async def process(self, handler: EventHandler, envelope: EventEnvelope) -> ProcessingOutcome:
        return await self.orchestrator.run(handler, envelope)

    async def dispatch(self, envelope: EventEnvelope) -> list[ProcessingOutcome]:
        """Run every registered handler inline, bypassing the bus queues."""
        handlers = self.handlers_for(envelope.event_type)
        if not handlers:
            logger.debug("No handlers registered event_type=%s", envelope.event_type)
        return [await self.process(handler, envelope) for handler in handlers]

    async def ingest(self, envelope: EventEnvelope) -> bool:
        return await self.bus.publish(envelope)

    def register(self) -> int:
        count = 0
        for event_type, handlers in self.dispatch_table.items():
            for handler in handlers:
                self.bus.subscribe(
                    event_type,
                    partial(self.process, handler),
                    handler_name=handler.name,
                )
                count += 1
        logger.info("Registered %d handler subscriptions over %d event types", count, len(self.dispatch_table))
        return count

    async def aclose(self) -> None:
        await self.alerts.drain()
        if self.siblings is not None:
            await self.siblings.aclose()


def build_pipeline(
    db,
    *,
    config=settings,
    siblings: SiblingServiceClient | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> EventPipeline:
    bus = InMemoryEventBus(
        ingress_maxsize=config.EVENT_BUS_INGRESS_QUEUE_MAXSIZE,
        handler_maxsize=config.EVENT_BUS_HANDLER_QUEUE_MAXSIZE,
        default_concurrency=config.EVENT_BUS_HANDLER_DEFAULT_CONCURRENCY,
        error_buffer_size=config.EVENT_BUS_ERROR_BUFFER_SIZE,
    )
    cache = MongoPublicCache(
        db.public_cache,
        key_prefix=config.CACHE_KEY_PREFIX,
        live_ttl_seconds=config.CACHE_LIVE_TTL_SECONDS,
        static_ttl_seconds=config.CACHE_STATIC_TTL_SECONDS,
    )
    standings = StandingsService(
        db,
        cache=cache,
        siblings=siblings,
        internal_ttl_seconds=config.CACHE_INTERNAL_TTL_SECONDS,
    )
    publisher = EventPublisher(
        bus,
        service_name=config.SERVICE_NAME,
        schema_version=config.EVENT_SCHEMA_VERSION,
        max_attempts=config.EVENT_PUBLISH_MAX_ATTEMPTS,
        retry_delay_seconds=config.EVENT_PUBLISH_RETRY_DELAY_MS / 1000.0,
        sleep=sleep,
    )
    dead_letters = DeadLetterStore(db[config.DEAD_LETTER_COLLECTION], service_name=config.SERVICE_NAME)
    alerts = AlertDispatcher(
        WebhookAlerter(config.ALERT_WEBHOOK_URL, timeout=config.ALERT_WEBHOOK_TIMEOUT_SECONDS),
        enabled=config.ALERT_ON_FAILURES,
    )
    orchestrator = RetryOrchestrator(
        ledger=IdempotencyLedger(
            db.processed_events,
            ttl_seconds=config.IDEMPOTENCY_TTL_SECONDS,
            lock_ttl_seconds=config.PROCESSING_LOCK_TTL_SECONDS,
        ),
        dead_letters=dead_letters,
        alerts=alerts,
        policy=RetryPolicy(
            max_attempts=config.RETRY_MAX_ATTEMPTS,
            base_delay_seconds=config.RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=config.RETRY_MAX_DELAY_SECONDS,
            attempt_timeout_seconds=config.HANDLER_ATTEMPT_TIMEOUT_SECONDS,
        ),
        sleep=sleep,
    )
    handlers = build_handlers(
        config,
        db=db,
        standings=standings,
        schedule=MatchScheduleService(db),
        cache=cache,
        publisher=publisher,
        siblings=siblings,
        sleep=sleep,
    )
    return EventPipeline(
        bus=bus,
        orchestrator=orchestrator,
        dispatch_table=build_dispatch_table(handlers),
        dead_letters=dead_letters,
        alerts=alerts,
        cache=cache,
        standings=standings,
        publisher=publisher,
        siblings=siblings,
    )


def get_pipeline(request: Request) -> EventPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event pipeline not running.",
        )
    return pipeline
