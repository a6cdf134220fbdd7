"""
backend/tourneyflow/services/retry_orchestrator.py

Purpose:
    Runs one handler against one event: ledger check, payload parsing, bounded
    retries with exponential backoff, per-attempt timeout, and dead-lettering.
    This is the only place that decides between retrying and giving up;
    handler bodies just report Success, RetryableFailure or FatalFailure.

Dependencies:
    - tourneyflow.services.idempotency_ledger
    - tourneyflow.services.dead_letter_store
    - tourneyflow.models.events
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from tourneyflow.models.events import EventEnvelope, InvalidPayloadError
from tourneyflow.services.dead_letter_store import AlertDispatcher, DeadLetterStore
from tourneyflow.services.idempotency_ledger import (
    BeginOutcome,
    IdempotencyLedger,
    LedgerUnavailableError,
    ledger_key,
)

if TYPE_CHECKING:
    from tourneyflow.services.event_handlers.base import EventHandler

logger = logging.getLogger("tourneyflow.retry_orchestrator")

REASON_INVALID_PAYLOAD = "invalid_payload"
REASON_DATA_CONSISTENCY = "data_consistency_error"
REASON_MAX_RETRIES = "max_retries_exceeded"


@dataclass(frozen=True)
class Success:
    summary: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetryableFailure:
    error: str


@dataclass(frozen=True)
class FatalFailure:
    reason: str
    error: str


HandlerResult = Union[Success, RetryableFailure, FatalFailure]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    attempt_timeout_seconds: float | None = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt: base * 2^(attempt-1)."""
        delay = self.base_delay_seconds * (2 ** max(0, attempt - 1))
        return min(delay, self.max_delay_seconds)


class OutcomeStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IN_FLIGHT = "in_flight"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class ProcessingOutcome:
    handler: str
    event_id: str
    status: OutcomeStatus
    attempts: int = 0
    summary: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    error: str | None = None


class RetryOrchestrator:
    def __init__(
        self,
        *,
        ledger: IdempotencyLedger,
        dead_letters: DeadLetterStore,
        alerts: AlertDispatcher,
        policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._ledger = ledger
        self._dead_letters = dead_letters
        self._alerts = alerts
        self._policy = policy
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def run(self, handler: EventHandler, envelope: EventEnvelope) -> ProcessingOutcome:
        key = ledger_key(handler.name, envelope.event_id)
        ledger_ok = True
        try:
            begin = await self._ledger.begin(key)
        except LedgerUnavailableError as exc:
            ledger_ok = False
            logger.warning(
                "Ledger unavailable, using fallback check event_id=%s handler=%s error=%s",
                envelope.event_id,
                handler.name,
                exc,
            )
            begin = BeginOutcome.ALREADY_PROCESSED if await self._fallback(handler, envelope) else BeginOutcome.OK

        if begin is BeginOutcome.ALREADY_PROCESSED:
            logger.info(
                "Event already processed, skipping event_id=%s event_type=%s handler=%s",
                envelope.event_id,
                envelope.event_type,
                handler.name,
            )
            return ProcessingOutcome(handler.name, envelope.event_id, OutcomeStatus.DUPLICATE)
        if begin is BeginOutcome.ALREADY_PROCESSING:
            logger.info(
                "Event in flight elsewhere, skipping event_id=%s handler=%s",
                envelope.event_id,
                handler.name,
            )
            return ProcessingOutcome(handler.name, envelope.event_id, OutcomeStatus.IN_FLIGHT)

        try:
            payload = handler.parse(envelope)
        except InvalidPayloadError as exc:
            return await self._dead_letter(
                handler,
                envelope,
                key,
                ledger_ok=ledger_ok,
                reason=REASON_INVALID_PAYLOAD,
                error=str(exc),
                attempts=0,
            )

        max_attempts = max(1, int(self._policy.max_attempts))
        last_error = ""
        for attempt in range(1, max_attempts + 1):
            result = await self._attempt(handler, payload, envelope)
            if isinstance(result, Success):
                if ledger_ok:
                    await self._safe_commit(key, result.summary)
                logger.info(
                    "Event processed event_id=%s event_type=%s handler=%s attempt=%d",
                    envelope.event_id,
                    envelope.event_type,
                    handler.name,
                    attempt,
                )
                return ProcessingOutcome(
                    handler.name,
                    envelope.event_id,
                    OutcomeStatus.PROCESSED,
                    attempts=attempt,
                    summary=dict(result.summary),
                )
            if isinstance(result, FatalFailure):
                return await self._dead_letter(
                    handler,
                    envelope,
                    key,
                    ledger_ok=ledger_ok,
                    reason=result.reason,
                    error=result.error,
                    attempts=attempt,
                )

            last_error = result.error
            if attempt < max_attempts:
                delay = self._policy.delay_for(attempt)
                logger.warning(
                    "Attempt failed, retrying event_id=%s handler=%s attempt=%d/%d delay_s=%.2f error=%s",
                    envelope.event_id,
                    handler.name,
                    attempt,
                    max_attempts,
                    delay,
                    last_error,
                )
                await self._sleep(delay)

        return await self._dead_letter(
            handler,
            envelope,
            key,
            ledger_ok=ledger_ok,
            reason=REASON_MAX_RETRIES,
            error=last_error,
            attempts=max_attempts,
        )

    async def _attempt(self, handler: EventHandler, payload: Any, envelope: EventEnvelope) -> HandlerResult:
        timeout = self._policy.attempt_timeout_seconds
        try:
            if timeout:
                result = await asyncio.wait_for(handler.handle(payload, envelope), timeout=timeout)
            else:
                result = await handler.handle(payload, envelope)
        except asyncio.TimeoutError:
            return RetryableFailure(f"attempt timed out after {timeout}s")
        except Exception as exc:
            logger.debug("Handler raised handler=%s", handler.name, exc_info=True)
            return RetryableFailure(f"{type(exc).__name__}: {exc}")
        if isinstance(result, (Success, RetryableFailure, FatalFailure)):
            return result
        return Success()

    async def _fallback(self, handler: EventHandler, envelope: EventEnvelope) -> bool:
        try:
            return bool(await handler.fallback_is_processed(envelope))
        except Exception as exc:
            logger.warning(
                "Fallback processed-check failed event_id=%s handler=%s error=%s",
                envelope.event_id,
                handler.name,
                exc,
            )
            return False

    async def _safe_commit(self, key: str, summary: dict[str, Any]) -> None:
        try:
            await self._ledger.commit(key, summary)
        except LedgerUnavailableError as exc:
            logger.warning("Ledger commit failed key=%s error=%s", key, exc)

    async def _dead_letter(
        self,
        handler: EventHandler,
        envelope: EventEnvelope,
        key: str,
        *,
        ledger_ok: bool,
        reason: str,
        error: str,
        attempts: int,
    ) -> ProcessingOutcome:
        written = True
        try:
            entry = await self._dead_letters.push(
                envelope,
                reason=reason,
                error=error,
                handler=handler.name,
                attempts=attempts,
            )
        except Exception:
            written = False
            logger.critical(
                "Failed to write dead letter event_id=%s handler=%s reason=%s",
                envelope.event_id,
                handler.name,
                reason,
                exc_info=True,
            )
        else:
            self._alerts.notify(entry)

        if ledger_ok:
            try:
                if not written:
                    # Nothing recorded the failure; let a redelivery try again.
                    await self._ledger.release(key)
                else:
                    await self._ledger.commit(key, {"outcome": "dead_lettered", "reason": reason})
            except LedgerUnavailableError as exc:
                logger.warning("Ledger finalize failed key=%s error=%s", key, exc)

        return ProcessingOutcome(
            handler.name,
            envelope.event_id,
            OutcomeStatus.DEAD_LETTERED,
            attempts=attempts,
            reason=reason,
            error=error,
        )
