"""
backend/tests/test_retry_orchestrator.py

Purpose:
    Retry, backoff, timeout, duplicate suppression and dead-letter behavior of
    the orchestrator that wraps every handler invocation.
"""

from __future__ import annotations

import asyncio
import sys

import pytest
from pymongo.errors import ServerSelectionTimeoutError

sys.path.insert(0, "backend")

from fake_mongo import FakeCollection
from tourneyflow.models.events import EventEnvelope, InvalidPayloadError
from tourneyflow.services.dead_letter_store import AlertDispatcher, DeadLetterStore
from tourneyflow.services.event_handlers.base import EventHandler
from tourneyflow.services.idempotency_ledger import IdempotencyLedger
from tourneyflow.services.retry_orchestrator import (
    REASON_DATA_CONSISTENCY,
    REASON_INVALID_PAYLOAD,
    REASON_MAX_RETRIES,
    FatalFailure,
    OutcomeStatus,
    RetryableFailure,
    RetryOrchestrator,
    RetryPolicy,
    Success,
)


class _ScriptedHandler(EventHandler):
    """Returns the scripted results in order; counts successful side effects."""

    name = "scripted"
    event_types = ("match.completed",)

    def __init__(self, results, *, fallback: bool = False) -> None:
        self._results = list(results)
        self.calls = 0
        self.mutations = 0
        self._fallback = fallback

    def parse(self, envelope):
        if envelope.payload.get("broken"):
            raise InvalidPayloadError("match_id: Field required")
        return envelope.payload

    async def handle(self, payload, envelope):
        self.calls += 1
        result = self._results.pop(0) if self._results else Success()
        if isinstance(result, Exception):
            raise result
        if isinstance(result, Success):
            self.mutations += 1
        return result

    async def fallback_is_processed(self, envelope):
        return self._fallback


class _SlowHandler(_ScriptedHandler):
    async def handle(self, payload, envelope):
        self.calls += 1
        await asyncio.sleep(1)
        return Success()


class _ParkedHandler(_ScriptedHandler):
    def __init__(self) -> None:
        super().__init__([])
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def handle(self, payload, envelope):
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        self.mutations += 1
        return Success()


class _Env:
    def __init__(self, *, alert_hook=None, alerts_enabled=False, policy: RetryPolicy | None = None) -> None:
        self.ledger_coll = FakeCollection("processed_events")
        self.dlq_coll = FakeCollection("events_dlq")
        self.delays: list[float] = []
        self.alerts = AlertDispatcher(alert_hook, enabled=alerts_enabled)

        async def _sleep(delay):
            self.delays.append(delay)

        self.orchestrator = RetryOrchestrator(
            ledger=IdempotencyLedger(self.ledger_coll, ttl_seconds=3600, lock_ttl_seconds=60),
            dead_letters=DeadLetterStore(self.dlq_coll, service_name="results-service"),
            alerts=self.alerts,
            policy=policy or RetryPolicy(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=60.0),
            sleep=_sleep,
        )


def _envelope(event_id="e1", **payload) -> EventEnvelope:
    return EventEnvelope(event_id=event_id, event_type="match.completed", payload=payload or {"match_id": "m1"})


def test_policy_backoff_doubles_and_caps():
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_transient_failures_then_success_mutates_once():
    env = _Env()
    handler = _ScriptedHandler([RetryableFailure("db blip"), RetryableFailure("db blip"), Success({"ok": 1})])

    outcome = await env.orchestrator.run(handler, _envelope())

    assert outcome.status is OutcomeStatus.PROCESSED
    assert outcome.attempts == 3
    assert handler.mutations == 1
    assert env.delays == [1.0, 2.0]
    assert env.dlq_coll.docs == []
    assert env.ledger_coll.docs[0]["state"] == "processed"


@pytest.mark.asyncio
async def test_exhausted_retries_dead_letter_exactly_once():
    env = _Env()
    handler = _ScriptedHandler([RuntimeError("down")] * 3)

    outcome = await env.orchestrator.run(handler, _envelope())

    assert outcome.status is OutcomeStatus.DEAD_LETTERED
    assert outcome.reason == REASON_MAX_RETRIES
    assert handler.calls == 3
    assert len(env.dlq_coll.docs) == 1
    entry = env.dlq_coll.docs[0]
    assert entry["reason"] == REASON_MAX_RETRIES
    assert entry["attempts"] == 3
    assert entry["handler"] == "scripted"
    assert entry["original_event"]["event_id"] == "e1"
    assert "RuntimeError: down" in entry["error"]

    again = await env.orchestrator.run(_ScriptedHandler([]), _envelope())
    assert again.status is OutcomeStatus.DUPLICATE
    assert len(env.dlq_coll.docs) == 1


@pytest.mark.asyncio
async def test_invalid_payload_dead_lettered_without_attempts():
    env = _Env()
    handler = _ScriptedHandler([])

    outcome = await env.orchestrator.run(handler, _envelope(broken=True))

    assert outcome.status is OutcomeStatus.DEAD_LETTERED
    assert outcome.reason == REASON_INVALID_PAYLOAD
    assert handler.calls == 0
    assert env.delays == []
    assert env.dlq_coll.docs[0]["attempts"] == 0


@pytest.mark.asyncio
async def test_fatal_failure_is_not_retried():
    env = _Env()
    handler = _ScriptedHandler([FatalFailure(REASON_DATA_CONSISTENCY, "team Z not in tournament t1")])

    outcome = await env.orchestrator.run(handler, _envelope())

    assert outcome.reason == REASON_DATA_CONSISTENCY
    assert handler.calls == 1
    assert env.delays == []
    assert env.dlq_coll.docs[0]["reason"] == REASON_DATA_CONSISTENCY


@pytest.mark.asyncio
async def test_duplicate_delivery_is_a_no_op():
    env = _Env()
    handler = _ScriptedHandler([Success(), Success()])

    first = await env.orchestrator.run(handler, _envelope())
    second = await env.orchestrator.run(handler, _envelope())

    assert first.status is OutcomeStatus.PROCESSED
    assert second.status is OutcomeStatus.DUPLICATE
    assert handler.mutations == 1


@pytest.mark.asyncio
async def test_attempt_timeout_counts_as_retryable():
    env = _Env(policy=RetryPolicy(max_attempts=2, attempt_timeout_seconds=0.01))
    handler = _SlowHandler([])

    outcome = await env.orchestrator.run(handler, _envelope())

    assert outcome.status is OutcomeStatus.DEAD_LETTERED
    assert handler.calls == 2
    assert "timed out" in outcome.error


@pytest.mark.asyncio
async def test_ledger_outage_uses_handler_fallback():
    env = _Env()
    env.ledger_coll.fail("*", ServerSelectionTimeoutError("no servers"), times=10)

    already = _ScriptedHandler([], fallback=True)
    skipped = await env.orchestrator.run(already, _envelope())
    assert skipped.status is OutcomeStatus.DUPLICATE
    assert already.calls == 0

    fresh = _ScriptedHandler([Success()], fallback=False)
    processed = await env.orchestrator.run(fresh, _envelope("e2"))
    assert processed.status is OutcomeStatus.PROCESSED
    assert fresh.mutations == 1


@pytest.mark.asyncio
async def test_failing_alert_hook_does_not_break_processing():
    hook_calls = []

    async def _hook(entry):
        hook_calls.append(entry.reason)
        raise RuntimeError("webhook down")

    env = _Env(alert_hook=_hook, alerts_enabled=True)
    handler = _ScriptedHandler([FatalFailure(REASON_DATA_CONSISTENCY, "bad team")])

    outcome = await env.orchestrator.run(handler, _envelope())
    await env.alerts.drain()

    assert outcome.status is OutcomeStatus.DEAD_LETTERED
    assert hook_calls == [REASON_DATA_CONSISTENCY]


@pytest.mark.asyncio
async def test_failed_dead_letter_write_releases_ledger_for_redelivery():
    env = _Env()
    env.dlq_coll.fail("insert_one", ServerSelectionTimeoutError("no servers"))
    handler = _ScriptedHandler([FatalFailure(REASON_DATA_CONSISTENCY, "bad team")])

    outcome = await env.orchestrator.run(handler, _envelope())

    assert outcome.status is OutcomeStatus.DEAD_LETTERED
    assert env.dlq_coll.docs == []
    assert env.ledger_coll.docs == []

    retry = _ScriptedHandler([Success()])
    assert (await env.orchestrator.run(retry, _envelope())).status is OutcomeStatus.PROCESSED


@pytest.mark.asyncio
async def test_concurrent_deliveries_of_one_event_run_the_handler_once():
    env = _Env()
    handler = _ParkedHandler()
    parked_insert = env.ledger_coll.hold("insert_one")

    first = asyncio.create_task(env.orchestrator.run(handler, _envelope()))
    await parked_insert.reached.wait()
    second = asyncio.create_task(env.orchestrator.run(handler, _envelope()))
    await handler.entered.wait()
    parked_insert.release.set()
    first_outcome = await first
    handler.release.set()
    second_outcome = await second

    assert first_outcome.status is OutcomeStatus.IN_FLIGHT
    assert second_outcome.status is OutcomeStatus.PROCESSED
    assert handler.calls == 1
    assert handler.mutations == 1
    redelivery = await env.orchestrator.run(handler, _envelope())
    assert redelivery.status is OutcomeStatus.DUPLICATE
    assert handler.calls == 1
    assert [doc["state"] for doc in env.ledger_coll.docs] == ["processed"]
