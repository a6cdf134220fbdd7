"""
backend/tests/test_event_pipeline_integration.py

Purpose:
    Integration-style checks for the assembled pipeline: bus dispatch,
    derived events, cache eviction, duplicate suppression and dead-lettering.
"""

from __future__ import annotations

import sys

import pytest

sys.path.insert(0, "backend")

from tourneyflow.models.events import EventEnvelope
from tourneyflow.services.pipeline import build_pipeline
from tourneyflow.services.retry_orchestrator import OutcomeStatus


def _match_completed(event_id: str = "e1", **overrides) -> EventEnvelope:
    payload = {
        "match_id": "m1",
        "tournament_id": "t1",
        "home_team_id": "A",
        "away_team_id": "B",
        "home_score": 3,
        "away_score": 1,
    }
    payload.update(overrides)
    return EventEnvelope(event_id=event_id, event_type="sports.match.completed", service="match-service", payload=payload)


@pytest.mark.asyncio
async def test_match_completed_flows_through_bus_and_evicts_standings_cache(fake_db, sleeper):
    pipeline = build_pipeline(fake_db, sleep=sleeper)
    cache_key = pipeline.cache.generate_key("tournament", "t1", "standings")
    await pipeline.cache.remember(cache_key, 300, lambda: [], tags=["public:tournament:t1:standings"])
    assert len(fake_db.public_cache.docs) == 1

    assert pipeline.register() > 0
    await pipeline.bus.start()
    assert await pipeline.ingest(_match_completed()) is True
    await pipeline.bus.join()
    await pipeline.bus.stop()

    rows = {doc["team_id"]: doc for doc in fake_db.standings.docs}
    assert rows["A"]["points"] == 3
    assert rows["B"]["points"] == 0
    assert fake_db.public_cache.docs == []

    stats = pipeline.bus.stats()
    assert stats["failed_total"] == 0
    assert stats["per_event_type"]["sports.standings.updated"]["published_total"] == 1
    assert stats["per_service"]["results-service"]["published_total"] == 2

    ledger_ids = {doc["_id"] for doc in fake_db.processed_events.docs}
    assert {
        "match_completed:e1",
        "match_cache_invalidation:e1",
        "results_cache_invalidation:e1",
    } <= ledger_ids
    assert fake_db.events_dlq.docs == []


@pytest.mark.asyncio
async def test_inline_dispatch_suppresses_redelivery(fake_db, sleeper):
    pipeline = build_pipeline(fake_db, sleep=sleeper)
    envelope = _match_completed()

    first = await pipeline.dispatch(envelope)
    second = await pipeline.dispatch(envelope)

    assert {o.handler for o in first} == {"match_completed", "match_cache_invalidation", "results_cache_invalidation"}
    assert all(o.status is OutcomeStatus.PROCESSED for o in first)
    assert all(o.status is OutcomeStatus.DUPLICATE for o in second)
    assert {doc["team_id"]: doc["played"] for doc in fake_db.standings.docs} == {"A": 1, "B": 1}


@pytest.mark.asyncio
async def test_invalid_payload_dead_lettered_once_for_owning_handler(fake_db, sleeper):
    pipeline = build_pipeline(fake_db, sleep=sleeper)

    outcomes = await pipeline.dispatch(_match_completed(home_score=-2))
    await pipeline.dispatch(_match_completed(home_score=-2))

    by_handler = {o.handler: o for o in outcomes}
    assert by_handler["match_completed"].status is OutcomeStatus.DEAD_LETTERED
    assert by_handler["match_completed"].reason == "invalid_payload"
    assert by_handler["results_cache_invalidation"].status is OutcomeStatus.PROCESSED
    assert len(fake_db.events_dlq.docs) == 1
    assert fake_db.standings.docs == []
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_unknown_event_type_has_no_handlers(fake_db, sleeper):
    pipeline = build_pipeline(fake_db, sleep=sleeper)

    assert pipeline.handlers_for("venue.updated") == ()
    assert await pipeline.dispatch(EventEnvelope(event_type="venue.updated", payload={})) == []


def test_dispatch_table_covers_both_event_type_forms(fake_db):
    pipeline = build_pipeline(fake_db)

    def names(event_type):
        return [h.name for h in pipeline.handlers_for(event_type)]

    assert names("match.completed") == names("sports.match.completed")
    assert "tournament_status_changed" in names("sports.tournament.deleted")
    assert names("player.updated") == ["team_cache_invalidation"]
