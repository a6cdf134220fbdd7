"""
backend/tests/test_cache_invalidation_handler.py

Purpose:
    Cache invalidation subscribers: application order, id enumeration from
    standings and the match schedule, and retry signalling on store errors.
"""

from __future__ import annotations

import sys

import pytest
from pymongo.errors import ServerSelectionTimeoutError

sys.path.insert(0, "backend")

from tourneyflow.models.events import EventEnvelope
from tourneyflow.services.cache_router import CacheInvalidationTarget, build_router
from tourneyflow.services.event_handlers.cache_handlers import (
    MATCH_SIDE_EVENTS,
    RESULTS_SIDE_EVENTS,
    TEAM_SIDE_EVENTS,
    CacheInvalidationHandler,
    apply_invalidation,
)
from tourneyflow.services.match_schedule_service import MatchScheduleService
from tourneyflow.services.retry_orchestrator import RetryableFailure, Success
from tourneyflow.services.standings_service import StandingsService


class _RecordingCache:
    def __init__(self, fail_with: Exception | None = None) -> None:
        self.ops: list[tuple[str, object]] = []
        self._fail_with = fail_with

    async def forget(self, key):
        if self._fail_with:
            raise self._fail_with
        self.ops.append(("key", key))
        return True

    async def forget_by_tags(self, tags):
        self.ops.append(("tags", list(tags)))
        return len(tags)

    async def forget_by_pattern(self, pattern):
        self.ops.append(("pattern", pattern))
        return 1


def _kinds(ops) -> list[str]:
    return [kind for kind, _ in ops]


@pytest.mark.asyncio
async def test_apply_order_is_keys_then_tags_then_patterns():
    cache = _RecordingCache()
    target = CacheInvalidationTarget.build(
        tags=["t2", "t1"],
        patterns=["p:*"],
        keys=["k2", "k1"],
    )

    counts = await apply_invalidation(cache, target)

    assert _kinds(cache.ops) == ["key", "key", "tags", "pattern"]
    assert cache.ops[0] == ("key", "k1")
    assert cache.ops[2] == ("tags", ["t1", "t2"])
    assert counts == {
        "keys": 2,
        "keys_evicted": 2,
        "tags": 2,
        "tag_evictions": 2,
        "patterns": 1,
        "pattern_evictions": 1,
    }


@pytest.mark.asyncio
async def test_results_side_enumerates_standings_teams(fake_db):
    await fake_db.standings.insert_many(
        [{"tournament_id": "t1", "team_id": team} for team in ("A", "B", "C")]
    )
    cache = _RecordingCache()
    handler = CacheInvalidationHandler(
        router=build_router("results"),
        cache=cache,
        event_types=RESULTS_SIDE_EVENTS,
        standings=StandingsService(fake_db),
    )
    envelope = EventEnvelope(event_type="sports.standings.updated", payload={"tournament_id": "t1", "match_id": "m1"})

    result = await handler.handle(handler.parse(envelope), envelope)

    assert isinstance(result, Success)
    keys = {value for kind, value in cache.ops if kind == "key"}
    assert {"public_api:team:A:standing", "public_api:team:C:standing", "tournament_standings:t1"} <= keys


@pytest.mark.asyncio
async def test_match_side_tournament_event_enumerates_match_keys(fake_db):
    await fake_db.matches.insert_many(
        [
            {"match_id": "m1", "tournament_id": "t1", "status": "cancelled"},
            {"match_id": "m2", "tournament_id": "t1", "status": "completed"},
        ]
    )
    cache = _RecordingCache()
    handler = CacheInvalidationHandler(
        router=build_router("match"),
        cache=cache,
        event_types=MATCH_SIDE_EVENTS,
        schedule=MatchScheduleService(fake_db),
    )
    envelope = EventEnvelope(
        event_type="tournament.status.changed",
        payload={"tournament_id": "t1", "new_status": "cancelled"},
    )

    await handler.handle(handler.parse(envelope), envelope)

    keys = {value for kind, value in cache.ops if kind == "key"}
    assert {"public_api:match:m1", "public_api:match:m2"} <= keys


@pytest.mark.asyncio
async def test_enumeration_failure_still_invalidates_tags(fake_db):
    fake_db.matches.fail("find", ServerSelectionTimeoutError("no servers"))
    cache = _RecordingCache()
    handler = CacheInvalidationHandler(
        router=build_router("match"),
        cache=cache,
        event_types=MATCH_SIDE_EVENTS,
        schedule=MatchScheduleService(fake_db),
    )
    envelope = EventEnvelope(event_type="tournament.deleted", payload={"tournament_id": "t1"})

    result = await handler.handle(handler.parse(envelope), envelope)

    assert isinstance(result, Success)
    assert "tags" in _kinds(cache.ops)


@pytest.mark.asyncio
async def test_store_error_during_eviction_is_retryable():
    handler = CacheInvalidationHandler(
        router=build_router("team"),
        cache=_RecordingCache(fail_with=ServerSelectionTimeoutError("no servers")),
        event_types=TEAM_SIDE_EVENTS,
    )
    envelope = EventEnvelope(event_type="team.updated", payload={"team_id": "A"})

    result = await handler.handle(handler.parse(envelope), envelope)

    assert isinstance(result, RetryableFailure)


@pytest.mark.asyncio
async def test_unrouted_event_is_a_successful_no_op():
    cache = _RecordingCache()
    handler = CacheInvalidationHandler(router=build_router("team"), cache=cache, event_types=TEAM_SIDE_EVENTS)
    envelope = EventEnvelope(event_type="tournament.updated", payload={})

    result = await handler.handle(handler.parse(envelope), envelope)

    assert isinstance(result, Success)
    assert cache.ops == []


def test_handler_names_and_cross_service_subscriptions():
    handler = CacheInvalidationHandler(router=build_router("results"), cache=None, event_types=RESULTS_SIDE_EVENTS)
    assert handler.name == "results_cache_invalidation"
    assert "standings.updated" in handler.event_types
    assert "sports.standings.updated" in handler.event_types
