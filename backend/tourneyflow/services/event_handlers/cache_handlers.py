"""
backend/tourneyflow/services/event_handlers/cache_handlers.py

Purpose:
    Cache invalidation subscribers, one per service boundary. Each turns an
    event into a CacheInvalidationTarget via the router and applies it to the
    public cache. Enumerable ids (standings teams, tournament matches) are
    looked up here so the router itself stays free of I/O.

Dependencies:
    - pymongo
    - tourneyflow.services.cache_router
    - tourneyflow.services.public_cache
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from pymongo.errors import PyMongoError

from tourneyflow.models.events import (
    EventEnvelope,
    InvalidationPayload,
    parse_payload,
    with_cross_service_variants,
)
from tourneyflow.services.cache_router import CacheInvalidationRouter, CacheInvalidationTarget
from tourneyflow.services.event_handlers.base import EventHandler
from tourneyflow.services.retry_orchestrator import HandlerResult, RetryableFailure, Success

logger = logging.getLogger("tourneyflow.event_handlers.cache")

MATCH_SIDE_EVENTS = (
    "match.created",
    "match.updated",
    "match.started",
    "match.completed",
    "match.status.changed",
    "match.event.recorded",
    "match.event_added",
    "match.score.updated",
    "match.deleted",
    "match.cancelled",
    "match.postponed",
    "team.updated",
    "tournament.updated",
    "tournament.status.changed",
    "tournament.deleted",
)

RESULTS_SIDE_EVENTS = (
    "standings.updated",
    "standings.recalculated",
    "statistics.updated",
    "match.completed",
    "match.event.recorded",
    "tournament.updated",
    "tournament.status.changed",
)

TEAM_SIDE_EVENTS = (
    "team.created",
    "team.updated",
    "team.deleted",
    "player.created",
    "player.updated",
    "player.deleted",
    "tournament.updated",
)


async def apply_invalidation(cache, target: CacheInvalidationTarget) -> dict[str, int]:
    """Exact keys first, then tags, then patterns."""
    keys, tags, patterns = target.ordered()
    keys_evicted = 0
    for key in keys:
        if await cache.forget(key):
            keys_evicted += 1
    tag_evictions = int(await cache.forget_by_tags(tags) or 0) if tags else 0
    pattern_evictions = 0
    for pattern in patterns:
        pattern_evictions += int(await cache.forget_by_pattern(pattern) or 0)
    return {
        "keys": len(keys),
        "keys_evicted": keys_evicted,
        "tags": len(tags),
        "tag_evictions": tag_evictions,
        "patterns": len(patterns),
        "pattern_evictions": pattern_evictions,
    }


class CacheInvalidationHandler(EventHandler):
    def __init__(
        self,
        *,
        router: CacheInvalidationRouter,
        cache,
        event_types: Iterable[str],
        standings=None,
        schedule=None,
    ) -> None:
        self.name = f"{router.name}_cache_invalidation"
        self.event_types = with_cross_service_variants(*event_types)
        self._router = router
        self._cache = cache
        self._standings = standings
        self._schedule = schedule

    def parse(self, envelope: EventEnvelope) -> InvalidationPayload:
        return parse_payload(InvalidationPayload, envelope)

    async def handle(self, payload: InvalidationPayload, envelope: EventEnvelope) -> HandlerResult:
        data = await self._enrich(envelope.canonical_type, payload.model_dump(exclude_none=True))
        target = self._router.route(envelope.event_type, data)
        if target.is_empty():
            return Success({"keys": 0, "tags": 0, "patterns": 0})
        try:
            counts = await apply_invalidation(self._cache, target)
        except PyMongoError as exc:
            return RetryableFailure(f"{type(exc).__name__}: {exc}")
        logger.info(
            "Cache invalidated handler=%s event_id=%s event_type=%s keys=%d tags=%d patterns=%d",
            self.name,
            envelope.event_id,
            envelope.event_type,
            counts["keys"],
            counts["tags"],
            counts["patterns"],
        )
        return Success(counts)

    async def _enrich(self, event_type: str, data: dict[str, Any]) -> dict[str, Any]:
        tournament_id = data.get("tournament_id")
        if not tournament_id:
            return data
        try:
            if self._standings is not None and event_type.startswith("standings.") and not data.get("team_ids"):
                data["team_ids"] = await self._standings.team_ids_in_standings(tournament_id)
            if self._schedule is not None and event_type.startswith("tournament.") and not data.get("match_ids"):
                data["match_ids"] = await self._schedule.match_ids_for_tournament(tournament_id)
        except PyMongoError as exc:
            # Tags and patterns still apply; only the exact per-id keys are skipped.
            logger.warning(
                "Cache key enumeration failed handler=%s tournament_id=%s error=%s",
                self.name,
                tournament_id,
                exc,
            )
        return data
