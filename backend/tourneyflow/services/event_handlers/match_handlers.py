"""
backend/tourneyflow/services/event_handlers/match_handlers.py

Purpose:
    Match-completed processing: persist the result, refresh the two teams'
    standings rows, then announce the change to downstream consumers.

Dependencies:
    - tourneyflow.services.standings_service
    - tourneyflow.services.event_publisher
    - tourneyflow.clients.sibling_services
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pymongo.errors import PyMongoError

from tourneyflow.models.events import (
    MATCH_COMPLETED,
    STANDINGS_UPDATED,
    STATISTICS_UPDATED,
    EventEnvelope,
    MatchCompletedPayload,
    StandingsUpdatedPayload,
    StatisticsUpdatedPayload,
    parse_payload,
    with_cross_service_variants,
)
from tourneyflow.models.results import MatchResult
from tourneyflow.services.event_handlers.base import EventHandler
from tourneyflow.services.retry_orchestrator import (
    REASON_DATA_CONSISTENCY,
    FatalFailure,
    HandlerResult,
    RetryableFailure,
    Success,
)
from tourneyflow.services.standings_calculator import TeamNotInTournamentError
from tourneyflow.services.standings_service import StandingsConflictError
from tourneyflow.utils import parse_datetime, utcnow

logger = logging.getLogger("tourneyflow.event_handlers.match")


class MatchCompletedHandler(EventHandler):
    name = "match_completed"
    event_types = with_cross_service_variants(MATCH_COMPLETED)

    def __init__(self, *, db, standings, publisher, siblings=None) -> None:
        self._db = db
        self._standings = standings
        self._publisher = publisher
        self._siblings = siblings

    def parse(self, envelope: EventEnvelope) -> MatchCompletedPayload:
        return parse_payload(MatchCompletedPayload, envelope)

    async def fallback_is_processed(self, envelope: EventEnvelope) -> bool:
        doc = await self._db.match_results.find_one({"source_event_id": envelope.event_id}, {"_id": 1})
        return doc is not None

    async def handle(self, payload: MatchCompletedPayload, envelope: EventEnvelope) -> HandlerResult:
        try:
            result = await self._build_result(payload, envelope)
            await self._standings.check_teams(result)
            created = await self._standings.upsert_match_result(result)
            rows = await self._standings.apply_match(result)
            await self._standings.forget_ranked(result.tournament_id)
        except TeamNotInTournamentError as exc:
            logger.error(
                "Rejected match result event_id=%s match_id=%s tournament_id=%s error=%s",
                envelope.event_id,
                payload.match_id,
                payload.tournament_id,
                exc,
            )
            return FatalFailure(REASON_DATA_CONSISTENCY, str(exc))
        except (PyMongoError, httpx.HTTPError, StandingsConflictError) as exc:
            return RetryableFailure(f"{type(exc).__name__}: {exc}")

        await self._publisher.publish(
            STANDINGS_UPDATED,
            StandingsUpdatedPayload(
                tournament_id=result.tournament_id,
                match_id=result.match_id,
                home_team_id=result.home_team_id,
                away_team_id=result.away_team_id,
            ),
            correlation_id=envelope.correlation_id,
        )
        await self._publisher.publish(
            STATISTICS_UPDATED,
            StatisticsUpdatedPayload(tournament_id=result.tournament_id, match_id=result.match_id),
            correlation_id=envelope.correlation_id,
        )
        return Success(
            {
                "match_id": result.match_id,
                "tournament_id": result.tournament_id,
                "created": created,
                "home_points": rows[result.home_team_id].points,
                "away_points": rows[result.away_team_id].points,
            }
        )

    async def _build_result(self, payload: MatchCompletedPayload, envelope: EventEnvelope) -> MatchResult:
        match_data: dict[str, Any] = {}
        if self._siblings is not None:
            match_data = await self._siblings.get_match(payload.match_id) or {}
        status = str(match_data.get("status") or "").lower()
        if status and status != "completed":
            logger.warning(
                "Match service reports status=%s for completed match_id=%s; using event payload",
                status,
                payload.match_id,
            )
        completed_at = (
            payload.completed_at
            or parse_datetime(match_data.get("completed_at"))
            or envelope.timestamp
            or utcnow()
        )
        return MatchResult(
            match_id=payload.match_id,
            tournament_id=payload.tournament_id,
            home_team_id=payload.home_team_id,
            away_team_id=payload.away_team_id,
            home_score=payload.home_score,
            away_score=payload.away_score,
            completed_at=completed_at,
            source_event_id=envelope.event_id,
        )
