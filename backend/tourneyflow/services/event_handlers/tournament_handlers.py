"""
backend/tourneyflow/services/event_handlers/tournament_handlers.py

Purpose:
    Tournament lifecycle cascades. Completion cancels whatever is still
    scheduled and rebuilds standings from scratch; cancellation and deletion
    cancel scheduled and running matches.

Dependencies:
    - tourneyflow.services.match_schedule_service
    - tourneyflow.services.standings_service
    - tourneyflow.services.event_publisher
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pymongo.errors import PyMongoError

from tourneyflow.models.events import (
    STANDINGS_RECALCULATED,
    TOURNAMENT_DELETED,
    TOURNAMENT_STATUS_CHANGED,
    EventEnvelope,
    StandingsRecalculatedPayload,
    TournamentDeletedPayload,
    TournamentStatusChangedPayload,
    parse_payload,
    with_cross_service_variants,
)
from tourneyflow.services.event_handlers.base import EventHandler
from tourneyflow.services.match_schedule_service import STATUS_IN_PROGRESS, STATUS_SCHEDULED
from tourneyflow.services.retry_orchestrator import HandlerResult, RetryableFailure, Success
from tourneyflow.services.standings_service import StandingsConflictError

logger = logging.getLogger("tourneyflow.event_handlers.tournament")

_CANCEL_ON_COMPLETED = (STATUS_SCHEDULED,)
_CANCEL_ON_CANCELLED = (STATUS_SCHEDULED, STATUS_IN_PROGRESS)


class TournamentStatusChangedHandler(EventHandler):
    name = "tournament_status_changed"
    event_types = with_cross_service_variants(TOURNAMENT_STATUS_CHANGED, TOURNAMENT_DELETED)

    def __init__(
        self,
        *,
        schedule,
        standings,
        publisher,
        auto_recalculate: bool = True,
        recalc_max_attempts: int = 3,
        recalc_base_delay_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._schedule = schedule
        self._standings = standings
        self._publisher = publisher
        self._auto_recalculate = auto_recalculate
        self._recalc_max_attempts = max(1, int(recalc_max_attempts))
        self._recalc_base_delay = max(0.0, float(recalc_base_delay_seconds))
        self._sleep = sleep

    def parse(self, envelope: EventEnvelope) -> TournamentStatusChangedPayload:
        if envelope.canonical_type == TOURNAMENT_DELETED:
            deleted = parse_payload(TournamentDeletedPayload, envelope)
            return TournamentStatusChangedPayload.model_validate(
                {"tournament_id": deleted.tournament_id, "new_status": "deleted"}
            )
        return parse_payload(TournamentStatusChangedPayload, envelope)

    async def handle(self, payload: TournamentStatusChangedPayload, envelope: EventEnvelope) -> HandlerResult:
        tournament_id = payload.tournament_id
        status = payload.new_status
        summary: dict[str, Any] = {"tournament_id": tournament_id, "status": status, "cancelled_matches": 0}
        try:
            if status == "completed":
                summary["cancelled_matches"] = await self._schedule.cancel_matches(
                    tournament_id,
                    statuses=_CANCEL_ON_COMPLETED,
                    reason="tournament_completed",
                )
                if self._auto_recalculate:
                    recalc = await self._recalculate(tournament_id)
                    if recalc is None:
                        return RetryableFailure(f"standings recalculation failed for tournament {tournament_id}")
                    summary["recalculated"] = recalc
                    await self._publisher.publish(
                        STANDINGS_RECALCULATED,
                        StandingsRecalculatedPayload(tournament_id=tournament_id, **recalc),
                        correlation_id=envelope.correlation_id,
                    )
            elif status in ("cancelled", "deleted"):
                summary["cancelled_matches"] = await self._schedule.cancel_matches(
                    tournament_id,
                    statuses=_CANCEL_ON_CANCELLED,
                    reason=f"tournament_{status}",
                )
            else:
                logger.info("Tournament status=%s has no cascade tournament_id=%s", status, tournament_id)
        except PyMongoError as exc:
            return RetryableFailure(f"{type(exc).__name__}: {exc}")
        return Success(summary)

    async def _recalculate(self, tournament_id: str) -> dict[str, int] | None:
        for attempt in range(1, self._recalc_max_attempts + 1):
            try:
                return await self._standings.recompute_tournament(tournament_id)
            except (PyMongoError, StandingsConflictError) as exc:
                logger.warning(
                    "Standings recalculation failed tournament_id=%s attempt=%d/%d error=%s",
                    tournament_id,
                    attempt,
                    self._recalc_max_attempts,
                    exc,
                )
            if attempt < self._recalc_max_attempts:
                await self._sleep(self._recalc_base_delay * (2 ** (attempt - 1)))
        logger.critical(
            "ALERT: standings recalculation exhausted tournament_id=%s attempts=%d",
            tournament_id,
            self._recalc_max_attempts,
        )
        return None
