"""
backend/tourneyflow/services/standings_service.py

Purpose:
    Persistence around the pure standings calculator: match result upserts,
    per-match standings refresh, full tournament recompute and ranked reads.

    Per-match refresh rebuilds the two involved teams' rows from every stored
    result of the tournament instead of incrementing counters, so replays and
    score corrections land on the same numbers a full recompute would.

    Concurrent writers for the same tournament can interleave between the
    results read and the rows write. Every write is therefore followed by a
    second read of the results; when the set moved underneath, the rows are
    rebuilt from the newer snapshot. The last writer always re-verifies, so
    stored rows converge on a full recompute of the stored results.

    A full recompute first imports completed matches the match service knows
    about but this service never stored (lost or dead-lettered events).

Dependencies:
    - pydantic
    - tourneyflow.services.standings_calculator
    - tourneyflow.services.public_cache
    - tourneyflow.clients.sibling_services
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from tourneyflow.models.results import MatchResult, Standing
from tourneyflow.services.cache_router import INTERNAL_STANDINGS_KEY
from tourneyflow.services.standings_calculator import (
    build_table,
    ensure_teams_registered,
    rank_standings,
)
from tourneyflow.utils import normalize_id, parse_datetime, utcnow

logger = logging.getLogger("tourneyflow.standings")

REFRESH_MAX_ROUNDS = 5


class StandingsConflictError(RuntimeError):
    """Match results kept changing while standings rows were being written."""

    def __init__(self, tournament_id: str, rounds: int) -> None:
        super().__init__(f"results of tournament {tournament_id} changed during {rounds} standings refreshes")
        self.tournament_id = tournament_id
        self.rounds = rounds


def _fingerprint(results: Iterable[MatchResult]) -> list[tuple[Any, ...]]:
    return sorted(
        (r.match_id, r.home_team_id, r.away_team_id, r.home_score, r.away_score) for r in results
    )


def _sibling_result(tournament_id: str, match: dict[str, Any]) -> MatchResult | None:
    """Map a match-service record onto a MatchResult; None when it is unusable."""
    raw_id = match.get("match_id") if match.get("match_id") is not None else match.get("id")
    try:
        return MatchResult(
            match_id=normalize_id(raw_id),
            tournament_id=tournament_id,
            home_team_id=normalize_id(match.get("home_team_id")),
            away_team_id=normalize_id(match.get("away_team_id")),
            home_score=match.get("home_score"),
            away_score=match.get("away_score"),
            completed_at=parse_datetime(match.get("completed_at")) or utcnow(),
        )
    except ValidationError as exc:
        logger.warning(
            "Skipping unusable completed match tournament_id=%s match_id=%s errors=%d",
            tournament_id,
            raw_id,
            exc.error_count(),
        )
        return None


class StandingsService:
    def __init__(
        self,
        db,
        *,
        cache=None,
        siblings=None,
        internal_ttl_seconds: int = 3600,
        max_refresh_rounds: int = REFRESH_MAX_ROUNDS,
    ) -> None:
        self._db = db
        self._cache = cache
        self._siblings = siblings
        self._internal_ttl = max(1, int(internal_ttl_seconds))
        self._max_rounds = max(1, int(max_refresh_rounds))

    async def tournament_team_ids(self, tournament_id: str) -> set[str] | None:
        """Registered team set, or None when no source knows it."""
        docs = await self._db.tournament_teams.find(
            {"tournament_id": tournament_id}, {"team_id": 1}
        ).to_list(length=None)
        team_ids = {normalize_id(doc.get("team_id")) for doc in docs} - {None}
        if team_ids:
            return team_ids
        if self._siblings is None:
            return None
        tournament = await self._siblings.get_tournament(tournament_id)
        raw = (tournament or {}).get("team_ids")
        if isinstance(raw, list) and raw:
            return {normalize_id(t) for t in raw} - {None}
        return None

    async def check_teams(self, result: MatchResult) -> None:
        ensure_teams_registered(result, await self.tournament_team_ids(result.tournament_id))

    async def upsert_match_result(self, result: MatchResult) -> bool:
        """Insert or overwrite the result for its match. True when newly created."""
        now = utcnow()
        update = await self._db.match_results.update_one(
            {"match_id": result.match_id},
            {
                "$set": {**result.model_dump(), "updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )
        return getattr(update, "upserted_id", None) is not None

    async def completed_results(self, tournament_id: str) -> list[MatchResult]:
        docs = await self._db.match_results.find({"tournament_id": tournament_id}).to_list(length=None)
        return [MatchResult.model_validate(doc) for doc in docs]

    async def apply_match(self, result: MatchResult) -> dict[str, Standing]:
        """Refresh both teams' rows. Callers run check_teams before persisting the result.

        Raises StandingsConflictError when the results never settle within
        the configured number of rounds.
        """
        tournament_id = result.tournament_id
        snapshot = await self.completed_results(tournament_id)
        for round_no in range(1, self._max_rounds + 1):
            table = build_table(snapshot)
            now = utcnow()
            rows: dict[str, Standing] = {}
            for team_id in (result.home_team_id, result.away_team_id):
                row = table.get(team_id) or Standing(tournament_id=tournament_id, team_id=team_id)
                await self._db.standings.update_one(
                    {"tournament_id": tournament_id, "team_id": team_id},
                    {
                        "$set": {**row.counters(), "updated_at": now},
                        "$setOnInsert": {"created_at": now},
                    },
                    upsert=True,
                )
                rows[team_id] = row
            current = await self.completed_results(tournament_id)
            if _fingerprint(current) == _fingerprint(snapshot):
                logger.info(
                    "Standings updated tournament_id=%s match_id=%s home=%s(%d pts) away=%s(%d pts) rounds=%d",
                    tournament_id,
                    result.match_id,
                    result.home_team_id,
                    rows[result.home_team_id].points,
                    result.away_team_id,
                    rows[result.away_team_id].points,
                    round_no,
                )
                return rows
            logger.info(
                "Results changed during standings refresh tournament_id=%s match_id=%s round=%d",
                tournament_id,
                result.match_id,
                round_no,
            )
            snapshot = current
        raise StandingsConflictError(tournament_id, self._max_rounds)

    async def import_completed_matches(self, tournament_id: str) -> int:
        """Store completed matches the match service has but this service lacks."""
        if self._siblings is None:
            return 0
        matches = await self._siblings.get_completed_matches(tournament_id)
        if matches is None:
            logger.warning("Completed matches unavailable, using stored results tournament_id=%s", tournament_id)
            return 0
        stored = await self._db.match_results.find({"tournament_id": tournament_id}, {"match_id": 1}).to_list(
            length=None
        )
        known = {doc.get("match_id") for doc in stored}
        imported = 0
        for match in matches:
            result = _sibling_result(tournament_id, match)
            if result is None or result.match_id in known:
                continue
            await self.upsert_match_result(result)
            known.add(result.match_id)
            imported += 1
        if imported:
            logger.info("Imported missing match results tournament_id=%s count=%d", tournament_id, imported)
        return imported

    async def recompute_tournament(self, tournament_id: str) -> dict[str, int]:
        await self.import_completed_matches(tournament_id)
        results = await self.completed_results(tournament_id)
        for round_no in range(1, self._max_rounds + 1):
            table = build_table(results)
            now = utcnow()
            await self._db.standings.delete_many({"tournament_id": tournament_id})
            docs = [
                {
                    "tournament_id": tournament_id,
                    "team_id": row.team_id,
                    **row.counters(),
                    "created_at": now,
                    "updated_at": now,
                }
                for row in table.values()
            ]
            if docs:
                await self._db.standings.insert_many(docs)
            current = await self.completed_results(tournament_id)
            if _fingerprint(current) == _fingerprint(results):
                break
            logger.info("Results changed during recompute tournament_id=%s round=%d", tournament_id, round_no)
            results = current
        else:
            raise StandingsConflictError(tournament_id, self._max_rounds)
        await self.forget_ranked(tournament_id)
        logger.info(
            "Standings recomputed tournament_id=%s teams=%d matches=%d",
            tournament_id,
            len(docs),
            len(results),
        )
        return {"teams": len(docs), "matches": len(results)}

    async def forget_ranked(self, tournament_id: str) -> bool:
        """Drop the internal ranked-standings memo; eviction errors propagate."""
        if self._cache is None:
            return False
        return await self._cache.forget(INTERNAL_STANDINGS_KEY.format(tournament_id=tournament_id))

    async def load_rows(self, tournament_id: str) -> list[Standing]:
        docs = await self._db.standings.find({"tournament_id": tournament_id}).sort("_id", 1).to_list(length=None)
        return [Standing.model_validate(doc) for doc in docs]

    async def team_ids_in_standings(self, tournament_id: str) -> list[str]:
        return [row.team_id for row in await self.load_rows(tournament_id)]

    async def get_ranked_standings(self, tournament_id: str) -> list[dict[str, Any]]:
        async def _compute() -> list[dict[str, Any]]:
            return [row.model_dump() for row in rank_standings(await self.load_rows(tournament_id))]

        if self._cache is None:
            return await _compute()
        return await self._cache.remember(
            INTERNAL_STANDINGS_KEY.format(tournament_id=tournament_id),
            self._internal_ttl,
            _compute,
            tags=[],
        )
