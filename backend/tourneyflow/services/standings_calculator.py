"""
backend/tourneyflow/services/standings_calculator.py

Purpose:
    Pure standings arithmetic. Folding completed match results into a table of
    per-team rows, and ranking that table with the league tie-break order
    (points, goal difference, goals scored, then first appearance).

Dependencies:
    - tourneyflow.models.results
"""

from __future__ import annotations

from collections.abc import Collection, Iterable

from tourneyflow.models.results import (
    POINTS_PER_DRAW,
    POINTS_PER_WIN,
    MatchResult,
    RankedStanding,
    Standing,
)


class TeamNotInTournamentError(ValueError):
    def __init__(self, tournament_id: str, team_id: str) -> None:
        super().__init__(f"team {team_id} is not registered in tournament {tournament_id}")
        self.tournament_id = tournament_id
        self.team_id = team_id


def ensure_teams_registered(result: MatchResult, team_ids: Collection[str] | None) -> None:
    """`None` means the tournament's team set is unknown; nothing to check against."""
    if team_ids is None:
        return
    for team_id in (result.home_team_id, result.away_team_id):
        if team_id not in team_ids:
            raise TeamNotInTournamentError(result.tournament_id, team_id)


def _row(table: dict[str, Standing], tournament_id: str, team_id: str) -> Standing:
    row = table.get(team_id)
    if row is None:
        row = Standing(tournament_id=tournament_id, team_id=team_id)
        table[team_id] = row
    return row


def apply_match(
    table: dict[str, Standing],
    result: MatchResult,
    team_ids: Collection[str] | None = None,
) -> dict[str, Standing]:
    """Add one completed result to both teams' rows in place."""
    ensure_teams_registered(result, team_ids)
    home = _row(table, result.tournament_id, result.home_team_id)
    away = _row(table, result.tournament_id, result.away_team_id)

    home.played += 1
    away.played += 1
    home.goals_for += result.home_score
    home.goals_against += result.away_score
    away.goals_for += result.away_score
    away.goals_against += result.home_score

    if result.home_score > result.away_score:
        home.won += 1
        away.lost += 1
    elif result.home_score < result.away_score:
        away.won += 1
        home.lost += 1
    else:
        home.drawn += 1
        away.drawn += 1

    for row in (home, away):
        row.points = POINTS_PER_WIN * row.won + POINTS_PER_DRAW * row.drawn
    return table


def build_table(
    results: Iterable[MatchResult],
    team_ids: Collection[str] | None = None,
) -> dict[str, Standing]:
    """Full recompute from scratch. One result per match_id; the last one seen wins."""
    by_match: dict[str, MatchResult] = {}
    for result in results:
        by_match[result.match_id] = result
    ordered = sorted(by_match.values(), key=lambda r: (r.completed_at, r.match_id))
    table: dict[str, Standing] = {}
    for result in ordered:
        apply_match(table, result, team_ids)
    return table


def rank_standings(rows: Iterable[Standing]) -> list[RankedStanding]:
    # sorted() is stable, so equal rows keep their input order.
    ordered = sorted(rows, key=lambda r: (-r.points, -r.goal_difference, -r.goals_for))
    return [
        RankedStanding(
            position=idx,
            team_id=row.team_id,
            played=row.played,
            won=row.won,
            drawn=row.drawn,
            lost=row.lost,
            goals_for=row.goals_for,
            goals_against=row.goals_against,
            goal_difference=row.goal_difference,
            points=row.points,
        )
        for idx, row in enumerate(ordered, start=1)
    ]
