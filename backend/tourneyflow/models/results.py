"""
backend/tourneyflow/models/results.py

Purpose:
    Persisted records owned by the pipeline: match results, standings rows,
    idempotency ledger rows and dead-letter entries.

Dependencies:
    - pydantic
    - tourneyflow.utils
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tourneyflow.utils import ensure_utc, utcnow

POINTS_PER_WIN = 3
POINTS_PER_DRAW = 1

DeadLetterReason = Literal["invalid_payload", "data_consistency_error", "max_retries_exceeded"]


class MatchResult(BaseModel):
    match_id: str
    tournament_id: str
    home_team_id: str
    away_team_id: str
    home_score: int = Field(ge=0)
    away_score: int = Field(ge=0)
    completed_at: datetime
    source_event_id: str | None = None

    @field_validator("completed_at")
    @classmethod
    def _aware_completed_at(cls, value: datetime) -> datetime:
        # Mongo hands back naive UTC datetimes.
        return ensure_utc(value)


class Standing(BaseModel):
    tournament_id: str
    team_id: str
    played: int = 0
    won: int = 0
    drawn: int = 0
    lost: int = 0
    goals_for: int = 0
    goals_against: int = 0
    points: int = 0

    @property
    def goal_difference(self) -> int:
        return self.goals_for - self.goals_against

    def counters(self) -> dict[str, int]:
        return {
            "played": self.played,
            "won": self.won,
            "drawn": self.drawn,
            "lost": self.lost,
            "goals_for": self.goals_for,
            "goals_against": self.goals_against,
            "points": self.points,
        }


class RankedStanding(BaseModel):
    position: int
    team_id: str
    played: int
    won: int
    drawn: int
    lost: int
    goals_for: int
    goals_against: int
    goal_difference: int
    points: int


class IdempotencyRecord(BaseModel):
    """One (handler, event) ledger row; `_id` is `<handler>:<event_id>`."""

    model_config = ConfigDict(populate_by_name=True)

    key: str = Field(alias="_id")
    state: Literal["processing", "processed"]
    started_at: datetime
    lock_expires_at: datetime
    expires_at: datetime
    result_summary: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime | None = None


class DeadLetterEntry(BaseModel):
    original_event: dict[str, Any]
    reason: DeadLetterReason
    error: str
    failed_at: datetime = Field(default_factory=utcnow)
    service: str
    handler: str | None = None
    attempts: int = 0
