"""
backend/tourneyflow/models/events.py

Purpose:
    Event envelope and typed payload contracts for the pipeline. Payloads are
    validated once at the handler boundary; handler bodies only ever see the
    typed structs.

Dependencies:
    - pydantic
    - tourneyflow.utils
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, TypeVar

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from tourneyflow.utils import ensure_utc, normalize_id, utcnow

CROSS_SERVICE_PREFIX = "sports."

MATCH_COMPLETED = "match.completed"
TOURNAMENT_STATUS_CHANGED = "tournament.status.changed"
TOURNAMENT_DELETED = "tournament.deleted"
STANDINGS_UPDATED = "sports.standings.updated"
STANDINGS_RECALCULATED = "sports.standings.recalculated"
STATISTICS_UPDATED = "sports.statistics.updated"


def make_event_id() -> str:
    return str(uuid.uuid4())


def make_correlation_id() -> str:
    return str(uuid.uuid4())


def canonical_event_type(event_type: str) -> str:
    """`sports.match.completed` and `match.completed` are the same event."""
    value = str(event_type or "").strip()
    if value.startswith(CROSS_SERVICE_PREFIX):
        return value[len(CROSS_SERVICE_PREFIX):]
    return value


def with_cross_service_variants(*event_types: str) -> tuple[str, ...]:
    out: list[str] = []
    for event_type in event_types:
        base = canonical_event_type(event_type)
        for candidate in (base, f"{CROSS_SERVICE_PREFIX}{base}"):
            if candidate not in out:
                out.append(candidate)
    return tuple(out)


class InvalidPayloadError(ValueError):
    """Payload failed schema validation; retrying cannot fix it."""


def _coerce_entity_id(value: Any) -> str:
    if isinstance(value, (int, str)) and not isinstance(value, bool):
        normalized = normalize_id(value)
        if normalized is not None:
            return normalized
    raise ValueError("must be a non-empty integer or string id")


def _coerce_score(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("must be numeric")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValueError("must be numeric")


EntityId = Annotated[str, BeforeValidator(_coerce_entity_id)]
Score = Annotated[int, BeforeValidator(_coerce_score), Field(ge=0)]


class EventEnvelope(BaseModel):
    """Immutable unit of work delivered by the bus."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=make_event_id, min_length=1)
    event_type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)
    service: str = "unknown"
    timestamp: datetime | None = None
    version: str = "1.0"
    correlation_id: str = Field(default_factory=make_correlation_id)

    @field_validator("event_id", mode="before")
    @classmethod
    def _stringify_event_id(cls, value: Any) -> Any:
        if isinstance(value, uuid.UUID):
            return str(value)
        return value

    @property
    def canonical_type(self) -> str:
        return canonical_event_type(self.event_type)


def normalize_event_time(event: EventEnvelope) -> EventEnvelope:
    updates: dict[str, Any] = {"received_at": ensure_utc(event.received_at)}
    if event.timestamp is not None:
        updates["timestamp"] = ensure_utc(event.timestamp)
    return event.model_copy(update=updates)


PayloadT = TypeVar("PayloadT", bound=BaseModel)


def parse_payload(model_cls: type[PayloadT], envelope: EventEnvelope) -> PayloadT:
    try:
        return model_cls.model_validate(envelope.payload)
    except ValidationError as exc:
        problems = []
        for err in exc.errors():
            field = ".".join(str(part) for part in err.get("loc", ())) or "payload"
            problems.append(f"{field}: {err.get('msg', 'invalid')}")
        raise InvalidPayloadError("; ".join(problems)) from exc


# ---------------------------------------------------------------------------
# Inbound payloads
# ---------------------------------------------------------------------------


class MatchCompletedPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    match_id: EntityId
    tournament_id: EntityId
    home_team_id: EntityId
    away_team_id: EntityId
    home_score: Score
    away_score: Score
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _distinct_teams(self) -> "MatchCompletedPayload":
        if self.home_team_id == self.away_team_id:
            raise ValueError("home_team_id and away_team_id must differ")
        return self


class TournamentStatusChangedPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tournament_id: EntityId
    new_status: str = Field(
        min_length=1,
        validation_alias=AliasChoices("new_status", "status"),
    )
    old_status: str | None = Field(
        default=None,
        validation_alias=AliasChoices("old_status", "previous_status"),
    )
    reason: str | None = None

    @field_validator("new_status", "old_status")
    @classmethod
    def _normalize_status(cls, value: str | None) -> str | None:
        if value is None:
            return None
        status = value.strip().lower()
        if not status:
            raise ValueError("must not be blank")
        # Some publishers still emit the legacy "finished" state.
        return "completed" if status == "finished" else status


class TournamentDeletedPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tournament_id: EntityId


class InvalidationPayload(BaseModel):
    """Loose view used by cache handlers: only the ids they key on are typed."""

    model_config = ConfigDict(extra="allow")

    match_id: EntityId | None = None
    tournament_id: EntityId | None = None
    team_id: EntityId | None = None
    home_team_id: EntityId | None = None
    away_team_id: EntityId | None = None
    player_id: EntityId | None = None
    venue_id: EntityId | None = None
    status: str | None = None
    new_status: str | None = None
    team_ids: list[EntityId] = Field(default_factory=list)
    match_ids: list[EntityId] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Derived (outbound) payloads
# ---------------------------------------------------------------------------


class StandingsUpdatedPayload(BaseModel):
    tournament_id: str
    match_id: str | None = None
    home_team_id: str | None = None
    away_team_id: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class StatisticsUpdatedPayload(BaseModel):
    tournament_id: str
    match_id: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class StandingsRecalculatedPayload(BaseModel):
    tournament_id: str
    teams: int = 0
    matches: int = 0
    recalculated_at: datetime = Field(default_factory=utcnow)
