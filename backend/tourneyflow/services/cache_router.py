"""
backend/tourneyflow/services/cache_router.py

Purpose:
    Pure mapping from (event type, payload) to the cache entries that event
    makes stale. No I/O: the same input always yields the same target, which
    callers apply as exact keys first, then tags, then glob patterns.

    Three rule profiles exist, one per service boundary that owns a slice of
    the public read cache:
        match side    match.*, team.*, tournament.*
        results side  standings.*, statistics.*, match.*, tournament.*
        team side     team.*, player.*, tournament.*

Dependencies:
    - tourneyflow.models.events
    - tourneyflow.utils
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from tourneyflow.models.events import canonical_event_type
from tourneyflow.utils import normalize_id

logger = logging.getLogger("tourneyflow.cache_router")

DEFAULT_KEY_PREFIX = "public_api"

# Internal memo keys live outside the tag system and are only ever evicted by key.
INTERNAL_STANDINGS_KEY = "tournament_standings:{tournament_id}"
INTERNAL_STATISTICS_KEY = "tournament_statistics:{tournament_id}"

_MATCH_EVENT_ACTIONS = frozenset({"event.recorded", "event_added", "score.updated"})
_MATCH_REMOVAL_ACTIONS = frozenset({"deleted", "cancelled", "postponed"})
_TOURNAMENT_CLOSING_STATUSES = frozenset({"completed", "cancelled"})


@dataclass(frozen=True)
class CacheInvalidationTarget:
    tags: frozenset[str] = field(default_factory=frozenset)
    patterns: frozenset[str] = field(default_factory=frozenset)
    keys: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def build(
        cls,
        *,
        tags: Iterable[str] = (),
        patterns: Iterable[str] = (),
        keys: Iterable[str] = (),
    ) -> "CacheInvalidationTarget":
        return cls(
            tags=frozenset(t for t in tags if t),
            patterns=frozenset(p for p in patterns if p),
            keys=frozenset(k for k in keys if k),
        )

    def is_empty(self) -> bool:
        return not (self.tags or self.patterns or self.keys)

    def ordered(self) -> tuple[list[str], list[str], list[str]]:
        """Application order: keys, tags, patterns (each sorted for stable logs)."""
        return sorted(self.keys), sorted(self.tags), sorted(self.patterns)


@dataclass(frozen=True)
class InvalidationContext:
    event_type: str
    domain: str
    action: str
    key_prefix: str = DEFAULT_KEY_PREFIX
    match_id: str | None = None
    tournament_id: str | None = None
    team_id: str | None = None
    home_team_id: str | None = None
    away_team_id: str | None = None
    player_id: str | None = None
    venue_id: str | None = None
    status: str | None = None
    team_ids: tuple[str, ...] = ()
    match_ids: tuple[str, ...] = ()

    @classmethod
    def from_payload(
        cls,
        event_type: str,
        payload: Mapping[str, Any],
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ) -> "InvalidationContext":
        canonical = canonical_event_type(event_type)
        domain, _, action = canonical.partition(".")
        status = payload.get("new_status") or payload.get("status")
        return cls(
            event_type=canonical,
            domain=domain,
            action=action,
            key_prefix=key_prefix,
            match_id=normalize_id(payload.get("match_id")),
            tournament_id=normalize_id(payload.get("tournament_id")),
            team_id=normalize_id(payload.get("team_id")),
            home_team_id=normalize_id(payload.get("home_team_id")),
            away_team_id=normalize_id(payload.get("away_team_id")),
            player_id=normalize_id(payload.get("player_id")),
            venue_id=normalize_id(payload.get("venue_id")),
            status=str(status).strip().lower() if status else None,
            team_ids=_id_tuple(payload.get("team_ids")),
            match_ids=_id_tuple(payload.get("match_ids")),
        )

    @property
    def involved_teams(self) -> tuple[str, ...]:
        return _unique(t for t in (self.team_id, self.home_team_id, self.away_team_id) if t)

    @property
    def match_teams(self) -> tuple[str, ...]:
        return _unique(t for t in (self.home_team_id, self.away_team_id) if t)

    @property
    def all_teams(self) -> tuple[str, ...]:
        return _unique((*self.team_ids, *self.involved_teams))

    def public_key(self, *parts: str) -> str:
        return ":".join((self.key_prefix, *parts))


def _id_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        return ()
    return _unique(v for v in (normalize_id(item) for item in value) if v)


def _unique(values: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


RouteRule = Callable[[InvalidationContext], CacheInvalidationTarget]


# ---------------------------------------------------------------------------
# Results side
# ---------------------------------------------------------------------------


def _team_standing_tags(teams: Iterable[str]) -> list[str]:
    tags: list[str] = []
    for team in teams:
        tags.extend((f"team:{team}:standing", f"public:team:{team}:standing"))
    return tags


def _results_standings(ctx: InvalidationContext) -> CacheInvalidationTarget:
    t = ctx.tournament_id
    tags = ["public:standings", *_team_standing_tags(ctx.involved_teams)]
    patterns: list[str] = []
    keys = [ctx.public_key("team", team, "standing") for team in ctx.all_teams]
    if t:
        tags += [
            f"tournament:{t}:standings",
            f"public:tournament:{t}:standings",
            f"public:tournament:{t}:statistics",
        ]
        patterns.append(ctx.public_key("tournament", t, "standings", "*"))
        keys += [
            INTERNAL_STANDINGS_KEY.format(tournament_id=t),
            ctx.public_key("tournament", t, "standings"),
        ]
    return CacheInvalidationTarget.build(tags=tags, patterns=patterns, keys=keys)


def _results_statistics(ctx: InvalidationContext) -> CacheInvalidationTarget:
    t = ctx.tournament_id
    if not t:
        return CacheInvalidationTarget.build(tags=["public:statistics"])
    return CacheInvalidationTarget.build(
        tags=[
            "public:statistics",
            f"tournament:{t}:statistics",
            f"public:tournament:{t}:statistics",
            f"public:tournament:{t}:scorers",
        ],
        patterns=[
            ctx.public_key("tournament", t, "statistics", "*"),
            ctx.public_key("tournament", t, "scorers", "*"),
        ],
        keys=[
            INTERNAL_STATISTICS_KEY.format(tournament_id=t),
            ctx.public_key("tournament", t, "statistics"),
            ctx.public_key("tournament", t, "scorers"),
        ],
    )


def _results_match(ctx: InvalidationContext) -> CacheInvalidationTarget:
    t = ctx.tournament_id
    tags = ["public:standings", *_team_standing_tags(ctx.match_teams)]
    keys = [ctx.public_key("team", team, "standing") for team in ctx.match_teams]
    if t:
        tags += [
            f"tournament:{t}:standings",
            f"public:tournament:{t}:standings",
            f"public:tournament:{t}:statistics",
            f"public:tournament:{t}:scorers",
        ]
        keys += [
            INTERNAL_STANDINGS_KEY.format(tournament_id=t),
            INTERNAL_STATISTICS_KEY.format(tournament_id=t),
        ]
    return CacheInvalidationTarget.build(tags=tags, keys=keys)


def _results_tournament(ctx: InvalidationContext) -> CacheInvalidationTarget:
    t = ctx.tournament_id
    if not t:
        return CacheInvalidationTarget()
    return CacheInvalidationTarget.build(
        tags=[
            f"tournament:{t}:standings",
            f"public:tournament:{t}:standings",
            f"public:tournament:{t}:statistics",
            f"public:tournament:{t}:scorers",
        ],
        patterns=[
            ctx.public_key("tournament", t, "standings", "*"),
            ctx.public_key("tournament", t, "statistics", "*"),
            ctx.public_key("tournament", t, "scorers", "*"),
        ],
        keys=[
            INTERNAL_STANDINGS_KEY.format(tournament_id=t),
            INTERNAL_STATISTICS_KEY.format(tournament_id=t),
            ctx.public_key("tournament", t, "standings"),
            ctx.public_key("tournament", t, "statistics"),
            ctx.public_key("tournament", t, "scorers"),
        ],
    )


RESULTS_SIDE_RULES: dict[str, RouteRule] = {
    "standings": _results_standings,
    "statistics": _results_statistics,
    "match": _results_match,
    "tournament": _results_tournament,
}


# ---------------------------------------------------------------------------
# Match side
# ---------------------------------------------------------------------------


def _match_list_tags(ctx: InvalidationContext) -> list[str]:
    action = ctx.action
    if action in _MATCH_EVENT_ACTIONS:
        return [f"public:match:{ctx.match_id}:events", "public:matches:live"]
    if action in ("started", "completed"):
        return ["public:matches:live", "public:matches:today"]
    if action == "status.changed" and ctx.status == "in_progress":
        return ["public:matches:live", "public:matches:today"]
    if action in _MATCH_REMOVAL_ACTIONS:
        return ["public:matches:live", "public:matches:today", "public:matches:upcoming"]
    return []


def _match_side_match(ctx: InvalidationContext) -> CacheInvalidationTarget:
    m = ctx.match_id
    t = ctx.tournament_id
    tags = ["public:matches"]
    patterns: list[str] = []
    keys: list[str] = []
    if t:
        tags.append(f"public:tournament:{t}:matches")
    if m:
        tags += [f"match:{m}", f"public:match:{m}", *_match_list_tags(ctx)]
        keys.append(ctx.public_key("match", m))
        if ctx.action in _MATCH_EVENT_ACTIONS:
            patterns.append(ctx.public_key("match", m, "events", "*"))
            keys.append(ctx.public_key("match", m, "events"))
        elif ctx.action == "completed":
            patterns.append(ctx.public_key("match", m, "*"))
            keys.append(ctx.public_key("match", m, "events"))
    if ctx.action == "completed" or ctx.action in _MATCH_REMOVAL_ACTIONS:
        for team in ctx.match_teams:
            tags.append(f"public:team:{team}:matches")
            keys.append(ctx.public_key("team", team, "matches"))
    return CacheInvalidationTarget.build(tags=tags, patterns=patterns, keys=keys)


def _match_side_team(ctx: InvalidationContext) -> CacheInvalidationTarget:
    tags = ["public:matches"]
    keys: list[str] = []
    if ctx.tournament_id:
        tags.append(f"public:tournament:{ctx.tournament_id}:matches")
    for team in ctx.involved_teams:
        tags += [f"public:team:{team}", f"public:team:{team}:matches"]
        keys.append(ctx.public_key("team", team, "matches"))
    return CacheInvalidationTarget.build(tags=tags, keys=keys)


def _match_side_tournament(ctx: InvalidationContext) -> CacheInvalidationTarget:
    t = ctx.tournament_id
    if not t:
        return CacheInvalidationTarget.build(tags=["public:tournaments"])
    tags = ["public:tournaments", f"public:tournament:{t}", f"public:tournament:{t}:matches"]
    if ctx.action == "deleted" or (
        ctx.action == "status.changed" and ctx.status in _TOURNAMENT_CLOSING_STATUSES
    ):
        # Open matches were just cancelled by the cascade.
        tags += ["public:matches:live", "public:matches:today", "public:matches:upcoming"]
    keys = [ctx.public_key("tournament", t), ctx.public_key("tournament", t, "matches")]
    if ctx.venue_id:
        keys.append(ctx.public_key("venue", ctx.venue_id))
    keys += [ctx.public_key("match", m) for m in ctx.match_ids]
    return CacheInvalidationTarget.build(
        tags=tags,
        patterns=[ctx.public_key("tournament", t, "matches", "*")],
        keys=keys,
    )


MATCH_SIDE_RULES: dict[str, RouteRule] = {
    "match": _match_side_match,
    "team": _match_side_team,
    "tournament": _match_side_tournament,
}


# ---------------------------------------------------------------------------
# Team side
# ---------------------------------------------------------------------------


def _team_side_team(ctx: InvalidationContext) -> CacheInvalidationTarget:
    tags = ["public:teams"]
    patterns: list[str] = []
    keys: list[str] = []
    if ctx.tournament_id:
        tags.append(f"public:tournament:{ctx.tournament_id}:teams")
        keys.append(ctx.public_key("tournament", ctx.tournament_id, "teams"))
    for team in ctx.involved_teams:
        tags += [f"team:{team}", f"public:team:{team}", f"public:team:{team}:players"]
        patterns.append(ctx.public_key("team", team, "players", "*"))
        keys += [ctx.public_key("team", team), ctx.public_key("team", team, "players")]
    return CacheInvalidationTarget.build(tags=tags, patterns=patterns, keys=keys)


def _team_side_player(ctx: InvalidationContext) -> CacheInvalidationTarget:
    tags = ["public:players"]
    keys: list[str] = []
    if ctx.player_id:
        tags += [f"player:{ctx.player_id}", f"public:player:{ctx.player_id}"]
        keys.append(ctx.public_key("player", ctx.player_id))
    for team in ctx.involved_teams:
        tags.append(f"public:team:{team}:players")
        keys.append(ctx.public_key("team", team, "players"))
    return CacheInvalidationTarget.build(tags=tags, keys=keys)


def _team_side_tournament(ctx: InvalidationContext) -> CacheInvalidationTarget:
    t = ctx.tournament_id
    if not t:
        return CacheInvalidationTarget()
    return CacheInvalidationTarget.build(
        tags=[f"public:tournament:{t}:teams"],
        keys=[ctx.public_key("tournament", t, "teams")],
    )


TEAM_SIDE_RULES: dict[str, RouteRule] = {
    "team": _team_side_team,
    "player": _team_side_player,
    "tournament": _team_side_tournament,
}


class CacheInvalidationRouter:
    def __init__(
        self,
        name: str,
        rules: Mapping[str, RouteRule],
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ) -> None:
        self.name = name
        self._rules = dict(rules)
        self._key_prefix = key_prefix

    def route(self, event_type: str, payload: Mapping[str, Any]) -> CacheInvalidationTarget:
        ctx = InvalidationContext.from_payload(event_type, payload or {}, key_prefix=self._key_prefix)
        rule = self._rules.get(ctx.domain)
        if rule is None:
            logger.debug("No cache route router=%s event_type=%s", self.name, event_type)
            return CacheInvalidationTarget()
        return rule(ctx)


def build_router(side: str, *, key_prefix: str = DEFAULT_KEY_PREFIX) -> CacheInvalidationRouter:
    profiles = {
        "match": MATCH_SIDE_RULES,
        "results": RESULTS_SIDE_RULES,
        "team": TEAM_SIDE_RULES,
    }
    if side not in profiles:
        raise ValueError(f"unknown cache router side: {side}")
    return CacheInvalidationRouter(side, profiles[side], key_prefix=key_prefix)
