"""
backend/tourneyflow/services/event_handlers/__init__.py

Purpose:
    Builds the handler set from settings and the static event-type dispatch
    table that the pipeline registers on the bus at startup.

Dependencies:
    - tourneyflow.services.event_handlers.match_handlers
    - tourneyflow.services.event_handlers.tournament_handlers
    - tourneyflow.services.event_handlers.cache_handlers
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from tourneyflow.services.cache_router import build_router
from tourneyflow.services.event_handlers.base import EventHandler
from tourneyflow.services.event_handlers.cache_handlers import (
    MATCH_SIDE_EVENTS,
    RESULTS_SIDE_EVENTS,
    TEAM_SIDE_EVENTS,
    CacheInvalidationHandler,
)
from tourneyflow.services.event_handlers.match_handlers import MatchCompletedHandler
from tourneyflow.services.event_handlers.tournament_handlers import TournamentStatusChangedHandler


def build_handlers(
    config,
    *,
    db,
    standings,
    schedule,
    cache,
    publisher,
    siblings=None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> list[EventHandler]:
    handlers: list[EventHandler] = []
    if config.EVENT_HANDLER_MATCH_COMPLETED_ENABLED:
        handlers.append(
            MatchCompletedHandler(db=db, standings=standings, publisher=publisher, siblings=siblings)
        )
    if config.EVENT_HANDLER_TOURNAMENT_STATUS_ENABLED:
        handlers.append(
            TournamentStatusChangedHandler(
                schedule=schedule,
                standings=standings,
                publisher=publisher,
                auto_recalculate=config.AUTO_RECALCULATE_STANDINGS,
                recalc_max_attempts=config.RECALC_MAX_ATTEMPTS,
                recalc_base_delay_seconds=config.RECALC_BASE_DELAY_SECONDS,
                sleep=sleep,
            )
        )
    if config.EVENT_HANDLER_MATCH_CACHE_ENABLED:
        handlers.append(
            CacheInvalidationHandler(
                router=build_router("match", key_prefix=config.CACHE_KEY_PREFIX),
                cache=cache,
                event_types=MATCH_SIDE_EVENTS,
                schedule=schedule,
            )
        )
    if config.EVENT_HANDLER_RESULTS_CACHE_ENABLED:
        handlers.append(
            CacheInvalidationHandler(
                router=build_router("results", key_prefix=config.CACHE_KEY_PREFIX),
                cache=cache,
                event_types=RESULTS_SIDE_EVENTS,
                standings=standings,
            )
        )
    if config.EVENT_HANDLER_TEAM_CACHE_ENABLED:
        handlers.append(
            CacheInvalidationHandler(
                router=build_router("team", key_prefix=config.CACHE_KEY_PREFIX),
                cache=cache,
                event_types=TEAM_SIDE_EVENTS,
            )
        )
    return handlers


def build_dispatch_table(handlers: Iterable[EventHandler]) -> dict[str, tuple[EventHandler, ...]]:
    table: dict[str, list[EventHandler]] = {}
    names: set[str] = set()
    for handler in handlers:
        if handler.name in names:
            raise ValueError(f"duplicate handler name: {handler.name}")
        names.add(handler.name)
        for event_type in handler.event_types:
            table.setdefault(event_type, []).append(handler)
    return {event_type: tuple(entries) for event_type, entries in sorted(table.items())}
