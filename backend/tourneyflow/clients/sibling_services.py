"""
backend/tourneyflow/clients/sibling_services.py

Purpose:
    Read-only lookups against the match, team and tournament services, plus
    the completed-match list used by full recomputes. Every failure degrades
    to `None`; callers fall back to the event payload or to stored results.

Dependencies:
    - httpx
    - tourneyflow.clients.http_client
    - tourneyflow.config
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from tourneyflow.clients.http_client import ResilientClient

logger = logging.getLogger("tourneyflow.sibling_services")


class SiblingServiceClient:
    def __init__(
        self,
        *,
        match_client: ResilientClient | None = None,
        team_client: ResilientClient | None = None,
        tournament_client: ResilientClient | None = None,
    ) -> None:
        self._match = match_client
        self._team = team_client
        self._tournament = tournament_client

    @classmethod
    def from_settings(cls, settings) -> "SiblingServiceClient":
        def _client(name: str, base_url: str) -> ResilientClient | None:
            if not base_url:
                return None
            return ResilientClient(
                name,
                base_url=base_url.rstrip("/"),
                timeout=settings.SIBLING_TIMEOUT_SECONDS,
                max_retries=settings.SIBLING_MAX_RETRIES,
                base_delay=settings.SIBLING_RETRY_BASE_DELAY_SECONDS,
            )

        return cls(
            match_client=_client("match-service", settings.MATCH_SERVICE_URL),
            team_client=_client("team-service", settings.TEAM_SERVICE_URL),
            tournament_client=_client("tournament-service", settings.TOURNAMENT_SERVICE_URL),
        )

    async def get_match(self, match_id: str) -> dict[str, Any] | None:
        return self._entity(await self._fetch(self._match, f"/api/matches/{match_id}"))

    async def get_team(self, team_id: str) -> dict[str, Any] | None:
        return self._entity(await self._fetch(self._team, f"/api/teams/{team_id}"))

    async def get_tournament(self, tournament_id: str) -> dict[str, Any] | None:
        return self._entity(await self._fetch(self._tournament, f"/api/tournaments/{tournament_id}"))

    async def get_completed_matches(self, tournament_id: str) -> list[dict[str, Any]] | None:
        """Completed matches of a tournament; None when the list could not be fetched."""
        body = await self._fetch(
            self._match,
            f"/api/public/tournaments/{tournament_id}/matches",
            params={"status": "completed"},
        )
        # Paginated responses carry the page under "data".
        if isinstance(body, dict):
            body = body.get("data")
        if not isinstance(body, list):
            return None
        return [match for match in body if isinstance(match, dict)]

    async def aclose(self) -> None:
        for client in (self._match, self._team, self._tournament):
            if client is not None:
                await client.aclose()

    @staticmethod
    def _entity(body: Any) -> dict[str, Any] | None:
        # Services wrap entities as {"data": {...}}; accept bare objects too.
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            return body["data"]
        return body if isinstance(body, dict) else None

    async def _fetch(self, client: ResilientClient | None, path: str, **kwargs) -> Any:
        if client is None:
            return None
        try:
            resp = await client.get(path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Sibling lookup failed path=%s error=%s", path, exc)
            return None
        if resp.status_code != 200:
            logger.warning("Sibling lookup returned status=%d path=%s", resp.status_code, path)
            return None
        try:
            return resp.json()
        except ValueError:
            logger.warning("Sibling lookup returned non-JSON body path=%s", path)
            return None
