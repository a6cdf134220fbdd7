"""
backend/tourneyflow/services/match_schedule_service.py

Purpose:
    Tournament-level status cascades onto the match schedule.

Dependencies:
    - tourneyflow.utils
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from tourneyflow.utils import normalize_id, utcnow

logger = logging.getLogger("tourneyflow.match_schedule")

STATUS_SCHEDULED = "scheduled"
STATUS_IN_PROGRESS = "in_progress"
STATUS_CANCELLED = "cancelled"


class MatchScheduleService:
    def __init__(self, db) -> None:
        self._db = db

    async def cancel_matches(
        self,
        tournament_id: str,
        *,
        statuses: Iterable[str],
        reason: str,
    ) -> int:
        """Cancel the tournament's matches in any of `statuses`. Re-running is a no-op."""
        status_list = sorted(set(statuses))
        now = utcnow()
        result = await self._db.matches.update_many(
            {"tournament_id": tournament_id, "status": {"$in": status_list}},
            {
                "$set": {
                    "status": STATUS_CANCELLED,
                    "cancellation_reason": reason,
                    "cancelled_at": now,
                    "updated_at": now,
                }
            },
        )
        modified = int(getattr(result, "modified_count", 0) or 0)
        logger.info(
            "Cancelled matches tournament_id=%s from_statuses=%s count=%d reason=%s",
            tournament_id,
            ",".join(status_list),
            modified,
            reason,
        )
        return modified

    async def match_ids_for_tournament(self, tournament_id: str) -> list[str]:
        docs = await self._db.matches.find(
            {"tournament_id": tournament_id}, {"match_id": 1}
        ).to_list(length=None)
        ids = (normalize_id(doc.get("match_id", doc.get("_id"))) for doc in docs)
        return [match_id for match_id in ids if match_id]
