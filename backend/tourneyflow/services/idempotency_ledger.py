"""
backend/tourneyflow/services/idempotency_ledger.py

Purpose:
    Durable record of which (handler, event) pairs are in flight or done.
    `begin` is a single atomic insert on the unique `_id`, so two workers can
    never both start the same event for the same handler.

Dependencies:
    - pymongo
    - tourneyflow.models.results
    - tourneyflow.utils
"""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from tourneyflow.models.results import IdempotencyRecord
from tourneyflow.utils import ensure_utc, utcnow

logger = logging.getLogger("tourneyflow.idempotency_ledger")

STATE_PROCESSING = "processing"
STATE_PROCESSED = "processed"


class BeginOutcome(str, Enum):
    OK = "ok"
    ALREADY_PROCESSING = "already_processing"
    ALREADY_PROCESSED = "already_processed"


class LedgerUnavailableError(RuntimeError):
    """Backing store could not be reached; callers fall back to a secondary check."""


def ledger_key(handler_name: str, event_id: str) -> str:
    return f"{handler_name}:{event_id}"


class IdempotencyLedger:
    def __init__(self, collection, *, ttl_seconds: int, lock_ttl_seconds: int) -> None:
        self._collection = collection
        self._ttl = timedelta(seconds=max(1, int(ttl_seconds)))
        self._lock_ttl = timedelta(seconds=max(1, int(lock_ttl_seconds)))

    async def begin(self, key: str) -> BeginOutcome:
        # Second pass only happens when the conflicting record vanished
        # between our insert and our read (released or expired).
        for _ in range(2):
            now = utcnow()
            try:
                record = IdempotencyRecord(
                    key=key,
                    state=STATE_PROCESSING,
                    started_at=now,
                    lock_expires_at=now + self._lock_ttl,
                    expires_at=now + self._ttl,
                )
                await self._collection.insert_one(record.model_dump(by_alias=True, exclude_none=True))
                return BeginOutcome.OK
            except DuplicateKeyError:
                pass
            except PyMongoError as exc:
                raise LedgerUnavailableError(str(exc)) from exc

            try:
                taken = await self._collection.find_one_and_update(
                    {
                        "_id": key,
                        "$or": [
                            {"state": STATE_PROCESSING, "lock_expires_at": {"$lte": now}},
                            {"expires_at": {"$lte": now}},
                        ],
                    },
                    {
                        "$set": {
                            "state": STATE_PROCESSING,
                            "started_at": now,
                            "lock_expires_at": now + self._lock_ttl,
                            "expires_at": now + self._ttl,
                        }
                    },
                    return_document=ReturnDocument.AFTER,
                )
                if taken is not None:
                    logger.warning("Took over stale ledger record key=%s", key)
                    return BeginOutcome.OK
                existing = await self._collection.find_one({"_id": key}, {"state": 1})
            except PyMongoError as exc:
                raise LedgerUnavailableError(str(exc)) from exc

            if existing is None:
                continue
            if existing.get("state") == STATE_PROCESSED:
                return BeginOutcome.ALREADY_PROCESSED
            return BeginOutcome.ALREADY_PROCESSING
        return BeginOutcome.ALREADY_PROCESSING

    async def commit(self, key: str, summary: dict[str, Any] | None = None) -> None:
        now = utcnow()
        try:
            await self._collection.update_one(
                {"_id": key},
                {
                    "$set": {
                        "state": STATE_PROCESSED,
                        "result_summary": dict(summary or {}),
                        "recorded_at": now,
                        "lock_expires_at": now,
                        "expires_at": now + self._ttl,
                    },
                    "$setOnInsert": {"started_at": now},
                },
                upsert=True,
            )
        except PyMongoError as exc:
            raise LedgerUnavailableError(str(exc)) from exc

    async def release(self, key: str) -> bool:
        """Drop an in-flight mark so a later redelivery can try again."""
        try:
            result = await self._collection.delete_one({"_id": key, "state": STATE_PROCESSING})
        except PyMongoError as exc:
            raise LedgerUnavailableError(str(exc)) from exc
        return bool(getattr(result, "deleted_count", 0))

    async def is_processed(self, key: str) -> bool:
        try:
            doc = await self._collection.find_one({"_id": key}, {"state": 1, "expires_at": 1})
        except PyMongoError as exc:
            raise LedgerUnavailableError(str(exc)) from exc
        if not isinstance(doc, dict) or doc.get("state") != STATE_PROCESSED:
            return False
        expires_at = doc.get("expires_at")
        return expires_at is None or ensure_utc(expires_at) > utcnow()
