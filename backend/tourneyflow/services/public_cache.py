"""
backend/tourneyflow/services/public_cache.py

Purpose:
    Tag-aware read cache for public API responses, backed by MongoDB so every
    worker process sees the same invalidations. Reads degrade to computing the
    value directly when the store is down; evictions raise so the calling
    handler can retry.

Dependencies:
    - pymongo
    - tourneyflow.utils
"""

from __future__ import annotations

import inspect
import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from datetime import timedelta
from typing import Any

from pymongo.errors import PyMongoError

from tourneyflow.utils import ensure_utc, utcnow

logger = logging.getLogger("tourneyflow.public_cache")

DEFAULT_TAG = "public-api"

ComputeFn = Callable[[], Any] | Callable[[], Awaitable[Any]]


def glob_to_regex(pattern: str) -> str:
    """`public_api:match:7:*` -> anchored regex; only `*` is special."""
    return "^" + ".*".join(re.escape(part) for part in str(pattern).split("*")) + "$"


async def _resolve(compute: ComputeFn) -> Any:
    value = compute()
    if inspect.isawaitable(value):
        value = await value
    return value


class MongoPublicCache:
    def __init__(
        self,
        collection,
        *,
        key_prefix: str = "public_api",
        live_ttl_seconds: int = 300,
        static_ttl_seconds: int = 3600,
    ) -> None:
        self._collection = collection
        self.key_prefix = key_prefix
        self._ttls = {
            "live": max(1, int(live_ttl_seconds)),
            "static": max(1, int(static_ttl_seconds)),
        }
        self._hits = 0
        self._misses = 0
        self._errors = 0
        self._invalidations = 0

    def generate_key(self, *parts: Any) -> str:
        return ":".join((self.key_prefix, *(str(p) for p in parts)))

    def ttl_for(self, data_type: str = "live") -> int:
        return self._ttls.get(data_type, self._ttls["live"])

    async def remember(
        self,
        key: str,
        ttl_seconds: int,
        compute: ComputeFn,
        tags: Iterable[str] | None = None,
    ) -> Any:
        tag_list = [DEFAULT_TAG] if tags is None else sorted({str(t) for t in tags if t})
        now = utcnow()
        try:
            doc = await self._collection.find_one({"_id": key})
        except PyMongoError as exc:
            self._errors += 1
            logger.warning("Cache read failed key=%s error=%s; computing directly", key, exc)
            return await _resolve(compute)

        if isinstance(doc, dict):
            expires_at = doc.get("expires_at")
            if expires_at is not None and ensure_utc(expires_at) > now:
                self._hits += 1
                return doc.get("value")

        self._misses += 1
        value = await _resolve(compute)
        try:
            await self._collection.update_one(
                {"_id": key},
                {
                    "$set": {
                        "value": value,
                        "tags": tag_list,
                        "updated_at": now,
                        "expires_at": now + timedelta(seconds=max(1, int(ttl_seconds))),
                    },
                    "$setOnInsert": {"created_at": now},
                },
                upsert=True,
            )
        except PyMongoError as exc:
            self._errors += 1
            logger.warning("Cache write failed key=%s error=%s", key, exc)
        return value

    async def forget(self, key: str) -> bool:
        result = await self._collection.delete_one({"_id": key})
        deleted = int(getattr(result, "deleted_count", 0) or 0)
        self._invalidations += deleted
        return deleted > 0

    async def forget_by_tags(self, tags: Iterable[str]) -> int:
        tag_list = sorted({str(t) for t in tags if t})
        if not tag_list:
            return 0
        result = await self._collection.delete_many({"tags": {"$in": tag_list}})
        deleted = int(getattr(result, "deleted_count", 0) or 0)
        self._invalidations += deleted
        return deleted

    async def forget_by_pattern(self, pattern: str) -> int:
        result = await self._collection.delete_many({"_id": {"$regex": glob_to_regex(pattern)}})
        deleted = int(getattr(result, "deleted_count", 0) or 0)
        self._invalidations += deleted
        logger.debug("Cache pattern eviction pattern=%s deleted=%d", pattern, deleted)
        return deleted

    def stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round((self._hits / lookups) * 100, 2) if lookups else 0.0,
            "errors": self._errors,
            "invalidations": self._invalidations,
        }
