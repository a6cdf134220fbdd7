"""
backend/tests/test_public_cache.py

Purpose:
    Read-through caching, tag/pattern eviction and store-outage degradation of
    the Mongo-backed public cache.
"""

from __future__ import annotations

from datetime import timedelta
import sys

import pytest
from pymongo.errors import ServerSelectionTimeoutError

sys.path.insert(0, "backend")

from fake_mongo import FakeCollection
from tourneyflow.services.public_cache import MongoPublicCache, glob_to_regex
from tourneyflow.utils import utcnow


def _cache(coll: FakeCollection | None = None) -> MongoPublicCache:
    return MongoPublicCache(coll or FakeCollection("public_cache"), key_prefix="public_api")


def test_glob_to_regex_only_star_is_special():
    regex = glob_to_regex("public_api:match:7.1:*")
    assert regex == r"^public_api:match:7\.1:.*$"


def test_generate_key_and_ttls():
    cache = MongoPublicCache(FakeCollection(), key_prefix="public_api", live_ttl_seconds=30, static_ttl_seconds=900)
    assert cache.generate_key("tournament", 7, "standings") == "public_api:tournament:7:standings"
    assert cache.ttl_for("live") == 30
    assert cache.ttl_for("static") == 900
    assert cache.ttl_for("unknown") == 30


@pytest.mark.asyncio
async def test_remember_computes_once_then_hits():
    cache = _cache()
    calls = 0

    async def compute():
        nonlocal calls
        calls += 1
        return {"rows": [1, 2]}

    first = await cache.remember("public_api:x", 60, compute, tags=["public:standings"])
    second = await cache.remember("public_api:x", 60, compute, tags=["public:standings"])

    assert first == second == {"rows": [1, 2]}
    assert calls == 1
    stats = cache.stats()
    assert (stats["hits"], stats["misses"]) == (1, 1)


@pytest.mark.asyncio
async def test_expired_entry_is_recomputed():
    now = utcnow()
    coll = FakeCollection(
        "public_cache",
        [{"_id": "public_api:x", "value": "stale", "tags": [], "expires_at": now - timedelta(seconds=1)}],
    )
    value = await _cache(coll).remember("public_api:x", 60, lambda: "fresh")
    assert value == "fresh"
    assert coll.docs[0]["value"] == "fresh"


@pytest.mark.asyncio
async def test_default_tag_applies_only_when_tags_omitted():
    coll = FakeCollection("public_cache")
    cache = _cache(coll)

    await cache.remember("public_api:a", 60, lambda: 1)
    await cache.remember("tournament_standings:t1", 60, lambda: 2, tags=[])

    by_id = {doc["_id"]: doc for doc in coll.docs}
    assert by_id["public_api:a"]["tags"] == ["public-api"]
    assert by_id["tournament_standings:t1"]["tags"] == []


@pytest.mark.asyncio
async def test_forget_variants():
    coll = FakeCollection("public_cache")
    cache = _cache(coll)
    await cache.remember("public_api:match:1", 60, lambda: 1, tags=["match:1"])
    await cache.remember("public_api:match:1:events", 60, lambda: 2, tags=["public:match:1:events"])
    await cache.remember("public_api:match:2", 60, lambda: 3, tags=["match:2"])
    await cache.remember("public_api:team:A", 60, lambda: 4, tags=["team:A"])

    assert await cache.forget("public_api:team:A") is True
    assert await cache.forget("public_api:team:A") is False
    assert await cache.forget_by_tags(["match:2", "unused"]) == 1
    assert await cache.forget_by_tags([]) == 0
    assert await cache.forget_by_pattern("public_api:match:1*") == 2
    assert coll.docs == []
    assert cache.stats()["invalidations"] == 4


@pytest.mark.asyncio
async def test_read_outage_degrades_to_compute():
    coll = FakeCollection("public_cache")
    coll.fail("find_one", ServerSelectionTimeoutError("no servers"))
    cache = _cache(coll)

    assert await cache.remember("public_api:x", 60, lambda: "direct") == "direct"
    assert cache.stats()["errors"] == 1


@pytest.mark.asyncio
async def test_write_outage_still_returns_value():
    coll = FakeCollection("public_cache")
    coll.fail("update_one", ServerSelectionTimeoutError("no servers"))

    assert await _cache(coll).remember("public_api:x", 60, lambda: "value") == "value"
    assert coll.docs == []


@pytest.mark.asyncio
async def test_eviction_outage_propagates():
    coll = FakeCollection("public_cache")
    coll.fail("delete_many", ServerSelectionTimeoutError("no servers"))

    with pytest.raises(ServerSelectionTimeoutError):
        await _cache(coll).forget_by_tags(["public:standings"])
