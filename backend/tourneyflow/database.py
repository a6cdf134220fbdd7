"""
backend/tourneyflow/database.py

Purpose:
    MongoDB connection bootstrap and index management for the derived
    aggregates, the idempotency ledger, dead letters and the public cache.

Dependencies:
    - motor.motor_asyncio
    - pymongo
    - tourneyflow.config
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from tourneyflow.config import settings

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None

logger = logging.getLogger("tourneyflow.database")


async def connect_db() -> None:
    global client, db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=5,
    )
    db = client[settings.MONGO_DB]
    await _ensure_indexes()


async def close_db() -> None:
    global client
    if client:
        client.close()


async def get_db() -> AsyncIOMotorDatabase:
    return db


async def _ensure_indexes() -> None:
    # ---- Derived aggregates (single writer: this pipeline) ----

    await db.match_results.create_index("match_id", unique=True)
    await db.match_results.create_index([("tournament_id", 1), ("completed_at", 1)])
    await db.match_results.create_index("source_event_id")

    await db.standings.create_index(
        [("tournament_id", 1), ("team_id", 1)],
        unique=True,
    )
    await db.standings.create_index([("tournament_id", 1), ("points", -1)])

    await db.tournament_teams.create_index(
        [("tournament_id", 1), ("team_id", 1)],
        unique=True,
    )

    # Owned by the match side; cascade updates filter on tournament + status.
    await db.matches.create_index([("tournament_id", 1), ("status", 1)])

    # ---- Idempotency ledger ----
    # _id = "<handler>:<event_id>", expires_at drives retention.
    await db.processed_events.create_index("expires_at", expireAfterSeconds=0)
    await db.processed_events.create_index([("state", 1), ("lock_expires_at", 1)])

    # ---- Dead letters (append-only) ----
    dlq = db[settings.DEAD_LETTER_COLLECTION]
    await dlq.create_index([("failed_at", -1)])
    await dlq.create_index([("reason", 1), ("failed_at", -1)])
    await dlq.create_index("original_event.event_id")

    # ---- Public read cache ----
    await db.public_cache.create_index("expires_at", expireAfterSeconds=0)
    await db.public_cache.create_index("tags")

    # ---- Pipeline monitor snapshots ----
    await db.pipeline_stats.create_index(
        "ts", expireAfterSeconds=max(1, int(settings.PIPELINE_MONITOR_TTL_DAYS)) * 24 * 60 * 60
    )
    await db.pipeline_stats.create_index([("status_level", 1), ("ts", -1)])

    logger.info("MongoDB indexes ensured for db=%s", settings.MONGO_DB)
