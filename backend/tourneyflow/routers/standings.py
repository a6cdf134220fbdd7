"""
backend/tourneyflow/routers/standings.py

Purpose:
    Public ranked standings read, served through the tagged public cache so
    the pipeline's invalidations reach it.

Dependencies:
    - fastapi
    - tourneyflow.services.pipeline
"""

from fastapi import APIRouter, Depends, Path

from tourneyflow.services.pipeline import EventPipeline, get_pipeline

router = APIRouter(prefix="/api/public", tags=["public"])


@router.get("/tournaments/{tournament_id}/standings")
async def tournament_standings(
    tournament_id: str = Path(..., min_length=1, max_length=64),
    pipeline: EventPipeline = Depends(get_pipeline),
):
    cache = pipeline.cache
    rows = await cache.remember(
        cache.generate_key("tournament", tournament_id, "standings"),
        cache.ttl_for("live"),
        lambda: pipeline.standings.get_ranked_standings(tournament_id),
        tags=[
            "public-api",
            "public:standings",
            f"tournament:{tournament_id}:standings",
            f"public:tournament:{tournament_id}:standings",
        ],
    )
    return {"tournament_id": tournament_id, "standings": rows}
