"""
backend/tourneyflow/main.py

Purpose:
    FastAPI application bootstrap: logging, MongoDB, pipeline construction,
    bus and monitor lifecycle, router wiring and error mapping.

Dependencies:
    - tourneyflow.database
    - tourneyflow.services.pipeline
    - tourneyflow.services.pipeline_monitor
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, OperationFailure, ServerSelectionTimeoutError

import tourneyflow.database as _db
from tourneyflow.clients.sibling_services import SiblingServiceClient
from tourneyflow.config import settings
from tourneyflow.database import close_db, connect_db
from tourneyflow.middleware.logging import StructuredLoggingMiddleware, setup_logging
from tourneyflow.services.pipeline import build_pipeline
from tourneyflow.services.pipeline_monitor import PipelineMonitor

logger = logging.getLogger("tourneyflow")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    await connect_db()

    pipeline = build_pipeline(_db.db, config=settings, siblings=SiblingServiceClient.from_settings(settings))
    monitor = PipelineMonitor(
        bus=pipeline.bus,
        dead_letters=pipeline.dead_letters,
        snapshots=_db.db.pipeline_stats,
        cache=pipeline.cache,
    )
    app.state.pipeline = pipeline
    app.state.monitor = monitor

    if settings.EVENT_BUS_ENABLED:
        pipeline.register()
        await pipeline.bus.start()
        logger.info("Event bus enabled")
        if settings.PIPELINE_MONITOR_ENABLED:
            await monitor.start()
            logger.info("Pipeline monitor enabled")
        else:
            logger.info("Pipeline monitor disabled via config")
    else:
        logger.info("Event bus disabled via config")

    yield

    if settings.EVENT_BUS_ENABLED:
        if settings.PIPELINE_MONITOR_ENABLED:
            await monitor.stop()
        await pipeline.bus.stop()
    await pipeline.aclose()
    await close_db()


app = FastAPI(
    title="tourneyflow",
    description="Event-processing pipeline for tournament standings and public read caches",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)

# Structured logging
app.add_middleware(StructuredLoggingMiddleware, service_name=settings.SERVICE_NAME)

# Routers
from tourneyflow.routers.admin import router as admin_router
from tourneyflow.routers.events import router as events_router
from tourneyflow.routers.standings import router as standings_router

app.include_router(events_router)
app.include_router(standings_router)
app.include_router(admin_router)


@app.exception_handler(ServerSelectionTimeoutError)
async def db_timeout_handler(request: Request, exc: ServerSelectionTimeoutError):
    logger.error("Database timeout: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(ConnectionFailure)
async def db_connection_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database connection failure: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(OperationFailure)
async def db_operation_handler(request: Request, exc: OperationFailure):
    logger.error("Database operation error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health():
    """Health check -- verifies DB connection and bus state."""
    try:
        result = await _db.db.command("ping")
        db_ok = result.get("ok") == 1.0
    except Exception:
        db_ok = False

    pipeline = getattr(app.state, "pipeline", None)
    bus_running = bool(pipeline is not None and pipeline.bus.running)
    return {
        "status": "healthy" if db_ok and (bus_running or not settings.EVENT_BUS_ENABLED) else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "event_bus": "running" if bus_running else "stopped",
    }
