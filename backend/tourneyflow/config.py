"""
backend/tourneyflow/config.py

Purpose:
    Central settings loading for the event-processing pipeline.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "tourneyflow"
    SERVICE_NAME: str = "results-service"
    LOG_LEVEL: str = "INFO"
    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"

    # Shared secrets for the HTTP surface (empty = endpoint disabled)
    EVENTS_API_KEY: str = ""
    ADMIN_API_KEY: str = ""

    # Event bus (in-process consumer pool)
    EVENT_BUS_ENABLED: bool = True
    EVENT_BUS_INGRESS_QUEUE_MAXSIZE: int = 10000
    EVENT_BUS_HANDLER_QUEUE_MAXSIZE: int = 2000
    EVENT_BUS_HANDLER_DEFAULT_CONCURRENCY: int = 1
    EVENT_BUS_ERROR_BUFFER_SIZE: int = 200
    EVENT_HANDLER_MATCH_COMPLETED_ENABLED: bool = True
    EVENT_HANDLER_TOURNAMENT_STATUS_ENABLED: bool = True
    EVENT_HANDLER_MATCH_CACHE_ENABLED: bool = True
    EVENT_HANDLER_RESULTS_CACHE_ENABLED: bool = True
    EVENT_HANDLER_TEAM_CACHE_ENABLED: bool = True

    # Idempotency ledger
    IDEMPOTENCY_TTL_SECONDS: int = 60 * 60 * 24 * 30  # 30 days
    PROCESSING_LOCK_TTL_SECONDS: int = 300

    # Retry orchestration
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 60.0
    HANDLER_ATTEMPT_TIMEOUT_SECONDS: float = 30.0

    # Dead letters + alerting
    DEAD_LETTER_COLLECTION: str = "events_dlq"
    ALERT_ON_FAILURES: bool = False
    ALERT_WEBHOOK_URL: str = ""
    ALERT_WEBHOOK_TIMEOUT_SECONDS: float = 5.0

    # Standings
    AUTO_RECALCULATE_STANDINGS: bool = True
    RECALC_MAX_ATTEMPTS: int = 3
    RECALC_BASE_DELAY_SECONDS: float = 2.0

    # Public cache
    CACHE_KEY_PREFIX: str = "public_api"
    CACHE_LIVE_TTL_SECONDS: int = 300
    CACHE_STATIC_TTL_SECONDS: int = 3600
    CACHE_INTERNAL_TTL_SECONDS: int = 3600

    # Event publisher
    EVENT_PUBLISH_MAX_ATTEMPTS: int = 3
    EVENT_PUBLISH_RETRY_DELAY_MS: int = 100
    EVENT_SCHEMA_VERSION: str = "1.0"

    # Sibling services (read-only; empty base URL = lookups disabled)
    MATCH_SERVICE_URL: str = ""
    TEAM_SERVICE_URL: str = ""
    TOURNAMENT_SERVICE_URL: str = ""
    SIBLING_TIMEOUT_SECONDS: float = 5.0
    SIBLING_MAX_RETRIES: int = 1
    SIBLING_RETRY_BASE_DELAY_SECONDS: float = 0.5

    # Pipeline monitor
    PIPELINE_MONITOR_ENABLED: bool = True
    PIPELINE_MONITOR_SAMPLING_SECONDS: int = 10
    PIPELINE_MONITOR_TTL_DAYS: int = 7
    PIPELINE_ALERT_QUEUE_WARN_PCT: float = 80.0
    PIPELINE_ALERT_QUEUE_CRIT_PCT: float = 95.0
    PIPELINE_ALERT_FAILED_RATE_WARN: float = 0.05
    PIPELINE_ALERT_FAILED_RATE_CRIT: float = 0.10
    PIPELINE_ALERT_DROPPED_WARN_PER_MIN: int = 1
    PIPELINE_ALERT_DROPPED_CRIT_PER_MIN: int = 5
    PIPELINE_ALERT_LATENCY_P95_WARN_MS: int = 500
    PIPELINE_ALERT_LATENCY_P95_CRIT_MS: int = 1500
    PIPELINE_ALERT_DLQ_WARN: int = 1
    PIPELINE_ALERT_DLQ_CRIT: int = 25

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }


settings = Settings()
