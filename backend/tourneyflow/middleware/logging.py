"""
backend/tourneyflow/middleware/logging.py

Purpose:
    One JSON access line per request, tagged with the request and correlation
    ids so HTTP ingress can be matched to the pipeline log lines it causes.
"""

import hashlib
import json
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("tourneyflow.http")

_QUIET_PATHS = frozenset({"/health"})


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, *, service_name: str = "results-service") -> None:
        super().__init__(app)
        self._service_name = service_name

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())[:8]
        correlation_id = request.headers.get("x-correlation-id")
        request.state.request_id = request_id
        request.state.correlation_id = correlation_id
        start = time.perf_counter()

        response: Response = await call_next(request)

        log_data = {
            "service": self._service_name,
            "request_id": request_id,
            "correlation_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            "client_ip_hash": hashlib.sha256(
                (request.client.host or "").encode()
            ).hexdigest()[:12] if request.client else None,
        }

        if response.status_code >= 400:
            level = logging.WARNING
        elif request.url.path in _QUIET_PATHS:
            level = logging.DEBUG
        else:
            level = logging.INFO
        logger.log(level, json.dumps(log_data))

        response.headers["X-Request-ID"] = request_id
        if correlation_id:
            response.headers["X-Correlation-ID"] = correlation_id
        return response


def setup_logging(level: str | int = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    # Access lines come from the middleware.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
