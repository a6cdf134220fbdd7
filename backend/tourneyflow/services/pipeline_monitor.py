"""
backend/tourneyflow/services/pipeline_monitor.py

Purpose:
    Health monitor for the event pipeline. Periodically samples bus stats and
    dead-letter depth, stores snapshots, and evaluates alert thresholds for
    the admin status endpoint.

Dependencies:
    - tourneyflow.config
    - tourneyflow.services.event_bus
    - tourneyflow.services.dead_letter_store
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from tourneyflow.config import settings
from tourneyflow.utils import utcnow

logger = logging.getLogger("tourneyflow.pipeline_monitor")


def _escalate(level: str, severity: str) -> str:
    if severity == "critical":
        return "red"
    return "yellow" if level != "red" else level


class PipelineMonitor:
    def __init__(self, *, bus, dead_letters, snapshots, cache=None, config=settings) -> None:
        self._bus = bus
        self._dead_letters = dead_letters
        self._snapshots = snapshots
        self._cache = cache
        self._config = config
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="pipeline_monitor")
        logger.info("Pipeline monitor started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Pipeline monitor stopped")

    async def _loop(self) -> None:
        interval = max(2, int(self._config.PIPELINE_MONITOR_SAMPLING_SECONDS))
        while self._running:
            try:
                await self.record_stats()
            except Exception:
                logger.exception("Failed to record pipeline stats")
            await asyncio.sleep(interval)

    async def record_stats(self) -> dict[str, Any]:
        stats = self._bus.stats()
        dlq_depth = await self._dead_letters.count()
        threshold_result = self.check_thresholds(stats, dlq_depth=dlq_depth)
        snapshot = {
            "ts": utcnow(),
            "status_level": threshold_result["status_level"],
            "alerts": threshold_result["alerts"],
            "ingress": {
                "depth": int(stats.get("ingress_queue_depth", 0)),
                "limit": int(stats.get("ingress_queue_limit", 1)),
                "usage_pct": float(stats.get("ingress_queue_usage_pct", 0.0)),
            },
            "rates_1m": {
                metric: float(stats.get(f"{metric}_rate_1m", 0.0))
                for metric in ("published", "handled", "failed", "dropped")
            },
            "totals": {
                metric: int(stats.get(f"{metric}_total", 0))
                for metric in ("published", "handled", "failed", "dropped")
            },
            "latency_ms": dict(stats.get("latency_ms") or {}),
            "per_handler": [
                {
                    "name": name,
                    "queue_depth": int(detail.get("queue_depth", 0)),
                    "handled_total": int(detail.get("handled_total", 0)),
                    "failed_total": int(detail.get("failed_total", 0)),
                    "blocked_total": int(detail.get("blocked_total", 0)),
                }
                for name, detail in (stats.get("per_handler") or {}).items()
            ],
            "dead_letters": dlq_depth,
        }
        await self._snapshots.insert_one(snapshot)
        return snapshot

    def check_thresholds(self, stats: dict[str, Any], *, dlq_depth: int = 0) -> dict[str, Any]:
        cfg = self._config
        alerts: list[dict[str, Any]] = []
        level = "green"

        def _check(code: str, value: float, warn: float, crit: float, **extra: Any) -> None:
            nonlocal level
            if value >= crit:
                severity = "critical"
            elif value >= warn:
                severity = "warning"
            else:
                return
            level = _escalate(level, severity)
            alerts.append({"code": code, "severity": severity, "value": value, **extra})

        _check(
            "ingress_queue_high",
            float(stats.get("ingress_queue_usage_pct", 0.0)),
            cfg.PIPELINE_ALERT_QUEUE_WARN_PCT,
            cfg.PIPELINE_ALERT_QUEUE_CRIT_PCT,
        )

        handler_limit = int(stats.get("handler_queue_limit", 1) or 1)
        for handler, depth in (stats.get("handler_queue_depth") or {}).items():
            _check(
                "handler_queue_high",
                round((float(depth) / float(handler_limit)) * 100.0, 2),
                cfg.PIPELINE_ALERT_QUEUE_WARN_PCT,
                cfg.PIPELINE_ALERT_QUEUE_CRIT_PCT,
                handler=handler,
            )

        handled_rate = float(stats.get("handled_rate_1m", 0.0))
        failed_rate = float(stats.get("failed_rate_1m", 0.0))
        failure_ratio = (failed_rate / handled_rate) if handled_rate > 0 else (1.0 if failed_rate > 0 else 0.0)
        _check(
            "failed_rate_high",
            round(failure_ratio, 4),
            cfg.PIPELINE_ALERT_FAILED_RATE_WARN,
            cfg.PIPELINE_ALERT_FAILED_RATE_CRIT,
        )
        _check(
            "dropped_events",
            round(float(stats.get("dropped_rate_1m", 0.0)) * 60.0, 2),
            cfg.PIPELINE_ALERT_DROPPED_WARN_PER_MIN,
            cfg.PIPELINE_ALERT_DROPPED_CRIT_PER_MIN,
        )
        _check(
            "latency_p95_high",
            float((stats.get("latency_ms") or {}).get("p95", 0.0)),
            cfg.PIPELINE_ALERT_LATENCY_P95_WARN_MS,
            cfg.PIPELINE_ALERT_LATENCY_P95_CRIT_MS,
        )
        _check(
            "dead_letters_pending",
            int(dlq_depth),
            cfg.PIPELINE_ALERT_DLQ_WARN,
            cfg.PIPELINE_ALERT_DLQ_CRIT,
        )

        for alert in alerts:
            if alert["severity"] == "critical":
                logger.error("Pipeline alert code=%s detail=%s", alert["code"], alert)
            else:
                logger.warning("Pipeline alert code=%s detail=%s", alert["code"], alert)
        return {"status_level": level, "alerts": alerts}

    async def get_current_health(self) -> dict[str, Any]:
        stats = self._bus.stats()
        dlq_depth = await self._dead_letters.count()
        threshold_result = self.check_thresholds(stats, dlq_depth=dlq_depth)
        return {
            "status_level": threshold_result["status_level"],
            "alerts": threshold_result["alerts"],
            "stats": stats,
            "dead_letters": dlq_depth,
            "cache": self._cache.stats() if self._cache is not None else None,
            "recent_errors": stats.get("recent_errors", []),
        }
