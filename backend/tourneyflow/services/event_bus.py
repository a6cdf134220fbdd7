"""
backend/tourneyflow/services/event_bus.py

Purpose:
    In-process consumer pool. Envelopes land on a bounded ingress queue and
    are fanned out to one bounded queue per (event type, handler)
    subscription, each drained by its own worker tasks. A full handler queue
    holds up dispatch rather than dropping, so only `publish` ever refuses an
    envelope and the caller can redeliver it.

Dependencies:
    - asyncio
    - tourneyflow.models.events
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from tourneyflow.models.events import EventEnvelope, normalize_event_time
from tourneyflow.utils import ensure_utc, utcnow

logger = logging.getLogger("tourneyflow.event_bus")

AsyncEventHandler = Callable[[EventEnvelope], Awaitable[Any]]
_RATE_WINDOW_SECONDS = 60.0
_METRIC_KEYS = ("published", "handled", "failed", "dropped")


@dataclass
class _Subscription:
    event_type: str
    handler_name: str
    handler: AsyncEventHandler
    concurrency: int
    queue: asyncio.Queue[EventEnvelope]
    workers: list[asyncio.Task]
    handled_total: int = 0
    failed_total: int = 0
    blocked_total: int = 0
    max_queue_depth_seen: int = 0


class InMemoryEventBus:
    def __init__(
        self,
        *,
        ingress_maxsize: int,
        handler_maxsize: int,
        default_concurrency: int,
        error_buffer_size: int,
    ) -> None:
        self._ingress_maxsize = max(1, int(ingress_maxsize))
        self._handler_maxsize = max(1, int(handler_maxsize))
        self._default_concurrency = max(1, int(default_concurrency))

        self._ingress: asyncio.Queue[EventEnvelope] = asyncio.Queue(maxsize=self._ingress_maxsize)
        self._subscriptions: dict[str, list[_Subscription]] = defaultdict(list)
        self._dispatcher_task: asyncio.Task | None = None
        self._running = False
        self._lock = asyncio.Lock()

        self._totals = {metric: 0 for metric in _METRIC_KEYS}
        self._rates: dict[str, deque[tuple[float, int]]] = {metric: deque() for metric in _METRIC_KEYS}
        self._max_ingress_depth_seen = 0
        self._errors: deque[dict[str, Any]] = deque(maxlen=max(1, int(error_buffer_size)))
        self._lag_samples: deque[tuple[float, int]] = deque()
        self._per_event_type: dict[str, dict[str, int]] = defaultdict(self._empty_totals)
        self._per_service: dict[str, dict[str, int]] = defaultdict(self._empty_totals)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        async with self._lock:
            if self._running:
                return
            self._running = True
            for subs in self._subscriptions.values():
                for sub in subs:
                    if not sub.workers:
                        sub.workers.extend(self._spawn_workers(sub))
            self._dispatcher_task = asyncio.create_task(self._dispatch_loop(), name="event_bus_dispatcher")
            logger.info("Event bus started subscriptions=%d", self.subscription_count())

    async def stop(self) -> None:
        async with self._lock:
            if not self._running:
                return
            self._running = False
            tasks: list[asyncio.Task] = []
            if self._dispatcher_task is not None:
                tasks.append(self._dispatcher_task)
                self._dispatcher_task = None
            for subs in self._subscriptions.values():
                for sub in subs:
                    tasks.extend(sub.workers)
                    sub.workers.clear()
            for task in tasks:
                task.cancel()
            for task in tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            logger.info("Event bus stopped")

    def subscribe(
        self,
        event_type: str,
        handler: AsyncEventHandler,
        *,
        handler_name: str,
        concurrency: int | None = None,
    ) -> None:
        sub = _Subscription(
            event_type=event_type,
            handler_name=handler_name,
            handler=handler,
            concurrency=max(1, int(concurrency or self._default_concurrency)),
            queue=asyncio.Queue(maxsize=self._handler_maxsize),
            workers=[],
        )
        self._subscriptions[event_type].append(sub)
        if self._running:
            sub.workers.extend(self._spawn_workers(sub))

    def subscription_count(self) -> int:
        return sum(len(subs) for subs in self._subscriptions.values())

    async def publish(self, event: EventEnvelope) -> bool:
        normalized = normalize_event_time(event)
        try:
            self._ingress.put_nowait(normalized)
        except asyncio.QueueFull:
            self._record("dropped", normalized)
            logger.warning("Event bus ingress queue full; dropping event_type=%s", normalized.event_type)
            return False
        self._record("published", normalized)
        self._max_ingress_depth_seen = max(self._max_ingress_depth_seen, self._ingress.qsize())
        return True

    async def join(self) -> None:
        """Wait until every queued envelope, including ones enqueued meanwhile, is handled."""
        while True:
            await self._ingress.join()
            for subs in list(self._subscriptions.values()):
                for sub in subs:
                    await sub.queue.join()
            if self._ingress.empty() and all(
                sub.queue.empty() for subs in self._subscriptions.values() for sub in subs
            ):
                return

    def stats(self) -> dict[str, Any]:
        now_ts = utcnow().timestamp()
        for bucket in (*self._rates.values(), self._lag_samples):
            self._prune_bucket(bucket, now_ts)
        handler_queue_depth: dict[str, int] = {}
        per_handler: dict[str, dict[str, Any]] = {}
        for event_type, subs in self._subscriptions.items():
            for sub in subs:
                key = f"{event_type}:{sub.handler_name}"
                depth = sub.queue.qsize()
                handler_queue_depth[key] = depth
                per_handler[key] = {
                    "event_type": event_type,
                    "name": sub.handler_name,
                    "concurrency": sub.concurrency,
                    "queue_depth": depth,
                    "queue_limit": self._handler_maxsize,
                    "queue_usage_pct": round((depth / self._handler_maxsize) * 100, 2),
                    "handled_total": sub.handled_total,
                    "failed_total": sub.failed_total,
                    "blocked_total": sub.blocked_total,
                    "max_queue_depth_seen": sub.max_queue_depth_seen,
                }
        ingress_depth = self._ingress.qsize()
        out: dict[str, Any] = {"running": self._running}
        for metric in _METRIC_KEYS:
            out[f"{metric}_total"] = self._totals[metric]
            out[f"{metric}_rate_1m"] = self._rate_per_second(self._rates[metric])
        out.update(
            {
                "ingress_queue_depth": ingress_depth,
                "ingress_queue_limit": self._ingress_maxsize,
                "ingress_queue_usage_pct": round((ingress_depth / self._ingress_maxsize) * 100, 2),
                "max_ingress_queue_depth_seen": self._max_ingress_depth_seen,
                "latency_ms": self._latency_summary(),
                "handler_queue_depth": handler_queue_depth,
                "handler_queue_limit": self._handler_maxsize,
                "per_handler": per_handler,
                "per_event_type": self._serialize_breakdown(self._per_event_type),
                "per_service": self._serialize_breakdown(self._per_service),
                "recent_errors": list(self._errors),
            }
        )
        return out

    async def _dispatch_loop(self) -> None:
        while self._running:
            event = await self._ingress.get()
            try:
                for sub in self._subscriptions.get(event.event_type, []):
                    if sub.queue.full():
                        # Dispatch stalls until the worker catches up; ingress then fills and publish refuses.
                        sub.blocked_total += 1
                        logger.warning(
                            "Event bus handler queue full; waiting event_type=%s handler=%s",
                            event.event_type,
                            sub.handler_name,
                        )
                    await sub.queue.put(event)
                    sub.max_queue_depth_seen = max(sub.max_queue_depth_seen, sub.queue.qsize())
            finally:
                self._ingress.task_done()

    def _spawn_workers(self, sub: _Subscription) -> list[asyncio.Task]:
        return [
            asyncio.create_task(self._handler_loop(sub), name=f"event_bus_{sub.event_type}_{sub.handler_name}_{idx}")
            for idx in range(sub.concurrency)
        ]

    async def _handler_loop(self, sub: _Subscription) -> None:
        while self._running:
            event = await sub.queue.get()
            lag_ms = int((utcnow() - ensure_utc(event.received_at)).total_seconds() * 1000)
            self._record_lag(lag_ms)
            try:
                await sub.handler(event)
                sub.handled_total += 1
                self._record("handled", event)
            except Exception as exc:
                sub.failed_total += 1
                self._record("failed", event)
                self._errors.append(
                    {
                        "event_id": event.event_id,
                        "event_type": event.event_type,
                        "service": event.service,
                        "handler_name": sub.handler_name,
                        "correlation_id": event.correlation_id,
                        "ts": utcnow().isoformat(),
                        "processing_lag_ms": lag_ms,
                        "error": str(exc),
                    }
                )
                logger.error(
                    "Event handler failed event_id=%s event_type=%s handler=%s correlation_id=%s error=%s",
                    event.event_id,
                    event.event_type,
                    sub.handler_name,
                    event.correlation_id,
                    str(exc),
                    exc_info=True,
                )
            finally:
                sub.queue.task_done()

    def _record(self, metric: str, event: EventEnvelope) -> None:
        now_ts = utcnow().timestamp()
        self._totals[metric] += 1
        self._rates[metric].append((now_ts, 1))
        self._prune_bucket(self._rates[metric], now_ts)
        self._per_event_type[str(event.event_type or "unknown")][metric] += 1
        self._per_service[str(event.service or "unknown")][metric] += 1

    @staticmethod
    def _prune_bucket(bucket: deque[tuple[float, int]], now_ts: float) -> None:
        min_ts = now_ts - _RATE_WINDOW_SECONDS
        while bucket and bucket[0][0] < min_ts:
            bucket.popleft()

    @staticmethod
    def _rate_per_second(bucket: deque[tuple[float, int]]) -> float:
        if not bucket:
            return 0.0
        return round(sum(delta for _, delta in bucket) / _RATE_WINDOW_SECONDS, 4)

    def _record_lag(self, lag_ms: int) -> None:
        now_ts = utcnow().timestamp()
        self._lag_samples.append((now_ts, max(0, int(lag_ms))))
        self._prune_bucket(self._lag_samples, now_ts)

    def _latency_summary(self) -> dict[str, float]:
        if not self._lag_samples:
            return {"avg": 0.0, "p50": 0.0, "p95": 0.0}
        values = sorted(val for _, val in self._lag_samples)
        n = len(values)
        return {
            "avg": round(sum(values) / n, 2),
            "p50": float(values[min(n - 1, int(0.50 * (n - 1)))]),
            "p95": float(values[min(n - 1, int(0.95 * (n - 1)))]),
        }

    @staticmethod
    def _empty_totals() -> dict[str, int]:
        return {metric: 0 for metric in _METRIC_KEYS}

    @staticmethod
    def _serialize_breakdown(totals: dict[str, dict[str, int]]) -> dict[str, dict[str, int]]:
        return {
            key: {f"{metric}_total": counts[metric] for metric in _METRIC_KEYS}
            for key, counts in sorted(totals.items())
        }
