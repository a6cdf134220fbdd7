"""
backend/tests/test_pipeline_monitor.py

Purpose:
    Unit tests for pipeline monitor snapshot recording and threshold checks.
"""

from __future__ import annotations

import sys

import pytest

sys.path.insert(0, "backend")

from fake_mongo import FakeCollection
from tourneyflow.config import settings
from tourneyflow.services.dead_letter_store import DeadLetterStore
from tourneyflow.services.pipeline_monitor import PipelineMonitor


class _StaticBus:
    def __init__(self, stats) -> None:
        self._stats = stats

    def stats(self):
        return self._stats


_SAMPLE_STATS = {
    "running": True,
    "ingress_queue_depth": 1,
    "ingress_queue_limit": 10,
    "ingress_queue_usage_pct": 10.0,
    "published_rate_1m": 0.2,
    "handled_rate_1m": 0.2,
    "failed_rate_1m": 0.0,
    "dropped_rate_1m": 0.0,
    "latency_ms": {"avg": 5.0, "p50": 5.0, "p95": 7.0},
    "published_total": 10,
    "handled_total": 9,
    "failed_total": 1,
    "dropped_total": 0,
    "handler_queue_depth": {"match.completed:match_completed": 0},
    "handler_queue_limit": 20,
    "per_handler": {
        "match.completed:match_completed": {
            "name": "match_completed",
            "queue_depth": 0,
            "handled_total": 9,
            "failed_total": 1,
            "blocked_total": 0,
        }
    },
    "recent_errors": [{"event_id": "e1"}],
}


def _monitor(stats, dlq: FakeCollection | None = None, snapshots: FakeCollection | None = None) -> PipelineMonitor:
    return PipelineMonitor(
        bus=_StaticBus(stats),
        dead_letters=DeadLetterStore(dlq or FakeCollection("events_dlq"), service_name="results-service"),
        snapshots=snapshots or FakeCollection("pipeline_stats"),
        config=settings,
    )


@pytest.mark.asyncio
async def test_record_stats_snapshot_includes_dead_letter_depth():
    snapshots = FakeCollection("pipeline_stats")
    dlq = FakeCollection("events_dlq", [{"reason": "invalid_payload"}])
    monitor = _monitor(_SAMPLE_STATS, dlq=dlq, snapshots=snapshots)

    snapshot = await monitor.record_stats()

    assert snapshot["dead_letters"] == 1
    assert snapshot["status_level"] == "yellow"
    assert [a["code"] for a in snapshot["alerts"]] == ["dead_letters_pending"]
    assert snapshot["per_handler"][0]["name"] == "match.completed:match_completed"
    assert "recent_errors" not in snapshot
    assert len(snapshots.docs) == 1


def test_quiet_stats_are_green():
    result = _monitor(_SAMPLE_STATS).check_thresholds(_SAMPLE_STATS, dlq_depth=0)
    assert result == {"status_level": "green", "alerts": []}


def test_thresholds_trigger_red():
    stats = {
        "ingress_queue_usage_pct": 98.0,
        "handler_queue_limit": 10,
        "handler_queue_depth": {"h1": 10},
        "handled_rate_1m": 0.1,
        "failed_rate_1m": 0.1,
        "dropped_rate_1m": 1.0,
        "latency_ms": {"p95": 2000},
    }
    result = _monitor(stats).check_thresholds(stats, dlq_depth=30)

    assert result["status_level"] == "red"
    codes = {a["code"] for a in result["alerts"]}
    assert codes == {
        "ingress_queue_high",
        "handler_queue_high",
        "failed_rate_high",
        "dropped_events",
        "latency_p95_high",
        "dead_letters_pending",
    }


@pytest.mark.asyncio
async def test_current_health_reports_recent_errors():
    health = await _monitor(_SAMPLE_STATS).get_current_health()

    assert health["status_level"] == "green"
    assert health["dead_letters"] == 0
    assert health["recent_errors"] == [{"event_id": "e1"}]
    assert health["cache"] is None
