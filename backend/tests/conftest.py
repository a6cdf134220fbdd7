"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap for import paths plus the common pipeline
    fixtures (fake database, recording publisher, no-op sleep).
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

_THIS_FILE = Path(__file__).resolve()
_TESTS_DIR = _THIS_FILE.parent
_BACKEND_DIR = _THIS_FILE.parents[1]

for candidate in (str(_TESTS_DIR), str(_BACKEND_DIR)):
    if candidate not in sys.path:
        sys.path.insert(0, candidate)

from fake_mongo import FakeDatabase  # noqa: E402


class RecordingPublisher:
    def __init__(self, *, fail: bool = False) -> None:
        self.events: list[tuple[str, dict]] = []
        self.fail = fail

    async def publish(self, event_type, payload, *, correlation_id=None) -> bool:
        body = payload.model_dump(mode="json") if hasattr(payload, "model_dump") else dict(payload)
        self.events.append((event_type, body))
        return not self.fail

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def failing_publisher() -> RecordingPublisher:
    return RecordingPublisher(fail=True)
