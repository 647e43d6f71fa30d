"""
Shared pytest fixtures and event helpers.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from calendar_bridge.config import EngineConfig
from calendar_bridge.db import BridgeStore
from calendar_bridge.queue import WorkQueue
from calendar_bridge.sync import BridgeOrchestrator
from tests.fake_bridge import FakeBridge

BOOKING = "booking_system"
OUTLOOK = "outlook"
RESOURCE_ID = "room-101"
MAILBOX = "room101@example.org"

WINDOW_START = datetime(2026, 3, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2026, 4, 1, tzinfo=timezone.utc)


def at(day: int, hour: int, minute: int = 0) -> datetime:
    """A UTC datetime in March 2026."""
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)


def add_meeting(bridge: FakeBridge, event_id: str, subject: str = "Team Sync", day: int = 2, **extra):
    """Add a one-hour 10:00 event to the booking resource."""
    return bridge.add_event(RESOURCE_ID, event_id, subject, at(day, 10), at(day, 11), **extra)


class Clock:
    """Controllable epoch clock for the store."""

    def __init__(self, now: float = 1_772_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 0, **kwargs):
        self.now += seconds + timedelta(**kwargs).total_seconds()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(db_path, clock):
    with BridgeStore(db_path, clock=clock) as db:
        yield db


@pytest.fixture
def work_queue(store):
    return WorkQueue(store, max_attempts=3)


@pytest.fixture
def engine_config(db_path):
    return EngineConfig(state_db_path=db_path, max_workers=2, stale_processing_seconds=600)


@pytest.fixture
def booking():
    bridge = FakeBridge(BOOKING, bridge_type="booking_system")
    bridge.add_calendar(RESOURCE_ID)
    return bridge


@pytest.fixture
def outlook():
    bridge = FakeBridge(OUTLOOK, bridge_type="outlook", supports_webhooks=True)
    bridge.add_calendar(MAILBOX)
    return bridge


@pytest.fixture
def orchestrator(engine_config, store, work_queue, booking, outlook):
    return BridgeOrchestrator(engine_config, store, work_queue, bridges=[booking, outlook])
