"""Shared fixtures: a fresh data store, tracker and event bus per test."""

from typing import Any, List, Tuple

import pytest

from fakes import FakeClock, MockDNSProvider
from trafego_dns.events import EventBus, EventType
from trafego_dns.store import DataStore
from trafego_dns.tracker import RecordTracker


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> DataStore:
    data_store = DataStore(tmp_path / "data")
    data_store.init()
    return data_store


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def published(events: EventBus) -> List[Tuple[EventType, Any]]:
    """Every event published on the `events` bus, in order."""
    seen: List[Tuple[EventType, Any]] = []
    for event_type in EventType:
        events.subscribe(event_type, lambda payload, t=event_type: seen.append((t, payload)))
    return seen


@pytest.fixture
def tracker(store: DataStore, events: EventBus, clock: FakeClock) -> RecordTracker:
    return RecordTracker(store, events=events, clock=clock)


@pytest.fixture
def provider() -> MockDNSProvider:
    return MockDNSProvider()
