"""Unit tests for the in-process event bus."""

import logging

import pytest

from trafego_dns.events import EventBus, EventType, ModeChanged, PreservedUpdated, RecordsRefreshed


class TestEventBus:
    """Tests for subscribe/publish."""

    def test_handlers_run_in_subscription_order(self) -> None:
        """Test every subscriber receives the payload, in order."""
        bus = EventBus()
        calls = []
        bus.subscribe(EventType.RECORDS_REFRESHED, lambda p: calls.append(("first", p.count)))
        bus.subscribe(EventType.RECORDS_REFRESHED, lambda p: calls.append(("second", p.count)))

        bus.publish(EventType.RECORDS_REFRESHED, RecordsRefreshed(provider="cloudflare", count=3))

        assert calls == [("first", 3), ("second", 3)]

    def test_only_matching_type_notified(self) -> None:
        """Test handlers of other event types are not called."""
        bus = EventBus()
        calls = []
        bus.subscribe(EventType.PRESERVED_UPDATED, calls.append)

        bus.publish(EventType.OPERATION_MODE_CHANGED, ModeChanged(previous="traefik", current="direct"))

        assert calls == []

    def test_unsubscribe(self) -> None:
        """Test the returned callable removes the handler."""
        bus = EventBus()
        calls = []
        unsubscribe = bus.subscribe(EventType.PRESERVED_UPDATED, calls.append)

        unsubscribe()
        unsubscribe()
        bus.publish(EventType.PRESERVED_UPDATED, PreservedUpdated(hostnames=()))

        assert calls == []

    def test_wrong_payload_rejected(self) -> None:
        """Test publishing a payload of the wrong type raises TypeError."""
        bus = EventBus()

        with pytest.raises(TypeError):
            bus.publish(EventType.RECORDS_REFRESHED, PreservedUpdated(hostnames=()))

    def test_unknown_event_type_rejected(self) -> None:
        """Test subscribing to something outside EventType raises TypeError."""
        with pytest.raises(TypeError):
            EventBus().subscribe("dns:record:created", print)

    def test_failing_handler_isolated(self, caplog) -> None:
        """Test a raising handler is logged and later handlers still run."""
        bus = EventBus()
        calls = []

        def broken(payload) -> None:
            raise RuntimeError("boom")

        bus.subscribe(EventType.PRESERVED_UPDATED, broken)
        bus.subscribe(EventType.PRESERVED_UPDATED, calls.append)

        with caplog.at_level(logging.ERROR):
            bus.publish(EventType.PRESERVED_UPDATED, PreservedUpdated(hostnames=("a.example.com",)))

        assert len(calls) == 1
        assert "boom" in caplog.text
