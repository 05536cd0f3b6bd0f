"""Domain events: a closed set of event types, each with one payload dataclass."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from trafego_dns.models import CycleSummary, DNSRecord, ManagedHostname, OrphanState

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    RECORD_CREATED = "dns:record:created"
    RECORD_UPDATED = "dns:record:updated"
    RECORD_DELETED = "dns:record:deleted"
    RECORDS_REFRESHED = "dns:records:refreshed"
    ORPHANED_UPDATED = "dns:orphaned:updated"
    CYCLE_COMPLETED = "dns:cycle:completed"
    PRESERVED_UPDATED = "dns:preserved:updated"
    MANAGED_UPDATED = "dns:managed:updated"
    OPERATION_MODE_CHANGED = "config:mode:changed"


# =============================================================================
# Payloads
# =============================================================================


@dataclass(frozen=True)
class RecordChanged:
    record: DNSRecord
    previous: Optional[DNSRecord] = None


@dataclass(frozen=True)
class RecordsRefreshed:
    provider: str
    count: int


@dataclass(frozen=True)
class OrphansUpdated:
    orphans: Tuple[OrphanState, ...]


@dataclass(frozen=True)
class CycleCompleted:
    summary: CycleSummary
    mode: Optional[str] = None


@dataclass(frozen=True)
class PreservedUpdated:
    hostnames: Tuple[str, ...]


@dataclass(frozen=True)
class ManagedUpdated:
    hostnames: Tuple[ManagedHostname, ...]


@dataclass(frozen=True)
class ModeChanged:
    previous: Optional[str]
    current: str


PAYLOAD_TYPES: Dict[EventType, type] = {
    EventType.RECORD_CREATED: RecordChanged,
    EventType.RECORD_UPDATED: RecordChanged,
    EventType.RECORD_DELETED: RecordChanged,
    EventType.RECORDS_REFRESHED: RecordsRefreshed,
    EventType.ORPHANED_UPDATED: OrphansUpdated,
    EventType.CYCLE_COMPLETED: CycleCompleted,
    EventType.PRESERVED_UPDATED: PreservedUpdated,
    EventType.MANAGED_UPDATED: ManagedUpdated,
    EventType.OPERATION_MODE_CHANGED: ModeChanged,
}

Handler = Callable[[Any], None]


# =============================================================================
# Bus
# =============================================================================


class EventBus:
    """Synchronous in-process publish/subscribe.

    Handlers run in subscription order on the publisher's thread. A failing
    handler is logged and skipped.
    """

    def __init__(self) -> None:
        self._handlers: Dict[EventType, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """Register `handler`; returns a callable that unsubscribes it."""
        if not isinstance(event_type, EventType):
            raise TypeError(f"Unknown event type: {event_type!r}")
        self._handlers[event_type].append(handler)
        return lambda: self.unsubscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_type: EventType, payload: Any) -> None:
        expected = PAYLOAD_TYPES.get(event_type)
        if expected is None:
            raise TypeError(f"Unknown event type: {event_type!r}")
        if not isinstance(payload, expected):
            raise TypeError(
                f"{event_type.value} expects {expected.__name__}, got {type(payload).__name__}"
            )
        for handler in list(self._handlers.get(event_type, [])):
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Event handler {getattr(handler, '__name__', handler)} for {event_type.value} failed: {e}")
