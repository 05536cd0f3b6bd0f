"""Ownership tracking for DNS records, plus preserved and managed hostname lists.

All state lives in the DataStore; every mutating call is one store write (one
transaction). Failures propagate to the caller after the transaction has been
rolled back.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from trafego_dns.events import EventBus, EventType, ManagedUpdated, PreservedUpdated
from trafego_dns.models import (
    MANAGED_BY_SYSTEM,
    DNSRecord,
    ManagedHostname,
    OrphanState,
    TrackedRecord,
    normalize_hostname,
)
from trafego_dns.store import MANAGED, PRESERVED, RECORDS, DataStore

logger = logging.getLogger(__name__)


def hostname_matches_preserved(hostname: str, patterns: List[str]) -> bool:
    """Exact (case-insensitive) match, or `*.domain` matching any subdomain of domain."""
    name = normalize_hostname(hostname)
    if not name:
        return False
    for pattern in patterns:
        pattern = normalize_hostname(pattern)
        if pattern == name:
            return True
        if pattern.startswith("*.") and name.endswith(pattern[1:]):
            return True
    return False


class RecordTracker:
    def __init__(
        self,
        store: DataStore,
        *,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.events = events
        self.clock = clock

    # -------------------------------------------------------------------------
    # Tracked records
    # -------------------------------------------------------------------------

    def _load(self) -> Dict[str, TrackedRecord]:
        tracked: Dict[str, TrackedRecord] = {}
        for item in self.store.read(RECORDS):
            entry = TrackedRecord.from_dict(item)
            tracked[entry.key] = entry
        return tracked

    def _save(self, tracked: Dict[str, TrackedRecord]) -> None:
        self.store.write(RECORDS, [t.to_dict() for t in tracked.values()])

    def get_tracked(self) -> List[TrackedRecord]:
        return list(self._load().values())

    def get(self, key: str) -> Optional[TrackedRecord]:
        return self._load().get(key.lower())

    def is_tracked(self, key: str) -> bool:
        return key.lower() in self._load()

    def track(
        self,
        record: DNSRecord,
        source_container_id: Optional[str] = None,
        managed_by: str = MANAGED_BY_SYSTEM,
    ) -> TrackedRecord:
        """Insert or refresh the tracked entry for `record`. Clears any orphan mark."""
        now = self.clock()
        tracked = self._load()
        existing = tracked.get(record.key)
        if existing is None:
            entry = TrackedRecord(
                record=record,
                managed_by=managed_by,
                created_at=now,
                updated_at=now,
                source_container_id=source_container_id,
            )
        else:
            entry = replace(
                existing,
                record=record,
                updated_at=now,
                source_container_id=source_container_id or existing.source_container_id,
                orphaned_at=None,
            )
        tracked[entry.key] = entry
        self._save(tracked)
        logger.debug(f"Tracking {record.type} record {record.hostname} ({entry.key})")
        return entry

    def untrack(self, key: str) -> bool:
        tracked = self._load()
        if tracked.pop(key.lower(), None) is None:
            return False
        self._save(tracked)
        logger.debug(f"Stopped tracking {key}")
        return True

    # -------------------------------------------------------------------------
    # Orphan state
    # -------------------------------------------------------------------------

    def mark_orphaned(self, key: str, at: Optional[float] = None) -> Optional[TrackedRecord]:
        """Set `orphaned_at` unless already set. Returns the entry, or None if untracked."""
        tracked = self._load()
        entry = tracked.get(key.lower())
        if entry is None:
            return None
        if entry.orphaned_at is not None:
            return entry
        entry = replace(entry, orphaned_at=self.clock() if at is None else at)
        tracked[entry.key] = entry
        self._save(tracked)
        return entry

    def clear_orphaned(self, key: str) -> bool:
        tracked = self._load()
        entry = tracked.get(key.lower())
        if entry is None or entry.orphaned_at is None:
            return False
        tracked[entry.key] = replace(entry, orphaned_at=None)
        self._save(tracked)
        return True

    def get_orphans(self) -> List[OrphanState]:
        return [t.orphan_state for t in self._load().values() if t.orphan_state is not None]

    # -------------------------------------------------------------------------
    # Preserved hostnames
    # -------------------------------------------------------------------------

    def list_preserved(self) -> List[str]:
        return list(self.store.read(PRESERVED))

    def is_preserved(self, hostname: str) -> bool:
        return hostname_matches_preserved(hostname, self.list_preserved())

    def add_preserved(self, hostname: str) -> bool:
        hostname = hostname.strip()
        current = self.list_preserved()
        if normalize_hostname(hostname) in {normalize_hostname(h) for h in current}:
            return False
        current.append(hostname)
        self.store.write(PRESERVED, current)
        logger.info(f"Preserving hostname {hostname}")
        self._publish_preserved(current)
        return True

    def remove_preserved(self, hostname: str) -> bool:
        current = self.list_preserved()
        remaining = [h for h in current if normalize_hostname(h) != normalize_hostname(hostname)]
        if len(remaining) == len(current):
            return False
        self.store.write(PRESERVED, remaining)
        logger.info(f"No longer preserving hostname {hostname}")
        self._publish_preserved(remaining)
        return True

    # -------------------------------------------------------------------------
    # Managed hostnames
    # -------------------------------------------------------------------------

    def list_managed(self) -> List[ManagedHostname]:
        return [ManagedHostname.from_dict(item) for item in self.store.read(MANAGED)]

    def add_managed(self, entry: ManagedHostname) -> None:
        """Add or replace the managed entry with the same hostname and type."""
        current = [
            m for m in self.list_managed()
            if not (m.hostname == normalize_hostname(entry.hostname) and m.type == entry.type.upper())
        ]
        current.append(ManagedHostname.from_dict(entry.to_dict()))
        self.store.write(MANAGED, [m.to_dict() for m in current])
        logger.info(f"Managing hostname {entry.hostname} ({entry.type})")
        self._publish_managed(current)

    def remove_managed(self, hostname: str, record_type: Optional[str] = None) -> bool:
        name = normalize_hostname(hostname)
        current = self.list_managed()
        remaining = [
            m for m in current
            if not (m.hostname == name and (record_type is None or m.type == record_type.upper()))
        ]
        if len(remaining) == len(current):
            return False
        self.store.write(MANAGED, [m.to_dict() for m in remaining])
        logger.info(f"No longer managing hostname {hostname}")
        self._publish_managed(remaining)
        return True

    def _publish_preserved(self, hostnames: List[str]) -> None:
        if self.events is not None:
            self.events.publish(EventType.PRESERVED_UPDATED, PreservedUpdated(tuple(hostnames)))

    def _publish_managed(self, entries: List[ManagedHostname]) -> None:
        if self.events is not None:
            self.events.publish(EventType.MANAGED_UPDATED, ManagedUpdated(tuple(entries)))
