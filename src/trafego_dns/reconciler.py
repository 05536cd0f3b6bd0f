"""Reconciliation: make the provider match the desired entries, and retire orphans."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Set

from trafego_dns.config import Settings, is_domain_excluded, parse_exclude_patterns
from trafego_dns.errors import ProviderError, TransientProviderError
from trafego_dns.events import (
    CycleCompleted,
    EventBus,
    EventType,
    OrphansUpdated,
    RecordChanged,
    RecordsRefreshed,
)
from trafego_dns.models import (
    MANAGED_BY_SYSTEM,
    CycleSummary,
    DesiredEntry,
    DNSRecord,
    TrackedRecord,
)
from trafego_dns.providers import DNSProvider
from trafego_dns.tracker import RecordTracker

logger = logging.getLogger(__name__)


def _or(value: Optional[int], default: int) -> int:
    return default if value is None else value


@dataclass(frozen=True)
class RecordDefaults:
    """Values filled into desired entries that leave them out."""

    content: str = ""
    ipv4: str = ""
    ipv6: str = ""
    ttl: int = 1
    proxied: bool = True
    mx_priority: int = 10
    srv_priority: int = 1
    srv_weight: int = 1
    srv_port: int = 80

    def content_for(self, record_type: str) -> str:
        if record_type == "A":
            return self.ipv4
        if record_type == "AAAA":
            return self.ipv6
        if record_type == "CNAME":
            return self.content
        return ""

    def fill_extras(self, entry: DesiredEntry) -> DesiredEntry:
        """Default priority (MX, SRV) and weight/port (SRV); clear them for other types."""
        if entry.type == "MX":
            return replace(entry, priority=_or(entry.priority, self.mx_priority), weight=None, port=None)
        if entry.type == "SRV":
            return replace(
                entry,
                priority=_or(entry.priority, self.srv_priority),
                weight=_or(entry.weight, self.srv_weight),
                port=_or(entry.port, self.srv_port),
            )
        return replace(entry, priority=None, weight=None, port=None)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RecordDefaults":
        return cls(
            content=settings.record_content,
            ipv4=settings.public_ip,
            ipv6=settings.public_ipv6,
            ttl=settings.record_ttl,
            proxied=settings.default_proxied,
            mx_priority=settings.mx_priority,
            srv_priority=settings.srv_priority,
            srv_weight=settings.srv_weight,
            srv_port=settings.srv_port,
        )


@dataclass
class CleanupPolicy:
    enabled: bool = False
    grace_period: float = 15 * 60.0


class Reconciler:
    def __init__(
        self,
        provider: DNSProvider,
        tracker: RecordTracker,
        *,
        events: Optional[EventBus] = None,
        defaults: Optional[RecordDefaults] = None,
        cleanup: Optional[CleanupPolicy] = None,
        exclude_patterns: Optional[List[re.Pattern]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.tracker = tracker
        self.events = events
        self.defaults = defaults or RecordDefaults(ttl=provider.default_ttl)
        self.cleanup = cleanup or CleanupPolicy()
        self.exclude_patterns = exclude_patterns or []
        self.clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, provider: DNSProvider, tracker: RecordTracker, events: Optional[EventBus] = None
    ) -> "Reconciler":
        return cls(
            provider,
            tracker,
            events=events,
            defaults=RecordDefaults.from_settings(settings),
            cleanup=CleanupPolicy(settings.cleanup_orphaned, settings.cleanup_grace_period),
            exclude_patterns=parse_exclude_patterns(",".join(settings.exclude_domains)),
        )

    # -------------------------------------------------------------------------
    # Desired state
    # -------------------------------------------------------------------------

    def build_desired(self, entries: Iterable[DesiredEntry]) -> Dict[str, DesiredEntry]:
        """Merge monitor and managed entries, drop exclusions, fill defaults.

        Keyed by `hostname:TYPE`. A managed hostname replaces a container entry
        with the same hostname and type.
        """
        merged: Dict[str, DesiredEntry] = {}
        for entry in entries:
            entry = entry.normalized()
            if not entry.hostname or not entry.type:
                continue
            if entry.match_key in merged:
                logger.debug(f"Duplicate desired entry {entry.match_key}, keeping the first")
                continue
            merged[entry.match_key] = entry

        for managed in self.tracker.list_managed():
            entry = managed.to_desired().normalized()
            merged[entry.match_key] = entry

        desired: Dict[str, DesiredEntry] = {}
        for key, entry in merged.items():
            if is_domain_excluded(entry.hostname, self.exclude_patterns):
                logger.debug(f"Excluding domain '{entry.hostname}' (matches exclusion pattern)")
                continue
            content = entry.content or self.defaults.content_for(entry.type)
            if not content:
                logger.warning(f"No content for {entry.type} record {entry.hostname}, skipping")
                continue
            ttl = self.provider.normalize_ttl(entry.ttl if entry.ttl is not None else self.defaults.ttl)
            if self.provider.proxiable(entry.type):
                proxied = entry.proxied if entry.proxied is not None else self.defaults.proxied
            else:
                proxied = False
            desired[key] = self.defaults.fill_extras(replace(entry, content=content, ttl=ttl, proxied=proxied))
        return desired

    def _to_record(self, entry: DesiredEntry) -> DNSRecord:
        return DNSRecord(
            hostname=entry.hostname,
            type=entry.type,
            content=entry.content,
            ttl=int(entry.ttl if entry.ttl is not None else self.defaults.ttl),
            proxied=bool(entry.proxied),
            provider=self.provider.provider_id,
            domain=self.provider.zone,
            priority=entry.priority,
            weight=entry.weight,
            port=entry.port,
        )

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def run_cycle(self, entries: Iterable[DesiredEntry], *, mode: Optional[str] = None) -> CycleSummary:
        now = self.clock()
        summary = CycleSummary(started_at=now)
        desired = self.build_desired(entries)

        try:
            live = await asyncio.to_thread(self.provider.list_records)
        except ProviderError as e:
            self._log_provider_error(f"Failed to list records from {self.provider.name}", e)
            summary.errors += 1
            return self._finish(summary, mode)

        live_by_key = {r.key: r for r in live}
        tracked = {t.key: t for t in self.tracker.get_tracked()}
        orphans_before = {k for k, t in tracked.items() if t.is_orphaned}
        desired_keys: Set[str] = set()

        for entry in desired.values():
            record = self._to_record(entry)
            desired_keys.add(record.key)
            await self._apply(record, entry, live_by_key.get(record.key), tracked.get(record.key), summary)

        for key, entry in tracked.items():
            if key in desired_keys or not self._owned_by_provider(entry):
                continue
            await self._handle_orphan(entry, live_by_key.get(key), now, summary)

        orphans_after = {o.key for o in self.tracker.get_orphans()}
        if orphans_after != orphans_before:
            self._publish(EventType.ORPHANED_UPDATED, OrphansUpdated(tuple(self.tracker.get_orphans())))

        return self._finish(summary, mode)

    async def _apply(
        self,
        record: DNSRecord,
        entry: DesiredEntry,
        existing: Optional[DNSRecord],
        tracked: Optional[TrackedRecord],
        summary: CycleSummary,
    ) -> None:
        try:
            if existing is None:
                record_id = await asyncio.to_thread(self.provider.create_record, record)
                record = replace(record, id=record_id or None)
                summary.created += 1
                self._track(record, entry.source_container_id, summary)
                self._publish(EventType.RECORD_CREATED, RecordChanged(record))
            elif self.provider.record_differs(existing, record):
                record_id = await asyncio.to_thread(self.provider.update_record, existing.id or "", record)
                record = replace(record, id=record_id or existing.id)
                summary.updated += 1
                self._track(record, entry.source_container_id, summary)
                self._publish(EventType.RECORD_UPDATED, RecordChanged(record, previous=existing))
            else:
                summary.up_to_date += 1
                logger.debug(f"{record.type} record {record.hostname} is up to date")
                if tracked is None:
                    logger.info(f"Adopting existing {record.type} record {record.hostname} into tracking")
                    self._track(existing, entry.source_container_id, summary)
                elif tracked.is_orphaned:
                    logger.info(f"{record.type} record {record.hostname} is desired again, clearing orphan state")
                    self._clear_orphan(record.key, summary)
        except ProviderError as e:
            self._log_provider_error(f"Failed to reconcile {record.type} record {record.hostname}", e)
            summary.errors += 1

    async def _handle_orphan(
        self,
        entry: TrackedRecord,
        live: Optional[DNSRecord],
        now: float,
        summary: CycleSummary,
    ) -> None:
        hostname = entry.hostname
        try:
            if not entry.is_orphaned:
                marked = self.tracker.mark_orphaned(entry.key, now)
                if marked is None:
                    return
                entry = marked
                logger.info(
                    f"{entry.record.type} record {hostname} is no longer desired, marked orphaned"
                )

            elapsed = entry.orphan_state.elapsed_seconds(now)
            eligible = (
                self.cleanup.enabled
                and elapsed >= self.cleanup.grace_period
                and entry.managed_by == MANAGED_BY_SYSTEM
            )
            if eligible and self.tracker.is_preserved(hostname):
                logger.debug(f"Orphaned record {hostname} is preserved, not deleting")
                eligible = False

            if not eligible:
                summary.orphaned += 1
                return

            if live is not None:
                await asyncio.to_thread(self.provider.delete_record, live.id or "")
            else:
                logger.info(f"Orphaned record {hostname} already gone from {self.provider.name}")
            summary.deleted += 1
            self._publish(EventType.RECORD_DELETED, RecordChanged(live or entry.record))
            self._untrack(entry.key, summary)
            logger.info(f"Removed orphaned {entry.record.type} record {hostname} after {int(elapsed)}s")
        except ProviderError as e:
            self._log_provider_error(f"Failed to delete orphaned record {hostname}", e)
            summary.errors += 1
            summary.orphaned += 1
        except Exception as e:
            logger.error(f"Failed to update orphan state for {hostname}: {e}")
            summary.errors += 1

    # -------------------------------------------------------------------------
    # Operator actions
    # -------------------------------------------------------------------------

    async def delete_record(self, key: str) -> bool:
        """Delete a record now, ignoring grace period and preservation."""
        key = key.lower()
        tracked = self.tracker.get(key)
        live = {r.key: r for r in await asyncio.to_thread(self.provider.list_records)}.get(key)
        if tracked is None and live is None:
            return False
        if live is not None:
            await asyncio.to_thread(self.provider.delete_record, live.id or "")
        if tracked is not None:
            self.tracker.untrack(key)
        record = live or tracked.record
        logger.info(f"Force deleted {record.type} record {record.hostname}")
        self._publish(EventType.RECORD_DELETED, RecordChanged(record))
        if tracked is not None and tracked.is_orphaned:
            self._publish(EventType.ORPHANED_UPDATED, OrphansUpdated(tuple(self.tracker.get_orphans())))
        return True

    async def refresh_records(self) -> List[DNSRecord]:
        records = await asyncio.to_thread(self.provider.force_refresh)
        self._publish(EventType.RECORDS_REFRESHED, RecordsRefreshed(self.provider.provider_id, len(records)))
        return records

    # -------------------------------------------------------------------------

    def _owned_by_provider(self, entry: TrackedRecord) -> bool:
        return entry.record.provider == self.provider.provider_id and entry.record.domain == self.provider.zone

    def _track(self, record: DNSRecord, source_container_id: Optional[str], summary: CycleSummary) -> None:
        try:
            self.tracker.track(record, source_container_id=source_container_id)
        except Exception as e:
            # Provider has the record but the tracker does not; the next
            # cycle adopts it from the live listing.
            logger.error(f"Failed to track {record.type} record {record.hostname}: {e}")
            summary.errors += 1

    def _clear_orphan(self, key: str, summary: CycleSummary) -> None:
        try:
            self.tracker.clear_orphaned(key)
        except Exception as e:
            # Still marked orphaned; retried on the next cycle.
            logger.error(f"Failed to clear orphan state for {key}: {e}")
            summary.errors += 1

    def _untrack(self, key: str, summary: CycleSummary) -> None:
        try:
            self.tracker.untrack(key)
        except Exception as e:
            logger.error(f"Failed to untrack {key}: {e}")
            summary.errors += 1

    def _log_provider_error(self, message: str, error: ProviderError) -> None:
        if isinstance(error, TransientProviderError):
            logger.warning(f"{message}: {error} (will retry next cycle)")
        else:
            logger.error(f"{message}: {error}")

    def _finish(self, summary: CycleSummary, mode: Optional[str]) -> CycleSummary:
        summary.finished_at = self.clock()
        counts = ", ".join(f"{k}={v}" for k, v in summary.as_dict().items())
        if summary.changed or summary.errors:
            logger.info(f"Sync complete: {counts}")
        else:
            logger.debug(f"Sync complete: {counts}")
        self._publish(EventType.CYCLE_COMPLETED, CycleCompleted(summary, mode))
        return summary

    def _publish(self, event_type: EventType, payload: object) -> None:
        if self.events is not None:
            self.events.publish(event_type, payload)
