"""Data model for records, tracking metadata and desired state."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

SUPPORTED_RECORD_TYPES = ("A", "AAAA", "CNAME", "TXT", "MX", "SRV", "CAA")

# Record types whose extra fields take part in comparison and provider payloads.
PRIORITY_TYPES = ("MX", "SRV")
SRV_TYPE = "SRV"

MANAGED_BY_SYSTEM = "system"
MANAGED_BY_EXTERNAL = "external"


# =============================================================================
# Normalization Helpers
# =============================================================================


def normalize_hostname(hostname: str) -> str:
    """Lower-case a hostname and drop surrounding whitespace and the trailing dot."""
    return (hostname or "").strip().rstrip(".").lower()


def record_key(provider: str, domain: str, hostname: str, record_type: str) -> str:
    """Build the identity key `provider:domain:hostname:type` (case-insensitive)."""
    return ":".join(
        [
            (provider or "").strip().lower(),
            normalize_hostname(domain),
            normalize_hostname(hostname),
            (record_type or "").strip().lower(),
        ]
    )


def to_iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def from_iso(value: Any) -> Optional[float]:
    """Parse an ISO-8601 string (or a bare epoch number) into epoch seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        # Epoch milliseconds are what older tracker files stored.
        return value / 1000.0 if value > 1e11 else float(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class DNSRecord:
    """A DNS record in the normalized shape every provider returns."""

    hostname: str
    type: str
    content: str
    ttl: int = 1
    proxied: bool = False
    provider: str = ""
    domain: str = ""
    id: Optional[str] = None
    # MX uses priority; SRV uses all three.
    priority: Optional[int] = None
    weight: Optional[int] = None
    port: Optional[int] = None

    @property
    def key(self) -> str:
        return record_key(self.provider, self.domain, self.hostname, self.type)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "hostname": self.hostname,
            "type": self.type,
            "content": self.content,
            "ttl": self.ttl,
            "proxied": self.proxied,
            "provider": self.provider,
            "domain": self.domain,
            "id": self.id,
        }
        data.update(_extra_fields(self))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DNSRecord":
        hostname = data.get("hostname") or data.get("name") or ""
        return cls(
            hostname=normalize_hostname(hostname),
            type=str(data.get("type") or "").upper(),
            content=str(data.get("content") if data.get("content") is not None else ""),
            ttl=_as_int(data.get("ttl"), 1),
            proxied=_as_bool(data.get("proxied", False)),
            provider=str(data.get("provider") or "").lower(),
            domain=normalize_hostname(data.get("domain") or ""),
            id=str(data["id"]) if data.get("id") not in (None, "") else None,
            priority=_optional_int(data.get("priority")),
            weight=_optional_int(data.get("weight")),
            port=_optional_int(data.get("port")),
        )


def _extra_fields(value: Any) -> Dict[str, int]:
    """The MX/SRV fields of `value` that are set."""
    return {
        name: getattr(value, name)
        for name in ("priority", "weight", "port")
        if getattr(value, name) is not None
    }


@dataclass(frozen=True)
class OrphanState:
    """A tracked record that has dropped out of the desired state."""

    key: str
    hostname: str
    type: str
    orphaned_at: float

    def elapsed_seconds(self, now: Optional[float] = None) -> float:
        current = time.time() if now is None else now
        return max(0.0, current - self.orphaned_at)


@dataclass(frozen=True)
class TrackedRecord:
    """A record this system owns, with ownership and orphan metadata."""

    record: DNSRecord
    managed_by: str = MANAGED_BY_SYSTEM
    created_at: float = 0.0
    updated_at: float = 0.0
    source_container_id: Optional[str] = None
    orphaned_at: Optional[float] = None

    @property
    def key(self) -> str:
        return self.record.key

    @property
    def hostname(self) -> str:
        return self.record.hostname

    @property
    def is_orphaned(self) -> bool:
        return self.orphaned_at is not None

    @property
    def orphan_state(self) -> Optional[OrphanState]:
        if self.orphaned_at is None:
            return None
        return OrphanState(
            key=self.key,
            hostname=self.record.hostname,
            type=self.record.type,
            orphaned_at=self.orphaned_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.record.to_dict()
        data.update(
            {
                "managedBy": self.managed_by,
                "createdAt": to_iso(self.created_at) if self.created_at else None,
                "updatedAt": to_iso(self.updated_at) if self.updated_at else None,
                "sourceContainerId": self.source_container_id,
                "orphanedAt": to_iso(self.orphaned_at) if self.orphaned_at is not None else None,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackedRecord":
        orphaned = data.get("orphanedAt")
        if isinstance(orphaned, dict):
            # {"timestamp": ..., "timeMs": ...} as written by the old tracker.
            orphaned = orphaned.get("timeMs") or orphaned.get("timestamp")
        return cls(
            record=DNSRecord.from_dict(data),
            managed_by=str(data.get("managedBy") or MANAGED_BY_SYSTEM),
            created_at=from_iso(data.get("createdAt")) or 0.0,
            updated_at=from_iso(data.get("updatedAt")) or 0.0,
            source_container_id=data.get("sourceContainerId") or None,
            orphaned_at=from_iso(orphaned),
        )


# =============================================================================
# Desired State
# =============================================================================


@dataclass(frozen=True)
class DesiredEntry:
    """One hostname the active discovery source (or an operator) wants to exist.

    `ttl` and `proxied` may be left as None; the reconciler fills them from the
    configured defaults before diffing.
    """

    hostname: str
    type: str
    content: str = ""
    ttl: Optional[int] = None
    proxied: Optional[bool] = None
    source_container_id: Optional[str] = None
    priority: Optional[int] = None
    weight: Optional[int] = None
    port: Optional[int] = None

    @property
    def match_key(self) -> str:
        return f"{normalize_hostname(self.hostname)}:{self.type.upper()}"

    def normalized(self) -> "DesiredEntry":
        return replace(
            self,
            hostname=normalize_hostname(self.hostname),
            type=(self.type or "").strip().upper(),
            content=(self.content or "").strip(),
        )


@dataclass(frozen=True)
class ManagedHostname:
    """Operator-declared desired entry that exists independently of containers."""

    hostname: str
    type: str
    content: str
    ttl: Optional[int] = None
    proxied: Optional[bool] = None
    priority: Optional[int] = None
    weight: Optional[int] = None
    port: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "hostname": self.hostname,
            "type": self.type,
            "content": self.content,
        }
        if self.ttl is not None:
            data["ttl"] = self.ttl
        if self.proxied is not None:
            data["proxied"] = self.proxied
        data.update(_extra_fields(self))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagedHostname":
        ttl = data.get("ttl")
        proxied = data.get("proxied")
        return cls(
            hostname=normalize_hostname(data.get("hostname", "")),
            type=str(data.get("type") or "A").upper(),
            content=str(data.get("content") or ""),
            ttl=(_as_int(ttl, 0) or None) if ttl is not None else None,
            proxied=_as_bool(proxied) if proxied is not None else None,
            priority=_optional_int(data.get("priority")),
            weight=_optional_int(data.get("weight")),
            port=_optional_int(data.get("port")),
        )

    def to_desired(self) -> DesiredEntry:
        return DesiredEntry(
            hostname=self.hostname,
            type=self.type,
            content=self.content,
            ttl=self.ttl,
            proxied=self.proxied,
            priority=self.priority,
            weight=self.weight,
            port=self.port,
        )


# =============================================================================
# Cycle Summary
# =============================================================================


@dataclass
class CycleSummary:
    """Counters for one reconciliation cycle."""

    created: int = 0
    updated: int = 0
    up_to_date: int = 0
    deleted: int = 0
    orphaned: int = 0
    errors: int = 0
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    def as_dict(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "upToDate": self.up_to_date,
            "deleted": self.deleted,
            "orphaned": self.orphaned,
            "errors": self.errors,
        }
