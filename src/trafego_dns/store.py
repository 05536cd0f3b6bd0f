"""Durable JSON store for tracked records, preserved/managed hostnames and config.

Each schema maps to one file under the data directory. Writes are validated,
run inside a file transaction, and only then reflected in the in-memory cache.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from trafego_dns.errors import TransactionIntegrityError, ValidationError
from trafego_dns.models import TrackedRecord, normalize_hostname, record_key
from trafego_dns.transactions import PathLike, TransactionManager, read_json

logger = logging.getLogger(__name__)

RECORDS = "records"
PRESERVED = "preserved"
MANAGED = "managed"
CONFIG = "config"

LEGACY_MIGRATED_FLAG = "legacyMigrated"


# =============================================================================
# Schemas
# =============================================================================


def _validate_records(value: Any) -> None:
    if not isinstance(value, list):
        raise ValidationError(RECORDS, "DNS records must be a list")
    for item in value:
        if not isinstance(item, dict):
            raise ValidationError(RECORDS, f"DNS record must be an object, got {type(item).__name__}")
        if not (item.get("hostname") or item.get("name")) or not item.get("type"):
            raise ValidationError(RECORDS, "DNS records must have hostname and type")


def _validate_preserved(value: Any) -> None:
    if not isinstance(value, list):
        raise ValidationError(PRESERVED, "Preserved hostnames must be a list")
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ValidationError(PRESERVED, f"Preserved hostnames must be non-empty strings, got {item!r}")


def _validate_managed(value: Any) -> None:
    if not isinstance(value, list):
        raise ValidationError(MANAGED, "Managed hostnames must be a list")
    for item in value:
        if not isinstance(item, dict):
            raise ValidationError(MANAGED, f"Managed hostname must be an object, got {type(item).__name__}")
        if not item.get("hostname") or not item.get("type") or "content" not in item:
            raise ValidationError(MANAGED, "Managed hostnames must have hostname, type and content")


def _validate_config(value: Any) -> None:
    if not isinstance(value, dict):
        raise ValidationError(CONFIG, "Application config must be an object")


@dataclass(frozen=True)
class Schema:
    name: str
    filename: str
    default: Any
    validator: Callable[[Any], None]


SCHEMAS: Dict[str, Schema] = {
    RECORDS: Schema(RECORDS, "dns-records.json", [], _validate_records),
    PRESERVED: Schema(PRESERVED, "preserved-hostnames.json", [], _validate_preserved),
    MANAGED: Schema(MANAGED, "managed-hostnames.json", [], _validate_managed),
    CONFIG: Schema(CONFIG, "config.json", {}, _validate_config),
}


# =============================================================================
# Legacy Env Parsing
# =============================================================================


def parse_preserved_hostnames(value: str) -> List[str]:
    """Parse `PRESERVED_HOSTNAMES` (comma separated)."""
    return [h.strip() for h in (value or "").split(",") if h.strip()]


def parse_managed_hostnames(value: str) -> List[Dict[str, Any]]:
    """Parse `MANAGED_HOSTNAMES` entries of the form `hostname:type:content:ttl:proxied`.

    Missing parts default to type A, empty content, ttl 3600 and proxied false.
    """
    entries: List[Dict[str, Any]] = []
    for raw in (value or "").split(","):
        raw = raw.strip()
        if not raw:
            continue
        parts = raw.split(":")
        hostname = parts[0].strip()
        if not hostname:
            continue
        try:
            ttl = int(parts[3]) if len(parts) > 3 and parts[3].strip() else 3600
        except ValueError:
            logger.warning(f"Invalid TTL in managed hostname entry {raw!r}, using 3600")
            ttl = 3600
        entries.append(
            {
                "hostname": hostname,
                "type": (parts[1].strip() if len(parts) > 1 and parts[1].strip() else "A").upper(),
                "content": parts[2].strip() if len(parts) > 2 else "",
                "ttl": ttl,
                "proxied": len(parts) > 4 and parts[4].strip().lower() == "true",
            }
        )
    return entries


# =============================================================================
# Data Store
# =============================================================================


class DataStore:
    def __init__(
        self,
        data_dir: PathLike,
        *,
        transactions: Optional[TransactionManager] = None,
        legacy_records_path: Optional[PathLike] = None,
        legacy_preserved: str = "",
        legacy_managed: str = "",
    ):
        self.data_dir = Path(data_dir)
        self.transactions = transactions or TransactionManager()
        self.legacy_records_path = Path(legacy_records_path) if legacy_records_path else None
        self.legacy_preserved = legacy_preserved
        self.legacy_managed = legacy_managed
        self._cache: Dict[str, Any] = {}
        self.initialized = False

    def path_for(self, schema: str) -> Path:
        return self.data_dir / self._schema(schema).filename

    def init(self) -> None:
        """Create the data directory and default files, then run legacy migration."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        recovered = self.transactions.recover(self.data_dir)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} file(s) from unfinished transactions")

        for schema in SCHEMAS.values():
            path = self.data_dir / schema.filename
            if not path.exists():
                logger.info(f"Creating default data file {schema.filename}")
                self._persist(schema, copy.deepcopy(schema.default))
                continue
            try:
                data = read_json(path)
                schema.validator(data)
            except (json.JSONDecodeError, OSError, ValidationError) as e:
                logger.error(f"Failed to load {schema.filename}, starting from defaults: {e}")
                data = copy.deepcopy(schema.default)
            self._cache[schema.name] = data

        self.initialized = True
        self.migrate_legacy()
        logger.info(f"Data store initialized at {self.data_dir}")

    def read(self, schema: str) -> Any:
        """Return a deep copy of the cached value for `schema`."""
        self._ensure_initialized()
        definition = self._schema(schema)
        return copy.deepcopy(self._cache.get(definition.name, definition.default))

    def write(self, schema: str, value: Any) -> None:
        """Validate and durably replace the value for `schema`.

        Raises ValidationError (nothing touched on disk), FileLockError, or
        whatever the transaction raised while writing.
        """
        self._ensure_initialized()
        definition = self._schema(schema)
        definition.validator(value)
        self._persist(definition, copy.deepcopy(value))

    def update_config(self, key: str, value: Any) -> None:
        config = self.read(CONFIG)
        config[key] = value
        self.write(CONFIG, config)

    def refresh_cache(self) -> None:
        """Reload every schema from disk, keeping the cached value on read errors."""
        for schema in SCHEMAS.values():
            path = self.data_dir / schema.filename
            try:
                data = read_json(path)
                if data is None:
                    raise FileNotFoundError(str(path))
                schema.validator(data)
            except (json.JSONDecodeError, OSError, ValidationError) as e:
                logger.error(f"Failed to refresh cache for {schema.filename}: {e}")
                continue
            self._cache[schema.name] = data

    # -------------------------------------------------------------------------
    # Legacy migration
    # -------------------------------------------------------------------------

    def migrate_legacy(self) -> None:
        """Merge records/hostnames from pre-store locations. Runs once per data dir."""
        config = self.read(CONFIG)
        if config.get(LEGACY_MIGRATED_FLAG):
            logger.debug("Legacy data already migrated, skipping")
            return

        ok = True
        for step in (self._migrate_legacy_records, self._migrate_legacy_preserved, self._migrate_legacy_managed):
            try:
                step()
            except Exception as e:
                # Migration problems must not stop startup; retried next start.
                logger.error(f"Legacy migration step {step.__name__} failed: {e}")
                ok = False

        if ok:
            self.update_config(LEGACY_MIGRATED_FLAG, True)

    def _migrate_legacy_records(self) -> None:
        path = self.legacy_records_path
        if path is None or not path.is_file():
            logger.debug("No legacy DNS records file found, skipping migration")
            return
        if path.resolve() == self.path_for(RECORDS).resolve():
            return

        legacy = read_json(path)
        _validate_records(legacy)

        merged: Dict[str, Dict[str, Any]] = {}
        for item in self.read(RECORDS):
            merged[_stored_record_key(item)] = item
        added = 0
        for item in legacy:
            normalized = TrackedRecord.from_dict(item).to_dict()
            key = _stored_record_key(normalized)
            if key not in merged:
                merged[key] = normalized
                added += 1

        self.write(RECORDS, list(merged.values()))
        path.replace(path.with_name(path.name + ".migrated"))
        logger.info(f"Migrated {added} DNS record(s) from legacy file {path}")

    def _migrate_legacy_preserved(self) -> None:
        incoming = parse_preserved_hostnames(self.legacy_preserved)
        if not incoming:
            return
        current = self.read(PRESERVED)
        seen = {normalize_hostname(h) for h in current}
        added = [h for h in incoming if normalize_hostname(h) not in seen]
        if added:
            self.write(PRESERVED, current + added)
            logger.info(f"Migrated {len(added)} preserved hostname(s) from PRESERVED_HOSTNAMES")

    def _migrate_legacy_managed(self) -> None:
        incoming = parse_managed_hostnames(self.legacy_managed)
        if not incoming:
            return
        current = self.read(MANAGED)
        seen = {(normalize_hostname(m["hostname"]), str(m["type"]).upper()) for m in current}
        added = [m for m in incoming if (normalize_hostname(m["hostname"]), m["type"]) not in seen]
        if added:
            self.write(MANAGED, current + added)
            logger.info(f"Migrated {len(added)} managed hostname(s) from MANAGED_HOSTNAMES")

    # -------------------------------------------------------------------------

    def _persist(self, schema: Schema, value: Any) -> None:
        path = self.data_dir / schema.filename
        try:
            with self.transactions.begin() as txn:
                txn.write_file(path, value)
        except TransactionIntegrityError as e:
            logger.critical(f"Rollback of {schema.filename} was incomplete, manual check needed: {e}")
            raise
        except Exception as e:
            logger.error(f"Failed to write {schema.filename}: {e}")
            raise
        self._cache[schema.name] = value

    def _schema(self, name: str) -> Schema:
        try:
            return SCHEMAS[name]
        except KeyError:
            raise KeyError(f"Unknown data schema: {name}") from None

    def _ensure_initialized(self) -> None:
        if not self.initialized:
            self.init()


def _stored_record_key(item: Dict[str, Any]) -> str:
    return record_key(
        str(item.get("provider") or ""),
        str(item.get("domain") or ""),
        str(item.get("hostname") or item.get("name") or ""),
        str(item.get("type") or ""),
    )
