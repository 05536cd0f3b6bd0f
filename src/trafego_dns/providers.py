"""DNS provider clients.

Every provider exposes the same cached interface (list/create/update/delete on
normalized DNSRecord values) and normalizes failures into transient and
permanent ProviderError subclasses.
"""

from __future__ import annotations

import ipaddress
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from requests.auth import HTTPBasicAuth

from trafego_dns.config import Settings
from trafego_dns.errors import PermanentProviderError, ProviderError, TransientProviderError
from trafego_dns.models import PRIORITY_TYPES, SRV_TYPE, DNSRecord, normalize_hostname

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_CACHE_TTL_SECONDS = 3600.0


def classify_http_error(status_code: int, message: str) -> ProviderError:
    """Map an HTTP status to a transient (429/5xx) or permanent (other 4xx) error."""
    if status_code == 429 or status_code >= 500:
        return TransientProviderError(message, status_code=status_code)
    return PermanentProviderError(message, status_code=status_code)


def _int_or_none(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def answer_record_type(answer: str) -> str:
    """Derive A / AAAA / CNAME from a rewrite answer."""
    try:
        address = ipaddress.ip_address(answer)
    except ValueError:
        return "CNAME"
    return "AAAA" if address.version == 6 else "A"


# =============================================================================
# DNS Provider Interface
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers.

    Subclasses implement the raw `_fetch_records/_create/_update/_delete`
    calls; this class owns the record cache and its TTL.
    """

    provider_id = ""
    default_ttl = 1
    supports_ttl = True
    # Proxied records report an automatic TTL instead of the one requested.
    proxied_ttl_is_auto = False

    def __init__(
        self,
        zone: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.zone = normalize_hostname(zone)
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.clock = clock
        self.last_updated: Optional[float] = None
        self._cache: "OrderedDict[str, DNSRecord]" = OrderedDict()
        self._session = requests.Session()

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the DNS provider."""
        pass

    @abstractmethod
    def _fetch_records(self) -> List[DNSRecord]:
        pass

    @abstractmethod
    def _create(self, record: DNSRecord) -> DNSRecord:
        """Create `record`; return it with the provider-assigned id."""
        pass

    @abstractmethod
    def _update(self, record_id: str, record: DNSRecord) -> DNSRecord:
        pass

    @abstractmethod
    def _delete(self, record_id: str) -> None:
        pass

    # -------------------------------------------------------------------------
    # Record comparison
    # -------------------------------------------------------------------------

    def proxiable(self, record_type: str) -> bool:
        return False

    def normalize_ttl(self, ttl: int) -> int:
        return int(ttl)

    def record_differs(self, existing: DNSRecord, desired: DNSRecord) -> bool:
        """True when `existing` must be updated to match `desired`."""
        if existing.content != desired.content:
            return True
        proxied = self.proxiable(desired.type) and (existing.proxied or desired.proxied)
        ttl_ignored = self.proxied_ttl_is_auto and proxied
        if self.supports_ttl and not ttl_ignored and int(existing.ttl) != int(desired.ttl):
            return True
        if self.proxiable(desired.type) and bool(existing.proxied) != bool(desired.proxied):
            return True
        if desired.type in PRIORITY_TYPES and existing.priority != desired.priority:
            return True
        if desired.type == SRV_TYPE and (existing.weight, existing.port) != (desired.weight, desired.port):
            return True
        return False

    # -------------------------------------------------------------------------
    # Cached interface
    # -------------------------------------------------------------------------

    def list_records(self, force: bool = False) -> List[DNSRecord]:
        """Return all records, refreshing the cache when forced or expired."""
        expired = self.last_updated is None or (self.clock() - self.last_updated) >= self.cache_ttl
        if force or expired:
            self.force_refresh()
        return list(self._cache.values())

    def force_refresh(self) -> List[DNSRecord]:
        records = [self._stamp(r) for r in self._fetch_records()]
        self._cache = OrderedDict((r.id or r.key, r) for r in records)
        self.last_updated = self.clock()
        logger.debug(f"Cached {len(records)} record(s) from {self.name}")
        return list(records)

    def find_record(self, hostname: str, record_type: str) -> Optional[DNSRecord]:
        hostname = normalize_hostname(hostname)
        record_type = record_type.upper()
        for record in self._cache.values():
            if record.hostname == hostname and record.type == record_type:
                return record
        return None

    def create_record(self, record: DNSRecord) -> str:
        created = self._stamp(self._create(self._stamp(record)))
        self._cache[created.id or created.key] = created
        logger.info(f"Created {created.type} record {created.hostname} -> {created.content} ({self.name})")
        return created.id or ""

    def update_record(self, record_id: str, record: DNSRecord) -> str:
        """Update the record; returns its id (which may change, e.g. AdGuard)."""
        updated = self._stamp(self._update(record_id, self._stamp(record)))
        self._cache.pop(record_id, None)
        self._cache[updated.id or updated.key] = updated
        logger.info(f"Updated {updated.type} record {updated.hostname} -> {updated.content} ({self.name})")
        return updated.id or ""

    def delete_record(self, record_id: str) -> None:
        self._delete(record_id)
        removed = self._cache.pop(record_id, None)
        label = f"{removed.type} record {removed.hostname}" if removed else f"record {record_id}"
        logger.info(f"Deleted {label} ({self.name})")

    def _stamp(self, record: DNSRecord) -> DNSRecord:
        return replace(
            record,
            hostname=normalize_hostname(record.hostname),
            type=record.type.upper(),
            provider=self.provider_id,
            domain=self.zone,
        )

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransientProviderError(f"{self.name} {method} {url} failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise PermanentProviderError(f"{self.name} {method} {url} failed: {e}") from e
        if response.status_code >= 400:
            raise classify_http_error(
                response.status_code,
                f"{self.name} {method} {url} returned {response.status_code}: {self._error_detail(response)}",
            )
        return response

    def _error_detail(self, response: requests.Response) -> str:
        return (response.text or "")[:200]


# =============================================================================
# Cloudflare
# =============================================================================


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare v4 API. TTL 1 means automatic."""

    provider_id = "cloudflare"
    default_ttl = 1
    proxied_ttl_is_auto = True
    PROXIABLE_TYPES = ("A", "AAAA", "CNAME")
    PAGE_SIZE = 100

    def __init__(
        self,
        token: str,
        zone: str,
        *,
        zone_id: str = "",
        base_url: str = "https://api.cloudflare.com/client/v4",
        **kwargs: Any,
    ):
        super().__init__(zone, **kwargs)
        self._base_url = base_url.rstrip("/")
        self._zone_id = zone_id
        self._session.headers.update(
            {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def proxiable(self, record_type: str) -> bool:
        return record_type.upper() in self.PROXIABLE_TYPES

    @property
    def zone_id(self) -> str:
        if not self._zone_id:
            response = self._request("GET", f"{self._base_url}/zones", params={"name": self.zone})
            result = response.json().get("result") or []
            if not result:
                raise PermanentProviderError(f"Cloudflare zone not found: {self.zone}")
            self._zone_id = result[0]["id"]
            logger.debug(f"Resolved Cloudflare zone {self.zone} -> {self._zone_id}")
        return self._zone_id

    def test_connection(self) -> bool:
        try:
            _ = self.zone_id
            logger.info(f"{self.name} connection successful (zone {self.zone})")
            return True
        except ProviderError as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def _fetch_records(self) -> List[DNSRecord]:
        records: List[DNSRecord] = []
        page = 1
        while True:
            response = self._request(
                "GET",
                f"{self._base_url}/zones/{self.zone_id}/dns_records",
                params={"page": page, "per_page": self.PAGE_SIZE},
            )
            data = response.json()
            for item in data.get("result") or []:
                records.append(self._from_api(item))
            total_pages = (data.get("result_info") or {}).get("total_pages") or 1
            if page >= total_pages:
                break
            page += 1
        return records

    def _create(self, record: DNSRecord) -> DNSRecord:
        response = self._request(
            "POST", f"{self._base_url}/zones/{self.zone_id}/dns_records", json=self._payload(record)
        )
        return self._from_api(response.json()["result"])

    def _update(self, record_id: str, record: DNSRecord) -> DNSRecord:
        response = self._request(
            "PUT",
            f"{self._base_url}/zones/{self.zone_id}/dns_records/{record_id}",
            json=self._payload(record),
        )
        return self._from_api(response.json()["result"])

    def _delete(self, record_id: str) -> None:
        self._request("DELETE", f"{self._base_url}/zones/{self.zone_id}/dns_records/{record_id}")

    def _payload(self, record: DNSRecord) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": record.type,
            "name": record.hostname,
            "content": record.content,
            "ttl": record.ttl,
        }
        if self.proxiable(record.type):
            payload["proxied"] = bool(record.proxied)
        if record.type == "MX":
            payload["priority"] = record.priority
        elif record.type == SRV_TYPE:
            # SRV is sent as structured data; Cloudflare derives content from it.
            del payload["content"]
            payload["data"] = {
                "priority": record.priority,
                "weight": record.weight,
                "port": record.port,
                "target": record.content,
            }
        return payload

    def _from_api(self, item: Dict[str, Any]) -> DNSRecord:
        record_type = item.get("type", "")
        content = item.get("content", "")
        weight = port = None
        priority = item.get("priority")
        if record_type == SRV_TYPE:
            data = item.get("data") or {}
            content = data.get("target", content)
            priority = data.get("priority", priority)
            weight = data.get("weight")
            port = data.get("port")
        return DNSRecord(
            hostname=item.get("name", ""),
            type=record_type,
            content=content,
            ttl=int(item.get("ttl") or 1),
            proxied=bool(item.get("proxied", False)),
            id=str(item.get("id")),
            priority=_int_or_none(priority) if record_type in PRIORITY_TYPES else None,
            weight=_int_or_none(weight),
            port=_int_or_none(port),
        )

    def _error_detail(self, response: requests.Response) -> str:
        try:
            errors = response.json().get("errors") or []
        except ValueError:
            return super()._error_detail(response)
        return "; ".join(f"{e.get('code')}: {e.get('message')}" for e in errors) or super()._error_detail(response)


# =============================================================================
# DigitalOcean
# =============================================================================


class DigitalOceanDNSProvider(DNSProvider):
    """DigitalOcean domain records API. Names are relative to the domain, `@` is the apex."""

    provider_id = "digitalocean"
    default_ttl = 30
    MIN_TTL = 30
    PAGE_SIZE = 200
    FQDN_CONTENT_TYPES = ("CNAME", "MX", "NS", "SRV")

    def __init__(
        self,
        token: str,
        zone: str,
        *,
        base_url: str = "https://api.digitalocean.com/v2",
        **kwargs: Any,
    ):
        super().__init__(zone, **kwargs)
        self._base_url = base_url.rstrip("/")
        self._session.headers.update(
            {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        )

    @property
    def name(self) -> str:
        return "DigitalOcean"

    @property
    def _records_url(self) -> str:
        return f"{self._base_url}/domains/{self.zone}/records"

    def normalize_ttl(self, ttl: int) -> int:
        return max(self.MIN_TTL, int(ttl))

    def test_connection(self) -> bool:
        try:
            self._request("GET", f"{self._base_url}/domains/{self.zone}")
            logger.info(f"{self.name} connection successful (domain {self.zone})")
            return True
        except ProviderError as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def _fetch_records(self) -> List[DNSRecord]:
        records: List[DNSRecord] = []
        page = 1
        while True:
            response = self._request(
                "GET", self._records_url, params={"page": page, "per_page": self.PAGE_SIZE}
            )
            data = response.json()
            for item in data.get("domain_records") or []:
                records.append(self._from_api(item))
            if not ((data.get("links") or {}).get("pages") or {}).get("next"):
                break
            page += 1
        return records

    def _create(self, record: DNSRecord) -> DNSRecord:
        response = self._request("POST", self._records_url, json=self._payload(record))
        return self._from_api(response.json()["domain_record"])

    def _update(self, record_id: str, record: DNSRecord) -> DNSRecord:
        response = self._request("PUT", f"{self._records_url}/{record_id}", json=self._payload(record))
        return self._from_api(response.json()["domain_record"])

    def _delete(self, record_id: str) -> None:
        self._request("DELETE", f"{self._records_url}/{record_id}")

    def relative_name(self, hostname: str) -> str:
        hostname = normalize_hostname(hostname)
        if hostname == self.zone:
            return "@"
        suffix = f".{self.zone}"
        if hostname.endswith(suffix):
            return hostname[: -len(suffix)]
        return hostname

    def fqdn(self, name: str) -> str:
        if name in ("@", ""):
            return self.zone
        name = normalize_hostname(name)
        if name == self.zone or name.endswith(f".{self.zone}"):
            return name
        return f"{name}.{self.zone}"

    def _payload(self, record: DNSRecord) -> Dict[str, Any]:
        data = record.content
        if record.type in self.FQDN_CONTENT_TYPES and data and not data.endswith("."):
            data = f"{data}."
        payload: Dict[str, Any] = {
            "type": record.type,
            "name": self.relative_name(record.hostname),
            "data": data,
            "ttl": self.normalize_ttl(record.ttl),
        }
        if record.type in PRIORITY_TYPES:
            payload["priority"] = record.priority
        if record.type == SRV_TYPE:
            payload["weight"] = record.weight
            payload["port"] = record.port
        return payload

    def _from_api(self, item: Dict[str, Any]) -> DNSRecord:
        record_type = str(item.get("type", "")).upper()
        data = str(item.get("data") or "")
        if record_type in self.FQDN_CONTENT_TYPES:
            data = self.zone if data == "@" else data.rstrip(".")
        srv = record_type == SRV_TYPE
        return DNSRecord(
            hostname=self.fqdn(str(item.get("name", ""))),
            type=record_type,
            content=data,
            ttl=int(item.get("ttl") or self.default_ttl),
            proxied=False,
            id=str(item.get("id")),
            priority=_int_or_none(item.get("priority")) if record_type in PRIORITY_TYPES else None,
            weight=_int_or_none(item.get("weight")) if srv else None,
            port=_int_or_none(item.get("port")) if srv else None,
        )


# =============================================================================
# Route53
# =============================================================================


class Route53DNSProvider(DNSProvider):
    """AWS Route53 through boto3.

    A record set has no id of its own; `hostname:TYPE` is used. Only the first
    value of a multi-value set is managed, and alias sets are skipped.
    """

    provider_id = "route53"
    default_ttl = 60
    MIN_TTL = 60
    TRANSIENT_ERROR_CODES = (
        "Throttling",
        "ThrottlingException",
        "PriorRequestNotComplete",
        "ServiceUnavailable",
        "RequestTimeout",
    )
    FQDN_CONTENT_TYPES = ("CNAME", "MX", "NS", "SRV")

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        zone: str,
        *,
        zone_id: str = "",
        region: str = "eu-west-2",
        client: Any = None,
        **kwargs: Any,
    ):
        super().__init__(zone, **kwargs)
        if client is None:
            client = boto3.client(
                "route53",
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
                region_name=region,
                config=Config(connect_timeout=self.timeout, read_timeout=self.timeout),
            )
        self._client = client
        self._zone_id = zone_id
        # Last known record set per id; DELETE must repeat it exactly.
        self._record_sets: Dict[str, Dict[str, Any]] = {}

    @property
    def name(self) -> str:
        return "Route53"

    @staticmethod
    def make_id(hostname: str, record_type: str) -> str:
        return f"{normalize_hostname(hostname)}:{record_type.upper()}"

    def normalize_ttl(self, ttl: int) -> int:
        return max(self.MIN_TTL, int(ttl))

    @property
    def zone_id(self) -> str:
        if not self._zone_id:
            response = self._call("list_hosted_zones_by_name", DNSName=self.zone)
            for zone in response.get("HostedZones") or []:
                if normalize_hostname(zone.get("Name", "")) == self.zone:
                    self._zone_id = str(zone["Id"]).split("/")[-1]
                    break
            else:
                raise PermanentProviderError(f"Route53 hosted zone not found: {self.zone}")
            logger.debug(f"Resolved Route53 zone {self.zone} -> {self._zone_id}")
        return self._zone_id

    def test_connection(self) -> bool:
        try:
            self._call("get_hosted_zone", Id=self.zone_id)
            logger.info(f"{self.name} connection successful (zone {self.zone})")
            return True
        except ProviderError as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def _fetch_records(self) -> List[DNSRecord]:
        records: List[DNSRecord] = []
        record_sets: Dict[str, Dict[str, Any]] = {}
        paginator = self._client.get_paginator("list_resource_record_sets")
        try:
            for page in paginator.paginate(HostedZoneId=self.zone_id):
                for record_set in page.get("ResourceRecordSets") or []:
                    record = self._from_api(record_set)
                    if record is not None:
                        records.append(record)
                        record_sets[record.id or ""] = record_set
        except (BotoCoreError, ClientError) as e:
            raise self._translate("list_resource_record_sets", e) from e
        self._record_sets = record_sets
        return records

    def _create(self, record: DNSRecord) -> DNSRecord:
        return self._change("CREATE", record)

    def _update(self, record_id: str, record: DNSRecord) -> DNSRecord:
        return self._change("UPSERT", record)

    def _delete(self, record_id: str) -> None:
        record_set = self._record_sets.get(record_id)
        if record_set is None:
            self._fetch_records()
            record_set = self._record_sets.get(record_id)
        if record_set is None:
            logger.info(f"Route53 record set {record_id} already gone")
            return
        self._submit("DELETE", record_set)
        self._record_sets.pop(record_id, None)

    def _change(self, action: str, record: DNSRecord) -> DNSRecord:
        record_set = self._to_record_set(record)
        self._submit(action, record_set)
        record_id = self.make_id(record.hostname, record.type)
        self._record_sets[record_id] = record_set
        return replace(record, ttl=record_set["TTL"], proxied=False, id=record_id)

    def _submit(self, action: str, record_set: Dict[str, Any]) -> None:
        self._call(
            "change_resource_record_sets",
            HostedZoneId=self.zone_id,
            ChangeBatch={
                "Comment": f"{action} by trafego-dns",
                "Changes": [{"Action": action, "ResourceRecordSet": record_set}],
            },
        )

    def _to_record_set(self, record: DNSRecord) -> Dict[str, Any]:
        content = record.content
        if record.type in self.FQDN_CONTENT_TYPES and not content.endswith("."):
            content = f"{content}."
        if record.type == "TXT" and not content.startswith('"'):
            content = '"{}"'.format(content.replace('"', '\\"'))
        elif record.type == "MX":
            content = f"{record.priority} {content}"
        elif record.type == "SRV":
            content = f"{record.priority} {record.weight} {record.port} {content}"
        return {
            "Name": f"{record.hostname}.",
            "Type": record.type,
            "TTL": self.normalize_ttl(record.ttl),
            "ResourceRecords": [{"Value": content}],
        }

    def _from_api(self, record_set: Dict[str, Any]) -> Optional[DNSRecord]:
        values = [r.get("Value", "") for r in record_set.get("ResourceRecords") or []]
        if not values:
            return None
        if len(values) > 1:
            logger.debug(f"Route53 record set {record_set.get('Name')} has {len(values)} values, using the first")
        # Route53 escapes `*` in wildcard names.
        hostname = normalize_hostname(str(record_set.get("Name", "")).replace("\\052", "*"))
        record_type = str(record_set.get("Type", "")).upper()
        parts = values[0].split()
        priority = weight = port = None
        content = values[0]
        if record_type == "MX" and len(parts) == 2:
            priority, content = int(parts[0]), parts[1]
        elif record_type == "SRV" and len(parts) == 4:
            priority, weight, port, content = int(parts[0]), int(parts[1]), int(parts[2]), parts[3]
        elif record_type == "TXT":
            content = "".join(part.strip('"') for part in values[0].split('" "')).replace('\\"', '"')
        if record_type in self.FQDN_CONTENT_TYPES:
            content = content.rstrip(".")
        return DNSRecord(
            hostname=hostname,
            type=record_type,
            content=content,
            ttl=int(record_set.get("TTL") or self.default_ttl),
            proxied=False,
            id=self.make_id(hostname, record_type),
            priority=priority,
            weight=weight,
            port=port,
        )

    def _call(self, operation: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            return getattr(self._client, operation)(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise self._translate(operation, e) from e

    def _translate(self, operation: str, error: Exception) -> ProviderError:
        """Throttling, in-flight changes and 5xx are transient; other API errors are permanent."""
        if not isinstance(error, ClientError):
            # Connection and read timeouts, endpoint resolution failures.
            return TransientProviderError(f"{self.name} {operation} failed: {error}")
        details = error.response.get("Error") or {}
        code = details.get("Code", "")
        status = (error.response.get("ResponseMetadata") or {}).get("HTTPStatusCode")
        message = f"{self.name} {operation} failed: {code}: {details.get('Message', '')}"
        if code in self.TRANSIENT_ERROR_CODES or (status or 0) >= 500:
            return TransientProviderError(message, status_code=status)
        return PermanentProviderError(message, status_code=status)


# =============================================================================
# AdGuard Home
# =============================================================================


class AdGuardDNSProvider(DNSProvider):
    """AdGuard Home DNS rewrites.

    Rewrites have no id, TTL or proxy flag; the id is `domain|answer` and the
    record type follows from the answer.
    """

    provider_id = "adguard"
    default_ttl = 0
    supports_ttl = False
    SUPPORTED_TYPES = ("A", "AAAA", "CNAME")

    def __init__(self, url: str, username: str, password: str, zone: str = "", **kwargs: Any):
        super().__init__(zone, **kwargs)
        self._url = url.rstrip("/")
        if username and password:
            self._session.auth = HTTPBasicAuth(username, password)

    @property
    def name(self) -> str:
        return "AdGuard Home"

    @staticmethod
    def make_id(domain: str, answer: str) -> str:
        return f"{domain}|{answer}"

    @staticmethod
    def split_id(record_id: str) -> List[str]:
        domain, sep, answer = record_id.partition("|")
        if not sep:
            raise PermanentProviderError(f"Malformed AdGuard rewrite id: {record_id}")
        return [domain, answer]

    def test_connection(self) -> bool:
        try:
            self._request("GET", f"{self._url}/control/status")
            logger.info(f"{self.name} connection successful")
            return True
        except ProviderError as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def _fetch_records(self) -> List[DNSRecord]:
        response = self._request("GET", f"{self._url}/control/rewrite/list")
        try:
            data = response.json() or []
        except ValueError as e:
            raise TransientProviderError(f"Invalid rewrite list from {self.name}: {e}") from e

        records = []
        for r in data:
            domain = r.get("domain") if isinstance(r, dict) else None
            answer = r.get("answer") if isinstance(r, dict) else None
            if not isinstance(domain, str) or not isinstance(answer, str):
                logger.warning(f"Skipping malformed record: {r}")
                continue
            records.append(
                DNSRecord(
                    hostname=domain,
                    type=answer_record_type(answer),
                    content=answer,
                    ttl=self.default_ttl,
                    id=self.make_id(normalize_hostname(domain), answer),
                )
            )
        return records

    def _create(self, record: DNSRecord) -> DNSRecord:
        self._check_type(record)
        self._request(
            "POST",
            f"{self._url}/control/rewrite/add",
            json={"domain": record.hostname, "answer": record.content},
        )
        return replace(record, ttl=self.default_ttl, proxied=False, id=self.make_id(record.hostname, record.content))

    def _update(self, record_id: str, record: DNSRecord) -> DNSRecord:
        self._check_type(record)
        self._delete(record_id)
        try:
            return self._create(record)
        except ProviderError:
            domain, answer = self.split_id(record_id)
            logger.error(f"Re-adding previous rewrite {domain} -> {answer} after failed update")
            self._request("POST", f"{self._url}/control/rewrite/add", json={"domain": domain, "answer": answer})
            raise

    def _delete(self, record_id: str) -> None:
        domain, answer = self.split_id(record_id)
        self._request(
            "POST", f"{self._url}/control/rewrite/delete", json={"domain": domain, "answer": answer}
        )

    def _check_type(self, record: DNSRecord) -> None:
        if record.type not in self.SUPPORTED_TYPES:
            raise PermanentProviderError(f"{self.name} does not support {record.type} records")
        derived = answer_record_type(record.content)
        if derived != record.type:
            raise PermanentProviderError(
                f"{self.name} rewrite answer {record.content!r} is a {derived} target, not {record.type}"
            )


# =============================================================================
# Factory
# =============================================================================


def create_dns_provider(settings: Settings) -> DNSProvider:
    """Create the DNS provider selected by DNS_PROVIDER."""
    common = {
        "timeout": settings.provider_timeout,
        "cache_ttl": settings.cache_refresh_interval,
    }
    if settings.dns_provider == "cloudflare":
        return CloudflareDNSProvider(
            settings.cloudflare_token,
            settings.zone,
            zone_id=settings.cloudflare_zone_id,
            **common,
        )
    if settings.dns_provider == "digitalocean":
        return DigitalOceanDNSProvider(settings.digitalocean_token, settings.zone, **common)
    if settings.dns_provider == "route53":
        return Route53DNSProvider(
            settings.route53_access_key,
            settings.route53_secret_key,
            settings.zone,
            zone_id=settings.route53_zone_id,
            region=settings.route53_region,
            **common,
        )
    if settings.dns_provider == "adguard":
        return AdGuardDNSProvider(
            settings.adguard_url,
            settings.adguard_username,
            settings.adguard_password,
            zone=settings.zone,
            **common,
        )
    raise ValueError(f"Unsupported DNS_PROVIDER: {settings.dns_provider}")
