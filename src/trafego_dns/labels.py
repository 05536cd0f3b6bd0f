"""Turning container labels into desired DNS entries.

Labels use the generic prefix (`dns.` by default) or the provider-specific one
(`dns.<provider>.`), the latter taking precedence:

    dns.hostname=app.example.com,api.example.com
    dns.domain=example.com  dns.subdomain=app,api  dns.use_apex=true
    dns.host.1=other.example.com
    dns.type / dns.content / dns.ttl / dns.proxied
    dns.priority (MX, SRV) / dns.weight / dns.port (SRV)
    dns.manage=true / dns.skip=true   (see DNS_DEFAULT_MANAGE)
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Dict, List, Optional

from trafego_dns.config import Settings, _parse_bool
from trafego_dns.models import DesiredEntry, normalize_hostname

logger = logging.getLogger(__name__)


def is_ipv4(value: str) -> bool:
    try:
        return ipaddress.ip_address(value).version == 4
    except ValueError:
        return False


def is_ipv6(value: str) -> bool:
    try:
        return ipaddress.ip_address(value).version == 6
    except ValueError:
        return False


def provider_prefix(settings: Settings) -> str:
    return f"{settings.label_prefix}{settings.dns_provider}."


def label_value(labels: Dict[str, str], settings: Settings, key: str) -> Optional[str]:
    """Provider-specific label first, then the generic one."""
    for prefix in (provider_prefix(settings), settings.label_prefix):
        value = labels.get(f"{prefix}{key}")
        if value is not None:
            return str(value).strip()
    return None


def int_label(labels: Dict[str, str], settings: Settings, key: str, hostname: str) -> Optional[int]:
    value = label_value(labels, settings, key)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid {key} label {value!r} for {hostname}, using default")
        return None


def should_manage(labels: Dict[str, str], settings: Settings) -> bool:
    manage = label_value(labels, settings, "manage")
    skip = label_value(labels, settings, "skip")
    if skip is not None and _parse_bool(skip, default=False):
        return False
    if manage is not None:
        return _parse_bool(manage, default=settings.default_manage)
    return settings.default_manage


def _split(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def hostnames_from_labels(labels: Dict[str, str], settings: Settings) -> List[str]:
    """Collect every hostname a container asks for, in label order, without duplicates."""
    prefix = settings.label_prefix
    found: List[str] = []

    def add(hostname: str) -> None:
        hostname = normalize_hostname(hostname)
        if hostname and hostname not in found:
            found.append(hostname)

    for hostname in _split(labels.get(f"{prefix}hostname")):
        add(hostname)

    domain = (labels.get(f"{prefix}domain") or "").strip()
    if domain:
        for subdomain in _split(labels.get(f"{prefix}subdomain")):
            add(f"{subdomain}.{domain}")
        if _parse_bool(labels.get(f"{prefix}use_apex"), default=False):
            add(domain)

    for key in sorted(labels):
        if key.startswith(f"{prefix}host.") and labels[key]:
            add(str(labels[key]))

    return found


def build_entry(
    hostname: str,
    labels: Dict[str, str],
    settings: Settings,
    *,
    container_id: Optional[str] = None,
    fallback_content: str = "",
) -> Optional[DesiredEntry]:
    """Build the desired entry for `hostname` from container labels.

    `fallback_content` is used when no content label exists (the Traefik
    instance target IP in proxy mode). Returns None when the entry cannot be
    resolved, e.g. an apex record without PUBLIC_IP.
    """
    hostname = normalize_hostname(hostname)
    type_label = label_value(labels, settings, "type")
    is_apex = bool(settings.zone) and hostname == normalize_hostname(settings.zone)
    record_type = (type_label or ("A" if is_apex else settings.default_type)).upper()

    content = label_value(labels, settings, "content") or fallback_content
    if not content and is_apex and record_type in ("A", "CNAME"):
        # CNAME is not allowed at the zone apex.
        record_type = "A"
        content = settings.public_ip
        if not content:
            logger.warning(f"Apex hostname {hostname} needs an A record but PUBLIC_IP is not set, skipping")
            return None

    if content and not type_label and record_type == "CNAME":
        if is_ipv4(content):
            record_type = "A"
        elif is_ipv6(content):
            record_type = "AAAA"

    ttl = int_label(labels, settings, "ttl", hostname)

    proxied_label = label_value(labels, settings, "proxied")
    proxied = None if proxied_label is None else proxied_label.lower() != "false"

    return DesiredEntry(
        hostname=hostname,
        type=record_type,
        content=content,
        ttl=ttl,
        proxied=proxied,
        source_container_id=container_id,
        priority=int_label(labels, settings, "priority", hostname),
        weight=int_label(labels, settings, "weight", hostname),
        port=int_label(labels, settings, "port", hostname),
    )


def entries_from_labels(
    labels: Dict[str, str],
    settings: Settings,
    container_id: Optional[str] = None,
) -> List[DesiredEntry]:
    """All desired entries one container declares through `dns.*` labels."""
    if not should_manage(labels, settings):
        return []
    entries = []
    for hostname in hostnames_from_labels(labels, settings):
        entry = build_entry(hostname, labels, settings, container_id=container_id)
        if entry is not None:
            entries.append(entry)
    return entries
