"""Runtime settings from environment variables and persisted config.json overrides.

See the `trafego_dns.cli` module docstring for the list of variables.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from trafego_dns.models import SUPPORTED_RECORD_TYPES

logger = logging.getLogger(__name__)

MODE_PROXY = "traefik"
MODE_DIRECT = "direct"
OPERATION_MODES = (MODE_PROXY, MODE_DIRECT)

SUPPORTED_PROVIDERS = ("cloudflare", "digitalocean", "route53", "adguard")

# Provider minimums: Cloudflare 1 (= auto), DigitalOcean 30, Route53 60.
PROVIDER_DEFAULT_TTLS = {"cloudflare": 1, "digitalocean": 30, "route53": 60, "adguard": 0}


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_int(value: Any, default: int) -> int:
    if value is None or str(value).strip() == "":
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        logger.warning(f"Invalid integer value {value!r}, using default {default}")
        return default


def normalize_mode(value: Any) -> str:
    """Accept `traefik`/`proxy` and `direct`; anything else is returned lower-cased for validation."""
    mode = str(value or "").strip().lower()
    if mode == "proxy":
        return MODE_PROXY
    return mode


def parse_exclude_patterns(value: str) -> List[re.Pattern]:
    """Parse domain exclusion patterns: exact, wildcard (`*`, `?`) or `~regex`."""
    patterns: List[re.Pattern] = []
    if not value:
        return patterns

    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue

        try:
            if item.startswith("~"):
                patterns.append(re.compile(item[1:], re.IGNORECASE))
            elif "*" in item or "?" in item:
                regex_str = re.escape(item).replace(r"\*", ".*").replace(r"\?", ".")
                patterns.append(re.compile(f"^{regex_str}$", re.IGNORECASE))
            else:
                patterns.append(re.compile(f"^{re.escape(item)}$", re.IGNORECASE))
            logger.debug(f"Added exclusion pattern: {item}")
        except re.error as e:
            logger.warning(f"Invalid exclusion pattern '{item}': {e}")

    return patterns


def is_domain_excluded(domain: str, patterns: List[re.Pattern]) -> bool:
    return any(pattern.search(domain) for pattern in patterns)


# =============================================================================
# Settings
# =============================================================================


@dataclass(frozen=True)
class Settings:
    # Mode and provider
    operation_mode: str = MODE_PROXY
    dns_provider: str = "cloudflare"
    cloudflare_token: str = ""
    cloudflare_zone: str = ""
    cloudflare_zone_id: str = ""
    digitalocean_token: str = ""
    digitalocean_domain: str = ""
    route53_access_key: str = ""
    route53_secret_key: str = ""
    route53_zone: str = ""
    route53_zone_id: str = ""
    route53_region: str = "eu-west-2"
    adguard_url: str = "http://adguard"
    adguard_username: str = ""
    adguard_password: str = ""
    adguard_zone: str = ""

    # Record defaults
    label_prefix: str = "dns."
    traefik_label_prefix: str = "traefik."
    default_type: str = "CNAME"
    default_content: str = ""
    default_proxied: bool = True
    default_ttl: Optional[int] = None
    default_manage: bool = True
    public_ip: str = ""
    public_ipv6: str = ""
    mx_priority: int = 10
    srv_priority: int = 1
    srv_weight: int = 1
    srv_port: int = 80

    # Traefik
    traefik_config_path: str = "/config/traefik-instances.yaml"
    traefik_instances: str = ""
    traefik_url: str = "http://traefik:8080"
    traefik_target_ip: str = ""
    traefik_username: str = ""
    traefik_password: str = ""

    # Docker
    docker_socket: str = "unix:///var/run/docker.sock"
    watch_docker_events: bool = True

    # Timing (seconds)
    poll_interval: float = 60.0
    cache_refresh_interval: float = 3600.0
    provider_timeout: float = 10.0

    # Cleanup
    cleanup_orphaned: bool = False
    cleanup_grace_period: float = 15 * 60.0
    exclude_domains: Tuple[str, ...] = field(default_factory=tuple)

    # Storage and legacy inputs
    data_dir: str = "/config/data"
    legacy_records_path: str = "./dns-records.json"
    preserved_hostnames: str = ""
    managed_hostnames: str = ""

    # Runtime
    sync_mode: str = "watch"
    log_level: str = "INFO"

    @property
    def zone(self) -> str:
        """The DNS zone records are managed in, per selected provider."""
        if self.dns_provider == "cloudflare":
            return self.cloudflare_zone
        if self.dns_provider == "digitalocean":
            return self.digitalocean_domain
        if self.dns_provider == "route53":
            return self.route53_zone
        return self.adguard_zone

    @property
    def record_ttl(self) -> int:
        if self.default_ttl is not None:
            return self.default_ttl
        return PROVIDER_DEFAULT_TTLS.get(self.dns_provider, 1)

    @property
    def record_content(self) -> str:
        return self.default_content or self.zone

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        def get(name: str, default: str = "") -> str:
            return str(env.get(name, default) or default).strip()

        ttl_raw = get("DNS_DEFAULT_TTL")
        return cls(
            operation_mode=normalize_mode(get("OPERATION_MODE", MODE_PROXY)),
            dns_provider=get("DNS_PROVIDER", "cloudflare").lower(),
            cloudflare_token=get("CLOUDFLARE_TOKEN"),
            cloudflare_zone=get("CLOUDFLARE_ZONE"),
            cloudflare_zone_id=get("CLOUDFLARE_ZONE_ID"),
            digitalocean_token=get("DO_TOKEN"),
            digitalocean_domain=get("DO_DOMAIN"),
            route53_access_key=get("ROUTE53_ACCESS_KEY"),
            route53_secret_key=get("ROUTE53_SECRET_KEY"),
            route53_zone=get("ROUTE53_ZONE"),
            route53_zone_id=get("ROUTE53_ZONE_ID"),
            route53_region=get("ROUTE53_REGION", "eu-west-2"),
            adguard_url=get("ADGUARD_URL", "http://adguard"),
            adguard_username=get("ADGUARD_USERNAME"),
            adguard_password=get("ADGUARD_PASSWORD"),
            adguard_zone=get("ADGUARD_ZONE"),
            label_prefix=get("DNS_LABEL_PREFIX", "dns."),
            traefik_label_prefix=get("TRAEFIK_LABEL_PREFIX", "traefik."),
            default_type=get("DNS_DEFAULT_TYPE", "CNAME").upper(),
            default_content=get("DNS_DEFAULT_CONTENT"),
            default_proxied=_parse_bool(env.get("DNS_DEFAULT_PROXIED"), default=True),
            default_ttl=_parse_int(ttl_raw, 0) if ttl_raw else None,
            default_manage=_parse_bool(env.get("DNS_DEFAULT_MANAGE"), default=True),
            public_ip=get("PUBLIC_IP"),
            public_ipv6=get("PUBLIC_IPV6"),
            mx_priority=_parse_int(get("DNS_DEFAULT_MX_PRIORITY"), 10),
            srv_priority=_parse_int(get("DNS_DEFAULT_SRV_PRIORITY"), 1),
            srv_weight=_parse_int(get("DNS_DEFAULT_SRV_WEIGHT"), 1),
            srv_port=_parse_int(get("DNS_DEFAULT_SRV_PORT"), 80),
            traefik_config_path=get("TRAEFIK_CONFIG_PATH", "/config/traefik-instances.yaml"),
            traefik_instances=get("TRAEFIK_INSTANCES"),
            traefik_url=get("TRAEFIK_URL", get("TRAEFIK_API_URL", "http://traefik:8080")),
            traefik_target_ip=get("TRAEFIK_TARGET_IP", get("INTERNAL_IP")),
            traefik_username=get("TRAEFIK_USERNAME"),
            traefik_password=get("TRAEFIK_PASSWORD"),
            docker_socket=get("DOCKER_SOCKET", "unix:///var/run/docker.sock"),
            watch_docker_events=_parse_bool(env.get("WATCH_DOCKER_EVENTS"), default=True),
            poll_interval=_parse_int(get("POLL_INTERVAL"), 60000) / 1000.0,
            cache_refresh_interval=_parse_int(get("DNS_CACHE_REFRESH_INTERVAL"), 3600000) / 1000.0,
            provider_timeout=float(_parse_int(get("PROVIDER_TIMEOUT_SECONDS"), 10)),
            cleanup_orphaned=_parse_bool(env.get("CLEANUP_ORPHANED"), default=False),
            cleanup_grace_period=_parse_int(get("CLEANUP_GRACE_PERIOD"), 15) * 60.0,
            exclude_domains=tuple(p.strip() for p in get("EXCLUDE_DOMAINS").split(",") if p.strip()),
            data_dir=get("DATA_DIR", "/config/data"),
            legacy_records_path=get("LEGACY_RECORDS_PATH", "./dns-records.json"),
            preserved_hostnames=get("PRESERVED_HOSTNAMES"),
            managed_hostnames=get("MANAGED_HOSTNAMES"),
            sync_mode=get("SYNC_MODE", "watch").lower(),
            log_level=get("LOG_LEVEL", "INFO").upper(),
        )

    def with_overrides(self, persisted: Mapping[str, Any]) -> "Settings":
        """Apply values persisted in config.json on top of the environment."""
        changes: Dict[str, Any] = {}
        if persisted.get("operationMode"):
            changes["operation_mode"] = normalize_mode(persisted["operationMode"])
        if "cleanupOrphaned" in persisted:
            changes["cleanup_orphaned"] = _parse_bool(persisted["cleanupOrphaned"], default=self.cleanup_orphaned)
        if "cleanupGracePeriod" in persisted:
            minutes = _parse_int(persisted["cleanupGracePeriod"], int(self.cleanup_grace_period // 60))
            changes["cleanup_grace_period"] = minutes * 60.0
        if "pollInterval" in persisted:
            millis = _parse_int(persisted["pollInterval"], int(self.poll_interval * 1000))
            changes["poll_interval"] = millis / 1000.0
        return replace(self, **changes) if changes else self


def validate_settings(settings: Settings) -> List[str]:
    """Return every configuration problem found; empty when the settings are usable."""
    errors: List[str] = []

    if settings.operation_mode not in OPERATION_MODES:
        errors.append(f"Unsupported OPERATION_MODE: {settings.operation_mode}. Supported: {', '.join(OPERATION_MODES)}")

    if settings.dns_provider == "cloudflare":
        if not settings.cloudflare_token:
            errors.append("CLOUDFLARE_TOKEN is required when DNS_PROVIDER=cloudflare")
        if not settings.cloudflare_zone:
            errors.append("CLOUDFLARE_ZONE is required when DNS_PROVIDER=cloudflare")
    elif settings.dns_provider == "digitalocean":
        if not settings.digitalocean_token:
            errors.append("DO_TOKEN is required when DNS_PROVIDER=digitalocean")
        if not settings.digitalocean_domain:
            errors.append("DO_DOMAIN is required when DNS_PROVIDER=digitalocean")
    elif settings.dns_provider == "route53":
        if not settings.route53_access_key or not settings.route53_secret_key:
            errors.append("ROUTE53_ACCESS_KEY and ROUTE53_SECRET_KEY are required when DNS_PROVIDER=route53")
        if not settings.route53_zone:
            errors.append("ROUTE53_ZONE is required when DNS_PROVIDER=route53")
    elif settings.dns_provider == "adguard":
        if not settings.adguard_url:
            errors.append("ADGUARD_URL is required when DNS_PROVIDER=adguard")
        if not settings.adguard_username or not settings.adguard_password:
            logger.warning("ADGUARD_USERNAME/PASSWORD not set. Using unauthenticated access.")
    else:
        errors.append(f"Unsupported DNS_PROVIDER: {settings.dns_provider}. Supported: {', '.join(SUPPORTED_PROVIDERS)}")

    if settings.default_type not in SUPPORTED_RECORD_TYPES:
        errors.append(f"Unsupported DNS_DEFAULT_TYPE: {settings.default_type}")
    if settings.poll_interval <= 0:
        errors.append("POLL_INTERVAL must be positive")
    if settings.cleanup_grace_period < 0:
        errors.append("CLEANUP_GRACE_PERIOD must not be negative")
    if settings.sync_mode not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {settings.sync_mode}. Use 'once' or 'watch'")

    return errors
