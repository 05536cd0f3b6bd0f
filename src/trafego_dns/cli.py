#!/usr/bin/env python3
"""trafego-dns - DNS records for containerized services

Keeps DNS provider records in line with the hostnames your containers expose,
either through Traefik router rules or directly through container labels.
Records that stop being desired are tracked as orphans and, optionally,
removed after a grace period.

Supported DNS Providers:
    - cloudflare: Cloudflare DNS (API token)
    - digitalocean: DigitalOcean Domains
    - adguard: AdGuard Home DNS rewrites

Operation modes:
    - traefik: hostnames from Traefik HTTP routers
    - direct: hostnames from `dns.*` container labels

Environment variables:

    Mode and Provider:
        OPERATION_MODE         "traefik" or "direct" (default: traefik)
        DNS_PROVIDER           "cloudflare", "digitalocean", "route53" or "adguard"
                               (default: cloudflare)

    Cloudflare:
        CLOUDFLARE_TOKEN       API token with DNS edit permission
        CLOUDFLARE_ZONE        Zone name, e.g. example.com
        CLOUDFLARE_ZONE_ID     Zone id (optional, looked up by name when unset)

    DigitalOcean:
        DO_TOKEN               API token
        DO_DOMAIN              Domain name, e.g. example.com

    Route53:
        ROUTE53_ACCESS_KEY     AWS access key id
        ROUTE53_SECRET_KEY     AWS secret access key
        ROUTE53_ZONE           Hosted zone name, e.g. example.com
        ROUTE53_ZONE_ID        Hosted zone id (optional, looked up by name when unset)
        ROUTE53_REGION         AWS region (default: eu-west-2)

    AdGuard Home:
        ADGUARD_URL            AdGuard Home base URL (default: http://adguard)
        ADGUARD_USERNAME       Admin username (optional)
        ADGUARD_PASSWORD       Admin password (optional)
        ADGUARD_ZONE           Zone suffix records are managed under (optional)

    Record defaults:
        DNS_LABEL_PREFIX       Container label prefix (default: dns.)
        DNS_DEFAULT_TYPE       Record type when no label sets one (default: CNAME)
        DNS_DEFAULT_CONTENT    CNAME target (default: the zone)
        DNS_DEFAULT_PROXIED    Cloudflare proxy flag (default: true)
        DNS_DEFAULT_TTL        TTL (default: provider minimum)
        DNS_DEFAULT_MANAGE     Manage containers without a manage label (default: true)
        PUBLIC_IP              Content for A records and apex domains
        PUBLIC_IPV6            Content for AAAA records
        DNS_DEFAULT_MX_PRIORITY   MX priority (default: 10)
        DNS_DEFAULT_SRV_PRIORITY  SRV priority (default: 1)
        DNS_DEFAULT_SRV_WEIGHT    SRV weight (default: 1)
        DNS_DEFAULT_SRV_PORT      SRV port (default: 80)

    Traefik:
        TRAEFIK_CONFIG_PATH    YAML file or directory of instances
                               (default: /config/traefik-instances.yaml)
                               Example config file:
                                 instances:
                                   - name: "core"
                                     url: "http://traefik:8080"
                                     target_ip: "10.0.0.2"
                                     router_filter: "*-public"
        TRAEFIK_INSTANCES      JSON list of instances (used if no config file)
        TRAEFIK_URL            Single instance URL (default: http://traefik:8080)
                               TRAEFIK_API_URL is accepted as a legacy name
        TRAEFIK_TARGET_IP      Record content for that instance (falls back to INTERNAL_IP)
        TRAEFIK_USERNAME       Basic auth username (optional)
        TRAEFIK_PASSWORD       Basic auth password (optional)
        TRAEFIK_LABEL_PREFIX   Traefik label prefix (default: traefik.)

    Docker:
        DOCKER_SOCKET          Docker API socket (default: unix:///var/run/docker.sock)
        WATCH_DOCKER_EVENTS    Trigger a sync on container start/stop (default: true)

    Cleanup:
        CLEANUP_ORPHANED       Delete orphaned records after the grace period (default: false)
        CLEANUP_GRACE_PERIOD   Minutes a record stays orphaned before deletion (default: 15)
        PRESERVED_HOSTNAMES    Comma-separated hostnames never deleted ("*.x" matches subdomains)
        MANAGED_HOSTNAMES      Comma-separated "host:type:content:ttl:proxied" records
                               kept regardless of containers
        EXCLUDE_DOMAINS        Comma-separated patterns never synced:
                                 - Exact domain: "auth.example.com"
                                 - Wildcard: "*.internal.*"
                                 - Regex (prefix with ~): "~^staging-\\d+\\.example\\.com$"

    Runtime:
        SYNC_MODE              "once" or "watch" (default: watch)
        POLL_INTERVAL          Poll interval in milliseconds (default: 60000)
        DNS_CACHE_REFRESH_INTERVAL  Provider record cache lifetime in ms (default: 3600000)
        PROVIDER_TIMEOUT_SECONDS    Timeout for provider API calls (default: 10)
        DATA_DIR               Directory for JSON data files (default: /config/data)
        LEGACY_RECORDS_PATH    Old single-file record store to migrate (default: ./dns-records.json)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

Values saved in DATA_DIR/config.json (operationMode, cleanupOrphaned,
cleanupGracePeriod, pollInterval) take precedence over the environment.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from docker.errors import DockerException

from trafego_dns.config import MODE_DIRECT, Settings, validate_settings
from trafego_dns.docker_state import DockerState
from trafego_dns.errors import ModeSwitchError
from trafego_dns.events import EventBus
from trafego_dns.mode_switcher import ModeSwitcher
from trafego_dns.monitors import DirectMonitor, DiscoveryMonitor, ProxyMonitor
from trafego_dns.providers import DNSProvider, create_dns_provider
from trafego_dns.reconciler import Reconciler
from trafego_dns.store import CONFIG, DataStore
from trafego_dns.tracker import RecordTracker

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def docker_base_url(socket: str) -> str:
    """`/var/run/docker.sock` -> `unix:///var/run/docker.sock`; URLs pass through."""
    socket = socket.strip()
    if socket.startswith("/"):
        return f"unix://{socket}"
    return socket


# =============================================================================
# Service Registry
# =============================================================================


@dataclass
class ServiceRegistry:
    """Every long-lived component, wired once at startup."""

    settings: Settings
    events: EventBus
    store: DataStore
    tracker: RecordTracker
    provider: DNSProvider
    reconciler: Reconciler
    docker_state: Optional[DockerState] = None
    switcher: Optional[ModeSwitcher] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        provider: Optional[DNSProvider] = None,
        docker_state: Optional[DockerState] = None,
    ) -> "ServiceRegistry":
        """Initialize the data store, apply persisted overrides and wire components."""
        events = EventBus()
        store = DataStore(
            settings.data_dir,
            legacy_records_path=settings.legacy_records_path,
            legacy_preserved=settings.preserved_hostnames,
            legacy_managed=settings.managed_hostnames,
        )
        store.init()
        settings = settings.with_overrides(store.read(CONFIG))

        tracker = RecordTracker(store, events=events)
        provider = provider or create_dns_provider(settings)
        reconciler = Reconciler.from_settings(settings, provider, tracker, events)

        if docker_state is None:
            try:
                docker_state = DockerState(docker_base_url(settings.docker_socket))
            except DockerException as e:
                if settings.operation_mode == MODE_DIRECT:
                    raise
                logger.warning(f"Docker API unavailable, container labels will be ignored: {e}")

        registry = cls(
            settings=settings,
            events=events,
            store=store,
            tracker=tracker,
            provider=provider,
            reconciler=reconciler,
            docker_state=docker_state,
        )
        registry.switcher = ModeSwitcher(registry.build_monitor, store, events=events)
        return registry

    def build_monitor(self, mode: str) -> DiscoveryMonitor:
        if mode == MODE_DIRECT:
            return DirectMonitor(self.reconciler, self.settings, docker_state=self.docker_state)
        return ProxyMonitor(self.reconciler, self.settings, docker_state=self.docker_state)

    def close(self) -> None:
        if self.docker_state is not None:
            self.docker_state.close()


# =============================================================================
# Main
# =============================================================================


def validate_config(settings: Settings) -> bool:
    """Validate configuration."""
    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error(error)
        return False
    return True


async def run(settings: Settings, registry: Optional[ServiceRegistry] = None) -> None:
    registry = registry or ServiceRegistry.build(settings)
    settings = registry.settings
    provider = registry.provider

    logger.info(f"DNS Provider: {provider.name} (zone {provider.zone or '-'})")
    logger.info(f"Operation mode: {settings.operation_mode}")
    logger.info(f"Sync mode: {settings.sync_mode}")
    if settings.exclude_domains:
        logger.info(f"Domain exclusions: {len(settings.exclude_domains)} pattern(s) configured")
    if settings.cleanup_orphaned:
        logger.info(f"Orphan cleanup: enabled (grace period {int(settings.cleanup_grace_period // 60)} min)")

    try:
        if not await asyncio.to_thread(provider.test_connection):
            logger.error(f"Cannot connect to {provider.name}. Exiting.")
            raise SystemExit(1)

        if settings.sync_mode == "once":
            monitor = registry.build_monitor(settings.operation_mode)
            await monitor.init()
            await monitor.trigger()
            return

        logger.info(f"Poll interval: {settings.poll_interval:g}s")
        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown.set)

        if registry.docker_state is not None and settings.watch_docker_events:
            registry.docker_state.start_events()
        await registry.switcher.start(settings.operation_mode)
        await shutdown.wait()

        logger.info("Shutting down gracefully...")
        await registry.switcher.shutdown()
    finally:
        registry.close()


def main():
    """Main entry point."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger.info(f"trafego-dns: {settings.operation_mode} -> {settings.dns_provider}")

    if not validate_config(settings):
        logger.error("Configuration validation failed")
        sys.exit(1)

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except ModeSwitchError as e:
        logger.critical(f"No discovery monitor could be kept running: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
