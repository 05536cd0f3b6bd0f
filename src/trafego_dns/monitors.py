"""Discovery monitors: where desired entries come from.

Both monitors share the polling loop, the container-event trigger and the
execution guard; they differ only in `collect_entries()`.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

import requests

from trafego_dns.config import MODE_DIRECT, MODE_PROXY, Settings
from trafego_dns.docker_state import ContainerEvent, DockerState
from trafego_dns.errors import DiscoveryError
from trafego_dns.labels import build_entry, entries_from_labels, should_manage
from trafego_dns.models import CycleSummary, DesiredEntry
from trafego_dns.reconciler import Reconciler
from trafego_dns.traefik import TraefikReader, router_base_name

logger = logging.getLogger(__name__)


class DiscoveryMonitor(ABC):
    mode = ""

    def __init__(
        self,
        reconciler: Reconciler,
        settings: Settings,
        *,
        docker_state: Optional[DockerState] = None,
    ):
        self.reconciler = reconciler
        self.settings = settings
        self.docker_state = docker_state
        self.poll_interval = settings.poll_interval
        self.last_summary: Optional[CycleSummary] = None
        self._running = False
        self._rerun = False
        self._stopping = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    async def init(self) -> None:
        """Check that the discovery source is usable. Raises DiscoveryError."""

    @abstractmethod
    async def collect_entries(self) -> List[DesiredEntry]:
        """Return the complete desired-state snapshot or raise DiscoveryError."""

    async def start_polling(self) -> None:
        if self.is_polling:
            return
        self._stopping = False
        self._stop_event = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        if self.docker_state is not None and self.settings.watch_docker_events:
            self._unsubscribe = self.docker_state.subscribe(self._on_docker_event)
        self._task = asyncio.create_task(self._poll_loop(), name=f"{self.mode}-monitor")
        logger.info(f"Started {self.mode} monitor (poll interval {self.poll_interval:g}s)")

    async def stop_polling(self) -> None:
        """Stop polling. Returns only after any in-flight cycle has completed."""
        self._stopping = True
        self._stop_event.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task is not None:
            await self._task
            self._task = None
        await self._idle.wait()
        logger.info(f"Stopped {self.mode} monitor")

    async def trigger(self) -> Optional[CycleSummary]:
        """Run a cycle now, or queue exactly one rerun if a cycle is in flight."""
        if self._stopping:
            return None
        if self._running:
            self._rerun = True
            logger.debug(f"{self.mode} cycle in progress, queued a rerun")
            return None

        self._running = True
        self._idle.clear()
        try:
            summary = None
            while True:
                self._rerun = False
                summary = await self._run_once()
                if not self._rerun or self._stopping:
                    break
                logger.debug(f"Running queued {self.mode} cycle")
            return summary
        finally:
            self._running = False
            self._idle.set()

    async def on_container_event(self, event: ContainerEvent) -> None:
        if self._stopping:
            return
        logger.info(f"Container {event.name or event.container_id[:12]} {event.action}, triggering sync")
        try:
            await self.trigger()
        except Exception as e:
            # Scheduled from the event thread; nothing else awaits this.
            logger.error(f"Unexpected error in {self.mode} cycle after container event: {e}", exc_info=True)

    async def _run_once(self) -> Optional[CycleSummary]:
        try:
            entries = await self.collect_entries()
        except DiscoveryError as e:
            logger.warning(f"Discovery failed, skipping cycle: {e}")
            return None
        summary = await self.reconciler.run_cycle(entries, mode=self.mode)
        self.last_summary = summary
        return summary

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.trigger()
            except Exception as e:
                logger.error(f"Unexpected error in {self.mode} cycle: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def _on_docker_event(self, event: ContainerEvent) -> None:
        # Called on the Docker event thread.
        loop = self._loop
        if loop is None or self._stopping or loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self.on_container_event(event), loop)


# =============================================================================
# Proxy (Traefik) Monitor
# =============================================================================


class ProxyMonitor(DiscoveryMonitor):
    """Desired entries from Traefik router rules."""

    mode = MODE_PROXY

    def __init__(
        self,
        reconciler: Reconciler,
        settings: Settings,
        *,
        reader: Optional[TraefikReader] = None,
        docker_state: Optional[DockerState] = None,
    ):
        super().__init__(reconciler, settings, docker_state=docker_state)
        self.reader = reader or TraefikReader(
            config_path=settings.traefik_config_path,
            instances_json=settings.traefik_instances,
            url=settings.traefik_url,
            target_ip=settings.traefik_target_ip,
            username=settings.traefik_username,
            password=settings.traefik_password,
            timeout_seconds=settings.provider_timeout,
        )
        self._router_rule_re = re.compile(
            rf"^{re.escape(settings.traefik_label_prefix)}http\.routers\.([^.]+)\.rule$"
        )

    async def init(self) -> None:
        instances = await asyncio.to_thread(self.reader.get_instances)
        if not instances:
            raise DiscoveryError(
                "At least one Traefik instance is required "
                "(set TRAEFIK_CONFIG_PATH, TRAEFIK_INSTANCES or TRAEFIK_URL)"
            )
        logger.info(f"Proxy instances: {', '.join(i.name for i in instances)}")

    async def collect_entries(self) -> List[DesiredEntry]:
        # Instances are re-read every cycle so config file edits apply without a restart.
        instances = await asyncio.to_thread(self.reader.get_instances)
        if not instances:
            raise DiscoveryError("No Traefik instances configured")
        router_labels = await self._router_labels()

        entries: List[DesiredEntry] = []
        chosen: Dict[str, Tuple[str, str]] = {}
        for instance in instances:
            try:
                routes = await asyncio.to_thread(self.reader.get_routes, instance)
            except (requests.exceptions.RequestException, ValueError) as e:
                # Partial data would orphan every hostname of the missing instance.
                raise DiscoveryError(f"Proxy instance '{instance.name}' unreachable: {e}") from e

            for route in routes:
                previous = chosen.get(route.hostname)
                if previous is not None:
                    if previous[1] != route.target_ip:
                        logger.warning(
                            f"Domain '{route.hostname}' present on multiple proxy instances with different "
                            f"target IPs; using '{previous[1]}' from '{previous[0]}'"
                        )
                    continue
                chosen[route.hostname] = (instance.name, route.target_ip)

                container_id, labels = router_labels.get(router_base_name(route.router_name), (None, {}))
                if labels and not should_manage(labels, self.settings):
                    logger.debug(f"Skipping {route.hostname}: container opted out of DNS management")
                    continue
                entry = build_entry(
                    route.hostname,
                    labels,
                    self.settings,
                    container_id=container_id,
                    fallback_content=route.target_ip,
                )
                if entry is not None:
                    entries.append(entry)

            logger.debug(f"Proxy instance '{instance.name}': {len(routes)} route(s)")
        return entries

    async def _router_labels(self) -> Dict[str, Tuple[Optional[str], Dict[str, str]]]:
        """Map router name -> (container id, labels) of the container declaring it."""
        if self.docker_state is None:
            return {}
        try:
            containers = await asyncio.to_thread(self.docker_state.list_containers)
        except DiscoveryError as e:
            logger.warning(f"Container labels unavailable, using defaults: {e}")
            return {}
        mapping: Dict[str, Tuple[Optional[str], Dict[str, str]]] = {}
        for container in containers:
            for key in container.labels:
                match = self._router_rule_re.match(key)
                if match:
                    mapping[match.group(1)] = (container.id, container.labels)
        return mapping


# =============================================================================
# Direct (label) Monitor
# =============================================================================


class DirectMonitor(DiscoveryMonitor):
    """Desired entries straight from `dns.*` container labels."""

    mode = MODE_DIRECT

    async def init(self) -> None:
        if self.docker_state is None:
            raise DiscoveryError("Direct mode requires access to the Docker API")
        await asyncio.to_thread(self.docker_state.list_containers)

    async def collect_entries(self) -> List[DesiredEntry]:
        if self.docker_state is None:
            raise DiscoveryError("Direct mode requires access to the Docker API")
        containers = await asyncio.to_thread(self.docker_state.list_containers)
        entries: List[DesiredEntry] = []
        for container in containers:
            found = entries_from_labels(container.labels, self.settings, container.id)
            if found:
                logger.debug(f"Container {container.name}: {', '.join(e.hostname for e in found)}")
            entries.extend(found)
        return entries
