"""Unit tests for the discovery monitors.

Covers the execution guard (one cycle at a time, at most one queued rerun),
cooperative stop, container-event triggers, and both discovery sources.
"""

import asyncio
from typing import Dict, List

import pytest
import requests

from fakes import FakeDockerState, ScriptedMonitor, StubReconciler, wait_until
from trafego_dns.config import Settings
from trafego_dns.docker_state import ContainerEvent, ContainerInfo
from trafego_dns.errors import DiscoveryError
from trafego_dns.models import CycleSummary, DesiredEntry
from trafego_dns.monitors import DirectMonitor, ProxyMonitor
from trafego_dns.traefik import TraefikInstance, TraefikRoute

SETTINGS = Settings(dns_provider="cloudflare", cloudflare_zone="example.com", poll_interval=3600.0)


# =============================================================================
# Execution Guard
# =============================================================================


class TestExecutionGuard:
    """Tests for trigger coalescing and stopping."""

    @pytest.mark.asyncio
    async def test_triggers_during_cycle_coalesce_into_one_rerun(self) -> None:
        """Test any number of triggers during a cycle cause exactly one extra cycle."""
        reconciler = StubReconciler()
        monitor = ScriptedMonitor(reconciler)
        monitor.gate.clear()

        first = asyncio.create_task(monitor.trigger())
        await monitor.started.wait()
        assert await monitor.trigger() is None
        assert await monitor.trigger() is None
        assert monitor.is_running

        monitor.gate.set()
        await first

        assert monitor.collect_calls == 2
        assert len(reconciler.cycles) == 2
        assert not monitor.is_running

    @pytest.mark.asyncio
    async def test_trigger_returns_summary(self) -> None:
        """Test an idle trigger runs one cycle and returns its summary."""
        reconciler = StubReconciler()
        monitor = ScriptedMonitor(reconciler, entries=[DesiredEntry(hostname="a.example.com", type="A")])

        summary = await monitor.trigger()

        assert summary.created == 1
        assert monitor.last_summary is summary

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_cycle(self) -> None:
        """Test stop_polling returns only after the running cycle has finished."""
        reconciler = StubReconciler()
        monitor = ScriptedMonitor(reconciler)
        monitor.gate.clear()
        await monitor.start_polling()
        await monitor.started.wait()

        stopping = asyncio.create_task(monitor.stop_polling())
        await asyncio.sleep(0.05)
        assert not stopping.done()
        assert reconciler.cycles == []

        monitor.gate.set()
        await stopping

        assert len(reconciler.cycles) == 1
        assert not monitor.is_polling
        assert not monitor.is_running

    @pytest.mark.asyncio
    async def test_queued_rerun_dropped_when_stopping(self) -> None:
        """Test a rerun queued before stop is not executed after stop."""
        reconciler = StubReconciler()
        monitor = ScriptedMonitor(reconciler)
        monitor.gate.clear()
        await monitor.start_polling()
        await monitor.started.wait()
        await monitor.trigger()

        stopping = asyncio.create_task(monitor.stop_polling())
        await asyncio.sleep(0)
        monitor.gate.set()
        await stopping

        assert monitor.collect_calls == 1

    @pytest.mark.asyncio
    async def test_trigger_after_stop_is_ignored(self) -> None:
        """Test triggers after stop_polling do not start a cycle."""
        reconciler = StubReconciler()
        monitor = ScriptedMonitor(reconciler)
        await monitor.start_polling()
        await wait_until(lambda: len(reconciler.cycles) == 1)
        await monitor.stop_polling()

        assert await monitor.trigger() is None
        assert len(reconciler.cycles) == 1

    @pytest.mark.asyncio
    async def test_monitor_can_restart_after_stop(self) -> None:
        """Test start_polling after stop_polling resumes cycles."""
        reconciler = StubReconciler()
        monitor = ScriptedMonitor(reconciler)
        await monitor.start_polling()
        await wait_until(lambda: len(reconciler.cycles) == 1)
        await monitor.stop_polling()

        await monitor.start_polling()
        await wait_until(lambda: len(reconciler.cycles) == 2)
        await monitor.stop_polling()

    @pytest.mark.asyncio
    async def test_container_event_triggers_cycle(self) -> None:
        """Test a Docker event from the event thread runs a cycle on the loop."""
        reconciler = StubReconciler()
        docker_state = FakeDockerState()
        monitor = ScriptedMonitor(reconciler, docker_state=docker_state)
        await monitor.start_polling()
        await wait_until(lambda: len(reconciler.cycles) == 1)

        await asyncio.to_thread(docker_state.emit, ContainerEvent("start", "abc123", "web"))
        await wait_until(lambda: len(reconciler.cycles) == 2)

        await monitor.stop_polling()
        assert docker_state.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_container_event_cycle_error_is_logged(self, caplog) -> None:
        """Test a failing cycle started by a Docker event is logged, not lost."""

        class FailingReconciler(StubReconciler):
            async def run_cycle(self, entries, *, mode=None):
                await super().run_cycle(entries, mode=mode)
                if len(self.cycles) > 1:
                    raise RuntimeError("tracker write failed")
                return CycleSummary()

        reconciler = FailingReconciler()
        docker_state = FakeDockerState()
        monitor = ScriptedMonitor(reconciler, docker_state=docker_state)
        await monitor.start_polling()
        await wait_until(lambda: len(reconciler.cycles) == 1)

        await asyncio.to_thread(docker_state.emit, ContainerEvent("die", "abc123", "web"))
        await wait_until(lambda: "tracker write failed" in caplog.text)

        await monitor.stop_polling()
        assert "after container event" in caplog.text
        assert not monitor.is_running

    @pytest.mark.asyncio
    async def test_events_not_subscribed_when_disabled(self) -> None:
        """Test WATCH_DOCKER_EVENTS=false leaves the Docker subscription alone."""
        docker_state = FakeDockerState()
        monitor = ScriptedMonitor(
            StubReconciler(),
            settings=Settings(poll_interval=3600.0, watch_docker_events=False),
            docker_state=docker_state,
        )
        await monitor.start_polling()

        assert docker_state.subscriber_count == 0
        await monitor.stop_polling()


# =============================================================================
# Direct Monitor
# =============================================================================


class TestDirectMonitor:
    """Tests for label-based discovery."""

    @pytest.mark.asyncio
    async def test_collects_entries_from_labels(self) -> None:
        """Test each managed container contributes its label hostnames."""
        docker_state = FakeDockerState(
            [
                ContainerInfo("c1", "web", {"dns.hostname": "web.example.com", "dns.type": "A", "dns.content": "1.2.3.4"}),
                ContainerInfo("c2", "api", {"dns.domain": "example.com", "dns.subdomain": "api"}),
                ContainerInfo("c3", "db", {"other": "label"}),
                ContainerInfo("c4", "skip", {"dns.hostname": "skip.example.com", "dns.skip": "true"}),
            ]
        )
        monitor = DirectMonitor(StubReconciler(), SETTINGS, docker_state=docker_state)

        entries = await monitor.collect_entries()

        by_host = {e.hostname: e for e in entries}
        assert set(by_host) == {"web.example.com", "api.example.com"}
        assert by_host["web.example.com"].content == "1.2.3.4"
        assert by_host["web.example.com"].source_container_id == "c1"
        assert by_host["api.example.com"].type == "CNAME"

    @pytest.mark.asyncio
    async def test_init_requires_docker(self) -> None:
        """Test direct mode refuses to start without Docker access."""
        monitor = DirectMonitor(StubReconciler(), SETTINGS)

        with pytest.raises(DiscoveryError):
            await monitor.init()

    @pytest.mark.asyncio
    async def test_docker_failure_skips_cycle(self) -> None:
        """Test a Docker listing failure skips reconciliation entirely."""
        reconciler = StubReconciler()
        docker_state = FakeDockerState()
        docker_state.error = RuntimeError("socket closed")
        monitor = DirectMonitor(reconciler, SETTINGS, docker_state=docker_state)

        assert await monitor.trigger() is None
        assert reconciler.cycles == []


# =============================================================================
# Proxy Monitor
# =============================================================================


class FakeReader:
    """Traefik reader returning canned routes per instance name."""

    def __init__(self, instances: List[TraefikInstance], routes: Dict[str, List[TraefikRoute]]):
        self.instances = instances
        self.routes = routes
        self.failing: Dict[str, Exception] = {}

    def get_instances(self) -> List[TraefikInstance]:
        return list(self.instances)

    def get_routes(self, instance: TraefikInstance) -> List[TraefikRoute]:
        if instance.name in self.failing:
            raise self.failing[instance.name]
        return list(self.routes.get(instance.name, []))


def route(hostname: str, router: str, instance: str = "core", target_ip: str = "10.0.0.2") -> TraefikRoute:
    return TraefikRoute(hostname=hostname, router_name=router, instance=instance, target_ip=target_ip)


class TestProxyMonitor:
    """Tests for Traefik router discovery."""

    @pytest.mark.asyncio
    async def test_routes_become_entries_with_target_ip(self) -> None:
        """Test router hostnames become A records pointing at the instance target IP."""
        reader = FakeReader(
            [TraefikInstance("core", "http://traefik:8080", target_ip="10.0.0.2")],
            {"core": [route("app.example.com", "app@docker")]},
        )
        monitor = ProxyMonitor(StubReconciler(), SETTINGS, reader=reader)

        entries = await monitor.collect_entries()

        assert len(entries) == 1
        assert (entries[0].hostname, entries[0].type, entries[0].content) == ("app.example.com", "A", "10.0.0.2")

    @pytest.mark.asyncio
    async def test_route_without_target_uses_default_type(self) -> None:
        """Test an instance without target IP yields a CNAME with no content."""
        reader = FakeReader(
            [TraefikInstance("core", "http://traefik:8080")],
            {"core": [route("app.example.com", "app@docker", target_ip="")]},
        )
        monitor = ProxyMonitor(StubReconciler(), SETTINGS, reader=reader)

        entries = await monitor.collect_entries()

        assert (entries[0].type, entries[0].content) == ("CNAME", "")

    @pytest.mark.asyncio
    async def test_container_labels_apply_to_router(self) -> None:
        """Test dns.* labels on the container declaring the router customize the entry."""
        docker_state = FakeDockerState(
            [
                ContainerInfo(
                    "c1",
                    "app",
                    {
                        "traefik.http.routers.app.rule": "Host(`app.example.com`)",
                        "dns.ttl": "120",
                        "dns.proxied": "false",
                    },
                ),
                ContainerInfo(
                    "c2",
                    "hidden",
                    {"traefik.http.routers.hidden.rule": "Host(`hidden.example.com`)", "dns.skip": "true"},
                ),
            ]
        )
        reader = FakeReader(
            [TraefikInstance("core", "http://traefik:8080", target_ip="10.0.0.2")],
            {"core": [route("app.example.com", "app@docker"), route("hidden.example.com", "hidden@docker")]},
        )
        monitor = ProxyMonitor(StubReconciler(), SETTINGS, reader=reader, docker_state=docker_state)

        entries = await monitor.collect_entries()

        assert [e.hostname for e in entries] == ["app.example.com"]
        assert entries[0].ttl == 120
        assert entries[0].proxied is False
        assert entries[0].source_container_id == "c1"

    @pytest.mark.asyncio
    async def test_first_instance_wins_for_shared_hostname(self) -> None:
        """Test a hostname on two instances is taken from the first one."""
        reader = FakeReader(
            [
                TraefikInstance("core", "http://core:8080", target_ip="10.0.0.2"),
                TraefikInstance("edge", "http://edge:8080", target_ip="10.0.0.3"),
            ],
            {
                "core": [route("app.example.com", "app", "core", "10.0.0.2")],
                "edge": [route("app.example.com", "app", "edge", "10.0.0.3")],
            },
        )
        monitor = ProxyMonitor(StubReconciler(), SETTINGS, reader=reader)

        entries = await monitor.collect_entries()

        assert [e.content for e in entries] == ["10.0.0.2"]

    @pytest.mark.asyncio
    async def test_unreachable_instance_skips_whole_cycle(self) -> None:
        """Test one failing instance produces no partial desired state."""
        reconciler = StubReconciler()
        reader = FakeReader(
            [
                TraefikInstance("core", "http://core:8080", target_ip="10.0.0.2"),
                TraefikInstance("edge", "http://edge:8080", target_ip="10.0.0.3"),
            ],
            {"core": [route("app.example.com", "app")]},
        )
        reader.failing["edge"] = requests.exceptions.ConnectionError("refused")
        monitor = ProxyMonitor(reconciler, SETTINGS, reader=reader)

        with pytest.raises(DiscoveryError):
            await monitor.collect_entries()
        assert await monitor.trigger() is None
        assert reconciler.cycles == []

    @pytest.mark.asyncio
    async def test_init_requires_an_instance(self) -> None:
        """Test proxy mode refuses to start with no Traefik instances."""
        monitor = ProxyMonitor(StubReconciler(), SETTINGS, reader=FakeReader([], {}))

        with pytest.raises(DiscoveryError):
            await monitor.init()
