"""Unit tests for DockerState with a mocked Docker client."""

from unittest.mock import MagicMock

import pytest
from docker.errors import APIError

from trafego_dns.docker_state import ContainerEvent, ContainerInfo, DockerState
from trafego_dns.errors import DiscoveryError


def mock_container(container_id: str, name: str, labels=None) -> MagicMock:
    container = MagicMock()
    container.id = container_id
    container.name = name
    container.labels = labels
    return container


class TestContainers:
    """Tests for reading containers."""

    def test_list_containers(self) -> None:
        """Test containers are converted with their labels."""
        client = MagicMock()
        client.containers.list.return_value = [
            mock_container("c1", "web", {"dns.hostname": "app.example.com"}),
            mock_container("c2", "db", None),
        ]

        containers = DockerState(client=client).list_containers()

        assert containers == [
            ContainerInfo("c1", "web", {"dns.hostname": "app.example.com"}),
            ContainerInfo("c2", "db", {}),
        ]

    def test_api_error_becomes_discovery_error(self) -> None:
        """Test Docker API failures surface as DiscoveryError."""
        client = MagicMock()
        client.containers.list.side_effect = APIError("daemon gone")

        with pytest.raises(DiscoveryError):
            DockerState(client=client).list_containers()


class TestEvents:
    """Tests for event parsing and fan-out."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            (
                {"Type": "container", "Action": "start", "id": "c1", "Actor": {"ID": "c1", "Attributes": {"name": "web"}}},
                ContainerEvent("start", "c1", "web"),
            ),
            ({"status": "die", "id": "c2"}, ContainerEvent("die", "c2", "")),
            ({"Type": "container", "Action": "exec_start", "id": "c1"}, None),
            ({"Type": "network", "Action": "start", "id": "n1"}, None),
        ],
    )
    def test_parse_event(self, raw, expected) -> None:
        """Test only container lifecycle actions are kept."""
        assert DockerState(client=MagicMock())._parse_event(raw) == expected

    def test_dispatch_isolates_failing_subscriber(self) -> None:
        """Test one failing subscriber does not stop the others."""
        state = DockerState(client=MagicMock())
        received = []

        def broken(event) -> None:
            raise RuntimeError("boom")

        state.subscribe(broken)
        unsubscribe = state.subscribe(received.append)
        event = ContainerEvent("stop", "c1", "web")

        state._dispatch(event)
        unsubscribe()
        state._dispatch(event)

        assert received == [event]

    def test_watch_dispatches_stream(self) -> None:
        """Test the event thread body dispatches each streamed container event."""
        client = MagicMock()
        client.events.return_value = iter(
            [{"Type": "container", "Action": "start", "id": "c1"}, {"Type": "container", "Action": "pause", "id": "c1"}]
        )
        state = DockerState(client=client)
        received = []
        state.subscribe(received.append)

        state._watch()

        assert received == [ContainerEvent("start", "c1", "")]
        assert client.events.call_args.kwargs["filters"]["type"] == "container"
