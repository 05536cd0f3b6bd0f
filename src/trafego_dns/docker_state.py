"""Docker state: running containers, their labels, and container lifecycle events."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import docker
from docker.errors import APIError, DockerException

from trafego_dns.errors import DiscoveryError

logger = logging.getLogger(__name__)

CONTAINER_ACTIONS = ("start", "stop", "die", "destroy")


@dataclass(frozen=True)
class ContainerInfo:
    id: str
    name: str
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ContainerEvent:
    action: str
    container_id: str
    name: str = ""


EventCallback = Callable[[ContainerEvent], None]


class DockerState:
    """Reads containers through the Docker SDK and fans out lifecycle events.

    Events are read on one daemon thread; subscribers are called on that
    thread and must hand work to their own event loop.
    """

    def __init__(self, base_url: str = "", client: Any = None):
        if client is None:
            client = docker.DockerClient(base_url=base_url) if base_url else docker.from_env()
        self._client = client
        self._subscribers: List[EventCallback] = []
        self._lock = threading.Lock()
        self._stream: Any = None
        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    def list_containers(self) -> List[ContainerInfo]:
        """Running containers with their labels."""
        try:
            containers = self._client.containers.list()
        except (APIError, DockerException) as e:
            raise DiscoveryError(f"Failed to list containers: {e}") from e
        return [
            ContainerInfo(id=c.id, name=c.name, labels=dict(c.labels or {}))
            for c in containers
        ]

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def start_events(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._watch, name="docker-events", daemon=True)
        self._thread.start()
        logger.info("Watching Docker container events")

    def stop_events(self) -> None:
        self._stopping.set()
        stream = self._stream
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                logger.debug(f"Error closing Docker event stream: {e}")
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def close(self) -> None:
        self.stop_events()
        self._client.close()

    def _watch(self) -> None:
        filters = {"type": "container", "event": list(CONTAINER_ACTIONS)}
        try:
            self._stream = self._client.events(decode=True, filters=filters)
            for raw in self._stream:
                if self._stopping.is_set():
                    break
                event = self._parse_event(raw)
                if event is not None:
                    self._dispatch(event)
        except Exception as e:
            if not self._stopping.is_set():
                logger.error(f"Docker event monitoring encountered an error: {e}")
        finally:
            self._stream = None

    def _parse_event(self, raw: Dict[str, Any]) -> Optional[ContainerEvent]:
        action = raw.get("Action") or raw.get("status") or ""
        if raw.get("Type", "container") != "container" or action not in CONTAINER_ACTIONS:
            return None
        actor = raw.get("Actor") or {}
        container_id = raw.get("id") or actor.get("ID") or ""
        name = (actor.get("Attributes") or {}).get("name", "")
        return ContainerEvent(action=action, container_id=container_id, name=name)

    def _dispatch(self, event: ContainerEvent) -> None:
        logger.debug(f"Container {event.name or event.container_id[:12]} {event.action}")
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Container event subscriber failed: {e}")
