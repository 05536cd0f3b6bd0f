"""Hot-swapping the active discovery monitor (traefik <-> direct)."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from trafego_dns.config import MODE_DIRECT, MODE_PROXY, OPERATION_MODES, normalize_mode
from trafego_dns.errors import ModeSwitchError
from trafego_dns.events import EventBus, EventType, ModeChanged
from trafego_dns.monitors import DiscoveryMonitor
from trafego_dns.store import DataStore

logger = logging.getLogger(__name__)

MonitorFactory = Callable[[str], DiscoveryMonitor]


class SwitcherState(str, Enum):
    INACTIVE = "inactive"
    RUNNING_PROXY = "running_proxy"
    RUNNING_DIRECT = "running_direct"


_STATE_FOR_MODE = {
    MODE_PROXY: SwitcherState.RUNNING_PROXY,
    MODE_DIRECT: SwitcherState.RUNNING_DIRECT,
}


class ModeSwitcher:
    """Owns the single running monitor. Switches are serialized by a lock."""

    def __init__(
        self,
        factory: MonitorFactory,
        store: Optional[DataStore] = None,
        *,
        events: Optional[EventBus] = None,
    ):
        self.factory = factory
        self.store = store
        self.events = events
        self.monitor: Optional[DiscoveryMonitor] = None
        self.mode: Optional[str] = None
        self.state = SwitcherState.INACTIVE
        self._lock = asyncio.Lock()

    async def start(self, mode: str) -> None:
        """Start the initial monitor. Errors propagate; nothing is left running."""
        mode = self._validate(mode)
        async with self._lock:
            if self.monitor is not None:
                raise RuntimeError(f"Mode switcher already running in {self.mode} mode")
            monitor = self.factory(mode)
            await monitor.init()
            await monitor.start_polling()
            self._activate(monitor, mode)
            logger.info(f"Operation mode: {mode}")

    async def switch_mode(self, mode: str) -> bool:
        """Switch to `mode`. Returns True if switched, False if unchanged.

        If the new monitor cannot start the previous one is restarted; if that
        also fails ModeSwitchError is raised and nothing is running.
        """
        mode = self._validate(mode)
        async with self._lock:
            if mode == self.mode:
                logger.info(f"Already running in {mode} mode")
                return False

            old_monitor, old_mode = self.monitor, self.mode
            logger.info(f"Switching operation mode {old_mode} -> {mode}")
            if old_monitor is not None:
                await old_monitor.stop_polling()

            try:
                monitor = self.factory(mode)
                await monitor.init()
                await monitor.start_polling()
            except Exception as e:
                logger.error(f"Failed to start {mode} monitor: {e}")
                await self._restore(old_monitor, old_mode, e)
                return False

            self._activate(monitor, mode)
            self._persist(mode)
            if self.events is not None:
                self.events.publish(EventType.OPERATION_MODE_CHANGED, ModeChanged(old_mode, mode))
            logger.info(f"Operation mode switched to {mode}")
            return True

    async def shutdown(self) -> None:
        async with self._lock:
            if self.monitor is not None:
                await self.monitor.stop_polling()
            self.monitor = None
            self.mode = None
            self.state = SwitcherState.INACTIVE

    async def _restore(self, old_monitor: Optional[DiscoveryMonitor], old_mode: Optional[str], cause: Exception) -> None:
        if old_monitor is None or old_mode is None:
            self.monitor, self.mode, self.state = None, None, SwitcherState.INACTIVE
            raise ModeSwitchError(f"No monitor running after failed switch: {cause}") from cause
        try:
            await old_monitor.start_polling()
        except Exception as restart_error:
            self.monitor, self.mode, self.state = None, None, SwitcherState.INACTIVE
            logger.critical(f"Failed to restart {old_mode} monitor: {restart_error}")
            raise ModeSwitchError(
                f"Switch failed ({cause}) and {old_mode} monitor could not be restarted ({restart_error})"
            ) from restart_error
        logger.warning(f"Restored {old_mode} monitor after failed switch")

    def _activate(self, monitor: DiscoveryMonitor, mode: str) -> None:
        self.monitor = monitor
        self.mode = mode
        self.state = _STATE_FOR_MODE[mode]

    def _persist(self, mode: str) -> None:
        if self.store is None:
            return
        try:
            self.store.update_config("operationMode", mode)
        except Exception as e:
            logger.error(f"Failed to persist operation mode {mode}: {e}")

    def _validate(self, mode: str) -> str:
        mode = normalize_mode(mode)
        if mode not in OPERATION_MODES:
            raise ValueError(f"Unsupported operation mode: {mode}. Supported: {', '.join(OPERATION_MODES)}")
        return mode
