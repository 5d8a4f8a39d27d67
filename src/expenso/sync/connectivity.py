"""
ConnectivityMonitor — last known reachability plus transition notifications.

State changes come from two sources:
  * refresh(): an active probe (by default a TCP connect to a well-known
    host, run in the thread pool so it never blocks the event loop);
  * set_state(): transitions pushed by the hosting platform.

Subscribers are called only when the state actually flips, synchronously and
in registration order. A probe that raises counts as offline.
"""
import asyncio
import logging
import socket
from typing import Awaitable, Callable, List, Optional

from apscheduler.jobstores.base import JobLookupError

from expenso.errors import OfflineError

logger = logging.getLogger(__name__)

POLL_JOB_ID = "connectivity_poll"

Probe = Callable[[], Awaitable[bool]]
Subscriber = Callable[[bool], None]


def socket_probe(host: str, port: int, timeout: float = 3.0) -> Probe:
    """Build a probe that succeeds when a TCP connection to host:port opens."""

    def _connect() -> bool:
        with socket.create_connection((host, port), timeout=timeout):
            return True

    async def probe() -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _connect)

    return probe


class ConnectivityMonitor:
    def __init__(self, probe: Optional[Probe] = None, *, initial_state: bool = False):
        """
        Args:
            probe: Async callable returning True when the network is reachable.
                   Defaults to the configured socket probe.
            initial_state: State reported before the first refresh().
        """
        if probe is None:
            from expenso.config import get_settings

            settings = get_settings()
            probe = socket_probe(
                settings.connectivity_host,
                settings.connectivity_port,
                settings.connectivity_timeout_seconds,
            )
        self._probe = probe
        self._online = initial_state
        self._subscribers: List[Subscriber] = []
        self._scheduler = None

    def start(self, scheduler, interval_seconds: int) -> None:
        """Poll the probe every `interval_seconds` on the given APScheduler."""
        scheduler.add_job(
            self.refresh,
            trigger="interval",
            seconds=interval_seconds,
            id=POLL_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler = scheduler

    def stop(self) -> None:
        if self._scheduler is None:
            return
        try:
            self._scheduler.remove_job(POLL_JOB_ID)
        except JobLookupError:
            pass  # scheduler already shut down
        self._scheduler = None

    def is_online(self) -> bool:
        """Last known state. Never blocks."""
        return self._online

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def refresh(self) -> bool:
        """Run the probe now and update state (notifying on a transition)."""
        try:
            online = bool(await self._probe())
        except Exception as exc:
            logger.debug("Reachability probe failed: %s", exc)
            online = False
        self.set_state(online)
        return online

    def set_state(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if was_online == online:
            return
        logger.info("Network %s", "connected" if online else "disconnected")
        for callback in list(self._subscribers):
            try:
                callback(online)
            except Exception:
                logger.exception("Connectivity subscriber failed")

    async def wait_for_connection(self, timeout: float = 30.0) -> bool:
        """Return once online.

        Raises:
            OfflineError: if still offline after `timeout` seconds.
        """
        if self._online:
            return True

        loop = asyncio.get_running_loop()
        connected = loop.create_future()

        def on_change(online: bool) -> None:
            if online and not connected.done():
                connected.set_result(True)

        unsubscribe = self.subscribe(on_change)
        try:
            return await asyncio.wait_for(connected, timeout)
        except asyncio.TimeoutError as exc:
            raise OfflineError(f"No connection after {timeout}s") from exc
        finally:
            unsubscribe()
