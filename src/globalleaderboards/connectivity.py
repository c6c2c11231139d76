"""Network connectivity monitoring.

A daemon thread periodically opens a TCP connection to the API host and
emits ``online``/``offline`` when reachability changes.
"""

import logging
import socket
import threading
from typing import Callable, Optional
from urllib.parse import urlparse

from .config import DEFAULT_API_URL
from .events import EventEmitter

__all__ = ["NetworkMonitor", "ONLINE", "OFFLINE"]

logger = logging.getLogger(__name__)

ONLINE = "online"
OFFLINE = "offline"


def _host_port(url: str) -> tuple[str, int]:
    parsed = urlparse(url)
    default_port = 80 if parsed.scheme in ("http", "ws") else 443
    return parsed.hostname or "localhost", parsed.port or default_port


class NetworkMonitor:
    """Connectivity signal backed by a socket poller.

    Reports online until the first probe says otherwise.
    """

    def __init__(
        self,
        url: str = DEFAULT_API_URL,
        interval: float = 5,
        probe: Optional[Callable[[], bool]] = None,
    ):
        """Initialize the monitor.

        Args:
            url: URL whose host is probed
            interval: Seconds between probes
            probe: Optional reachability check returning True when online
                (for testing)
        """
        self.host, self.port = _host_port(url)
        self.interval = interval
        self._probe = probe or self._socket_probe
        self._online = True
        self._events = EventEmitter()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _socket_probe(self) -> bool:
        try:
            socket.create_connection((self.host, self.port), timeout=5).close()
            return True
        except OSError:
            return False

    def is_online(self) -> bool:
        return self._online

    def on(self, event: str, handler: Callable[[], None]) -> None:
        self._events.on(event, handler)

    def off(self, event: str, handler: Callable[[], None]) -> None:
        self._events.off(event, handler)

    def check(self) -> bool:
        """Probe once, emitting an event if the state changed."""
        online = self._probe()
        if online != self._online:
            self._online = online
            status = ONLINE if online else OFFLINE
            logger.info(f"Network change detected, {status}")
            self._events.emit(status)
        return online

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()

        def poll():
            while not self._stop.is_set():
                self.check()
                self._stop.wait(self.interval)

        self._thread = threading.Thread(target=poll, name="network-poller", daemon=True)
        self._thread.start()
        logger.debug(f"Network poller started for {self.host} (interval: {self.interval}s)")

    def stop(self) -> None:
        self._stop.set()
        self._thread = None
