"""Timer abstraction so reconnect and heartbeat scheduling can be faked in tests."""

import threading
from typing import Callable, Protocol, runtime_checkable


@runtime_checkable
class TimerHandle(Protocol):
    def cancel(self) -> None: ...


@runtime_checkable
class TimerFactory(Protocol):
    """Schedules a callback to run once after a delay (in seconds)."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class ThreadingTimers:
    """Default timer factory backed by daemon ``threading.Timer`` objects."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(max(0.0, delay), callback)
        timer.daemon = True
        timer.start()
        return timer
