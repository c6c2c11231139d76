"""Small publish/subscribe helper used by the queue and connectivity monitor."""

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


def safe_call(fn: Callable, *args) -> None:
    """Call an application callback, catching and logging any exceptions."""
    try:
        fn(*args)
    except Exception:
        name = getattr(fn, "__name__", repr(fn))
        logger.exception(f"Error in callback {name}")


class EventEmitter:
    """Maps event names to an ordered list of handlers.

    Handlers are invoked in registration order; a handler that raises is
    logged and the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable]] = {}
        self._lock = threading.Lock()

    def on(self, event: str, handler: Callable) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event, [])
            if handler not in handlers:
                handlers.append(handler)

    def off(self, event: str, handler: Callable) -> None:
        with self._lock:
            handlers = self._handlers.get(event)
            if handlers and handler in handlers:
                handlers.remove(handler)

    def emit(self, event: str, *args) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            safe_call(handler, *args)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))
