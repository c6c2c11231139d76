"""Thread-backed transports for WebSocket and Server-Sent Events.

Each transport owns one daemon reader thread and reports what happens on the
wire to a listener. Connection managers never touch sockets directly, so
tests can swap in fake transports.
"""

import logging
import threading
from typing import Optional, Protocol

import requests
import sseclient
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect as ws_connect

logger = logging.getLogger(__name__)

# Close code used when no close frame was received
ABNORMAL_CLOSURE = 1006


class SocketListener(Protocol):
    def on_open(self) -> None: ...

    def on_message(self, data: str) -> None: ...

    def on_error(self, error: Exception) -> None: ...

    def on_close(self, code: int, reason: str) -> None: ...


class StreamListener(Protocol):
    def on_open(self) -> None: ...

    def on_event(self, event: str, data: str) -> None: ...

    def on_error(self, error: Exception) -> None: ...

    def on_close(self) -> None: ...


class WebsocketsTransport:
    """WebSocket connection using the ``websockets`` synchronous client."""

    def __init__(self, url: str, listener: SocketListener, open_timeout: float = 10.0):
        self.url = url
        self._listener = listener
        self._open_timeout = open_timeout
        self._ws = None
        self._close_requested: Optional[tuple[int, str]] = None
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name="leaderboard-ws", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        try:
            ws = ws_connect(self.url, open_timeout=self._open_timeout)
        except (OSError, TimeoutError, WebSocketException) as e:
            logger.debug(f"WebSocket connect failed: {e}")
            self._listener.on_error(e)
            self._listener.on_close(ABNORMAL_CLOSURE, str(e))
            return

        with self._lock:
            self._ws = ws
            pending_close = self._close_requested
        if pending_close:
            ws.close(*pending_close)
            self._listener.on_close(*pending_close)
            return

        self._listener.on_open()
        code, reason = ABNORMAL_CLOSURE, ""
        try:
            while True:
                message = ws.recv()
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                self._listener.on_message(message)
        except ConnectionClosed as e:
            if e.rcvd is not None:
                code, reason = e.rcvd.code, e.rcvd.reason
            elif self._close_requested:
                code, reason = self._close_requested
        except (OSError, WebSocketException) as e:
            self._listener.on_error(e)
        except Exception as e:
            logger.exception("WebSocket listener failed, closing connection")
            self._listener.on_error(e)
            try:
                ws.close(1011, "Internal error")
            except (OSError, WebSocketException) as close_error:
                logger.debug(f"Error closing WebSocket: {close_error}")
            code, reason = 1011, "Internal error"
        self._listener.on_close(code, reason)

    def send(self, text: str) -> None:
        if self._ws is None:
            raise ConnectionError("WebSocket is not open")
        self._ws.send(text)

    def close(self, code: int = 1000, reason: str = "") -> None:
        with self._lock:
            self._close_requested = (code, reason)
            ws = self._ws
        if ws is not None:
            ws.close(code, reason)


class SSETransport:
    """Server-Sent Events stream read with ``sseclient`` over ``requests``."""

    def __init__(
        self,
        url: str,
        listener: StreamListener,
        session: Optional[requests.Session] = None,
        connect_timeout: float = 10.0,
    ):
        self.url = url
        self._listener = listener
        self._session = session or requests.Session()
        self._connect_timeout = connect_timeout
        self._client: Optional[sseclient.SSEClient] = None
        self._closing = threading.Event()
        self._open = threading.Event()
        self._thread = threading.Thread(target=self._run, name="leaderboard-sse", daemon=True)

    @property
    def is_open(self) -> bool:
        return self._open.is_set()

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        try:
            response = self._session.get(
                self.url,
                stream=True,
                headers={"Accept": "text/event-stream"},
                timeout=(self._connect_timeout, None),
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            if not self._closing.is_set():
                self._listener.on_error(e)
                self._listener.on_close()
            return

        self._client = sseclient.SSEClient(response)
        if self._closing.is_set():
            self._client.close()
            return

        self._open.set()
        self._listener.on_open()
        try:
            for event in self._client.events():
                if self._closing.is_set():
                    break
                self._listener.on_event(event.event, event.data)
        except Exception as e:
            # Closing the response from another thread surfaces here as a read error
            if not self._closing.is_set():
                self._listener.on_error(e)
        finally:
            self._open.clear()

        if not self._closing.is_set():
            self._listener.on_close()

    def close(self) -> None:
        self._closing.set()
        self._open.clear()
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.debug(f"Error closing SSE stream: {e}")
