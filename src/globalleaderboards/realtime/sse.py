"""Server-Sent Events client for real-time leaderboard updates.

Unlike the WebSocket client, every leaderboard gets its own stream. Streams
reconnect with plain exponential backoff (no jitter) up to ``max_retries``
times and then give up; there is no manual reconnect.
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import quote, urlencode

import requests

from ..config import DEFAULT_SSE_MAX_DELAY, DEFAULT_SSE_MAX_RETRIES
from ..errors import GlobalLeaderboardsError
from ..events import safe_call
from ..timers import ThreadingTimers, TimerFactory, TimerHandle
from .messages import LeaderboardUpdate
from .transport import SSETransport

__all__ = ["LeaderboardSSE", "SSEHandlers", "SSEConnectionOptions", "SSESubscription"]

logger = logging.getLogger(__name__)

# SSE event names
EVENT_CONNECTED = "connected"
EVENT_LEADERBOARD_UPDATE = "leaderboard_update"
EVENT_HEARTBEAT = "heartbeat"
EVENT_ERROR = "error"

STATUS_CONNECTING = "connecting"
STATUS_OPEN = "open"
STATUS_CLOSED = "closed"


@dataclass
class SSEHandlers:
    on_connect: Optional[Callable[[], None]] = None
    on_disconnect: Optional[Callable[[], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    on_leaderboard_update: Optional[Callable[[LeaderboardUpdate], None]] = None
    on_heartbeat: Optional[Callable[[dict], None]] = None
    on_message: Optional[Callable[[dict], None]] = None


@dataclass
class SSEConnectionOptions:
    user_id: Optional[str] = None
    include_metadata: bool = True
    top_n: int = 10


class SSESubscription:
    """Handle returned by ``LeaderboardSSE.connect``."""

    def __init__(self, client: "LeaderboardSSE", leaderboard_id: str):
        self._client = client
        self.leaderboard_id = leaderboard_id

    def close(self) -> None:
        self._client.disconnect(self.leaderboard_id)


class _Stream:
    """Per-leaderboard connection state."""

    def __init__(self, leaderboard_id: str, handlers: SSEHandlers, options: SSEConnectionOptions):
        self.leaderboard_id = leaderboard_id
        self.handlers = handlers
        self.options = options
        self.transport = None
        self.status = STATUS_CONNECTING
        self.attempts = 0
        self.timer: Optional[TimerHandle] = None
        self.token = 0


class _StreamListener:
    def __init__(self, client: "LeaderboardSSE", stream: _Stream, token: int):
        self._client = client
        self._stream = stream
        self._token = token

    def on_open(self) -> None:
        self._client._handle_open(self._stream, self._token)

    def on_event(self, event: str, data: str) -> None:
        self._client._handle_event(self._stream, self._token, event, data)

    def on_error(self, error: Exception) -> None:
        self._client._handle_transport_error(self._stream, self._token, error)

    def on_close(self) -> None:
        self._client._handle_close(self._stream, self._token)


class LeaderboardSSE:
    """Manages one SSE stream per leaderboard."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        max_retries: int = DEFAULT_SSE_MAX_RETRIES,
        base_delay: float = 1.0,
        max_delay: float = DEFAULT_SSE_MAX_DELAY,
        timers: Optional[TimerFactory] = None,
        transport_factory: Optional[Callable] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._timers = timers or ThreadingTimers()
        self._session = session
        self._transport_factory = transport_factory or self._default_transport
        self._streams: dict[str, _Stream] = {}
        self._lock = threading.RLock()

    def _default_transport(self, url: str, listener: _StreamListener) -> SSETransport:
        return SSETransport(url, listener, session=self._session)

    def connect(
        self,
        leaderboard_id: str,
        handlers: Optional[SSEHandlers] = None,
        options: Optional[SSEConnectionOptions] = None,
    ) -> SSESubscription:
        """Open a stream for a leaderboard, replacing any existing one.

        Raises:
            GlobalLeaderboardsError: ``CONNECTION_FAILED`` if the transport
                could not be created
        """
        self.disconnect(leaderboard_id)
        stream = _Stream(leaderboard_id, handlers or SSEHandlers(), options or SSEConnectionOptions())
        with self._lock:
            self._streams[leaderboard_id] = stream
            try:
                self._open(stream)
            except GlobalLeaderboardsError:
                self._streams.pop(leaderboard_id, None)
                raise
        return SSESubscription(self, leaderboard_id)

    def disconnect(self, leaderboard_id: str) -> None:
        """Close a leaderboard's stream and cancel its pending reconnect."""
        with self._lock:
            stream = self._streams.pop(leaderboard_id, None)
            if stream is None:
                return
            if stream.timer is not None:
                stream.timer.cancel()
                stream.timer = None
            stream.status = STATUS_CLOSED
            transport = stream.transport
            stream.transport = None

        if transport is not None:
            try:
                transport.close()
            except Exception as e:
                logger.debug(f"Error closing SSE stream for {leaderboard_id}: {e}")

    def disconnect_all(self) -> None:
        with self._lock:
            leaderboard_ids = list(self._streams)
        for leaderboard_id in leaderboard_ids:
            self.disconnect(leaderboard_id)

    def is_connected(self, leaderboard_id: str) -> bool:
        stream = self._streams.get(leaderboard_id)
        return stream is not None and stream.status == STATUS_OPEN

    def get_connection_status(self) -> dict[str, str]:
        """Map of leaderboard id to ``connecting``, ``open`` or ``closed``."""
        with self._lock:
            return {lb: stream.status for lb, stream in self._streams.items()}

    # Internals

    def _build_url(self, stream: _Stream) -> str:
        options = stream.options
        params = {"api_key": self.api_key}
        if options.user_id:
            params["user_id"] = options.user_id
        params["include_metadata"] = "true" if options.include_metadata else "false"
        params["top_n"] = str(options.top_n)
        return (
            f"{self.base_url}/v1/sse/leaderboards/{quote(stream.leaderboard_id, safe='')}"
            f"?{urlencode(params)}"
        )

    def _open(self, stream: _Stream) -> None:
        """Start a transport for the stream. Caller holds the lock."""
        stream.token += 1
        stream.status = STATUS_CONNECTING
        listener = _StreamListener(self, stream, stream.token)
        try:
            transport = self._transport_factory(self._build_url(stream), listener)
            stream.transport = transport
            transport.start()
        except Exception as e:
            stream.transport = None
            stream.status = STATUS_CLOSED
            error = GlobalLeaderboardsError(
                str(e) or "Failed to create SSE connection", "CONNECTION_FAILED"
            )
            logger.error(f"Failed to open SSE stream for {stream.leaderboard_id}: {e}")
            if stream.handlers.on_error:
                safe_call(stream.handlers.on_error, error)
            raise error from e

    def _is_current(self, stream: _Stream, token: int) -> bool:
        return self._streams.get(stream.leaderboard_id) is stream and stream.token == token

    def _handle_open(self, stream: _Stream, token: int) -> None:
        with self._lock:
            if not self._is_current(stream, token):
                return
            stream.status = STATUS_OPEN
            stream.attempts = 0
        logger.debug(f"SSE connection opened: {stream.leaderboard_id}")
        if stream.handlers.on_connect:
            safe_call(stream.handlers.on_connect)

    def _handle_event(self, stream: _Stream, token: int, event: str, data: str) -> None:
        if not self._is_current(stream, token):
            return
        try:
            payload = json.loads(data)
        except ValueError as e:
            logger.error(f"Failed to parse SSE {event} event: {e}")
            return

        handlers = stream.handlers
        if handlers.on_message:
            safe_call(handlers.on_message, payload)

        if event == EVENT_CONNECTED:
            logger.debug(f"SSE connected event: {payload}")
        elif event == EVENT_LEADERBOARD_UPDATE:
            if not handlers.on_leaderboard_update:
                return
            try:
                if not isinstance(payload, dict):
                    raise TypeError(f"expected an object, got {type(payload).__name__}")
                update = LeaderboardUpdate.from_payload(payload)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Malformed SSE {event} event for {stream.leaderboard_id}: {e}")
                if handlers.on_error:
                    safe_call(
                        handlers.on_error,
                        GlobalLeaderboardsError(f"Malformed SSE event: {e}", "INVALID_MESSAGE"),
                    )
                return
            safe_call(handlers.on_leaderboard_update, update)
        elif event == EVENT_HEARTBEAT:
            if handlers.on_heartbeat:
                safe_call(handlers.on_heartbeat, payload)
        elif event == EVENT_ERROR:
            if not isinstance(payload, dict):
                payload = {}
            error = GlobalLeaderboardsError(
                payload.get("message") or "SSE error",
                payload.get("code") or "UNKNOWN_ERROR",
                details=payload.get("details"),
            )
            if handlers.on_error:
                safe_call(handlers.on_error, error)
            else:
                logger.warning(f"SSE error for {stream.leaderboard_id}: {error}")

    def _handle_transport_error(self, stream: _Stream, token: int, error: Exception) -> None:
        if self._is_current(stream, token):
            logger.error(f"SSE connection error for {stream.leaderboard_id}: {error}")

    def _handle_close(self, stream: _Stream, token: int) -> None:
        with self._lock:
            if not self._is_current(stream, token):
                return
            stream.status = STATUS_CLOSED
            stream.transport = None

        if stream.handlers.on_disconnect:
            safe_call(stream.handlers.on_disconnect)
        self._schedule_reconnect(stream)

    def _schedule_reconnect(self, stream: _Stream) -> None:
        with self._lock:
            if self._streams.get(stream.leaderboard_id) is not stream:
                return
            if stream.attempts >= self.max_retries:
                exhausted = True
                self._streams.pop(stream.leaderboard_id, None)
            else:
                exhausted = False
                delay = min(self.base_delay * 2**stream.attempts, self.max_delay)
                stream.attempts += 1
                stream.status = STATUS_CONNECTING
                stream.timer = self._timers.call_later(delay, lambda: self._reconnect_now(stream))

        if exhausted:
            logger.error(f"SSE max reconnection attempts reached: {stream.leaderboard_id}")
            if stream.handlers.on_error:
                safe_call(
                    stream.handlers.on_error,
                    GlobalLeaderboardsError(
                        "Max reconnection attempts reached", "SSE_MAX_RECONNECT"
                    ),
                )
            return

        logger.debug(
            f"Reconnecting SSE stream {stream.leaderboard_id} in {delay}s "
            f"(attempt {stream.attempts}/{self.max_retries})"
        )

    def _reconnect_now(self, stream: _Stream) -> None:
        with self._lock:
            stream.timer = None
            if self._streams.get(stream.leaderboard_id) is not stream:
                return
            try:
                self._open(stream)
            except GlobalLeaderboardsError:
                failed = True
            else:
                failed = False
        if failed:
            self._schedule_reconnect(stream)
