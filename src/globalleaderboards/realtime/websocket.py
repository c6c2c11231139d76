"""WebSocket client for real-time leaderboard updates."""

import json
import logging
import threading
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urlencode

from ..config import (
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_PING_INTERVAL,
    DEFAULT_RECONNECT_DELAY,
)
from ..errors import PERMANENT_ERROR_CODES, GlobalLeaderboardsError
from ..events import safe_call
from ..sync.protocols import ConnectivityProtocol
from ..sync.retry import Backoff
from ..timers import ThreadingTimers, TimerFactory, TimerHandle
from .messages import (
    PING,
    PONG,
    ConnectionInfo,
    ErrorMessage,
    LeaderboardUpdate,
    PassthroughMessage,
    PingMessage,
    PongMessage,
    UnknownMessage,
    UserRankUpdate,
    build_control_message,
    parse_message,
    subscribe_message,
    unsubscribe_message,
)
from .transport import WebsocketsTransport

__all__ = ["LeaderboardWebSocket", "WebSocketHandlers", "ConnectionState"]

logger = logging.getLogger(__name__)

# Close code sent when the server reports a permanent error
PERMANENT_ERROR_CLOSE_CODE = 4000


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    RECONNECTING = "reconnecting"


@dataclass
class WebSocketHandlers:
    """Application callbacks. All are optional."""

    on_connect: Optional[Callable[[], None]] = None
    on_disconnect: Optional[Callable[[int, str], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    on_leaderboard_update: Optional[Callable[[LeaderboardUpdate], None]] = None
    on_user_rank_update: Optional[Callable[[UserRankUpdate], None]] = None
    on_reconnecting: Optional[Callable[[int, int, int], None]] = None
    on_message: Optional[Callable[[dict], None]] = None


class _Listener:
    """Routes transport events to the manager, tagged with the connection generation."""

    def __init__(self, manager: "LeaderboardWebSocket", generation: int):
        self._manager = manager
        self._generation = generation

    def on_open(self) -> None:
        self._manager._handle_open(self._generation)

    def on_message(self, data: str) -> None:
        self._manager._handle_message(self._generation, data)

    def on_error(self, error: Exception) -> None:
        self._manager._handle_transport_error(self._generation, error)

    def on_close(self, code: int, reason: str) -> None:
        self._manager._handle_close(self._generation, code, reason)


class LeaderboardWebSocket:
    """One multiplexed WebSocket carrying updates for many leaderboards.

    Subscriptions survive reconnects: after every (re)open the client sends a
    subscribe for each tracked leaderboard except the one already named in
    the connection URL. Reconnects use exponential backoff with +/- 25%
    jitter. Permanent server errors (bad key, unknown leaderboard, missing
    permissions) stop reconnection for good; ``reconnect()`` then raises the
    stored error.

    While the connectivity signal reports offline, reconnection is deferred
    and re-checked every ``reconnect_delay`` seconds without consuming an
    attempt, so a long outage never exhausts the attempt budget.
    """

    def __init__(
        self,
        ws_url: str,
        api_key: str,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        max_reconnect_delay: float = 60.0,
        timers: Optional[TimerFactory] = None,
        transport_factory: Optional[Callable] = None,
        connectivity: Optional[ConnectivityProtocol] = None,
    ):
        """Initialize the WebSocket client.

        Args:
            ws_url: WebSocket base URL (``wss://...``)
            api_key: API key, sent as a query parameter
            max_reconnect_attempts: Attempts before giving up
            reconnect_delay: Base reconnect delay in seconds
            ping_interval: Seconds between heartbeat pings
            max_reconnect_delay: Upper bound on a single reconnect delay
            timers: Timer factory (defaults to threading timers)
            transport_factory: ``factory(url, listener)`` returning a
                transport with ``start``/``send``/``close``
            connectivity: Optional network signal used to defer reconnects
        """
        self.ws_url = ws_url.rstrip("/")
        self.api_key = api_key
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.ping_interval = ping_interval
        self._timers = timers or ThreadingTimers()
        self._transport_factory = transport_factory or WebsocketsTransport
        self._connectivity = connectivity
        self._handlers = WebSocketHandlers()
        self._backoff = Backoff(
            max_attempts=max_reconnect_attempts,
            base_delay=reconnect_delay,
            max_delay=max_reconnect_delay,
            jitter=True,
        )

        self._lock = threading.RLock()
        self._state = ConnectionState.IDLE
        self._transport = None
        self._generation = 0
        self._subscriptions: dict[str, None] = {}  # insertion-ordered set
        self._connect_params: tuple[Optional[str], Optional[str]] = (None, None)
        self._should_reconnect = True
        self._permanent_error: Optional[GlobalLeaderboardsError] = None
        self._last_error: Optional[Exception] = None
        self._reconnect_timer: Optional[TimerHandle] = None
        self._ping_timer: Optional[TimerHandle] = None
        self._offline_wait_logged = False

        self._dispatch = {
            LeaderboardUpdate: self._on_leaderboard_update,
            UserRankUpdate: self._on_user_rank_update,
            ErrorMessage: self._on_server_error,
            PingMessage: self._on_ping,
            PongMessage: lambda msg: logger.debug("Pong received"),
            ConnectionInfo: lambda msg: logger.debug(f"Connection info: {msg.payload}"),
            PassthroughMessage: lambda msg: None,
            UnknownMessage: lambda msg: logger.warning(f"Unknown message type: {msg.type}"),
        }

    # Public API

    def on(self, handlers: Optional[WebSocketHandlers] = None, **callbacks) -> None:
        """Set event handlers, merging with any already set.

        Accepts a ``WebSocketHandlers`` instance, keyword callbacks
        (``on_connect=...``), or both.
        """
        with self._lock:
            merged = self._handlers
            if handlers is not None:
                updates = {
                    f.name: getattr(handlers, f.name)
                    for f in fields(handlers)
                    if getattr(handlers, f.name) is not None
                }
                merged = replace(merged, **updates)
            if callbacks:
                merged = replace(merged, **callbacks)
            self._handlers = merged

    def connect(self, leaderboard_id: Optional[str] = None, user_id: Optional[str] = None) -> None:
        """Open the connection, optionally joining one leaderboard in the handshake.

        Does nothing when already open or connecting.
        """
        with self._lock:
            if self._state in (ConnectionState.OPEN, ConnectionState.CONNECTING):
                return

            self._cancel_reconnect_timer()
            self._should_reconnect = True
            self._permanent_error = None
            self._connect_params = (leaderboard_id, user_id)
            if leaderboard_id:
                self._subscriptions[leaderboard_id] = None
            self._open_transport()

    def disconnect(self) -> None:
        """Close the connection and stop all reconnection and heartbeats."""
        with self._lock:
            self._should_reconnect = False
            self._cancel_reconnect_timer()
            self._stop_heartbeat()
            transport = self._transport
            self._transport = None
            self._state = ConnectionState.CLOSED

        if transport is not None:
            self._close_transport(transport)

    def reconnect(self) -> None:
        """Manually reconnect after the automatic attempts gave up.

        Raises:
            GlobalLeaderboardsError: The stored permanent error, if the
                connection was terminated by one
        """
        with self._lock:
            if self._state in (ConnectionState.OPEN, ConnectionState.CONNECTING):
                return
            if self._permanent_error is not None:
                raise self._permanent_error
            self._backoff.reset()
            leaderboard_id, user_id = self._connect_params
            self._state = ConnectionState.CLOSED
        self.connect(leaderboard_id, user_id)

    def subscribe(self, leaderboard_id: str, user_id: Optional[str] = None) -> None:
        """Subscribe to a leaderboard's updates.

        Raises:
            GlobalLeaderboardsError: ``WS_NOT_CONNECTED`` if not open
        """
        with self._lock:
            self._send(subscribe_message(leaderboard_id, user_id))
            self._subscriptions[leaderboard_id] = None

    def unsubscribe(self, leaderboard_id: str) -> None:
        """Stop receiving a leaderboard's updates.

        The leaderboard is forgotten even when the socket is not open, so it is
        not resubscribed on the next reconnect.
        """
        with self._lock:
            if self._state == ConnectionState.OPEN:
                try:
                    self._send(unsubscribe_message(leaderboard_id))
                except GlobalLeaderboardsError as e:
                    logger.warning(f"Failed to unsubscribe from {leaderboard_id}: {e}")
            self._subscriptions.pop(leaderboard_id, None)
            initial_id, user_id = self._connect_params
            if initial_id == leaderboard_id:
                self._connect_params = (None, user_id)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.OPEN

    @property
    def subscriptions(self) -> list[str]:
        return list(self._subscriptions)

    @property
    def reconnect_attempts(self) -> int:
        return self._backoff.attempts

    @property
    def permanent_connection_error(self) -> Optional[GlobalLeaderboardsError]:
        return self._permanent_error

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    # Connection lifecycle

    def _build_url(self) -> str:
        leaderboard_id, user_id = self._connect_params
        params = {"api_key": self.api_key}
        if leaderboard_id:
            params["leaderboard_id"] = leaderboard_id
        if user_id:
            params["user_id"] = user_id
        return f"{self.ws_url}/v1/ws/connect?{urlencode(params)}"

    def _open_transport(self) -> None:
        """Start a new transport. Caller holds the lock."""
        self._generation += 1
        self._state = ConnectionState.CONNECTING
        listener = _Listener(self, self._generation)
        try:
            transport = self._transport_factory(self._build_url(), listener)
            self._transport = transport
            transport.start()
        except Exception as e:
            logger.error(f"Failed to open WebSocket: {e}")
            self._transport = None
            self._state = ConnectionState.CLOSED
            self._handle_error(GlobalLeaderboardsError(str(e), "CONNECTION_FAILED"))
            self._schedule_reconnect()

    def _handle_open(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._transport is None:
                return
            self._state = ConnectionState.OPEN
            self._backoff.reset()
            self._offline_wait_logged = False
            self._start_heartbeat()
            handlers = self._handlers
            initial_id = self._connect_params[0]
            to_resubscribe = [lb for lb in self._subscriptions if lb != initial_id]

        logger.info("WebSocket connected")
        if handlers.on_connect:
            safe_call(handlers.on_connect)

        for leaderboard_id in to_resubscribe:
            try:
                self.subscribe(leaderboard_id)
            except GlobalLeaderboardsError as e:
                self._handle_error(e)
                break

    def _handle_close(self, generation: int, code: int, reason: str) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._stop_heartbeat()
            self._transport = None
            self._state = ConnectionState.CLOSED
            handlers = self._handlers
            should_reconnect = self._should_reconnect

        logger.info(f"WebSocket closed ({code}{': ' + reason if reason else ''})")
        if handlers.on_disconnect:
            safe_call(handlers.on_disconnect, code, reason)

        if should_reconnect:
            self._schedule_reconnect()

    def _handle_transport_error(self, generation: int, error: Exception) -> None:
        with self._lock:
            if generation != self._generation:
                return
            if not self._should_reconnect and self._state == ConnectionState.CLOSED:
                return
        self._handle_error(GlobalLeaderboardsError(f"WebSocket error: {error}", "WS_ERROR"))

    def _close_transport(self, transport, code: int = 1000, reason: str = "") -> None:
        try:
            transport.close(code, reason)
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")

    # Reconnection

    def _schedule_reconnect(self) -> None:
        attempt = delay = None
        with self._lock:
            if not self._should_reconnect or self._reconnect_timer is not None:
                return

            if self._backoff.exhausted:
                self._state = ConnectionState.CLOSED
                exhausted = True
            else:
                exhausted = False
                self._state = ConnectionState.RECONNECTING
                if self._connectivity is not None and not self._connectivity.is_online():
                    if not self._offline_wait_logged:
                        logger.info("Network offline, waiting before reconnecting")
                        self._offline_wait_logged = True
                    self._reconnect_timer = self._timers.call_later(
                        self.reconnect_delay, self._retry_when_online
                    )
                    return

                delay = self._backoff.next_delay()
                attempt = self._backoff.attempts
                self._reconnect_timer = self._timers.call_later(delay, self._reconnect_now)
            handlers = self._handlers

        if exhausted:
            logger.error("WebSocket max reconnection attempts reached")
            self._handle_error(
                GlobalLeaderboardsError("Max reconnection attempts reached", "WS_MAX_RECONNECT")
            )
            return

        delay_ms = int(delay * 1000)
        logger.info(
            f"Reconnecting in {delay_ms}ms "
            f"(attempt {attempt}/{self.max_reconnect_attempts})"
        )
        if handlers.on_reconnecting:
            safe_call(handlers.on_reconnecting, attempt, self.max_reconnect_attempts, delay_ms)

    def _retry_when_online(self) -> None:
        with self._lock:
            self._reconnect_timer = None
            if not self._should_reconnect:
                return
        self._schedule_reconnect()

    def _reconnect_now(self) -> None:
        with self._lock:
            self._reconnect_timer = None
            if not self._should_reconnect:
                return
            if self._state in (ConnectionState.OPEN, ConnectionState.CONNECTING):
                return
            self._permanent_error = None
            self._open_transport()

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    # Heartbeat

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        if self.ping_interval > 0:
            self._ping_timer = self._timers.call_later(self.ping_interval, self._send_ping)

    def _stop_heartbeat(self) -> None:
        if self._ping_timer is not None:
            self._ping_timer.cancel()
            self._ping_timer = None

    def _send_ping(self) -> None:
        with self._lock:
            self._ping_timer = None
            if self._state != ConnectionState.OPEN:
                return
            try:
                self._send(build_control_message(PING))
            except GlobalLeaderboardsError as e:
                logger.debug(f"Ping failed: {e}")
            self._start_heartbeat()

    # Messages

    def _send(self, message: dict) -> None:
        """Serialize and send a frame. Caller holds the lock."""
        if self._state != ConnectionState.OPEN or self._transport is None:
            raise GlobalLeaderboardsError("WebSocket is not connected", "WS_NOT_CONNECTED")
        try:
            self._transport.send(json.dumps(message))
        except Exception as e:
            raise GlobalLeaderboardsError(
                f"Failed to send {message.get('type')} message: {e}", "WS_SEND_FAILED"
            ) from e

    def _handle_message(self, generation: int, data: str) -> None:
        if generation != self._generation:
            return
        try:
            raw = json.loads(data)
        except ValueError:
            raw = None
        if not isinstance(raw, dict):
            self._handle_error(
                GlobalLeaderboardsError("Failed to parse WebSocket message", "INVALID_MESSAGE")
            )
            return

        handlers = self._handlers
        if handlers.on_message:
            safe_call(handlers.on_message, raw)

        try:
            message = parse_message(raw)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed {raw.get('type')} message: {e}")
            self._handle_error(
                GlobalLeaderboardsError(f"Malformed WebSocket message: {e}", "INVALID_MESSAGE")
            )
            return
        self._dispatch[type(message)](message)

    def _on_leaderboard_update(self, message: LeaderboardUpdate) -> None:
        if self._handlers.on_leaderboard_update:
            safe_call(self._handlers.on_leaderboard_update, message)

    def _on_user_rank_update(self, message: UserRankUpdate) -> None:
        if self._handlers.on_user_rank_update:
            safe_call(self._handlers.on_user_rank_update, message)

    def _on_ping(self, message: PingMessage) -> None:
        with self._lock:
            try:
                self._send(build_control_message(PONG))
            except GlobalLeaderboardsError as e:
                logger.debug(f"Pong failed: {e}")

    def _on_server_error(self, message: ErrorMessage) -> None:
        if not message.valid:
            logger.error("Received error message without an error object")
            self._handle_error(GlobalLeaderboardsError(message.message, message.code))
            return

        error = GlobalLeaderboardsError(message.message, message.code, details=message.details)
        if message.code in PERMANENT_ERROR_CODES:
            with self._lock:
                self._should_reconnect = False
                self._permanent_error = error
                self._cancel_reconnect_timer()
                self._stop_heartbeat()
                transport = self._transport
                if transport is not None:
                    self._state = ConnectionState.CLOSING
            logger.error(f"Permanent error {message.code}, disabling reconnection")
            if transport is not None:
                self._close_transport(
                    transport, PERMANENT_ERROR_CLOSE_CODE, f"Permanent error: {message.code}"
                )

        self._handle_error(error)

    def _handle_error(self, error: Exception) -> None:
        self._last_error = error
        handler = self._handlers.on_error
        if handler:
            safe_call(handler, error)
        else:
            logger.warning(f"WebSocket error: {error}")
