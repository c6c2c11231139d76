"""GlobalLeaderboards client.

Ties together the API client, the offline queue, connectivity monitoring and
the realtime clients:

- Submissions are validated, then sent directly or queued when offline (or
  when older submissions are still waiting, to keep them in order).
- The queue is drained when the network comes back and periodically by a
  background scheduler.
"""

import logging
import threading
from collections.abc import Mapping
from typing import Iterable, Optional, Union
from urllib.parse import quote

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from ulid import ULID

from .auth import KeychainManager
from .config import Config
from .connectivity import OFFLINE, ONLINE, NetworkMonitor
from .errors import AuthError, GlobalLeaderboardsError, ValidationError, is_permanent_error
from .models import (
    BulkSubmitScoreResponse,
    LeaderboardEntriesResponse,
    ScoreSubmission,
    SubmitOptions,
    SubmitScoreResponse,
    UserScoresResponse,
)
from .realtime import (
    LeaderboardSSE,
    LeaderboardWebSocket,
    SSEConnectionOptions,
    SSEHandlers,
    SSESubscription,
    WebSocketHandlers,
)
from .sync.http_client import ApiClient
from .sync.protocols import ApiClientProtocol, ConnectivityProtocol, StorageProtocol
from .sync.queue import (
    METHOD_SUBMIT,
    METHOD_SUBMIT_BULK,
    QUEUE_PROCESSED,
    QUEUE_PROGRESS,
    OfflineQueue,
    QueuedOperation,
    QueuedSubmitResponse,
    QueueProcessedEvent,
    QueueProgressEvent,
)
from .sync.retry import RetryConfig
from .timers import TimerFactory
from .validation import validate

__all__ = ["GlobalLeaderboards"]

logger = logging.getLogger(__name__)

DRAIN_JOB_ID = "queue_drain_job"
IMMEDIATE_DRAIN_JOB_ID = "immediate_drain"


class GlobalLeaderboards:
    """Client for the GlobalLeaderboards API.

    Example:
        client = GlobalLeaderboards("api-key", Config(default_leaderboard_id="lb-1"))
        client.start()
        client.submit("user-123", 1500, user_name="PlayerOne")
        client.close()
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        config: Optional[Config] = None,
        *,
        api: Optional[ApiClientProtocol] = None,
        queue: Optional[OfflineQueue] = None,
        storage: Optional[StorageProtocol] = None,
        connectivity: Optional[ConnectivityProtocol] = None,
        scheduler: Optional[BackgroundScheduler] = None,
        timers: Optional[TimerFactory] = None,
    ):
        """Initialize the client.

        Args:
            api_key: API key; read from the system keychain when omitted
            config: Configuration (loaded from the config file when omitted)
            api: API client (for dependency injection/testing)
            queue: Offline queue (for dependency injection/testing)
            storage: Key-value store for the default offline queue
            connectivity: Network signal; defaults to a socket poller
            scheduler: Scheduler running the periodic drain job
            timers: Timer factory passed to the realtime clients

        Raises:
            AuthError: If no API key is given or stored
        """
        self.config = config or Config.load()
        api_key = api_key or KeychainManager().load_api_key()
        if not api_key:
            raise AuthError("API key is required", "MISSING_API_KEY")
        self.api_key = api_key

        self.api = api or ApiClient(
            self.config.api_url,
            api_key,
            timeout=self.config.timeout,
            auto_retry=self.config.auto_retry,
            retry_config=RetryConfig(max_retries=self.config.max_retries),
        )

        if queue is not None:
            self.queue: Optional[OfflineQueue] = queue
        elif self.config.queue.enabled:
            self.queue = OfflineQueue(
                api_key,
                storage=storage,
                max_size=self.config.queue.max_size,
                ttl_ms=self.config.queue_ttl_ms,
                batch_size=self.config.queue.batch_size,
            )
        else:
            self.queue = None

        self._owns_connectivity = connectivity is None
        self.connectivity = connectivity or NetworkMonitor(
            self.config.api_url,
            interval=self.config.realtime.connectivity_check_interval,
        )
        self._online = self.connectivity.is_online()
        self.connectivity.on(ONLINE, self._on_online)
        self.connectivity.on(OFFLINE, self._on_offline)

        self.scheduler = scheduler or BackgroundScheduler()
        self._timers = timers
        self._drain_lock = threading.Lock()
        self._ws: Optional[LeaderboardWebSocket] = None
        self._sse: Optional[LeaderboardSSE] = None

    # Lifecycle

    def start(self) -> None:
        """Start connectivity monitoring and the periodic queue drain."""
        if self._owns_connectivity:
            self.connectivity.start()

        if self.queue is not None and not self.scheduler.running:
            self.scheduler.add_job(
                self.process_queue,
                trigger=IntervalTrigger(seconds=self.config.queue.drain_interval_seconds),
                id=DRAIN_JOB_ID,
                replace_existing=True,
            )
            self.scheduler.start()
            logger.info(
                f"Queue drain started (interval: {self.config.queue.drain_interval_seconds}s)"
            )

        if self.queue is not None and self.queue.has_items() and self._online:
            self.trigger_drain()

    def close(self) -> None:
        """Stop background work and close all connections."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.connectivity.off(ONLINE, self._on_online)
        self.connectivity.off(OFFLINE, self._on_offline)
        if self._owns_connectivity:
            self.connectivity.stop()
        self.disconnect_websocket()
        self.disconnect_sse()
        self.api.close()

    def __enter__(self) -> "GlobalLeaderboards":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def is_online(self) -> bool:
        return self._online

    # Score submission

    def submit(
        self,
        user_id: str,
        score: float,
        options: Union[str, SubmitOptions, Mapping, None] = None,
        *,
        leaderboard_id: Optional[str] = None,
        user_name: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Union[SubmitScoreResponse, QueuedSubmitResponse]:
        """Submit a score.

        ``options`` may be a leaderboard id, a ``SubmitOptions`` or a mapping
        with ``leaderboard_id``/``user_name``/``metadata`` keys. Keyword
        arguments take precedence. Without any leaderboard id the configured
        ``default_leaderboard_id`` is used.

        Returns:
            SubmitScoreResponse when sent, QueuedSubmitResponse when queued

        Raises:
            ValidationError: Invalid score or user name, or no leaderboard id
            QueueFullError: Offline and the queue is full
            GlobalLeaderboardsError: If the API call fails
        """
        resolved = self._normalize_options(options)
        leaderboard_id = (
            leaderboard_id or resolved.leaderboard_id or self.config.default_leaderboard_id
        )
        if not leaderboard_id:
            raise ValidationError(
                "Leaderboard ID is required. Provide it as a parameter or set "
                "default_leaderboard_id in config.",
                "MISSING_LEADERBOARD_ID",
            )
        user_name = user_name or resolved.user_name or user_id
        metadata = metadata if metadata is not None else resolved.metadata

        validate(score, user_name)

        if self.queue is not None and (not self._online or self.queue.has_items()):
            params = {
                "userId": user_id,
                "score": score,
                "leaderboardId": leaderboard_id,
                "userName": user_name,
                "metadata": metadata,
            }
            return self.queue.enqueue(METHOD_SUBMIT, params)

        submission = ScoreSubmission(leaderboard_id, user_id, user_name, score, metadata)
        data = self.api.request("POST", "/v1/scores", body=submission.to_dict())
        return SubmitScoreResponse.from_dict(data)

    @staticmethod
    def _normalize_options(options: Union[str, SubmitOptions, Mapping, None]) -> SubmitOptions:
        if options is None:
            return SubmitOptions()
        if isinstance(options, str):
            return SubmitOptions(leaderboard_id=options)
        if isinstance(options, SubmitOptions):
            return options
        if isinstance(options, Mapping):
            return SubmitOptions(
                leaderboard_id=options.get("leaderboard_id") or options.get("leaderboardId"),
                user_name=options.get("user_name") or options.get("userName"),
                metadata=options.get("metadata"),
            )
        raise ValidationError(f"Unsupported submit options: {options!r}", "INVALID_OPTIONS")

    def submit_bulk(
        self, scores: Iterable[Union[ScoreSubmission, Mapping]]
    ) -> BulkSubmitScoreResponse:
        """Submit many scores in one call. Bulk submissions are never queued.

        Raises:
            GlobalLeaderboardsError: ``BULK_OFFLINE_NOT_SUPPORTED`` when offline
                or while queued submissions are pending
            ValidationError: If any score or user name is invalid
        """
        if not self._online or (self.queue is not None and self.queue.has_items()):
            raise GlobalLeaderboardsError(
                "Bulk submissions are not supported while offline or while "
                "queued submissions are pending",
                "BULK_OFFLINE_NOT_SUPPORTED",
            )

        submissions = [
            s if isinstance(s, ScoreSubmission) else ScoreSubmission.from_dict(s) for s in scores
        ]
        for submission in submissions:
            validate(submission.score, submission.user_name)

        data = self.api.request(
            "POST", "/v1/scores/bulk", body={"scores": [s.to_dict() for s in submissions]}
        )
        return BulkSubmitScoreResponse.from_dict(data)

    # Reads

    def get_leaderboard(
        self,
        leaderboard_id: str,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        around_user: Optional[str] = None,
    ) -> LeaderboardEntriesResponse:
        """Get a page of leaderboard entries, optionally centered on a user."""
        data = self.api.request(
            "GET",
            f"/v1/leaderboards/{quote(leaderboard_id, safe='')}",
            params={"page": page, "limit": limit, "around_user": around_user},
        )
        return LeaderboardEntriesResponse.from_dict(data)

    def get_user_scores(
        self, user_id: str, page: Optional[int] = None, limit: Optional[int] = None
    ) -> UserScoresResponse:
        """Get a user's scores across all leaderboards."""
        data = self.api.request(
            "GET",
            f"/v1/scores/user/{quote(user_id, safe='')}",
            params={"page": page, "limit": limit},
        )
        return UserScoresResponse.from_dict(data)

    def get_api_info(self) -> dict:
        """Get API name, version and endpoint listing. No authentication needed."""
        return self.api.request_public("/", "API_INFO_FAILED", "API info request")

    def health(self) -> dict:
        return self.api.request_public("/health", "HEALTH_CHECK_FAILED", "Health check")

    def health_detailed(self) -> dict:
        return self.api.request_public(
            "/health/detailed", "HEALTH_CHECK_FAILED", "Detailed health check"
        )

    @staticmethod
    def generate_id() -> str:
        """Generate a sortable unique id (ULID)."""
        return str(ULID())

    # Offline queue

    def _on_online(self) -> None:
        logger.info("Network online")
        self._online = True
        if self.queue is not None and self.queue.has_items():
            self.trigger_drain()

    def _on_offline(self) -> None:
        logger.info("Network offline, queueing submissions")
        self._online = False

    def trigger_drain(self) -> None:
        """Drain the queue now, on the scheduler thread when it is running."""
        if self.scheduler.running:
            self.scheduler.add_job(
                self.process_queue, id=IMMEDIATE_DRAIN_JOB_ID, replace_existing=True
            )
        else:
            self.process_queue()

    def process_queue(self) -> Optional[QueueProgressEvent]:
        """Send queued submissions, one bulk call per batch.

        A permanent failure (401/403/404 or a permanent error code) drops the
        batch and moves on; any other failure keeps the batch for retry and
        ends the pass.

        Returns:
            Final progress, or None if nothing ran (empty, offline or a pass
            already in progress)
        """
        if self.queue is None or not self._online:
            return None
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Queue drain already in progress")
            return None

        queue = self.queue
        try:
            if queue.is_processing() or not queue.has_items():
                return None
            queue.set_processing(True)

            batches = queue.batch_operations()
            total = len(batches)
            completed = processed = failed = 0
            stopped = False
            logger.info(f"Draining offline queue: {queue.size()} operations in {total} batches")

            for key, operations in batches:
                try:
                    response = self.api.request(
                        "POST", "/v1/scores/bulk", body={"scores": self._batch_scores(operations)}
                    )
                except GlobalLeaderboardsError as e:
                    if is_permanent_error(e):
                        logger.error(f"Batch {key} failed permanently: {e}")
                        for op in operations:
                            queue.mark_failed(op.queue_id, permanent=True, error=e)
                        failed += len(operations)
                        completed += 1
                        queue.emit(
                            QUEUE_PROGRESS,
                            QueueProgressEvent(completed, total, processed, failed, queue.size()),
                        )
                        continue

                    logger.warning(f"Batch {key} failed, will retry later: {e}")
                    for op in operations:
                        queue.mark_failed(op.queue_id, permanent=False, error=e)
                    stopped = True
                    break

                queue.remove_processed([op.queue_id for op in operations])
                processed += len(operations)
                completed += 1
                queue.emit(QUEUE_PROCESSED, QueueProcessedEvent(key, operations, response))
                queue.emit(
                    QUEUE_PROGRESS,
                    QueueProgressEvent(completed, total, processed, failed, queue.size()),
                )

            progress = QueueProgressEvent(
                completed, total, processed, failed, queue.size(), stopped=stopped
            )
            if stopped:
                queue.emit(QUEUE_PROGRESS, progress)
            logger.info(
                f"Queue drain finished: {processed} sent, {failed} dropped, "
                f"{progress.remaining} remaining"
            )
            return progress
        finally:
            queue.set_processing(False)
            self._drain_lock.release()

    @staticmethod
    def _batch_scores(operations: list[QueuedOperation]) -> list[dict]:
        scores = []
        for op in operations:
            if op.method == METHOD_SUBMIT_BULK:
                for score in op.params.get("scores") or []:
                    scores.append(ScoreSubmission.from_dict(score).to_dict())
            else:
                scores.append(ScoreSubmission.from_dict(op.params).to_dict())
        return scores

    def get_status(self) -> dict:
        """Summary of connectivity, queue and realtime state."""
        return {
            "online": self._online,
            "queue_size": self.queue.size() if self.queue is not None else 0,
            "queue_processing": self.queue.is_processing() if self.queue is not None else False,
            "websocket": self._ws.state.value if self._ws is not None else None,
            "subscriptions": list(self._ws.subscriptions) if self._ws is not None else [],
            "sse": self._sse.get_connection_status() if self._sse is not None else {},
        }

    # Realtime

    def connect_websocket(
        self,
        handlers: Optional[WebSocketHandlers] = None,
        leaderboard_id: Optional[str] = None,
        user_id: Optional[str] = None,
        transport_factory=None,
        **callbacks,
    ) -> LeaderboardWebSocket:
        """Open a WebSocket for live updates, replacing any previous one.

        Handlers can be passed as a ``WebSocketHandlers`` or as keyword
        callbacks (``on_leaderboard_update=...``).
        """
        self.disconnect_websocket()

        realtime = self.config.realtime
        ws = LeaderboardWebSocket(
            self.config.ws_url,
            self.api_key,
            max_reconnect_attempts=realtime.max_reconnect_attempts,
            reconnect_delay=realtime.reconnect_delay,
            ping_interval=realtime.ping_interval,
            timers=self._timers,
            transport_factory=transport_factory,
            connectivity=self.connectivity,
        )
        ws.on(handlers, **callbacks)
        self._ws = ws
        ws.connect(leaderboard_id, user_id)
        return ws

    def disconnect_websocket(self) -> None:
        if self._ws is not None:
            self._ws.disconnect()
            self._ws = None

    def connect_sse(
        self,
        leaderboard_id: str,
        handlers: Optional[SSEHandlers] = None,
        options: Optional[SSEConnectionOptions] = None,
        transport_factory=None,
    ) -> SSESubscription:
        """Open a Server-Sent Events stream for one leaderboard."""
        realtime = self.config.realtime
        if self._sse is None:
            self._sse = LeaderboardSSE(
                self.config.api_url,
                self.api_key,
                max_retries=realtime.sse_max_retries,
                max_delay=realtime.sse_max_delay,
                timers=self._timers,
                transport_factory=transport_factory,
            )
        options = options or SSEConnectionOptions(top_n=realtime.sse_top_n)
        return self._sse.connect(leaderboard_id, handlers, options)

    def disconnect_sse(self, leaderboard_id: Optional[str] = None) -> None:
        """Close one SSE stream, or all of them when no id is given."""
        if self._sse is None:
            return
        if leaderboard_id is None:
            self._sse.disconnect_all()
        else:
            self._sse.disconnect(leaderboard_id)
